"""
localvl :: Weight Loader

Dense weights from safetensors (memory-mapped through safe_open) and the
shared machinery that moves tensors into modules:

  - file resolution: single file, several files, a directory, or a
    sharded directory with model.safetensors.index.json
  - format detection from file magic: GGUF vs safetensors
  - discovery of local model files and tokenizers under a models directory
  - assign_weights(): shape-checked placement into an nn.Module, with a
    descriptive ArchitectureMismatchError on any disagreement
"""

import json as _json
import os
import struct
import time
import torch
import torch.nn as nn
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from localvl.core.errors import (
    ArchitectureMismatchError,
    UnrecognizedFormatError,
    WeightFileUnreadableError,
)
from localvl.core.gguf import is_gguf_file
from localvl.core.logging import get_logger

logger = get_logger("localvl.loader")

MODELS_DIR_ENV = "LOCALVL_MODELS_DIR"

DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


class WeightFormat(Enum):
    GGUF = "gguf"
    SAFETENSORS = "safetensors"


def resolve_dtype(name) -> torch.dtype:
    if isinstance(name, torch.dtype):
        return name
    key = str(name).replace("torch.", "")
    if key not in DTYPES:
        raise ArchitectureMismatchError(f"unsupported torch_dtype '{name}', expected one of {sorted(DTYPES)}")
    return DTYPES[key]


# =========================================================================
# Format detection
# =========================================================================

def is_safetensors_file(path: str) -> bool:
    """8-byte little-endian header length followed by a JSON object."""
    try:
        size = os.path.getsize(path)
        with open(path, "rb") as f:
            head = f.read(9)
    except OSError:
        return False
    if len(head) < 9:
        return False
    header_len = struct.unpack("<Q", head[:8])[0]
    return 0 < header_len <= size - 8 and head[8:9] == b"{"


def _expand_directory(dir_path: Path) -> List[str]:
    """
    Safetensors files of a model directory. Priority:
      1. model.safetensors.index.json (sharded)
      2. model.safetensors
      3. *.safetensors
    """
    index_path = dir_path / "model.safetensors.index.json"
    if index_path.exists():
        try:
            with open(index_path, "r") as f:
                weight_map = _json.load(f).get("weight_map", {})
        except (OSError, ValueError) as e:
            raise UnrecognizedFormatError(f"bad shard index: {e}", str(index_path)) from e
        shards = [str(dir_path / name) for name in sorted(set(weight_map.values()))]
        for shard in shards:
            if not os.path.isfile(shard):
                raise WeightFileUnreadableError("shard not found", shard)
        return shards

    single = dir_path / "model.safetensors"
    if single.exists():
        return [str(single)]

    files = [str(p) for p in sorted(dir_path.glob("*.safetensors"))]
    if files:
        return files

    gguf = [str(p) for p in sorted(dir_path.glob("*.gguf"))]
    if gguf:
        return gguf[:1]

    raise WeightFileUnreadableError("no weight files found in directory", str(dir_path))


def resolve_weight_files(paths: Iterable[str]) -> List[str]:
    files: List[str] = []
    for p in paths:
        path = Path(p)
        if path.is_dir():
            files.extend(_expand_directory(path))
        elif path.is_file():
            if not os.access(path, os.R_OK):
                raise WeightFileUnreadableError("weight file is not readable", str(path))
            files.append(str(path))
        else:
            raise WeightFileUnreadableError("weight file not found", str(path))
    if not files:
        raise WeightFileUnreadableError("no weight files given")
    return files


def detect_weight_format(files: Sequence[str]) -> WeightFormat:
    """Inspect file magic. A GGUF source must be exactly one file."""
    if all(is_gguf_file(f) for f in files):
        if len(files) != 1:
            raise UnrecognizedFormatError(
                f"quantized weights must be a single packed file, got {len(files)}"
            )
        return WeightFormat.GGUF
    for f in files:
        if not is_safetensors_file(f):
            raise UnrecognizedFormatError("neither GGUF nor safetensors", f)
    return WeightFormat.SAFETENSORS


# =========================================================================
# Local model discovery
# =========================================================================

MODEL_EXTENSIONS = {".gguf": "gguf", ".safetensors": "safetensors"}


@dataclass
class LocalModel:
    """One weight file found under a models directory."""
    name: str
    path: str
    size: int
    model_type: str                      # "gguf" or "safetensors"
    modified_time: str
    tokenizer_path: Optional[str] = None


@dataclass
class LocalTokenizer:
    name: str
    path: str
    modified_time: str


def default_models_dir() -> str:
    """$LOCALVL_MODELS_DIR, else ./models when present, else ~/.localvl/models."""
    env = os.environ.get(MODELS_DIR_ENV)
    if env:
        return env
    if os.path.isdir("models"):
        return os.path.abspath("models")
    return os.path.join(os.path.expanduser("~"), ".localvl", "models")


def _modified(path: str) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(os.path.getmtime(path)))


def _model_name(path: Path) -> str:
    """models/{gguf,safetensors}/<name>/file -> <name>; anything else -> file name."""
    if path.parent.parent.name.lower() in ("gguf", "safetensors"):
        return path.parent.name
    return path.name


def _sibling_tokenizer(path: Path) -> Optional[str]:
    for candidate in (path.parent / "tokenizer.json",
                      path.parent / "tokenizer" / "tokenizer.json",
                      path.parent / path.stem / "tokenizer.json"):
        if candidate.is_file():
            return str(candidate)
    return None


def _walk_files(root: str) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name


def discover_models(root: Optional[str] = None) -> List[LocalModel]:
    """
    Every .gguf / .safetensors file below `root`, recursively.

    Recommended layout is models/gguf/<name>/<file>.gguf and
    models/safetensors/<name>/<file>.safetensors; loose files are listed
    under their file name. A missing root yields an empty list.
    """
    root = root or default_models_dir()
    if not os.path.isdir(root):
        logger.info(f"Models directory {root} does not exist")
        return []
    models = []
    for path in _walk_files(root):
        model_type = MODEL_EXTENSIONS.get(path.suffix.lower())
        if model_type is None:
            continue
        models.append(LocalModel(
            name=_model_name(path),
            path=str(path),
            size=path.stat().st_size,
            model_type=model_type,
            modified_time=_modified(str(path)),
            tokenizer_path=_sibling_tokenizer(path),
        ))
    logger.info(f"Found {len(models)} local model file(s) under {root}")
    return models


def _tokenizer_name(path: Path) -> str:
    parent = path.parent
    return parent.parent.name if parent.name == "tokenizer" else parent.name


def discover_tokenizers(root: Optional[str] = None) -> List[LocalTokenizer]:
    """Every tokenizer.json below `root`, named after the model directory holding it."""
    root = root or default_models_dir()
    if not os.path.isdir(root):
        return []
    return [
        LocalTokenizer(name=_tokenizer_name(path), path=str(path), modified_time=_modified(str(path)))
        for path in _walk_files(root)
        if path.name == "tokenizer.json"
    ]


# =========================================================================
# Safetensors (memory-mapped)
# =========================================================================

class SafetensorsWeights:
    """
    Name -> tensor view over one or more safetensors files.

    Files stay open through safe_open; tensors are read on demand.
    """

    def __init__(self, files: Sequence[str]):
        from safetensors import safe_open

        self.files = list(files)
        self._handles = []
        self._owner: Dict[str, object] = {}
        for path in self.files:
            try:
                handle = safe_open(path, framework="pt", device="cpu")
            except OSError as e:
                raise WeightFileUnreadableError(f"cannot open: {e}", path) from e
            except Exception as e:
                raise UnrecognizedFormatError(f"invalid safetensors file: {e}", path) from e
            self._handles.append(handle)
            for key in handle.keys():
                self._owner[key] = handle
        logger.info(f"Mapped {len(self._owner)} tensors from {len(self.files)} safetensors file(s)")

    def keys(self) -> List[str]:
        return list(self._owner)

    def __contains__(self, name: str) -> bool:
        return name in self._owner

    def get(self, name: str) -> Optional[torch.Tensor]:
        handle = self._owner.get(name)
        if handle is None:
            return None
        return handle.get_tensor(name)

    def find_prefix(self, candidates: Sequence[str], suffix: str) -> Optional[str]:
        """First prefix p among candidates with p + suffix present."""
        for prefix in candidates:
            if prefix + suffix in self._owner:
                return prefix
        return None


# =========================================================================
# Placement
# =========================================================================

def _set_tensor(module: nn.Module, name: str, value: torch.Tensor, is_param: bool):
    owner_path, _, leaf = name.rpartition(".")
    owner = module.get_submodule(owner_path) if owner_path else module
    if is_param:
        owner._parameters[leaf] = nn.Parameter(value, requires_grad=False)
    else:
        owner._buffers[leaf] = value


def assign_weights(
    module: nn.Module,
    lookup: Callable[[str], Optional[torch.Tensor]],
    dtype: torch.dtype = torch.float32,
    skip: Iterable[str] = (),
    hint: str = "",
) -> dict:
    """
    Fill every parameter and persistent buffer of `module` from `lookup`.

    Args:
        lookup: module-relative name -> tensor or None
        skip: names filled some other way (e.g. quantized weights)
        hint: config summary appended to mismatch errors

    Raises:
        ArchitectureMismatchError on a shape mismatch or a missing tensor.

    Returns:
        {"loaded": n, "skipped": n}
    """
    skip = set(skip)
    suffix = f" [{hint}]" if hint else ""
    loaded = 0
    missing = []

    targets = [(n, p, True) for n, p in module.named_parameters()]
    targets += [(n, b, False) for n, b in module.named_buffers() if n not in skip]
    non_persistent = {
        f"{prefix}.{b}" if prefix else b
        for prefix, sub in module.named_modules()
        for b in sub._non_persistent_buffers_set
    }

    for name, current, is_param in targets:
        if name in skip or name in non_persistent:
            continue
        value = lookup(name)
        if value is None:
            missing.append(name)
            continue
        if tuple(value.shape) != tuple(current.shape):
            raise ArchitectureMismatchError(
                f"tensor '{name}' has shape {tuple(value.shape)}, "
                f"expected {tuple(current.shape)}{suffix}"
            )
        _set_tensor(module, name, value.to(dtype), is_param)
        loaded += 1

    if missing:
        shown = ", ".join(missing[:5]) + (" ..." if len(missing) > 5 else "")
        raise ArchitectureMismatchError(
            f"{len(missing)} tensor(s) missing from weights: {shown}{suffix}"
        )
    return {"loaded": loaded, "skipped": len(skip)}


def move_to_device(module: nn.Module, device: torch.device) -> nn.Module:
    """Move a fully loaded module; refuse if anything is still on meta."""
    leftover = [n for n, t in list(module.named_parameters()) + list(module.named_buffers())
                if t.device.type == "meta"]
    if leftover:
        raise ArchitectureMismatchError(f"tensors never loaded: {leftover[:5]}")
    return module.to(device)
