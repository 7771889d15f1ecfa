"""
localvl :: GGUF Packed Weight Files

Reader and writer for the single-file quantized format:

    magic "GGUF" | version u32 | tensor_count u64 | kv_count u64
    kv_count x (key: string, value_type u32, value)
    tensor_count x (name: string, n_dims u32, dims u64[n_dims], type u32, offset u64)
    padding to `general.alignment` (default 32)
    tensor data, each tensor at data_start + offset

Dims are stored innermost first; shapes exposed here are torch order.
Tensor data is memory-mapped, nothing is copied until a tensor is requested.
"""

import os
import struct
import numpy as np
import torch
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from localvl.core.errors import (
    UnrecognizedFormatError,
    WeightFileUnreadableError,
)
from localvl.core.quantization import (
    GGMLType,
    QuantizedTensor,
    is_supported,
    quantize,
    tensor_nbytes,
)

GGUF_MAGIC = 0x46554747  # b"GGUF" little-endian
GGUF_VERSION = 3
DEFAULT_ALIGNMENT = 32

# Metadata value types
GGUF_TYPE_UINT8 = 0
GGUF_TYPE_INT8 = 1
GGUF_TYPE_UINT16 = 2
GGUF_TYPE_INT16 = 3
GGUF_TYPE_UINT32 = 4
GGUF_TYPE_INT32 = 5
GGUF_TYPE_FLOAT32 = 6
GGUF_TYPE_BOOL = 7
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9
GGUF_TYPE_UINT64 = 10
GGUF_TYPE_INT64 = 11
GGUF_TYPE_FLOAT64 = 12

_SCALAR_FORMATS = {
    GGUF_TYPE_UINT8: "<B",
    GGUF_TYPE_INT8: "<b",
    GGUF_TYPE_UINT16: "<H",
    GGUF_TYPE_INT16: "<h",
    GGUF_TYPE_UINT32: "<I",
    GGUF_TYPE_INT32: "<i",
    GGUF_TYPE_FLOAT32: "<f",
    GGUF_TYPE_BOOL: "<?",
    GGUF_TYPE_UINT64: "<Q",
    GGUF_TYPE_INT64: "<q",
    GGUF_TYPE_FLOAT64: "<d",
}


def is_gguf_file(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(4)
    except OSError:
        return False
    return len(head) == 4 and struct.unpack("<I", head)[0] == GGUF_MAGIC


@dataclass
class GGUFTensorInfo:
    name: str
    shape: Tuple[int, ...]   # torch order
    ggml_type: int
    offset: int              # relative to data section

    @property
    def nbytes(self) -> int:
        numel = 1
        for d in self.shape:
            numel *= d
        return tensor_nbytes(self.ggml_type, numel)


# =========================================================================
# Reader
# =========================================================================

class _Cursor:
    """Sequential little-endian reads over a byte buffer."""

    def __init__(self, buf, path: str):
        self.buf = buf
        self.pos = 0
        self.path = path

    def unpack(self, fmt: str):
        size = struct.calcsize(fmt)
        if self.pos + size > len(self.buf):
            raise UnrecognizedFormatError("truncated GGUF header", self.path)
        value = struct.unpack_from(fmt, self.buf, self.pos)[0]
        self.pos += size
        return value

    def string(self) -> str:
        length = self.unpack("<Q")
        if self.pos + length > len(self.buf):
            raise UnrecognizedFormatError("truncated GGUF string", self.path)
        raw = bytes(self.buf[self.pos:self.pos + length])
        self.pos += length
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise UnrecognizedFormatError(f"invalid utf-8 in GGUF string: {e}", self.path) from e

    def value(self, value_type: int) -> Any:
        if value_type == GGUF_TYPE_STRING:
            return self.string()
        if value_type == GGUF_TYPE_ARRAY:
            item_type = self.unpack("<I")
            count = self.unpack("<Q")
            return [self.value(item_type) for _ in range(count)]
        fmt = _SCALAR_FORMATS.get(value_type)
        if fmt is None:
            raise UnrecognizedFormatError(f"unknown GGUF metadata type {value_type}", self.path)
        return self.unpack(fmt)


class GGUFFile:
    """
    Parsed GGUF file.

    Attributes:
        metadata: key -> value
        tensors:  name -> GGUFTensorInfo, in file order
    """

    def __init__(self, path: str):
        self.path = path
        if not os.path.isfile(path):
            raise WeightFileUnreadableError("weight file not found", path)
        try:
            self._mmap = np.memmap(path, dtype=np.uint8, mode="r")
        except (OSError, ValueError) as e:
            raise WeightFileUnreadableError(f"cannot map weight file: {e}", path) from e

        cur = _Cursor(self._mmap, path)
        if len(self._mmap) < 4 or cur.unpack("<I") != GGUF_MAGIC:
            raise UnrecognizedFormatError("missing GGUF magic", path)
        self.version = cur.unpack("<I")
        if self.version not in (2, 3):
            raise UnrecognizedFormatError(f"unsupported GGUF version {self.version}", path)

        tensor_count = cur.unpack("<Q")
        kv_count = cur.unpack("<Q")

        self.metadata: Dict[str, Any] = {}
        for _ in range(kv_count):
            key = cur.string()
            self.metadata[key] = cur.value(cur.unpack("<I"))

        self.tensors: Dict[str, GGUFTensorInfo] = {}
        for _ in range(tensor_count):
            name = cur.string()
            n_dims = cur.unpack("<I")
            dims = [cur.unpack("<Q") for _ in range(n_dims)]
            ggml_type = cur.unpack("<I")
            offset = cur.unpack("<Q")
            self.tensors[name] = GGUFTensorInfo(name, tuple(reversed(dims)), ggml_type, offset)

        self.alignment = int(self.metadata.get("general.alignment", DEFAULT_ALIGNMENT))
        self.data_start = _align(cur.pos, self.alignment)

        for info in self.tensors.values():
            if not is_supported(info.ggml_type):
                continue
            end = self.data_start + info.offset + info.nbytes
            if end > len(self._mmap):
                raise UnrecognizedFormatError(
                    f"tensor '{info.name}' extends past end of file", path
                )

    @property
    def architecture(self) -> Optional[str]:
        return self.metadata.get("general.architecture")

    def raw(self, name: str) -> np.ndarray:
        info = self.tensors[name]
        start = self.data_start + info.offset
        return self._mmap[start:start + info.nbytes]

    def get(self, name: str) -> QuantizedTensor:
        """Packed tensor by name. Raises KeyError for unknown names."""
        info = self.tensors[name]
        if not is_supported(info.ggml_type):
            raise UnrecognizedFormatError(
                f"tensor '{name}' uses unsupported ggml type {info.ggml_type}", self.path
            )
        # copy out of the read-only map so torch owns writable memory
        data = torch.from_numpy(np.array(self.raw(name), copy=True))
        return QuantizedTensor(data=data, ggml_type=GGMLType(info.ggml_type), shape=info.shape)

    def describe(self) -> List[Tuple[str, Tuple[int, ...], str]]:
        out = []
        for info in self.tensors.values():
            type_name = GGMLType(info.ggml_type).name if is_supported(info.ggml_type) else str(info.ggml_type)
            out.append((info.name, info.shape, type_name))
        return out


def _align(pos: int, alignment: int) -> int:
    return (pos + alignment - 1) // alignment * alignment


# =========================================================================
# Writer
# =========================================================================

def _write_string(f: BinaryIO, s: str) -> None:
    encoded = s.encode("utf-8")
    f.write(struct.pack("<Q", len(encoded)))
    f.write(encoded)


def _value_type(value: Any) -> int:
    if isinstance(value, bool):
        return GGUF_TYPE_BOOL
    if isinstance(value, str):
        return GGUF_TYPE_STRING
    if isinstance(value, int):
        return GGUF_TYPE_UINT32 if 0 <= value < 2 ** 32 else GGUF_TYPE_INT64
    if isinstance(value, float):
        return GGUF_TYPE_FLOAT32
    if isinstance(value, (list, tuple)):
        return GGUF_TYPE_ARRAY
    raise TypeError(f"cannot store {type(value).__name__} in GGUF metadata")


def _write_value(f: BinaryIO, value: Any, value_type: int) -> None:
    if value_type == GGUF_TYPE_STRING:
        _write_string(f, value)
    elif value_type == GGUF_TYPE_ARRAY:
        item_type = _value_type(value[0]) if value else GGUF_TYPE_UINT32
        f.write(struct.pack("<I", item_type))
        f.write(struct.pack("<Q", len(value)))
        for item in value:
            _write_value(f, item, item_type)
    else:
        f.write(struct.pack(_SCALAR_FORMATS[value_type], value))


def write_gguf(
    path: str,
    tensors: Dict[str, Tuple[torch.Tensor, GGMLType]],
    metadata: Dict[str, Any],
    alignment: int = DEFAULT_ALIGNMENT,
) -> str:
    """
    Write a GGUF file.

    Args:
        tensors: name -> (float tensor, storage type)
        metadata: key -> str/int/float/bool/list
    """
    encoded = []
    offset = 0
    for name, (tensor, ggml_type) in tensors.items():
        data = quantize(tensor, ggml_type).cpu().numpy().tobytes()
        offset = _align(offset, alignment)
        encoded.append((name, tuple(tensor.shape), GGMLType(ggml_type), offset, data))
        offset += len(data)

    metadata = dict(metadata)
    if alignment != DEFAULT_ALIGNMENT:
        metadata["general.alignment"] = alignment

    with open(path, "wb") as f:
        f.write(struct.pack("<I", GGUF_MAGIC))
        f.write(struct.pack("<I", GGUF_VERSION))
        f.write(struct.pack("<Q", len(encoded)))
        f.write(struct.pack("<Q", len(metadata)))

        for key, value in metadata.items():
            _write_string(f, key)
            value_type = _value_type(value)
            f.write(struct.pack("<I", value_type))
            _write_value(f, value, value_type)

        for name, shape, ggml_type, tensor_offset, _ in encoded:
            _write_string(f, name)
            f.write(struct.pack("<I", len(shape)))
            for dim in reversed(shape):
                f.write(struct.pack("<Q", dim))
            f.write(struct.pack("<I", int(ggml_type)))
            f.write(struct.pack("<Q", tensor_offset))

        data_start = _align(f.tell(), alignment)
        f.write(b"\x00" * (data_start - f.tell()))
        for _, _, _, tensor_offset, data in encoded:
            pad = data_start + tensor_offset - f.tell()
            f.write(b"\x00" * pad)
            f.write(data)

    return path
