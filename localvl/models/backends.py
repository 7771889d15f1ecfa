"""
localvl :: Weight-Backed Models

One contract, two backends:

    forward(token_ids, position_offset) -> logits (batch, seq, vocab)

  QuantizedModel  single packed GGUF file; linear weights stay packed and
                  are dequantized per layer inside the matmul
  DenseModel      safetensors file(s), memory-mapped, fixed dtype, with an
                  optional vision tower

Both own their KV cache. Only new tokens are computed on each call; the
cache supplies the history. load_weight_backed_model() picks the backend
from the file magic.
"""

import torch
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Union

from localvl.core.errors import (
    ArchitectureMismatchError,
    EngineRuntimeError,
)
from localvl.core.gguf import GGUFFile
from localvl.core.kv_cache import KVCache
from localvl.core.loader import (
    SafetensorsWeights,
    WeightFormat,
    assign_weights,
    detect_weight_format,
    move_to_device,
    resolve_dtype,
    resolve_weight_files,
)
from localvl.core.logging import get_logger
from localvl.layers.linear import QuantizedLinear
from localvl.models.config import ModelConfig, TextConfig
from localvl.models.naming import gguf_to_decoder_name, unpermute_qk
from localvl.models.transformer import TextDecoder
from localvl.vision.tower import VisionTower

logger = get_logger("localvl.models")

# Where the decoder and the vision tower live inside HF checkpoints.
TEXT_PREFIXES = ("model.language_model.", "model.", "language_model.model.", "")
LM_HEAD_KEYS = ("lm_head.weight", "model.lm_head.weight", "language_model.lm_head.weight")
VISION_PREFIXES = ("model.visual.", "visual.", "vision_tower.")


@dataclass
class WeightSource:
    """A packed quantized file, or dense file(s) plus their architecture config."""
    paths: List[str]
    config: Optional[ModelConfig] = None

    @classmethod
    def of(cls, paths: Union[str, Sequence[str]], config: Optional[ModelConfig] = None) -> "WeightSource":
        if isinstance(paths, str):
            paths = [paths]
        return cls(paths=list(paths), config=config)


class WeightBackedModel(Protocol):
    backend: str
    config: ModelConfig
    vision: Optional[VisionTower]
    device: torch.device

    def forward(
        self,
        token_ids: torch.Tensor,
        position_offset: int,
        inputs_embeds: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        rope_delta: Optional[int] = None,
    ) -> torch.Tensor: ...

    def embed(self, token_ids: torch.Tensor) -> torch.Tensor: ...

    def reset(self) -> None: ...

    @property
    def stats(self) -> dict: ...


def resolve_device(name: str = "auto") -> torch.device:
    if name == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(name)


# =========================================================================
# Shared decode runtime
# =========================================================================

class DecoderRunner:
    """
    Decoder + KV cache + position bookkeeping.

    position_offset must equal the cache length on every call. Without
    explicit position_ids, positions are offset + rope_delta + arange(seq);
    rope_delta is set by a multimodal prefill and cleared by reset().
    """

    def __init__(self, decoder: TextDecoder, device: torch.device):
        self.decoder = decoder.eval()
        self.device = device
        self.kv_cache = KVCache(decoder.config.num_hidden_layers)
        self.rope_delta = 0
        self.forward_calls = 0
        self.forward_tokens = 0

    def reset(self):
        self.kv_cache.reset()
        self.rope_delta = 0
        self.forward_calls = 0
        self.forward_tokens = 0

    @property
    def stats(self) -> dict:
        return {
            "forward_calls": self.forward_calls,
            "forward_tokens": self.forward_tokens,
            "cache_length": self.kv_cache.length,
        }

    @torch.inference_mode()
    def embed(self, token_ids: torch.Tensor) -> torch.Tensor:
        return self.decoder.embed(torch.as_tensor(token_ids, dtype=torch.long, device=self.device))

    @torch.inference_mode()
    def forward(
        self,
        token_ids: torch.Tensor,
        position_offset: int,
        inputs_embeds: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        rope_delta: Optional[int] = None,
    ) -> torch.Tensor:
        token_ids = torch.as_tensor(token_ids, dtype=torch.long, device=self.device)
        if token_ids.dim() == 1:
            token_ids = token_ids.unsqueeze(0)
        batch, seq = token_ids.shape

        if position_offset != self.kv_cache.length:
            raise EngineRuntimeError(
                f"position_offset={position_offset} does not match cache length {self.kv_cache.length}"
            )
        if rope_delta is not None:
            self.rope_delta = rope_delta

        if position_ids is None:
            start = position_offset + self.rope_delta
            position_ids = torch.arange(start, start + seq, device=self.device).unsqueeze(0).expand(batch, -1)
        else:
            position_ids = position_ids.to(self.device)

        if inputs_embeds is not None:
            inputs_embeds = inputs_embeds.to(self.device)

        logits = self.decoder(
            token_ids, position_ids,
            kv_cache=self.kv_cache,
            position_offset=position_offset,
            inputs_embeds=inputs_embeds,
        )
        self.forward_calls += 1
        self.forward_tokens += seq
        return logits


# =========================================================================
# Quantized backend
# =========================================================================

def _check_compatible(expected: TextConfig, actual: TextConfig, path: str):
    for key in ("hidden_size", "num_hidden_layers", "num_attention_heads",
                "num_key_value_heads", "vocab_size"):
        if getattr(expected, key) != getattr(actual, key):
            raise ArchitectureMismatchError(
                f"{key}={getattr(actual, key)} in file, config says {getattr(expected, key)}", path
            )


class QuantizedModel:
    backend = "quantized"

    def __init__(self, config: ModelConfig, decoder: TextDecoder, device: torch.device, metadata: dict):
        self.config = config
        self.device = device
        self.metadata = metadata
        self.vision = None
        self.runner = DecoderRunner(decoder, device)

    @classmethod
    def from_gguf(
        cls,
        path: str,
        device: Union[str, torch.device] = "cpu",
        expected: Optional[ModelConfig] = None,
    ) -> "QuantizedModel":
        device = torch.device(device)
        gguf = GGUFFile(path)

        embd = gguf.tensors.get("token_embd.weight")
        if embd is None:
            raise ArchitectureMismatchError("missing tensor 'token_embd.weight'", path)
        text = TextConfig.from_gguf_metadata(gguf.metadata, vocab_size=embd.shape[0])
        try:
            text.validate()
        except ArchitectureMismatchError as e:
            raise ArchitectureMismatchError(str(e), path) from e
        if expected is not None:
            _check_compatible(expected.text, text, path)

        by_decoder_name = {}
        for gguf_name in gguf.tensors:
            decoder_name = gguf_to_decoder_name(gguf_name)
            if decoder_name is not None:
                by_decoder_name[decoder_name] = gguf_name
        if "lm_head.weight" not in by_decoder_name:
            by_decoder_name["lm_head.weight"] = "token_embd.weight"

        with torch.device("meta"):
            decoder = TextDecoder(text, linear=QuantizedLinear)

        permuted = text.architecture == "llama"
        packed = set()
        for module_name, module in decoder.named_modules():
            if not isinstance(module, QuantizedLinear):
                continue
            gguf_name = by_decoder_name.get(f"{module_name}.weight")
            if gguf_name is None:
                raise ArchitectureMismatchError(f"missing tensor for '{module_name}.weight'", path)
            qt = gguf.get(gguf_name)
            if permuted and module_name.endswith(("q_proj", "k_proj")):
                n_head = text.num_attention_heads if module_name.endswith("q_proj") else text.num_key_value_heads
                qt.data = unpermute_qk(qt.rows(), n_head).reshape(-1).contiguous()
            module.load_quantized(qt, gguf_name)
            packed.add(f"{module_name}.qweight")

        def lookup(name):
            gguf_name = by_decoder_name.get(name)
            return None if gguf_name is None else gguf.get(gguf_name).dequantize()

        stats = assign_weights(decoder, lookup, dtype=torch.float32, skip=packed,
                               hint=f"architecture={text.architecture}")
        decoder = move_to_device(decoder, device)

        logger.info(
            f"Loaded quantized model {path}: arch={text.architecture}, "
            f"layers={text.num_hidden_layers}, packed={len(packed)}, dense={stats['loaded']}"
        )
        config = ModelConfig(text=text, torch_dtype="float32")
        return cls(config, decoder, device, dict(gguf.metadata))

    def forward(self, token_ids, position_offset, inputs_embeds=None, position_ids=None, rope_delta=None):
        return self.runner.forward(token_ids, position_offset, inputs_embeds, position_ids, rope_delta)

    def embed(self, token_ids):
        return self.runner.embed(token_ids)

    def reset(self):
        self.runner.reset()

    @property
    def stats(self) -> dict:
        return self.runner.stats


# =========================================================================
# Dense backend
# =========================================================================

class DenseModel:
    backend = "dense"

    def __init__(
        self,
        config: ModelConfig,
        decoder: TextDecoder,
        device: torch.device,
        vision: Optional[VisionTower] = None,
    ):
        self.config = config
        self.device = device
        self.vision = vision.eval() if vision is not None else None
        self.runner = DecoderRunner(decoder, device)

    @classmethod
    def from_safetensors(
        cls,
        files: Sequence[str],
        config: Optional[ModelConfig],
        device: Union[str, torch.device] = "cpu",
    ) -> "DenseModel":
        if config is None:
            raise ArchitectureMismatchError("dense weights need an architecture config")
        config.validate()
        device = torch.device(device)
        dtype = resolve_dtype(config.torch_dtype)
        weights = SafetensorsWeights(files)

        prefix = weights.find_prefix(TEXT_PREFIXES, "embed_tokens.weight")
        if prefix is None:
            raise ArchitectureMismatchError("no 'embed_tokens.weight' found in weights", files[0])

        def lookup(name):
            if name == "lm_head.weight":
                for key in LM_HEAD_KEYS:
                    if key in weights:
                        return weights.get(key)
                if config.text.tie_word_embeddings:
                    return weights.get(prefix + "embed_tokens.weight")
                return None
            return weights.get(prefix + name)

        t = config.text
        with torch.device("meta"):
            decoder = TextDecoder(t)
        assign_weights(decoder, lookup, dtype=dtype, hint=(
            f"hidden_size={t.hidden_size}, layers={t.num_hidden_layers}, "
            f"heads={t.num_attention_heads}/{t.num_key_value_heads}, head_dim={t.head_dim}"
        ))
        decoder = move_to_device(decoder, device)

        vision = None
        if config.vision is not None:
            vprefix = weights.find_prefix(VISION_PREFIXES, "patch_embed.proj.weight")
            if vprefix is None:
                raise ArchitectureMismatchError(
                    "config declares a vision tower but no 'patch_embed.proj.weight' was found", files[0]
                )
            with torch.device("meta"):
                vision = VisionTower(config.vision)
            vision.load_weights(lambda name: weights.get(vprefix + name), dtype=dtype)
            vision = move_to_device(vision, device)

        logger.info(
            f"Loaded dense model ({len(files)} file(s)): arch={t.architecture}, "
            f"layers={t.num_hidden_layers}, dtype={dtype}, vision={'yes' if vision else 'no'}"
        )
        return cls(config, decoder, device, vision)

    def forward(self, token_ids, position_offset, inputs_embeds=None, position_ids=None, rope_delta=None):
        return self.runner.forward(token_ids, position_offset, inputs_embeds, position_ids, rope_delta)

    def embed(self, token_ids):
        return self.runner.embed(token_ids)

    @torch.inference_mode()
    def encode_image(self, pixel_values: torch.Tensor, grid) -> torch.Tensor:
        if self.vision is None:
            raise EngineRuntimeError("loaded model has no vision tower")
        dtype = next(self.vision.parameters()).dtype
        return self.vision(pixel_values.to(self.device, dtype), grid)

    def reset(self):
        self.runner.reset()

    @property
    def stats(self) -> dict:
        return self.runner.stats


def load_weight_backed_model(
    source: WeightSource,
    device: Union[str, torch.device] = "cpu",
) -> WeightBackedModel:
    """Pick the backend from the file format and load."""
    files = resolve_weight_files(source.paths)
    fmt = detect_weight_format(files)
    if fmt == WeightFormat.GGUF:
        return QuantizedModel.from_gguf(files[0], device, expected=source.config)
    return DenseModel.from_safetensors(files, source.config, device)
