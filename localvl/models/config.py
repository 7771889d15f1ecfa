"""
localvl :: Model Config

Architecture configuration for the text decoder and the vision tower.
Mirrors HuggingFace config.json for llama / qwen2 / qwen3 and the
Qwen-VL family (nested text_config / vision_config).
"""

import json
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, fields

from localvl.core.errors import (
    ArchitectureMismatchError,
    UnrecognizedFormatError,
    WeightFileUnreadableError,
)

# architecture name -> (attention bias, per-head q/k RMSNorm)
ARCHITECTURES = {
    "llama": (False, False),
    "qwen2": (True, False),
    "qwen3": (False, True),
}

_MODEL_TYPE_ALIASES = {
    "llama": "llama",
    "mistral": "llama",
    "qwen2": "qwen2",
    "qwen2_vl": "qwen2",
    "qwen2_5_vl": "qwen2",
    "qwen2_vl_text": "qwen2",
    "qwen3": "qwen3",
    "qwen3_vl": "qwen3",
    "qwen3_vl_text": "qwen3",
}

CLIP_IMAGE_MEAN = (0.48145466, 0.4578275, 0.40821073)
CLIP_IMAGE_STD = (0.26862954, 0.26130258, 0.2757771)


def _fill(config, data: Dict[str, Any]):
    """Copy known keys from data onto a dataclass instance, skip the rest."""
    names = {f.name for f in fields(config)}
    for key, val in data.items():
        if key in names:
            setattr(config, key, val)
    return config


@dataclass
class TextConfig:
    architecture: str = "qwen3"
    vocab_size: int = 151936
    hidden_size: int = 2048
    intermediate_size: int = 6144
    num_hidden_layers: int = 28
    num_attention_heads: int = 16
    num_key_value_heads: int = 8
    head_dim: Optional[int] = None          # None -> hidden_size // heads
    max_position_embeddings: int = 2048
    rope_theta: float = 1000000.0
    rms_norm_eps: float = 1e-6
    tie_word_embeddings: bool = True
    attention_bias: bool = False
    use_qk_norm: bool = True
    mrope_section: Optional[List[int]] = None

    def __post_init__(self):
        if self.head_dim is None:
            self.head_dim = self.hidden_size // self.num_attention_heads

    def validate(self):
        if self.architecture not in ARCHITECTURES:
            raise ArchitectureMismatchError(
                f"unsupported architecture '{self.architecture}', "
                f"expected one of {sorted(ARCHITECTURES)}"
            )
        if self.num_attention_heads % self.num_key_value_heads:
            raise ArchitectureMismatchError(
                f"num_attention_heads={self.num_attention_heads} is not a multiple of "
                f"num_key_value_heads={self.num_key_value_heads}"
            )
        if self.head_dim % 2:
            raise ArchitectureMismatchError(f"head_dim={self.head_dim} must be even for rotary")
        if self.mrope_section is not None and sum(self.mrope_section) != self.head_dim // 2:
            raise ArchitectureMismatchError(
                f"mrope_section {self.mrope_section} must sum to head_dim/2={self.head_dim // 2}"
            )
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextConfig":
        model_type = data.get("model_type", data.get("architecture", "llama"))
        arch = _MODEL_TYPE_ALIASES.get(model_type, model_type)
        bias, qk_norm = ARCHITECTURES.get(arch, (False, False))
        config = cls(architecture=arch, attention_bias=bias, use_qk_norm=qk_norm)
        _fill(config, {k: v for k, v in data.items() if k != "architecture"})
        if data.get("num_key_value_heads") is None:
            config.num_key_value_heads = config.num_attention_heads
        if data.get("head_dim") is None:
            config.head_dim = config.hidden_size // config.num_attention_heads
        rope_scaling = data.get("rope_scaling") or {}
        if rope_scaling.get("mrope_section"):
            config.mrope_section = list(rope_scaling["mrope_section"])
        return config

    @classmethod
    def from_gguf_metadata(cls, metadata: Dict[str, Any], vocab_size: int) -> "TextConfig":
        """Build from GGUF metadata keys prefixed with the architecture name."""
        arch = metadata.get("general.architecture")
        if arch not in ARCHITECTURES:
            raise ArchitectureMismatchError(
                f"unsupported GGUF architecture '{arch}', expected one of {sorted(ARCHITECTURES)}"
            )
        bias, qk_norm = ARCHITECTURES[arch]

        def get(key, default=None):
            value = metadata.get(f"{arch}.{key}", default)
            if value is None:
                raise ArchitectureMismatchError(f"GGUF metadata is missing '{arch}.{key}'")
            return value

        heads = int(get("attention.head_count"))
        hidden = int(get("embedding_length"))
        sections = metadata.get(f"{arch}.rope.dimension_sections")
        return cls(
            architecture=arch,
            vocab_size=vocab_size,
            hidden_size=hidden,
            intermediate_size=int(get("feed_forward_length")),
            num_hidden_layers=int(get("block_count")),
            num_attention_heads=heads,
            num_key_value_heads=int(get("attention.head_count_kv", heads)),
            head_dim=int(get("attention.key_length", hidden // heads)),
            max_position_embeddings=int(get("context_length", 2048)),
            rope_theta=float(get("rope.freq_base", 10000.0)),
            rms_norm_eps=float(get("attention.layer_norm_rms_epsilon", 1e-6)),
            attention_bias=bias,
            use_qk_norm=qk_norm,
            mrope_section=[int(s) for s in sections[:3]] if sections else None,
        )

    def to_gguf_metadata(self) -> Dict[str, Any]:
        arch = self.architecture
        meta = {
            "general.architecture": arch,
            f"{arch}.context_length": self.max_position_embeddings,
            f"{arch}.embedding_length": self.hidden_size,
            f"{arch}.feed_forward_length": self.intermediate_size,
            f"{arch}.block_count": self.num_hidden_layers,
            f"{arch}.attention.head_count": self.num_attention_heads,
            f"{arch}.attention.head_count_kv": self.num_key_value_heads,
            f"{arch}.attention.key_length": self.head_dim,
            f"{arch}.rope.freq_base": float(self.rope_theta),
            f"{arch}.attention.layer_norm_rms_epsilon": float(self.rms_norm_eps),
        }
        if self.mrope_section:
            meta[f"{arch}.rope.dimension_sections"] = list(self.mrope_section)
        return meta


@dataclass
class VisionConfig:
    depth: int = 24
    hidden_size: int = 1024
    num_heads: int = 16
    intermediate_size: int = 4096
    in_channels: int = 3
    patch_size: int = 14
    temporal_patch_size: int = 2
    spatial_merge_size: int = 2
    out_hidden_size: int = 2048
    layer_norm_eps: float = 1e-6
    use_postshuffle_norm: bool = False

    # preprocessing
    min_pixels: int = 56 * 56
    max_pixels: int = 1024 * 1024
    image_mean: List[float] = field(default_factory=lambda: list(CLIP_IMAGE_MEAN))
    image_std: List[float] = field(default_factory=lambda: list(CLIP_IMAGE_STD))

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_heads

    @property
    def patch_dim(self) -> int:
        """Length of one flattened (C, T, P, P) patch vector."""
        return self.in_channels * self.temporal_patch_size * self.patch_size ** 2

    @property
    def merge_factor(self) -> int:
        """Pixel side length of one merged vision token."""
        return self.patch_size * self.spatial_merge_size

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisionConfig":
        data = dict(data)
        if "in_chans" in data:
            data.setdefault("in_channels", data.pop("in_chans"))
        return _fill(cls(), data)


@dataclass
class ModelConfig:
    """Everything needed to build a model: text decoder, optional vision tower, dtype."""
    text: TextConfig = field(default_factory=TextConfig)
    vision: Optional[VisionConfig] = None
    image_token_id: Optional[int] = None
    vision_start_token_id: Optional[int] = None
    vision_end_token_id: Optional[int] = None
    torch_dtype: str = "float32"

    def validate(self) -> "ModelConfig":
        self.text.validate()
        if self.vision is not None:
            if self.vision.out_hidden_size != self.text.hidden_size:
                raise ArchitectureMismatchError(
                    f"vision out_hidden_size={self.vision.out_hidden_size} does not match "
                    f"text hidden_size={self.text.hidden_size}"
                )
            if self.vision.hidden_size % self.vision.num_heads:
                raise ArchitectureMismatchError(
                    f"vision hidden_size={self.vision.hidden_size} is not divisible by "
                    f"num_heads={self.vision.num_heads}"
                )
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelConfig":
        text_data = dict(data.get("text_config") or data)
        text_data.setdefault("model_type", data.get("model_type", "llama"))
        if "text_config" in data and data.get("rope_scaling") and "rope_scaling" not in text_data:
            text_data["rope_scaling"] = data["rope_scaling"]
        if "tie_word_embeddings" in data and "tie_word_embeddings" not in text_data:
            text_data["tie_word_embeddings"] = data["tie_word_embeddings"]

        vision = VisionConfig.from_dict(data["vision_config"]) if data.get("vision_config") else None
        return cls(
            text=TextConfig.from_dict(text_data),
            vision=vision,
            image_token_id=data.get("image_token_id"),
            vision_start_token_id=data.get("vision_start_token_id"),
            vision_end_token_id=data.get("vision_end_token_id"),
            torch_dtype=str(data.get("torch_dtype", text_data.get("torch_dtype", "float32"))),
        )

    @staticmethod
    def from_json(path: str) -> "ModelConfig":
        """Load from a checkpoint config.json."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise WeightFileUnreadableError(f"cannot read config: {e}", path) from e
        except ValueError as e:
            raise UnrecognizedFormatError(f"invalid config JSON: {e}", path) from e
        if not isinstance(data, dict):
            raise UnrecognizedFormatError("config must be a JSON object", path)
        return ModelConfig.from_dict(data)
