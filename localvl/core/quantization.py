"""
localvl :: Quantization

GGML block formats used by packed weight files.

  F32   plain float32
  F16   plain float16
  Q8_0  blocks of 32: fp16 scale d + 32 x int8 q          -> x = q * d
  Q4_0  blocks of 32: fp16 scale d + 16 bytes of nibbles  -> x = (q - 8) * d
        low nibbles hold elements 0..15, high nibbles 16..31

Blocks run along the last (input) dimension, so each output row is an
independent run of whole blocks.
"""

import torch
from enum import IntEnum
from typing import Tuple
from dataclasses import dataclass


QK = 32  # elements per block


class GGMLType(IntEnum):
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q8_0 = 8

    @classmethod
    def parse(cls, name: str) -> "GGMLType":
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(
                f"Unknown tensor type '{name}', expected one of {[t.name.lower() for t in cls]}"
            ) from None


# bytes per block (quantized) or per element (float)
_TYPE_SIZE = {
    GGMLType.F32: (1, 4),
    GGMLType.F16: (1, 2),
    GGMLType.Q4_0: (QK, 2 + QK // 2),
    GGMLType.Q8_0: (QK, 2 + QK),
}


def is_supported(ggml_type: int) -> bool:
    return ggml_type in _TYPE_SIZE


def tensor_nbytes(ggml_type: int, numel: int) -> int:
    """Byte size of a tensor with `numel` elements stored as `ggml_type`."""
    block, size = _TYPE_SIZE[GGMLType(ggml_type)]
    if numel % block:
        raise ValueError(f"{GGMLType(ggml_type).name} needs a multiple of {block} elements, got {numel}")
    return numel // block * size


@dataclass
class QuantizedTensor:
    """Packed tensor as stored on disk: raw bytes + logical shape."""
    data: torch.Tensor          # (nbytes,) uint8
    ggml_type: GGMLType
    shape: Tuple[int, ...]      # torch order, outermost first

    @property
    def numel(self) -> int:
        n = 1
        for d in self.shape:
            n *= d
        return n

    def dequantize(self, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        return dequantize(self.data, self.ggml_type, self.shape, dtype)

    def rows(self) -> torch.Tensor:
        """Raw bytes viewed as (shape[0], bytes_per_row)."""
        return self.data.view(self.shape[0], -1)


# =========================================================================
# Quantize
# =========================================================================

def _blocks(weight: torch.Tensor) -> torch.Tensor:
    flat = weight.detach().float().reshape(-1)
    if flat.numel() % QK:
        raise ValueError(f"block quantization needs a multiple of {QK} elements, got {flat.numel()}")
    return flat.reshape(-1, QK)


def _scale_bytes(d: torch.Tensor) -> torch.Tensor:
    return d.to(torch.float16).reshape(-1, 1).contiguous().view(torch.uint8)


def quantize_q8_0(weight: torch.Tensor) -> torch.Tensor:
    """float -> Q8_0 bytes."""
    x = _blocks(weight)
    amax = x.abs().amax(dim=-1, keepdim=True)
    d = amax / 127.0
    inv = torch.where(d > 0, 1.0 / d, torch.zeros_like(d))
    q = (x * inv).round().clamp(-127, 127).to(torch.int8)
    return torch.cat([_scale_bytes(d), q.view(torch.uint8)], dim=-1).reshape(-1)


def quantize_q4_0(weight: torch.Tensor) -> torch.Tensor:
    """float -> Q4_0 bytes. Scale is the signed max-magnitude value / -8."""
    x = _blocks(weight)
    idx = x.abs().argmax(dim=-1, keepdim=True)
    signed_max = x.gather(-1, idx)
    d = signed_max / -8.0
    inv = torch.where(d != 0, 1.0 / d, torch.zeros_like(d))
    q = torch.floor(x * inv + 8.5).clamp(0, 15).to(torch.uint8)
    half = QK // 2
    packed = q[:, :half] | (q[:, half:] << 4)
    return torch.cat([_scale_bytes(d), packed], dim=-1).reshape(-1)


def quantize(weight: torch.Tensor, ggml_type: GGMLType) -> torch.Tensor:
    """Encode a float tensor in the given format. Returns flat uint8 bytes."""
    ggml_type = GGMLType(ggml_type)
    if ggml_type == GGMLType.F32:
        return weight.detach().to(torch.float32).contiguous().reshape(-1).view(torch.uint8)
    if ggml_type == GGMLType.F16:
        return weight.detach().to(torch.float16).contiguous().reshape(-1).view(torch.uint8)
    if ggml_type == GGMLType.Q8_0:
        return quantize_q8_0(weight)
    return quantize_q4_0(weight)


# =========================================================================
# Dequantize
# =========================================================================

def _read_scales(blocks: torch.Tensor) -> torch.Tensor:
    return blocks[:, :2].contiguous().view(torch.float16).float()


def dequantize_q8_0(raw: torch.Tensor) -> torch.Tensor:
    blocks = raw.reshape(-1, 2 + QK)
    d = _read_scales(blocks)
    q = blocks[:, 2:].contiguous().view(torch.int8).float()
    return (q * d).reshape(-1)


def dequantize_q4_0(raw: torch.Tensor) -> torch.Tensor:
    blocks = raw.reshape(-1, 2 + QK // 2)
    d = _read_scales(blocks)
    qs = blocks[:, 2:]
    low = (qs & 0x0F).to(torch.int16) - 8
    high = (qs >> 4).to(torch.int16) - 8
    return (torch.cat([low, high], dim=-1).float() * d).reshape(-1)


def dequantize(
    raw: torch.Tensor,
    ggml_type: GGMLType,
    shape: Tuple[int, ...],
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Packed bytes -> float tensor of `shape`."""
    ggml_type = GGMLType(ggml_type)
    raw = raw.reshape(-1)
    if ggml_type == GGMLType.F32:
        out = raw.contiguous().view(torch.float32)
    elif ggml_type == GGMLType.F16:
        out = raw.contiguous().view(torch.float16)
    elif ggml_type == GGMLType.Q8_0:
        out = dequantize_q8_0(raw)
    else:
        out = dequantize_q4_0(raw)
    return out.reshape(shape).to(dtype)
