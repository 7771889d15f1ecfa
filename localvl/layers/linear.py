"""
localvl :: Quantized Linear

Drop-in replacement for nn.Linear that keeps its weight packed in a GGML
block format and dequantizes it inside forward().
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Optional

from localvl.core.errors import ArchitectureMismatchError
from localvl.core.quantization import GGMLType, QuantizedTensor, dequantize


class QuantizedLinear(nn.Module):
    """
    y = x @ dequant(W).T + b

    qweight: (nbytes,) uint8 buffer, logical shape (out_features, in_features)
    """

    def __init__(self, in_features: int, out_features: int, bias: bool = False):
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.ggml_type = GGMLType.F32
        self.register_buffer("qweight", torch.empty(0, dtype=torch.uint8), persistent=False)
        self.bias = nn.Parameter(torch.zeros(out_features)) if bias else None

    def load_quantized(self, qt: QuantizedTensor, name: str = "weight"):
        expected = (self.out_features, self.in_features)
        if tuple(qt.shape) != expected:
            raise ArchitectureMismatchError(
                f"tensor '{name}' has shape {tuple(qt.shape)}, expected {expected}"
            )
        self.qweight = qt.data.reshape(-1)
        self.ggml_type = GGMLType(qt.ggml_type)

    @property
    def loaded(self) -> bool:
        return self.qweight.numel() > 0 and self.qweight.device.type != "meta"

    def dequantized_weight(self, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        return dequantize(self.qweight, self.ggml_type, (self.out_features, self.in_features), dtype)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        weight = self.dequantized_weight(x.dtype)
        return F.linear(x, weight, self.bias)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"type={self.ggml_type.name}, bias={self.bias is not None}"
        )
