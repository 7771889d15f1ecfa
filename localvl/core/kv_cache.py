"""
localvl :: KV Cache

Append-only per-layer key/value arena for one generation request.

Memory layout per layer:
    k: (batch, num_kv_heads, capacity, head_dim)
    v: (batch, num_kv_heads, capacity, head_dim)

Positions [0, length) are valid. Appends must land exactly at `length`;
capacity doubles when full. reset() forgets everything (no reuse across
requests).
"""

import torch
from typing import List, Optional, Tuple

from localvl.core.errors import EngineRuntimeError


class KVCache:
    """
    Per-layer append-only KV storage.

    Buffers are allocated lazily on the first append so batch size, dtype
    and device follow the first keys written.
    """

    def __init__(self, num_layers: int, initial_capacity: int = 256):
        self.num_layers = num_layers
        self.initial_capacity = max(1, initial_capacity)
        self._k: List[Optional[torch.Tensor]] = [None] * num_layers
        self._v: List[Optional[torch.Tensor]] = [None] * num_layers
        self._lengths = [0] * num_layers

    def reset(self):
        self._k = [None] * self.num_layers
        self._v = [None] * self.num_layers
        self._lengths = [0] * self.num_layers

    @property
    def length(self) -> int:
        """Logical length, i.e. the next position_offset."""
        return self._lengths[-1] if self.num_layers else 0

    def capacity(self, layer_idx: int) -> int:
        k = self._k[layer_idx]
        return 0 if k is None else k.shape[2]

    def append(
        self,
        layer_idx: int,
        k: torch.Tensor,
        v: torch.Tensor,
        position_offset: int,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Write new keys/values at `position_offset` and return the full history.

        k, v: (batch, num_kv_heads, n_new, head_dim)
        Returns views (batch, num_kv_heads, offset + n_new, head_dim).
        """
        length = self._lengths[layer_idx]
        if position_offset != length:
            raise EngineRuntimeError(
                f"KV cache layer {layer_idx} holds {length} positions, "
                f"got append at position_offset={position_offset}"
            )

        n_new = k.shape[2]
        end = length + n_new
        self._ensure_capacity(layer_idx, k, end)

        self._k[layer_idx][:, :, length:end] = k
        self._v[layer_idx][:, :, length:end] = v
        self._lengths[layer_idx] = end
        return self._k[layer_idx][:, :, :end], self._v[layer_idx][:, :, :end]

    def _ensure_capacity(self, layer_idx: int, like: torch.Tensor, needed: int):
        current = self._k[layer_idx]
        capacity = 0 if current is None else current.shape[2]
        if needed <= capacity:
            return

        new_capacity = max(self.initial_capacity, capacity)
        while new_capacity < needed:
            new_capacity *= 2

        batch, heads, _, head_dim = like.shape
        shape = (batch, heads, new_capacity, head_dim)
        new_k = torch.zeros(shape, dtype=like.dtype, device=like.device)
        new_v = torch.zeros(shape, dtype=like.dtype, device=like.device)
        if current is not None:
            length = self._lengths[layer_idx]
            new_k[:, :, :length] = current[:, :, :length]
            new_v[:, :, :length] = self._v[layer_idx][:, :, :length]
        self._k[layer_idx] = new_k
        self._v[layer_idx] = new_v
