"""
localvl :: Rotary Positional Embedding

Integer position ids -> cos/sin tables, for plain text and for the
three-axis (temporal, height, width) multimodal variant.

Multi-axis layout, sections = (s_t, s_h, s_w) with sum = dim / 2:

    freqs[..., 0:s_t]              from temporal positions
    freqs[..., s_t:s_t+s_h]        from height positions
    freqs[..., s_t+s_h:dim/2]      from width positions

then emb = concat(freqs, freqs), matching rotate_half().
"""

import torch
from typing import Optional, Sequence, Tuple


class RotaryTable:
    """
    Inverse-frequency table: inv_freq[i] = 1 / theta^(2i / dim).

    Pure function of (dim, theta); holds no per-call state.
    """

    def __init__(self, dim: int, theta: float = 10000.0):
        if dim <= 0 or dim % 2:
            raise ValueError(f"rotary dim must be a positive even number, got {dim}")
        self.dim = dim
        self.theta = theta
        # explicit device keeps the table real even under a meta-device context
        self.inv_freq = 1.0 / (
            theta ** (torch.arange(0, dim, 2, dtype=torch.float32, device="cpu") / dim)
        )

    def frequencies(self, position_ids: torch.Tensor) -> torch.Tensor:
        """positions (...,) -> freqs (..., dim/2), float32."""
        inv_freq = self.inv_freq.to(position_ids.device)
        return position_ids.to(torch.float32).unsqueeze(-1) * inv_freq

    def forward(
        self,
        position_ids: torch.Tensor,
        dtype: torch.dtype = torch.float32,
        sections: Optional[Sequence[int]] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            position_ids: (batch, seq) for text, (3, batch, seq) for mRoPE
            dtype: output dtype of cos/sin
            sections: (temporal, height, width) split of dim/2, or None

        Returns:
            cos, sin: (batch, seq, dim)
        """
        if sections is None:
            if position_ids.dim() == 3:
                position_ids = position_ids[0]
            freqs = self.frequencies(position_ids)
        else:
            freqs = self._sectioned_frequencies(position_ids, sections)

        emb = torch.cat([freqs, freqs], dim=-1)
        return emb.cos().to(dtype), emb.sin().to(dtype)

    __call__ = forward

    def _sectioned_frequencies(
        self, position_ids: torch.Tensor, sections: Sequence[int]
    ) -> torch.Tensor:
        if len(sections) != 3:
            raise ValueError(f"mrope sections must have 3 entries, got {list(sections)}")
        if sum(sections) != self.dim // 2:
            raise ValueError(
                f"mrope sections {list(sections)} must sum to dim/2={self.dim // 2}"
            )
        if position_ids.dim() == 2:
            # text-only input: all three axes carry the same position
            position_ids = position_ids.unsqueeze(0).expand(3, -1, -1)

        axis_freqs = self.frequencies(position_ids)  # (3, batch, seq, dim/2)
        chunks = []
        start = 0
        for axis, size in enumerate(sections):
            chunks.append(axis_freqs[axis, ..., start:start + size])
            start += size
        return torch.cat(chunks, dim=-1)


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    """(x1, x2) -> (-x2, x1) over the last dimension."""
    d = x.shape[-1] // 2
    x1, x2 = x[..., :d], x[..., d:]
    return torch.cat([-x2, x1], dim=-1)


def apply_rotary(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """
    x * cos + rotate_half(x) * sin.

    x:        (batch, heads, seq, head_dim) or (seq, heads, head_dim)
    cos, sin: broadcastable after unsqueeze, see apply_rotary_pos_emb()

    Computed in the wider of x's and cos's dtypes, returned in x's dtype.
    """
    compute_dtype = torch.promote_types(x.dtype, cos.dtype)
    xc = x.to(compute_dtype)
    cos = cos.to(compute_dtype)
    sin = sin.to(compute_dtype)
    return (xc * cos + rotate_half(xc) * sin).to(x.dtype)


def apply_rotary_pos_emb(
    q: torch.Tensor,
    k: torch.Tensor,
    cos: torch.Tensor,
    sin: torch.Tensor,
    unsqueeze_dim: int = 1,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Rotate q and k.

    q, k:     (batch, heads, seq, head_dim)
    cos, sin: (batch, seq, head_dim); unsqueezed at `unsqueeze_dim` for heads
    """
    cos = cos.unsqueeze(unsqueeze_dim)
    sin = sin.unsqueeze(unsqueeze_dim)
    return apply_rotary(q, cos, sin), apply_rotary(k, cos, sin)
