"""
localvl :: Attention

Plain torch attention kernels:
  - cached_causal_attention: new queries against the whole KV history,
    query i (absolute position offset + i) sees keys 0..offset + i
  - full_attention: unmasked, used by the vision tower
"""

import math
import torch
import torch.nn.functional as F
from typing import Optional


def repeat_kv(x: torch.Tensor, num_kv_groups: int) -> torch.Tensor:
    """(batch, kv_heads, seq, d) -> (batch, kv_heads * groups, seq, d)"""
    if num_kv_groups == 1:
        return x
    return x.repeat_interleave(num_kv_groups, dim=1)


def causal_mask(
    num_queries: int,
    num_keys: int,
    position_offset: int,
    device: torch.device,
) -> torch.Tensor:
    """Additive mask (num_queries, num_keys): 0 where visible, -inf elsewhere."""
    q_pos = torch.arange(num_queries, device=device).unsqueeze(1) + position_offset
    k_pos = torch.arange(num_keys, device=device).unsqueeze(0)
    mask = torch.zeros(num_queries, num_keys, device=device, dtype=torch.float32)
    return mask.masked_fill(k_pos > q_pos, float("-inf"))


def cached_causal_attention(
    q: torch.Tensor,          # (batch, num_heads, n_new, head_dim)
    k_all: torch.Tensor,      # (batch, num_kv_heads, history, head_dim)
    v_all: torch.Tensor,      # (batch, num_kv_heads, history, head_dim)
    num_kv_groups: int,
    position_offset: int,
    softmax_scale: Optional[float] = None,
) -> torch.Tensor:
    """Returns (batch, num_heads, n_new, head_dim) in q's dtype."""
    if softmax_scale is None:
        softmax_scale = 1.0 / math.sqrt(q.shape[-1])

    k_all = repeat_kv(k_all.to(q.dtype), num_kv_groups)
    v_all = repeat_kv(v_all.to(q.dtype), num_kv_groups)

    scores = torch.matmul(q, k_all.transpose(-1, -2)).float() * softmax_scale
    n_new, history = q.shape[-2], k_all.shape[-2]
    if n_new > 1:
        scores = scores + causal_mask(n_new, history, position_offset, q.device)

    probs = F.softmax(scores, dim=-1).to(q.dtype)
    return torch.matmul(probs, v_all)


def full_attention(
    q: torch.Tensor,          # (num_heads, seq, head_dim)
    k: torch.Tensor,
    v: torch.Tensor,
    softmax_scale: Optional[float] = None,
) -> torch.Tensor:
    """Unmasked attention. Returns (num_heads, seq, head_dim)."""
    if softmax_scale is None:
        softmax_scale = 1.0 / math.sqrt(q.shape[-1])
    scores = torch.matmul(q, k.transpose(-1, -2)).float() * softmax_scale
    probs = F.softmax(scores, dim=-1).to(q.dtype)
    return torch.matmul(probs, v)
