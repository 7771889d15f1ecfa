"""
localvl :: Tensor Naming

GGUF tensor names <-> decoder parameter names, and the row permutation
llama-architecture GGUF files apply to q/k projections.
"""

import re
import torch
from typing import Optional

_TOP_LEVEL = {
    "token_embd": "embed_tokens",
    "output_norm": "norm",
    "output": "lm_head",
}

_BLOCK = {
    "attn_norm": "input_layernorm",
    "attn_q": "self_attn.q_proj",
    "attn_k": "self_attn.k_proj",
    "attn_v": "self_attn.v_proj",
    "attn_output": "self_attn.o_proj",
    "attn_q_norm": "self_attn.q_norm",
    "attn_k_norm": "self_attn.k_norm",
    "ffn_norm": "post_attention_layernorm",
    "ffn_gate": "mlp.gate_proj",
    "ffn_up": "mlp.up_proj",
    "ffn_down": "mlp.down_proj",
}
_BLOCK_REVERSE = {v: k for k, v in _BLOCK.items()}
_TOP_REVERSE = {v: k for k, v in _TOP_LEVEL.items()}

_GGUF_BLOCK_RE = re.compile(r"^blk\.(\d+)\.(\w+)\.(weight|bias)$")
_HF_LAYER_RE = re.compile(r"^layers\.(\d+)\.(.+)\.(weight|bias)$")


def gguf_to_decoder_name(name: str) -> Optional[str]:
    """'blk.3.attn_q.weight' -> 'layers.3.self_attn.q_proj.weight'"""
    m = _GGUF_BLOCK_RE.match(name)
    if m:
        layer, part, kind = m.groups()
        mapped = _BLOCK.get(part)
        return f"layers.{layer}.{mapped}.{kind}" if mapped else None
    base, _, kind = name.rpartition(".")
    mapped = _TOP_LEVEL.get(base)
    return f"{mapped}.{kind}" if mapped else None


def decoder_to_gguf_name(name: str) -> Optional[str]:
    """'layers.3.self_attn.q_proj.weight' -> 'blk.3.attn_q.weight'"""
    m = _HF_LAYER_RE.match(name)
    if m:
        layer, part, kind = m.groups()
        mapped = _BLOCK_REVERSE.get(part)
        return f"blk.{layer}.{mapped}.{kind}" if mapped else None
    base, _, kind = name.rpartition(".")
    mapped = _TOP_REVERSE.get(base)
    return f"{mapped}.{kind}" if mapped else None


def permute_qk(weight: torch.Tensor, n_head: int) -> torch.Tensor:
    """Half-split rotary rows -> interleaved rows, as llama GGUF files store q/k."""
    rows = weight.shape[0]
    return (
        weight.reshape(n_head, 2, rows // n_head // 2, *weight.shape[1:])
        .swapaxes(1, 2)
        .reshape(weight.shape)
    )


def unpermute_qk(rows: torch.Tensor, n_head: int) -> torch.Tensor:
    """
    Inverse of permute_qk on a (rows, row_bytes) view.

    Works on packed data too: each row is a whole number of blocks.
    """
    n = rows.shape[0]
    return (
        rows.reshape(n_head, n // n_head // 2, 2, *rows.shape[1:])
        .swapaxes(1, 2)
        .reshape(rows.shape)
    )
