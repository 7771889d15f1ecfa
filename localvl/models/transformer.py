"""
localvl :: Text Decoder

Llama / Qwen2 / Qwen3 style decoder-only transformer:
  embed -> N x (RMSNorm -> GQA attention + RoPE -> residual
                -> RMSNorm -> SwiGLU MLP -> residual) -> RMSNorm -> lm_head

Linear layers come from a factory so the same graph serves dense weights
(nn.Linear) and packed weights (QuantizedLinear).
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Callable, Optional

from localvl.core.kv_cache import KVCache
from localvl.layers.attention import cached_causal_attention
from localvl.layers.norm import RMSNorm
from localvl.layers.rotary import RotaryTable, apply_rotary_pos_emb
from localvl.models.config import TextConfig

LinearFactory = Callable[..., nn.Module]


# =========================================================================
# Attention
# =========================================================================

class Attention(nn.Module):
    """Grouped-query attention with optional per-head q/k RMSNorm."""

    def __init__(self, config: TextConfig, layer_idx: int, linear: LinearFactory = nn.Linear):
        super().__init__()
        self.layer_idx = layer_idx
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.num_kv_groups = self.num_heads // self.num_kv_heads
        self.head_dim = config.head_dim

        hidden = config.hidden_size
        bias = config.attention_bias
        self.q_proj = linear(hidden, self.num_heads * self.head_dim, bias=bias)
        self.k_proj = linear(hidden, self.num_kv_heads * self.head_dim, bias=bias)
        self.v_proj = linear(hidden, self.num_kv_heads * self.head_dim, bias=bias)
        self.o_proj = linear(self.num_heads * self.head_dim, hidden, bias=False)

        if config.use_qk_norm:
            self.q_norm = RMSNorm(self.head_dim, eps=config.rms_norm_eps)
            self.k_norm = RMSNorm(self.head_dim, eps=config.rms_norm_eps)
        else:
            self.q_norm = None
            self.k_norm = None

    def forward(
        self,
        x: torch.Tensor,                # (batch, seq, hidden)
        cos: torch.Tensor,              # (batch, seq, head_dim)
        sin: torch.Tensor,
        kv_cache: Optional[KVCache] = None,
        position_offset: int = 0,
    ) -> torch.Tensor:
        batch, seq, _ = x.shape

        q = self.q_proj(x).view(batch, seq, self.num_heads, self.head_dim).transpose(1, 2)
        k = self.k_proj(x).view(batch, seq, self.num_kv_heads, self.head_dim).transpose(1, 2)
        v = self.v_proj(x).view(batch, seq, self.num_kv_heads, self.head_dim).transpose(1, 2)

        if self.q_norm is not None:
            q = self.q_norm(q)
            k = self.k_norm(k)

        q, k = apply_rotary_pos_emb(q, k, cos, sin)

        if kv_cache is not None:
            k, v = kv_cache.append(self.layer_idx, k, v, position_offset)

        out = cached_causal_attention(
            q, k, v, self.num_kv_groups, position_offset=k.shape[2] - seq,
        )
        out = out.transpose(1, 2).reshape(batch, seq, self.num_heads * self.head_dim)
        return self.o_proj(out)


# =========================================================================
# MLP
# =========================================================================

class MLP(nn.Module):
    """SwiGLU: down(silu(gate(x)) * up(x))."""

    def __init__(self, config: TextConfig, linear: LinearFactory = nn.Linear):
        super().__init__()
        self.gate_proj = linear(config.hidden_size, config.intermediate_size, bias=False)
        self.up_proj = linear(config.hidden_size, config.intermediate_size, bias=False)
        self.down_proj = linear(config.intermediate_size, config.hidden_size, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))


# =========================================================================
# Decoder
# =========================================================================

class DecoderLayer(nn.Module):

    def __init__(self, config: TextConfig, layer_idx: int, linear: LinearFactory = nn.Linear):
        super().__init__()
        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.self_attn = Attention(config, layer_idx, linear)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.mlp = MLP(config, linear)

    def forward(self, x, cos, sin, kv_cache=None, position_offset=0):
        x = x + self.self_attn(self.input_layernorm(x), cos, sin, kv_cache, position_offset)
        x = x + self.mlp(self.post_attention_layernorm(x))
        return x


class TextDecoder(nn.Module):
    """
    Token ids (or precomputed embeddings) -> logits.

    Parameter names follow HuggingFace checkpoints (embed_tokens, layers.N.*,
    norm, lm_head) so dense weights map one to one.
    """

    def __init__(self, config: TextConfig, linear: LinearFactory = nn.Linear):
        super().__init__()
        self.config = config
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList([
            DecoderLayer(config, i, linear) for i in range(config.num_hidden_layers)
        ])
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.lm_head = linear(config.hidden_size, config.vocab_size, bias=False)
        self.rotary = RotaryTable(config.head_dim, config.rope_theta)

    def embed(self, token_ids: torch.Tensor) -> torch.Tensor:
        return self.embed_tokens(token_ids)

    def forward(
        self,
        token_ids: Optional[torch.Tensor],   # (batch, seq)
        position_ids: torch.Tensor,          # (batch, seq) or (3, batch, seq)
        kv_cache: Optional[KVCache] = None,
        position_offset: int = 0,
        inputs_embeds: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Returns logits (batch, seq, vocab) in float32."""
        hidden = inputs_embeds if inputs_embeds is not None else self.embed(token_ids)
        cos, sin = self.rotary(position_ids, hidden.dtype, self.config.mrope_section)

        for layer in self.layers:
            hidden = layer(hidden, cos, sin, kv_cache, position_offset)

        hidden = self.norm(hidden)
        return self.lm_head(hidden).float()
