"""
localvl :: Vision Tower

Flattened image patches -> embeddings in the language model's hidden size.

    patches (N, C*T*P*P)
      -> VisionPatchEmbed            linear, equal to a stride=kernel conv3d
      -> depth x VisionBlock         x += attn(norm1 x); x += mlp(norm2 x)
      -> VisionPatchMerger           merge^2 neighbours -> one token
    tokens (N / merge^2, out_hidden_size)

Weight names follow Qwen-VL checkpoints: patch_embed.proj, blocks.N.{norm1,
attn.qkv, attn.proj, norm2, mlp.linear_fc1, mlp.linear_fc2}, merger.{norm,
linear_fc1, linear_fc2}.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Callable, Optional

from localvl.core.errors import ArchitectureMismatchError, ImageError
from localvl.core.loader import assign_weights
from localvl.core.logging import get_logger
from localvl.layers.attention import full_attention
from localvl.models.config import VisionConfig
from localvl.vision.processor import VisionGridTHW

logger = get_logger("localvl.vision")


class VisionPatchEmbed(nn.Module):
    def __init__(self, config: VisionConfig):
        super().__init__()
        self.config = config
        self.proj = nn.Linear(config.patch_dim, config.hidden_size, bias=True)

    @property
    def conv_shape(self):
        c = self.config
        return (c.hidden_size, c.in_channels, c.temporal_patch_size, c.patch_size, c.patch_size)

    def flatten_conv_weight(self, weight: torch.Tensor) -> torch.Tensor:
        """Accept a conv3d kernel (out, C, T, P, P) or an already flat (out, C*T*P*P)."""
        if weight.dim() == 5:
            if tuple(weight.shape) != self.conv_shape:
                c = self.config
                raise ArchitectureMismatchError(
                    f"patch_embed.proj.weight has shape {tuple(weight.shape)}, expected "
                    f"{self.conv_shape} (hidden_size={c.hidden_size}, in_channels={c.in_channels}, "
                    f"temporal_patch_size={c.temporal_patch_size}, patch_size={c.patch_size})"
                )
            return weight.reshape(weight.shape[0], -1)
        return weight

    def forward(self, patches: torch.Tensor) -> torch.Tensor:
        return self.proj(patches.to(self.proj.weight.dtype))


class VisionAttention(nn.Module):
    """Full self-attention over the patch sequence, fused qkv projection."""

    def __init__(self, config: VisionConfig):
        super().__init__()
        self.num_heads = config.num_heads
        self.head_dim = config.head_dim
        self.qkv = nn.Linear(config.hidden_size, config.hidden_size * 3, bias=True)
        self.proj = nn.Linear(config.hidden_size, config.hidden_size, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        seq, hidden = x.shape
        qkv = self.qkv(x).reshape(seq, 3, self.num_heads, self.head_dim).permute(1, 2, 0, 3)
        q, k, v = qkv[0], qkv[1], qkv[2]           # (heads, seq, head_dim)
        out = full_attention(q, k, v)
        return self.proj(out.transpose(0, 1).reshape(seq, hidden))


class VisionMLP(nn.Module):
    def __init__(self, config: VisionConfig):
        super().__init__()
        self.linear_fc1 = nn.Linear(config.hidden_size, config.intermediate_size, bias=True)
        self.linear_fc2 = nn.Linear(config.intermediate_size, config.hidden_size, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.linear_fc2(F.gelu(self.linear_fc1(x), approximate="tanh"))


class VisionBlock(nn.Module):
    def __init__(self, config: VisionConfig):
        super().__init__()
        self.norm1 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.attn = VisionAttention(config)
        self.norm2 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.mlp = VisionMLP(config)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = x + self.attn(self.norm1(x))
        x = x + self.mlp(self.norm2(x))
        return x


class VisionPatchMerger(nn.Module):
    """
    Group merge^2 consecutive patches into one token and project.

    use_postshuffle_norm=False: norm each patch, then group
    use_postshuffle_norm=True:  group, then norm the concatenation
    """

    def __init__(self, config: VisionConfig):
        super().__init__()
        self.merged_size = config.hidden_size * config.spatial_merge_size ** 2
        self.use_postshuffle_norm = config.use_postshuffle_norm
        norm_size = self.merged_size if self.use_postshuffle_norm else config.hidden_size
        self.norm = nn.LayerNorm(norm_size, eps=config.layer_norm_eps)
        self.linear_fc1 = nn.Linear(self.merged_size, self.merged_size, bias=True)
        self.linear_fc2 = nn.Linear(self.merged_size, config.out_hidden_size, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.use_postshuffle_norm:
            x = self.norm(x.reshape(-1, self.merged_size))
        else:
            x = self.norm(x).reshape(-1, self.merged_size)
        return self.linear_fc2(F.gelu(self.linear_fc1(x)))


class VisionTower(nn.Module):

    def __init__(self, config: VisionConfig):
        super().__init__()
        self.config = config
        self.patch_embed = VisionPatchEmbed(config)
        self.blocks = nn.ModuleList([VisionBlock(config) for _ in range(config.depth)])
        self.merger = VisionPatchMerger(config)

    def forward(self, pixel_values: torch.Tensor, grid: Optional[VisionGridTHW] = None) -> torch.Tensor:
        """
        pixel_values: (num_patches, patch_dim)
        Returns: (num_patches / merge^2, out_hidden_size)

        Patches that disagree with the configured patch width or the grid
        raise ImageError; weight shape problems surface in load_weights.
        """
        c = self.config
        if pixel_values.dim() != 2 or pixel_values.shape[1] != c.patch_dim:
            raise ImageError(
                f"pixel_values has shape {tuple(pixel_values.shape)}, expected (N, {c.patch_dim})"
            )
        group = c.spatial_merge_size ** 2
        if grid is not None and pixel_values.shape[0] != grid.num_patches(c.spatial_merge_size):
            raise ImageError(
                f"{pixel_values.shape[0]} patches do not match grid {tuple(grid)} "
                f"with spatial_merge_size={c.spatial_merge_size}"
            )
        if pixel_values.shape[0] % group:
            raise ImageError(
                f"{pixel_values.shape[0]} patches is not a multiple of merge^2={group}"
            )

        x = self.patch_embed(pixel_values)
        for block in self.blocks:
            x = block(x)
        return self.merger(x)

    def load_weights(self, lookup: Callable[[str], Optional[torch.Tensor]], dtype=torch.float32) -> dict:
        """Shape-checked load; any disagreement with the config fails here, not at forward time."""
        c = self.config

        def resolve(name: str) -> Optional[torch.Tensor]:
            value = lookup(name)
            if value is not None and name == "patch_embed.proj.weight":
                value = self.patch_embed.flatten_conv_weight(value)
            return value

        hint = (
            f"vision hidden_size={c.hidden_size}, num_heads={c.num_heads}, "
            f"patch_size={c.patch_size}, spatial_merge_size={c.spatial_merge_size}, "
            f"out_hidden_size={c.out_hidden_size}"
        )
        stats = assign_weights(self, resolve, dtype=dtype, hint=hint)
        logger.info(f"Vision tower loaded: depth={c.depth}, {stats['loaded']} tensors")
        return stats
