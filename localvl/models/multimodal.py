"""
localvl :: Multimodal Prefill

Joins vision tokens and text tokens before the first forward call:

  - splice_vision_embeddings: index scatter of vision embeddings into the
    text embedding sequence at image placeholder positions
  - get_rope_index: 3-axis (temporal, height, width) position ids; text
    tokens advance all three axes together, image tokens take their grid
    coordinates starting after the preceding text
"""

import torch
from dataclasses import dataclass
from typing import List, Tuple

from localvl.core.errors import InputError
from localvl.vision.processor import VisionGridTHW


@dataclass
class PrefillInputs:
    """Precomputed prefill inputs for a multimodal request."""
    inputs_embeds: torch.Tensor   # (1, seq, hidden)
    position_ids: torch.Tensor    # (3, 1, seq)
    rope_delta: int               # decode position = offset + rope_delta


def image_token_positions(token_ids: List[int], image_token_id: int) -> List[int]:
    return [i for i, t in enumerate(token_ids) if t == image_token_id]


def splice_vision_embeddings(
    inputs_embeds: torch.Tensor,     # (1, seq, hidden)
    token_ids: List[int],
    image_token_id: int,
    vision_embeds: torch.Tensor,     # (num_tokens, hidden)
) -> torch.Tensor:
    positions = image_token_positions(token_ids, image_token_id)
    if len(positions) != vision_embeds.shape[0]:
        raise InputError(
            f"prompt has {len(positions)} image placeholder tokens but the image "
            f"produced {vision_embeds.shape[0]} vision tokens"
        )
    if vision_embeds.shape[-1] != inputs_embeds.shape[-1]:
        raise InputError(
            f"vision embedding width {vision_embeds.shape[-1]} does not match "
            f"text hidden size {inputs_embeds.shape[-1]}"
        )
    out = inputs_embeds.clone()
    index = torch.tensor(positions, dtype=torch.long, device=out.device)
    out[0, index] = vision_embeds.to(device=out.device, dtype=out.dtype)
    return out


def get_rope_index(
    token_ids: List[int],
    image_token_id: int,
    grid: VisionGridTHW,
) -> Tuple[torch.Tensor, int]:
    """
    Returns:
        position_ids: (3, 1, seq) int64
        rope_delta: max position + 1 - seq
    """
    positions = image_token_positions(token_ids, image_token_id)
    seq = len(token_ids)
    if not positions:
        pos = torch.arange(seq, dtype=torch.long)
        return pos.view(1, 1, -1).expand(3, 1, -1).clone(), 0

    start = positions[0]
    n = grid.num_tokens
    if len(positions) != n or positions[-1] != start + n - 1:
        raise InputError(
            f"expected one contiguous run of {n} image tokens, "
            f"found {len(positions)} starting at {start}"
        )

    t, h, w = grid
    chunks = []

    before = torch.arange(start, dtype=torch.long)
    chunks.append(before.view(1, -1).expand(3, -1))

    t_idx = torch.arange(t).view(-1, 1).expand(-1, h * w).flatten()
    h_idx = torch.arange(h).view(1, -1, 1).expand(t, -1, w).flatten()
    w_idx = torch.arange(w).view(1, 1, -1).expand(t, h, -1).flatten()
    image = torch.stack([t_idx, h_idx, w_idx]) + start
    chunks.append(image)

    next_pos = int(image.max()) + 1
    after = torch.arange(seq - (start + n), dtype=torch.long) + next_pos
    chunks.append(after.view(1, -1).expand(3, -1))

    position_ids = torch.cat(chunks, dim=1).unsqueeze(1)
    rope_delta = int(position_ids.max()) + 1 - seq
    return position_ids, rope_delta
