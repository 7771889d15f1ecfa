"""
localvl :: Sampling

Converts one logits vector into one token id.

Order of operations:
  1. temperature scaling (when temperature > 0 and != 1)
  2. softmax
  3. top-k: stable descending sort, keep k
  4. top-p: smallest prefix whose cumulative mass reaches top_p
  5. renormalize
  6. greedy argmax (temperature == 0) or inverse-CDF draw,
     falling back to the last candidate if the draw is never reached

Ties resolve to the lowest token id.
"""

import torch
from typing import Optional
from dataclasses import dataclass

from localvl.core.errors import InputError


@dataclass(frozen=True)
class GenerationConfig:
    """Sampling and length policy for one engine. Read-only during decoding."""
    temperature: float = 0.8
    top_p: float = 0.9
    top_k: int = 40
    max_seq_len: int = 2048
    seed: Optional[int] = None

    def __post_init__(self):
        if self.temperature < 0:
            raise InputError(f"temperature must be >= 0, got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise InputError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise InputError(f"top_k must be >= 0, got {self.top_k}")
        if self.max_seq_len <= 0:
            raise InputError(f"max_seq_len must be > 0, got {self.max_seq_len}")

    @property
    def greedy(self) -> bool:
        return self.temperature == 0.0


@dataclass
class CandidateSet:
    """
    Surviving candidates, best first.

    token_ids: (n,) int64
    probs:     (n,) float32, renormalized
    mass:      probability mass of the candidates before renormalization
    """
    token_ids: torch.Tensor
    probs: torch.Tensor
    mass: float

    def __len__(self) -> int:
        return self.token_ids.shape[0]


def build_candidates(logits: torch.Tensor, config: GenerationConfig) -> CandidateSet:
    """Filter the vocabulary down to a renormalized candidate list, best first."""
    logits = logits.float().reshape(-1)
    vocab_size = logits.shape[0]

    if config.temperature > 0 and config.temperature != 1.0:
        logits = logits / config.temperature

    probs = torch.softmax(logits, dim=-1)
    sorted_probs, sorted_ids = torch.sort(probs, descending=True, stable=True)

    if 0 < config.top_k < vocab_size:
        sorted_probs = sorted_probs[:config.top_k]
        sorted_ids = sorted_ids[:config.top_k]

    if 0 < config.top_p < 1.0:
        cumulative = sorted_probs.cumsum(dim=-1)
        reached = (cumulative >= config.top_p).nonzero()
        if reached.numel() > 0:
            cutoff = int(reached[0, 0]) + 1
            sorted_probs = sorted_probs[:cutoff]
            sorted_ids = sorted_ids[:cutoff]

    mass = float(sorted_probs.sum())
    if mass > 0:
        sorted_probs = sorted_probs / mass

    return CandidateSet(token_ids=sorted_ids, probs=sorted_probs, mass=mass)


def sample_token(
    logits: torch.Tensor,
    config: GenerationConfig,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Sample a single token from logits.

    Args:
        logits: (vocab_size,) tensor, any float dtype
        config: sampling policy
        generator: optional seeded generator for reproducible draws

    Returns:
        token_id
    """
    if config.greedy:
        # Filtering never removes the argmax, so it is the answer regardless of top_k/top_p.
        return int(logits.reshape(-1).float().argmax())

    candidates = build_candidates(logits, config)
    if len(candidates) == 0:
        return int(logits.reshape(-1).float().argmax())

    draw = float(torch.rand(1, generator=generator))
    cumulative = candidates.probs.cumsum(dim=-1)
    hits = (cumulative >= draw).nonzero()
    if hits.numel() == 0:
        return int(candidates.token_ids[-1])
    return int(candidates.token_ids[int(hits[0, 0])])


def make_generator(seed: Optional[int]) -> Optional[torch.Generator]:
    if seed is None:
        return None
    generator = torch.Generator()
    generator.manual_seed(seed)
    return generator
