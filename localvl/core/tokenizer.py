"""
localvl :: Tokenizer

Text <-> token ids through a HuggingFace fast tokenizer (tokenizer.json).

decode(encode(text)) == text holds for byte-level tokenizers; word-level
tokenizers normalize whitespace to single spaces.
"""

import os
from typing import Iterable, List, Optional, Protocol

from localvl.core.errors import TokenizerError, UnrecognizedFormatError, WeightFileUnreadableError
from localvl.core.logging import get_logger

logger = get_logger("localvl.tokenizer")

# End-of-sequence strings, tried in priority order.
EOS_TOKEN_CANDIDATES = ("<|endoftext|>", "</s>", "<|im_end|>")


class TokenizerBridge(Protocol):
    def encode(self, text: str) -> List[int]: ...

    def decode(self, token_ids: List[int]) -> str: ...

    def token_to_id(self, token: str) -> Optional[int]: ...

    @property
    def vocab_size(self) -> int: ...


class Tokenizer:
    """
    Wrapper around tokenizers.Tokenizer.

    Input:  text (str)
    Output: token ids (List[int])
    """

    def __init__(self, tokenizer, add_special_tokens: bool = True):
        self.tokenizer = tokenizer
        self.add_special_tokens = add_special_tokens

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "Tokenizer":
        from tokenizers import Tokenizer as HFTokenizer

        if not os.path.isfile(path):
            raise WeightFileUnreadableError("tokenizer file not found", path)
        try:
            tok = HFTokenizer.from_file(path)
        except Exception as e:
            raise UnrecognizedFormatError(f"could not parse tokenizer file: {e}", path) from e
        logger.info(f"Loaded tokenizer {path} (vocab={tok.get_vocab_size(with_added_tokens=True)})")
        return cls(tok, **kwargs)

    def encode(self, text: str) -> List[int]:
        if not isinstance(text, str):
            raise TokenizerError(f"expected str, got {type(text).__name__}")
        try:
            return self.tokenizer.encode(text, add_special_tokens=self.add_special_tokens).ids
        except Exception as e:
            raise TokenizerError(f"encode failed: {e}") from e

    def decode(self, token_ids: Iterable[int], skip_special_tokens: bool = True) -> str:
        ids = list(token_ids)
        vocab_size = self.vocab_size
        bad = [t for t in ids if t < 0 or t >= vocab_size]
        if bad:
            raise TokenizerError(f"token ids out of vocabulary range: {bad[:8]}")
        try:
            return self.tokenizer.decode(ids, skip_special_tokens=skip_special_tokens)
        except Exception as e:
            raise TokenizerError(f"decode failed: {e}") from e

    def token_to_id(self, token: str) -> Optional[int]:
        return self.tokenizer.token_to_id(token)

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size(with_added_tokens=True)


def resolve_eos_token_id(
    tokenizer: TokenizerBridge,
    candidates=EOS_TOKEN_CANDIDATES,
) -> int:
    """
    First candidate string the tokenizer knows, else vocab_size.

    vocab_size can never be sampled, so the fallback simply never stops early.
    """
    for token in candidates:
        token_id = tokenizer.token_to_id(token)
        if token_id is not None:
            return token_id
    logger.warning(f"No EOS token among {list(candidates)}, using sentinel {tokenizer.vocab_size}")
    return tokenizer.vocab_size


def find_tokenizer_file(*search_dirs: str) -> Optional[str]:
    """Look for tokenizer.json in the given directories, then their parents."""
    for d in search_dirs:
        if not d:
            continue
        for candidate in (os.path.join(d, "tokenizer.json"),
                          os.path.join(os.path.dirname(os.path.abspath(d)), "tokenizer.json")):
            if os.path.isfile(candidate):
                return candidate
    return None
