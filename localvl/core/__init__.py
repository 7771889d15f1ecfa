"""
localvl :: Core

Infrastructure shared by every model:
  - errors: exception hierarchy
  - sampling: generation config + candidate sampler
  - tokenizer: text <-> token ids
  - kv_cache: per-layer key/value history
  - quantization / gguf: packed tensor formats and the GGUF container
  - loader: weight file discovery and module filling
"""

from localvl.core.errors import (
    LocalVLError,
    LoadError,
    InputError,
    EngineRuntimeError,
)
from localvl.core.sampling import GenerationConfig, sample_token
from localvl.core.tokenizer import Tokenizer, resolve_eos_token_id
from localvl.core.kv_cache import KVCache
