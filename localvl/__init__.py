"""
localvl: local inference for text and vision-language models.

  Weights:     packed GGUF (F32/F16/Q8_0/Q4_0) or dense safetensors
  Decoder:     llama / qwen2 / qwen3 with a growable KV cache
  Vision:      Qwen-VL style patch tower, merged into the prompt at prefill
  Positions:   rotary, or multimodal rotary with t/h/w sections
  Sampling:    temperature -> top-k -> top-p -> seeded draw
"""

__version__ = "0.1.0"

from localvl.engine.engine import InferenceEngine, GenerationResult, init_engine
from localvl.core.sampling import GenerationConfig
from localvl.models.backends import WeightSource
