"""
Model definitions and the two weight-backed backends.
"""

from localvl.models.config import ModelConfig, TextConfig, VisionConfig
from localvl.models.transformer import TextDecoder
