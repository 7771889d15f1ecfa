"""
localvl :: Generic layers shared by the text decoder and the vision tower.
"""

from localvl.layers.norm import RMSNorm
from localvl.layers.rotary import RotaryTable, apply_rotary
from localvl.layers.linear import QuantizedLinear
