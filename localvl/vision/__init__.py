"""
localvl :: Vision

Image preprocessing (resize, normalize, patchify) and the patch tower.
"""

from localvl.vision.processor import VisionGridTHW, preprocess_image, smart_resize
from localvl.vision.tower import VisionTower
