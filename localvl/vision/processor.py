"""
localvl :: Image Preprocessing

Image (path, bytes, PIL image or HWC array) -> PixelTensor + VisionGridTHW.

  1. smart_resize: snap height/width to multiples of patch * merge,
     rounding to nearest, then clamp the area into [min_pixels, max_pixels]
  2. scale to [0, 1], normalize by mean/std, channel-first
  3. repeat the frame to fill the temporal patch
  4. cut into (C, T, P, P) patches ordered so each merge x merge group of
     patches is contiguous, as the patch merger expects
"""

import io
import math
import os
import numpy as np
import torch
from typing import Any, NamedTuple, Tuple, Union

from localvl.core.errors import ImageError
from localvl.models.config import VisionConfig

MAX_ASPECT_RATIO = 200


class VisionGridTHW(NamedTuple):
    """
    Image extent in merged vision tokens: (temporal, height, width).

    One token of the language model covers merge x merge patches.
    """
    temporal: int
    height: int
    width: int

    @property
    def num_tokens(self) -> int:
        return self.temporal * self.height * self.width

    def patch_grid(self, merge: int) -> Tuple[int, int, int]:
        """Grid in raw patches; height and width are multiples of `merge`."""
        return self.temporal, self.height * merge, self.width * merge

    def num_patches(self, merge: int) -> int:
        return self.num_tokens * merge * merge


def smart_resize(
    height: int,
    width: int,
    factor: int,
    min_pixels: int,
    max_pixels: int,
) -> Tuple[int, int]:
    """Target (height, width), both multiples of `factor`, area within bounds."""
    if height <= 0 or width <= 0:
        raise ImageError(f"image dimensions must be positive, got {width}x{height}")
    if max(height, width) / min(height, width) > MAX_ASPECT_RATIO:
        raise ImageError(f"aspect ratio must be < {MAX_ASPECT_RATIO}, got {width}x{height}")

    h_bar = max(factor, round(height / factor) * factor)
    w_bar = max(factor, round(width / factor) * factor)

    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = max(factor, math.floor(height / beta / factor) * factor)
        w_bar = max(factor, math.floor(width / beta / factor) * factor)
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = math.ceil(height * beta / factor) * factor
        w_bar = math.ceil(width * beta / factor) * factor

    return int(h_bar), int(w_bar)


def load_image(image: Union[str, bytes, Any]):
    """Open anything image-like as an RGB PIL image."""
    from PIL import Image, UnidentifiedImageError

    try:
        if isinstance(image, str):
            if not os.path.isfile(image):
                raise ImageError(f"image not found: {image}")
            with Image.open(image) as img:
                return img.convert("RGB")
        if isinstance(image, (bytes, bytearray)):
            with Image.open(io.BytesIO(image)) as img:
                return img.convert("RGB")
        if hasattr(image, "convert"):
            return image.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ImageError(f"cannot decode image: {e}") from e

    arr = np.asarray(image)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise ImageError(f"expected an HWC array with 3 or 4 channels, got shape {arr.shape}")
    if arr.dtype != np.uint8:
        arr = np.clip(arr * 255.0 if arr.max() <= 1.0 else arr, 0, 255).astype(np.uint8)
    return Image.fromarray(np.ascontiguousarray(arr[:, :, :3]))


def preprocess_image(
    image: Union[str, bytes, Any],
    config: VisionConfig,
) -> Tuple[torch.Tensor, VisionGridTHW]:
    """
    Returns:
        pixel_values: (num_patches, C * T * P * P) float32
        grid: VisionGridTHW in merged tokens
    """
    from PIL import Image

    pil_img = load_image(image)
    width, height = pil_img.size
    new_h, new_w = smart_resize(
        height, width, config.merge_factor, config.min_pixels, config.max_pixels
    )
    if (new_w, new_h) != (width, height):
        pil_img = pil_img.resize((new_w, new_h), Image.Resampling.BICUBIC)

    pixels = np.asarray(pil_img, dtype=np.float32) / 255.0
    mean = np.asarray(config.image_mean, dtype=np.float32)
    std = np.asarray(config.image_std, dtype=np.float32)
    pixels = (pixels - mean) / std
    pixels = np.transpose(pixels, (2, 0, 1))[None, ...]  # (frames=1, C, H, W)

    tp = config.temporal_patch_size
    if pixels.shape[0] % tp:
        pad = tp - pixels.shape[0] % tp
        pixels = np.concatenate([pixels, np.repeat(pixels[-1:], pad, axis=0)], axis=0)

    return patchify(pixels, config)


def patchify(pixels: np.ndarray, config: VisionConfig) -> Tuple[torch.Tensor, VisionGridTHW]:
    """(frames, C, H, W) normalized array -> flattened patches + grid."""
    frames, channels, height, width = pixels.shape
    p = config.patch_size
    m = config.spatial_merge_size
    tp = config.temporal_patch_size

    if height % (p * m) or width % (p * m):
        raise ImageError(f"{width}x{height} is not a multiple of patch*merge={p * m}")
    if frames % tp:
        raise ImageError(f"{frames} frames is not a multiple of temporal_patch_size={tp}")

    grid_t, grid_h, grid_w = frames // tp, height // p, width // p

    # (T, tp, C, H/m, m, p, W/m, m, p) -> (T, H/m, W/m, m, m, C, tp, p, p)
    patches = pixels.reshape(
        grid_t, tp, channels,
        grid_h // m, m, p,
        grid_w // m, m, p,
    )
    patches = patches.transpose(0, 3, 6, 4, 7, 2, 1, 5, 8)
    flat = patches.reshape(grid_t * grid_h * grid_w, channels * tp * p * p)

    grid = VisionGridTHW(grid_t, grid_h // m, grid_w // m)
    return torch.from_numpy(np.ascontiguousarray(flat, dtype=np.float32)), grid
