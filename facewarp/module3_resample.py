"""
Module 3: Resampler
===================
Responsible for:
  - Backward-mapping output pixels into the source image (sample = pos − displacement)
  - Bilinear interpolation of R, G, B over the four integer neighbours
  - Replicating edge pixels instead of reading outside the buffer
  - Adding the per-channel noise term, drawn from an injected random generator

The alpha channel is copied from the top-left neighbour and never interpolated
or perturbed, so transparent regions keep their exact coverage.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from facewarp.datatypes import RasterImage
from facewarp.errors import InvalidInput

logger = logging.getLogger(__name__)

# Peak-to-peak noise amplitude per unit of the noiseLevel slider
NOISE_SCALE = 2.5


def resample(
    source:      np.ndarray,
    sample_x:    np.ndarray,
    sample_y:    np.ndarray,
    noise_level: float = 0.0,
    rng:         Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Sample ``source`` at fractional coordinates.

    Parameters
    ----------
    source : np.ndarray
        H×W×4 uint8 RGBA source pixels (read only).
    sample_x, sample_y : np.ndarray
        Source-space coordinates, any (matching) shape.  Values outside the
        image are clamped to the border.
    noise_level : float
        0 disables noise; otherwise each colour channel receives
        ``(u - 0.5) * noise_level * 2.5`` with ``u ~ U[0, 1)``.
    rng : np.random.Generator or None
        Noise source. A fresh unseeded generator is used when omitted.

    Returns
    -------
    np.ndarray
        uint8 array of shape ``sample_x.shape + (4,)``.
    """
    if source.ndim != 3 or source.shape[0] == 0 or source.shape[1] == 0:
        raise InvalidInput(f"Cannot sample from an empty image (shape {source.shape})")

    height, width = source.shape[:2]

    sx = np.clip(np.asarray(sample_x, dtype=np.float64), 0.0, width - 1)
    sy = np.clip(np.asarray(sample_y, dtype=np.float64), 0.0, height - 1)

    x1 = np.floor(sx).astype(np.intp)
    y1 = np.floor(sy).astype(np.intp)
    x2 = np.minimum(x1 + 1, width - 1)
    y2 = np.minimum(y1 + 1, height - 1)

    wx = np.asarray(sx - x1)[..., np.newaxis]
    wy = np.asarray(sy - y1)[..., np.newaxis]

    top_left     = source[y1, x1]
    top_right    = source[y1, x2, :3].astype(np.float64)
    bottom_left  = source[y2, x1, :3].astype(np.float64)
    bottom_right = source[y2, x2, :3].astype(np.float64)

    top    = top_left[..., :3] * (1.0 - wx) + top_right * wx
    bottom = bottom_left * (1.0 - wx) + bottom_right * wx
    rgb    = top * (1.0 - wy) + bottom * wy

    if noise_level > 0:
        if rng is None:
            rng = np.random.default_rng()
        rgb = rgb + (rng.random(rgb.shape) - 0.5) * noise_level * NOISE_SCALE

    out = np.empty(rgb.shape[:-1] + (4,), dtype=np.uint8)
    out[..., :3] = np.clip(np.rint(rgb), 0, 255)
    out[..., 3] = top_left[..., 3]
    return out


def sample(
    source:      RasterImage,
    x:           float,
    y:           float,
    dx:          float,
    dy:          float,
    noise_level: float = 0.0,
    rng:         Optional[np.random.Generator] = None,
) -> Tuple[int, int, int, int]:
    """
    Output pixel at (x, y) for displacement (dx, dy).

    The sample position is ``(x - dx, y - dy)``: a positive displacement
    pulls content from the opposite side, pushing features outward.
    """
    pixel = resample(
        source.pixels,
        np.float64(x - dx),
        np.float64(y - dy),
        noise_level=noise_level,
        rng=rng,
    )
    r, g, b, a = (int(c) for c in pixel)
    return (r, g, b, a)
