"""
Module 4: Effect Compositor
===========================
Responsible for:
  - Privacy overlays confined to the face region: blur, pixelate, image mask
  - Face mirroring (one half of the face reflected onto the other), which the
    pipeline applies before the geometric warp
  - Landmark overlay rendering for the editor's "show landmarks" view

Every function takes a RasterImage and returns a new one; inputs are never
modified.  A missing mask asset is not an error: the compositor passes the
image through and emits a MissingMaskAssetWarning for the caller.
"""

import logging
import math
import warnings
from typing import Tuple

import cv2
import numpy as np

from facewarp.config import EngineConfig
from facewarp.datatypes import Detection, EffectOptions, FaceRegion, RasterImage, SliderValues
from facewarp.errors import MissingMaskAssetWarning
from facewarp.module3_resample import resample

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = EngineConfig()

# Half the slider value, read as a percentage of a 30 px blur
BLUR_SIGMA_PER_UNIT = 0.5 / 100 * 30


# ---------------------------------------------------------------------------
# Intensity mapping
# ---------------------------------------------------------------------------

def blur_sigma(intensity: float) -> float:
    """effectIntensity 0..30 → Gaussian sigma in pixels (0..4.5)."""
    return max(0.0, float(intensity)) * BLUR_SIGMA_PER_UNIT


def pixel_block_size(intensity: float) -> int:
    """effectIntensity 0..30 → pixelation block edge (6..27 px)."""
    base = max(2, min(20, math.floor(intensity * 0.3)))
    return max(2, int(round(base * 3)))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def apply_effect(image: RasterImage, region: FaceRegion, options: EffectOptions) -> RasterImage:
    """
    Composite the selected privacy effect over the region's bounding rectangle.

    Parameters
    ----------
    image : RasterImage
        Usually the warped output of the resampler.
    region : FaceRegion
        Same region the warp used; the effect covers its bounding rectangle.
    options : EffectOptions
        ``none`` or a non-positive intensity returns ``image`` unchanged.

    Returns
    -------
    RasterImage
    """
    if options is None or not options.is_active():
        return image

    x0, y0, x1, y1 = region.bounding_rect(image.width, image.height)
    if x1 <= x0 or y1 <= y0:
        logger.warning("Region %s lies outside the image — skipping %s.", region, options.effect_type)
        return image

    if options.effect_type == "mask" and options.mask_image is None:
        logger.warning("Mask effect selected but no mask image supplied — skipping effect.")
        warnings.warn(
            "Mask effect selected without a mask image; no effect applied.",
            MissingMaskAssetWarning,
            stacklevel=2,
        )
        return image

    pixels = image.pixels.copy()
    roi = pixels[y0:y1, x0:x1]

    if options.effect_type == "blur":
        _blur_roi(roi, blur_sigma(options.effect_intensity))
    elif options.effect_type == "pixelate":
        _pixelate_roi(roi, pixel_block_size(options.effect_intensity))
    elif options.effect_type == "mask":
        _composite_mask(pixels, (x0, y0, x1, y1), options)

    logger.debug(
        "Applied %s (intensity %.1f) over rect %s",
        options.effect_type, options.effect_intensity, (x0, y0, x1, y1),
    )
    return RasterImage(pixels)


def mirror_face(
    image:   RasterImage,
    region:  FaceRegion,
    sliders: SliderValues,
    config:  EngineConfig = _DEFAULT_CONFIG,
) -> RasterImage:
    """
    Reflect one side of the face onto the other.

    The mirror axis passes through ``(cx + mirrorOffsetX * halfWidth, cy)`` and
    is tilted ``mirrorAngle`` degrees from vertical.  ``mirrorSide`` 0 copies
    the left side over the right side, 1 the reverse.  Only pixels inside the
    region cutoff and above ``mirrorCutoffY * height`` are rewritten.
    """
    if not sliders.mirror_enabled:
        return image

    height, width = image.height, image.width
    theta = math.radians(sliders.mirror_angle)
    normal = (math.cos(theta), -math.sin(theta))
    px = region.center_x + sliders.mirror_offset_x * region.half_width
    py = region.center_y

    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    nx = (xs - region.center_x) / region.half_width
    ny = (ys - region.center_y) / region.half_height
    inside = np.sqrt(nx * nx + ny * ny) <= config.cutoff_distance

    signed = (xs - px) * normal[0] + (ys - py) * normal[1]
    target_side = signed > 0 if sliders.mirror_side < 0.5 else signed < 0
    above_cutoff = ys < sliders.mirror_cutoff_y * height
    target = inside & target_side & above_cutoff

    if not np.any(target):
        return image

    src_x = xs[target] - 2.0 * signed[target] * normal[0]
    src_y = ys[target] - 2.0 * signed[target] * normal[1]

    pixels = image.pixels.copy()
    pixels[target] = resample(image.pixels, src_x, src_y)
    logger.debug("Mirrored %d pixels (side=%d)", int(target.sum()), int(sliders.mirror_side))
    return RasterImage(pixels)


# Colours follow the editor's feature legend (RGBA)
_BOX_COLOUR   = (242, 252, 226, 255)
_GROUP_COLOURS = {
    "jaw":   (249, 115, 22, 255),
    "brows": (30, 174, 219, 255),
    "nose":  (34, 34, 34, 255),
    "eyes":  (30, 174, 219, 255),
    "mouth": (234, 56, 76, 255),
}
# (group, index range, closed contour) for the 68-point convention
_LANDMARK_GROUPS_68 = (
    ("jaw",   range(0, 17),  False),
    ("brows", range(17, 22), False),
    ("brows", range(22, 27), False),
    ("nose",  range(27, 31), False),
    ("nose",  range(31, 36), False),
    ("eyes",  range(36, 42), True),
    ("eyes",  range(42, 48), True),
    ("mouth", range(48, 60), True),
    ("mouth", range(60, 68), True),
)


def draw_landmarks(image: RasterImage, detection: Detection) -> RasterImage:
    """Overlay the detection box and landmark contours on a copy of ``image``."""
    canvas = image.pixels.copy()
    box = detection.box
    cv2.rectangle(
        canvas,
        (int(round(box.x)), int(round(box.y))),
        (int(round(box.x + box.width)), int(round(box.y + box.height))),
        _BOX_COLOUR, 2, cv2.LINE_AA,
    )

    if detection.landmarks is None:
        return RasterImage(canvas)

    points = np.rint(np.asarray(detection.landmarks, dtype=np.float64)).astype(np.int32)

    if len(points) == 68:
        for group, indices, closed in _LANDMARK_GROUPS_68:
            colour = _GROUP_COLOURS[group]
            contour = points[list(indices)].reshape(-1, 1, 2)
            cv2.polylines(canvas, [contour], closed, colour, 1, cv2.LINE_AA)
            for x, y in points[list(indices)]:
                cv2.circle(canvas, (int(x), int(y)), 3, colour, -1, cv2.LINE_AA)
    else:
        for x, y in points:
            cv2.circle(canvas, (int(x), int(y)), 1, _GROUP_COLOURS["eyes"], -1, cv2.LINE_AA)

    return RasterImage(canvas)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _blur_roi(roi: np.ndarray, sigma: float) -> None:
    """In-place Gaussian blur of the RGB channels of a view; kernel size follows sigma."""
    if sigma <= 0:
        return
    rgb = np.ascontiguousarray(roi[..., :3])
    roi[..., :3] = cv2.GaussianBlur(rgb, (0, 0), sigmaX=sigma, sigmaY=sigma)


def _pixelate_roi(roi: np.ndarray, block: int) -> None:
    """In-place block averaging: area downsample, nearest-neighbour upsample."""
    h, w = roi.shape[:2]
    small_w = max(1, math.ceil(w / block))
    small_h = max(1, math.ceil(h / block))
    rgb = np.ascontiguousarray(roi[..., :3])
    small = cv2.resize(rgb, (small_w, small_h), interpolation=cv2.INTER_AREA)
    roi[..., :3] = cv2.resize(small, (w, h), interpolation=cv2.INTER_NEAREST)


def _fit_size(src_w: int, src_h: int, box_w: float, box_h: float) -> Tuple[int, int]:
    """Largest size with the source aspect ratio that fits inside the box."""
    s = min(box_w / src_w, box_h / src_h)
    return max(1, int(round(src_w * s))), max(1, int(round(src_h * s)))


def _composite_mask(
    pixels:  np.ndarray,
    rect:    Tuple[int, int, int, int],
    options: EffectOptions,
) -> None:
    """Alpha-blend the mask image into ``pixels`` (in place)."""
    x0, y0, x1, y1 = rect
    rw, rh = x1 - x0, y1 - y0
    mask = options.mask_image

    box_x = x0 + options.mask_position[0] * rw
    box_y = y0 + options.mask_position[1] * rh
    box_w = rw * options.mask_scale
    box_h = rh * options.mask_scale

    fit_w, fit_h = _fit_size(mask.width, mask.height, box_w, box_h)
    mx = int(round(box_x + (box_w - fit_w) / 2.0))
    my = int(round(box_y + (box_h - fit_h) / 2.0))

    resized = cv2.resize(
        np.ascontiguousarray(mask.pixels), (fit_w, fit_h), interpolation=cv2.INTER_AREA
    )

    # Clip the pasted mask against the image borders
    H, W = pixels.shape[:2]
    cx0, cy0 = max(0, mx), max(0, my)
    cx1, cy1 = min(W, mx + fit_w), min(H, my + fit_h)
    if cx0 >= cx1 or cy0 >= cy1:
        logger.debug("Mask placed entirely outside the image.")
        return

    dst = pixels[cy0:cy1, cx0:cx1]
    src = resized[(cy0 - my):(cy1 - my), (cx0 - mx):(cx1 - mx)]
    alpha = src[..., 3:4].astype(np.float32) / 255.0 * float(options.mask_opacity)

    blended = src[..., :3].astype(np.float32) * alpha + dst[..., :3].astype(np.float32) * (1.0 - alpha)
    dst[..., :3] = np.clip(np.rint(blended), 0, 255).astype(np.uint8)
