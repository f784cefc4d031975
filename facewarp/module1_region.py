"""
Module 1: Region Model
======================
Responsible for:
  - Deriving the face-centred elliptical region of interest for a run
  - Padding a detector-provided bounding box so the warp fades before the box edge
  - Falling back to a generous centred heuristic when no face was detected,
    so the sliders still have a visible effect on faceless images
"""

import logging
from typing import Optional

from facewarp.config import EngineConfig
from facewarp.datatypes import Detection, FaceRegion
from facewarp.errors import InvalidInput

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = EngineConfig()


def derive_region(
    image_width:  int,
    image_height: int,
    detection:    Optional[Detection] = None,
    config:       EngineConfig = _DEFAULT_CONFIG,
) -> FaceRegion:
    """
    Compute the region of interest for one pipeline run.

    Parameters
    ----------
    image_width, image_height : int
        Source image size in pixels. Both must be positive.
    detection : Detection or None
        External face-detection result. Only ``detection.box`` is read.
        A missing or degenerate box selects the heuristic region.
    config : EngineConfig
        Supplies the box padding and the heuristic fractions.

    Returns
    -------
    FaceRegion
        Always a valid region (positive half extents).
    """
    if image_width <= 0 or image_height <= 0:
        raise InvalidInput(f"Image must have positive size, got {image_width}×{image_height}")

    box = detection.box if detection is not None else None

    if box is not None and box.is_degenerate:
        logger.warning("Degenerate detection box %s — using heuristic region.", box)
        box = None

    if box is None:
        region = FaceRegion(
            center_x=image_width / 2.0,
            center_y=image_height / 2.0,
            half_width=image_width * config.fallback_width / 2.0,
            half_height=image_height * config.fallback_height / 2.0,
        )
        logger.debug("No detection — heuristic region %s", region)
        return region

    cx, cy = box.center
    region = FaceRegion(
        center_x=cx,
        center_y=cy,
        half_width=box.width * config.region_padding / 2.0,
        half_height=box.height * config.region_padding / 2.0,
    )
    logger.debug("Region from detection box: %s", region)
    return region
