"""
Module 2: Displacement Field Generator
======================================
Responsible for:
  - Mapping every output pixel to a backward-sampling offset (dx, dy)
  - Gating each feature slider by the sub-region of the face the pixel falls in
    (eyes, eyebrows, nose, mouth, face width, chin, jawline)
  - Marking pixels beyond the region cutoff so the caller copies them unchanged

Design Rationale
----------------
Positions are normalised to the face region: (0, 0) is the region centre and
the ellipse boundary sits at distance 1.  Each facial feature is a rule made of
a predicate on the normalised coordinates and a contribution formula.  The
rules are NOT mutually exclusive: eyes overlap eyebrows, face width overlaps
the jaw, and so on.  Every rule is evaluated and the contributions are summed,
which gives layered deformation around feature boundaries.

All formulas are written against numpy arrays so a whole block of rows is
evaluated at once; the scalar ``compute_displacement`` is the same code on
0-d arrays.
"""

import logging
from dataclasses import dataclass
from typing import Callable, NamedTuple, Tuple

import cv2
import numpy as np

from facewarp.config import EngineConfig
from facewarp.datatypes import FaceRegion, RasterImage, SliderValues

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = EngineConfig()


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

def _sign(v: np.ndarray) -> np.ndarray:
    """+1 for strictly positive values, -1 otherwise (zero falls on the negative side)."""
    return np.where(v > 0, 1.0, -1.0)


Predicate = Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]
Contribution = Callable[
    [np.ndarray, np.ndarray, np.ndarray, SliderValues],
    Tuple[np.ndarray, np.ndarray],
]


@dataclass(frozen=True)
class DisplacementRule:
    """
    One facial sub-region.

    ``contribution`` returns the displacement before amplification; the
    generator multiplies by the amplification factor and adds it wherever
    ``predicate`` holds.  ``vertical_reach(sliders, cutoff)`` bounds |dy|
    before amplification over every pixel the predicate can select inside
    the cutoff; rules that only move pixels sideways keep the default 0.
    """
    name:           str
    sliders:        Tuple[str, ...]
    predicate:      Predicate
    contribution:   Contribution
    vertical_reach: Callable[[SliderValues, float], float] = lambda s, cutoff: 0.0

    def is_idle(self, sliders: SliderValues) -> bool:
        return all(getattr(sliders, attr) == 0 for attr in self.sliders)


RULES: Tuple[DisplacementRule, ...] = (
    DisplacementRule(
        name="eyes",
        sliders=("eye_size", "eye_spacing"),
        predicate=lambda nx, ny, d: (ny > -0.65) & (ny < -0.15)
                                    & (np.abs(nx) > 0.1) & (np.abs(nx) < 0.45),
        contribution=lambda nx, ny, d, s: (
            s.eye_size / 50 * nx + s.eye_spacing / 50 * _sign(nx),
            s.eye_size / 50 * ny,
        ),
        vertical_reach=lambda s, cutoff: abs(s.eye_size) / 50 * 0.65,
    ),
    DisplacementRule(
        name="eyebrows",
        sliders=("eyebrow_height",),
        predicate=lambda nx, ny, d: (ny > -0.75) & (ny < -0.25)
                                    & (np.abs(nx) > 0.05) & (np.abs(nx) < 0.5),
        contribution=lambda nx, ny, d, s: (0.0, -s.eyebrow_height / 50),
        vertical_reach=lambda s, cutoff: abs(s.eyebrow_height) / 50,
    ),
    DisplacementRule(
        name="nose",
        sliders=("nose_width", "nose_length"),
        predicate=lambda nx, ny, d: (np.abs(nx) < 0.25) & (ny > -0.4) & (ny < 0.25),
        contribution=lambda nx, ny, d, s: (
            s.nose_width / 50 * nx,
            s.nose_length / 50 * _sign(ny),
        ),
        vertical_reach=lambda s, cutoff: abs(s.nose_length) / 50,
    ),
    DisplacementRule(
        name="mouth",
        sliders=("mouth_width", "mouth_height"),
        predicate=lambda nx, ny, d: (np.abs(nx) < 0.35) & (ny > 0.05) & (ny < 0.45),
        contribution=lambda nx, ny, d, s: (
            s.mouth_width / 50 * nx,
            s.mouth_height / 50 * (ny - 0.25),
        ),
        vertical_reach=lambda s, cutoff: abs(s.mouth_height) / 50 * 0.2,
    ),
    DisplacementRule(
        name="face_width",
        sliders=("face_width",),
        predicate=lambda nx, ny, d: (d > 0.4) & (d < 1.1),
        contribution=lambda nx, ny, d, s: (s.face_width / 50 * nx, 0.0),
    ),
    DisplacementRule(
        name="chin",
        sliders=("chin_shape",),
        predicate=lambda nx, ny, d: (ny > 0.35) & (np.abs(nx) < 0.35),
        contribution=lambda nx, ny, d, s: (0.0, s.chin_shape / 50 * (ny - 0.4)),
        vertical_reach=lambda s, cutoff: abs(s.chin_shape) / 50 * max(cutoff - 0.4, 0.05),
    ),
    DisplacementRule(
        name="jawline",
        sliders=("jawline",),
        predicate=lambda nx, ny, d: (ny > 0.15) & (np.abs(nx) > 0.25) & (np.abs(nx) < 0.65),
        contribution=lambda nx, ny, d, s: (s.jawline / 50 * _sign(nx), 0.0),
    ),
)


# ---------------------------------------------------------------------------
# Field evaluation
# ---------------------------------------------------------------------------

class Displacement(NamedTuple):
    dx: float
    dy: float
    outside_region: bool


class DisplacementField(NamedTuple):
    dx:      np.ndarray   # float64, same shape as the coordinate grids
    dy:      np.ndarray
    outside: np.ndarray   # bool; True where the source pixel is copied unchanged


def displacement_field(
    xs:      np.ndarray,
    ys:      np.ndarray,
    region:  FaceRegion,
    sliders: SliderValues,
    config:  EngineConfig = _DEFAULT_CONFIG,
) -> DisplacementField:
    """
    Evaluate the displacement for every (x, y) pair of two broadcastable grids.

    Parameters
    ----------
    xs, ys : np.ndarray
        Output pixel coordinates (e.g. from ``np.meshgrid``).
    region : FaceRegion
        Normalisation frame.
    sliders : SliderValues
        Feature sliders; rules whose sliders are all zero are skipped.
    config : EngineConfig
        Supplies ``amplification_factor`` and ``cutoff_distance``.
    """
    xs = np.asarray(xs, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    xs, ys = np.broadcast_arrays(xs, ys)

    nx = (xs - region.center_x) / region.half_width
    ny = (ys - region.center_y) / region.half_height
    dist = np.sqrt(nx * nx + ny * ny)

    outside = dist > config.cutoff_distance
    amp = config.amplification_factor

    dx = np.zeros(nx.shape, dtype=np.float64)
    dy = np.zeros(nx.shape, dtype=np.float64)

    for rule in RULES:
        if rule.is_idle(sliders):
            continue
        active = rule.predicate(nx, ny, dist) & ~outside
        if not np.any(active):
            continue
        cdx, cdy = rule.contribution(nx, ny, dist, sliders)
        dx += np.where(active, np.multiply(cdx, amp), 0.0)
        dy += np.where(active, np.multiply(cdy, amp), 0.0)

    return DisplacementField(dx=dx, dy=dy, outside=outside)


def compute_displacement(
    x:       float,
    y:       float,
    region:  FaceRegion,
    sliders: SliderValues,
    config:  EngineConfig = _DEFAULT_CONFIG,
) -> Displacement:
    """Displacement of a single output pixel."""
    field = displacement_field(np.float64(x), np.float64(y), region, sliders, config)
    return Displacement(
        dx=float(field.dx),
        dy=float(field.dy),
        outside_region=bool(field.outside),
    )


def vertical_bound(sliders: SliderValues, config: EngineConfig = _DEFAULT_CONFIG) -> float:
    """
    Upper bound on |dy| in pixels over the whole field.

    A block of output rows only ever samples source rows within this distance,
    so the pipeline ships each row chunk just that band of the source.
    """
    reach = sum(
        rule.vertical_reach(sliders, config.cutoff_distance)
        for rule in RULES
        if not rule.is_idle(sliders)
    )
    return reach * config.amplification_factor


# ---------------------------------------------------------------------------
# Visualisation
# ---------------------------------------------------------------------------

def render_vector_field(
    image:   RasterImage,
    region:  FaceRegion,
    sliders: SliderValues,
    step:    int = 16,
    scale:   float = 3.0,
    config:  EngineConfig = _DEFAULT_CONFIG,
) -> RasterImage:
    """
    Draw the displacement field as arrows on a copy of ``image``.

    Each arrow starts at a sample point and follows (dx, dy), stretched by
    ``scale`` so few-pixel shifts stay readable.  Colour runs from green
    (weak) to red (strongest vector in the frame).
    """
    step = max(4, int(step))
    canvas = image.pixels.copy()

    ys, xs = np.mgrid[step // 2:image.height:step, step // 2:image.width:step]
    field = displacement_field(xs, ys, region, sliders, config)
    magnitude = np.hypot(field.dx, field.dy)
    peak = float(magnitude.max()) if magnitude.size else 0.0

    if peak <= 0:
        logger.debug("Vector field is empty — nothing to draw.")
        return RasterImage(canvas)

    for x, y, dx, dy, mag in zip(
        xs.ravel(), ys.ravel(), field.dx.ravel(), field.dy.ravel(), magnitude.ravel()
    ):
        if mag < 0.05:
            continue
        t = mag / peak
        colour = (int(255 * t), int(255 * (1 - t)), 0, 255)
        tip = (int(round(x + dx * scale)), int(round(y + dy * scale)))
        cv2.arrowedLine(canvas, (int(x), int(y)), tip, colour, 1, cv2.LINE_AA, tipLength=0.3)

    return RasterImage(canvas)
