"""
Data Model
==========
Value types passed between the engine stages and the API layer:

  - RasterImage   : immutable RGBA pixel buffer (source and output images)
  - FaceBox       : detector bounding box
  - Detection     : external face-detection result (box, landmarks, descriptor)
  - FaceRegion    : elliptical region of interest derived per run
  - SliderValues  : named displacement parameters
  - EffectOptions : privacy overlay selection (blur / pixelate / mask)
"""

import base64
import io
import logging
from dataclasses import dataclass, fields, replace
from typing import Dict, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from facewarp.errors import InvalidInput

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Raster images
# ---------------------------------------------------------------------------

class RasterImage:
    """
    Immutable H×W×4 uint8 RGBA image, row-major with a top-left origin.

    The pixel array is stored read-only; every engine stage returns a new
    instance instead of writing into its input.
    """

    __slots__ = ("_pixels",)

    def __init__(self, pixels: np.ndarray):
        pixels = np.asarray(pixels)
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise InvalidInput(f"Expected an H×W×4 RGBA array, got shape {pixels.shape}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise InvalidInput("Image has a zero dimension")

        data = np.array(pixels, dtype=np.uint8, copy=True)
        data.setflags(write=False)
        self._pixels = data

    # -- constructors -------------------------------------------------------

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterImage":
        """Wrap an H×W×3 (RGB) or H×W×4 (RGBA) array; RGB gets an opaque alpha."""
        array = np.asarray(array)
        if array.ndim == 3 and array.shape[2] == 3:
            alpha = np.full(array.shape[:2] + (1,), 255, dtype=np.uint8)
            array = np.concatenate([array.astype(np.uint8), alpha], axis=2)
        return cls(array)

    @classmethod
    def from_bytes(cls, data: bytes) -> "RasterImage":
        """Decode any Pillow-readable format (PNG, JPEG, WEBP …) into RGBA."""
        if not data:
            raise InvalidInput("Image payload is empty")
        try:
            pil_img = Image.open(io.BytesIO(data)).convert("RGBA")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise InvalidInput(f"Unreadable image: {exc}") from exc
        return cls(np.array(pil_img, dtype=np.uint8))

    @classmethod
    def blank(cls, width: int, height: int, rgba=(0, 0, 0, 255)) -> "RasterImage":
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[...] = rgba
        return cls(pixels)

    # -- accessors ----------------------------------------------------------

    @property
    def pixels(self) -> np.ndarray:
        """Read-only H×W×4 view."""
        return self._pixels

    @property
    def width(self) -> int:
        return self._pixels.shape[1]

    @property
    def height(self) -> int:
        return self._pixels.shape[0]

    def to_rgb(self) -> np.ndarray:
        return np.ascontiguousarray(self._pixels[:, :, :3])

    def to_png_bytes(self) -> bytes:
        buf = io.BytesIO()
        Image.fromarray(self._pixels).save(buf, format="PNG")
        return buf.getvalue()

    def to_base64(self) -> str:
        return base64.b64encode(self.to_png_bytes()).decode("utf-8")

    def __eq__(self, other):
        if not isinstance(other, RasterImage):
            return NotImplemented
        return np.array_equal(self._pixels, other._pixels)

    def __hash__(self):
        return hash((self.width, self.height, self._pixels.tobytes()))

    def __repr__(self):
        return f"RasterImage(width={self.width}, height={self.height})"


# ---------------------------------------------------------------------------
# Detection input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FaceBox:
    x:      float
    y:      float
    width:  float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class Detection:
    """
    Result of the external face-detection capability.

    Only ``box`` (region derivation) and ``landmarks`` (overlay rendering) are
    read by the engine. ``descriptor`` is carried for the facial-difference
    metric computed outside the engine.
    """
    box:        FaceBox
    landmarks:  Optional[np.ndarray] = None   # (N, 2) pixel coordinates
    descriptor: Optional[np.ndarray] = None   # embedding vector

    def to_dict(self) -> dict:
        payload = {
            "box": {
                "x": float(self.box.x),
                "y": float(self.box.y),
                "width": float(self.box.width),
                "height": float(self.box.height),
            },
            "landmarks": None,
        }
        if self.landmarks is not None:
            payload["landmarks"] = [
                {"x": float(px), "y": float(py)} for px, py in self.landmarks
            ]
        return payload


@dataclass(frozen=True)
class FaceRegion:
    """Elliptical region of interest; all displacement math is normalised to it."""
    center_x:    float
    center_y:    float
    half_width:  float
    half_height: float

    def __post_init__(self):
        if self.half_width <= 0 or self.half_height <= 0:
            raise InvalidInput(
                f"Region half extents must be positive, got "
                f"{self.half_width}×{self.half_height}"
            )

    def bounding_rect(self, image_width: int, image_height: int) -> Tuple[int, int, int, int]:
        """Integer (x0, y0, x1, y1) rectangle of the region, clipped to the image."""
        x0 = max(0, int(np.floor(self.center_x - self.half_width)))
        y0 = max(0, int(np.floor(self.center_y - self.half_height)))
        x1 = min(image_width, int(np.ceil(self.center_x + self.half_width)))
        y1 = min(image_height, int(np.ceil(self.center_y + self.half_height)))
        return (x0, y0, x1, y1)


# ---------------------------------------------------------------------------
# Slider values
# ---------------------------------------------------------------------------

class SliderSpec(NamedTuple):
    attr:     str
    key:      str      # wire / UI name
    minimum:  float
    maximum:  float
    default:  float
    category: str


SLIDER_SPECS: Tuple[SliderSpec, ...] = (
    SliderSpec("eye_size",       "eyeSize",       -50, 50, 0,  "Eyes"),
    SliderSpec("eye_spacing",    "eyeSpacing",    -50, 50, 0,  "Eyes"),
    SliderSpec("eyebrow_height", "eyebrowHeight", -50, 50, 0,  "Eyes"),
    SliderSpec("nose_width",     "noseWidth",     -50, 50, 0,  "Nose"),
    SliderSpec("nose_length",    "noseLength",    -50, 50, 0,  "Nose"),
    SliderSpec("mouth_width",    "mouthWidth",    -50, 50, 0,  "Mouth"),
    SliderSpec("mouth_height",   "mouthHeight",   -50, 50, 0,  "Mouth"),
    SliderSpec("face_width",     "faceWidth",     -50, 50, 0,  "Face"),
    SliderSpec("chin_shape",     "chinShape",     -50, 50, 0,  "Face"),
    SliderSpec("jawline",        "jawline",       -50, 50, 0,  "Face"),
    SliderSpec("noise_level",    "noiseLevel",      0, 30, 10, "Privacy"),
    # mirror extensions
    SliderSpec("mirror_face",     "mirrorFace",      0,  1, 0, "Mirror"),
    SliderSpec("mirror_side",     "mirrorSide",      0,  1, 0, "Mirror"),
    SliderSpec("mirror_offset_x", "mirrorOffsetX",  -1,  1, 0, "Mirror"),
    SliderSpec("mirror_angle",    "mirrorAngle",   -45, 45, 0, "Mirror"),
    SliderSpec("mirror_cutoff_y", "mirrorCutoffY",   0,  1, 1, "Mirror"),
)

_SPECS_BY_KEY = {spec.key: spec for spec in SLIDER_SPECS}
_SPECS_BY_ATTR = {spec.attr: spec for spec in SLIDER_SPECS}

GEOMETRIC_SLIDERS = tuple(
    spec.attr for spec in SLIDER_SPECS if spec.category in ("Eyes", "Nose", "Mouth", "Face")
)


def _clamp(value: float, spec: SliderSpec) -> float:
    return float(min(spec.maximum, max(spec.minimum, value)))


@dataclass(frozen=True)
class SliderValues:
    eye_size:       float = 0
    eye_spacing:    float = 0
    eyebrow_height: float = 0
    nose_width:     float = 0
    nose_length:    float = 0
    mouth_width:    float = 0
    mouth_height:   float = 0
    face_width:     float = 0
    chin_shape:     float = 0
    jawline:        float = 0
    noise_level:    float = 10
    mirror_face:     float = 0
    mirror_side:     float = 0
    mirror_offset_x: float = 0
    mirror_angle:    float = 0
    mirror_cutoff_y: float = 1

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            object.__setattr__(self, f.name, _clamp(float(value), _SPECS_BY_ATTR[f.name]))

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, float]]) -> "SliderValues":
        """
        Build from UI-style keys (``eyeSize``, ``noiseLevel`` …).

        Unknown keys are ignored, missing keys take their default and every
        value is clamped to its slider range.
        """
        kwargs = {}
        for key, value in (values or {}).items():
            spec = _SPECS_BY_KEY.get(key) or _SPECS_BY_ATTR.get(key)
            if spec is None:
                logger.debug("Ignoring unrecognised slider '%s'", key)
                continue
            if value is None:
                continue
            kwargs[spec.attr] = float(value)
        return cls(**kwargs)

    @classmethod
    def neutral(cls) -> "SliderValues":
        """Every geometric slider at zero and no noise: the identity transform."""
        return cls(noise_level=0)

    def to_mapping(self) -> Dict[str, float]:
        return {spec.key: getattr(self, spec.attr) for spec in SLIDER_SPECS}

    def with_values(self, **changes) -> "SliderValues":
        return replace(self, **changes)

    def randomized(
        self,
        rng: np.random.Generator,
        exclude_categories: Sequence[str] = ("Mirror",),
    ) -> "SliderValues":
        """Draw each slider uniformly (integers) from its range, skipping excluded categories."""
        changes = {}
        for spec in SLIDER_SPECS:
            if spec.category in exclude_categories:
                continue
            changes[spec.attr] = float(rng.integers(spec.minimum, spec.maximum, endpoint=True))
        return replace(self, **changes)

    @property
    def mirror_enabled(self) -> bool:
        return self.mirror_face > 0

    def has_geometry(self) -> bool:
        return any(abs(getattr(self, attr)) > 0.01 for attr in GEOMETRIC_SLIDERS)

    def has_transformations(self) -> bool:
        """True when the warp stage would change any pixel (geometry or noise)."""
        return self.has_geometry() or self.noise_level > 0


# ---------------------------------------------------------------------------
# Effect options
# ---------------------------------------------------------------------------

EFFECT_TYPES = ("none", "blur", "pixelate", "mask")


@dataclass(frozen=True)
class EffectOptions:
    effect_type:      str = "none"
    effect_intensity: float = 0
    mask_image:       Optional[RasterImage] = None
    mask_position:    Tuple[float, float] = (0.0, 0.0)   # offset as a fraction of the region size
    mask_scale:       float = 1.0
    mask_opacity:     float = 0.9

    def __post_init__(self):
        if self.effect_type not in EFFECT_TYPES:
            raise ValueError(
                f"Unknown effect '{self.effect_type}'. Expected one of {EFFECT_TYPES}"
            )
        object.__setattr__(self, "effect_intensity", float(min(30, max(0, self.effect_intensity))))
        if self.mask_scale <= 0:
            raise ValueError("mask_scale must be positive")

    @classmethod
    def from_mapping(
        cls,
        values: Optional[Mapping[str, object]],
        mask_image: Optional[RasterImage] = None,
    ) -> "EffectOptions":
        values = values or {}
        position = values.get("maskPosition") or {}
        if not isinstance(position, Mapping):
            raise InvalidInput(
                f"maskPosition must be an object with x and y, got {type(position).__name__}"
            )
        return cls(
            effect_type=str(values.get("effectType", "none")),
            effect_intensity=float(values.get("effectIntensity", 0)),
            mask_image=mask_image,
            mask_position=(float(position.get("x", 0.0)), float(position.get("y", 0.0))),
            mask_scale=float(values.get("maskScale", 1.0)),
        )

    def is_active(self) -> bool:
        return self.effect_type != "none" and self.effect_intensity > 0
