"""
facewarp — geometric feature warp for face-recognition privacy.

The engine (region model, displacement field, resampler, effect compositor and
pipeline driver) only needs numpy, OpenCV and Pillow.  The detection and
descriptor adapters and the Flask API live in their own modules so importing
the engine does not pull in MediaPipe or torch.
"""

from facewarp.config import AppConfig, EngineConfig
from facewarp.datatypes import (
    Detection,
    EffectOptions,
    FaceBox,
    FaceRegion,
    RasterImage,
    SliderValues,
)
from facewarp.errors import FaceWarpError, InvalidInput, MissingMaskAssetWarning, ModelUnavailable
from facewarp.module1_region import derive_region
from facewarp.module2_displacement import compute_displacement, displacement_field
from facewarp.module3_resample import resample, sample
from facewarp.module4_effects import apply_effect, draw_landmarks, mirror_face
from facewarp.module5_pipeline import FaceWarpPipeline, LatestRunScheduler

__version__ = "1.0.0"

__all__ = [
    "AppConfig",
    "EngineConfig",
    "Detection",
    "EffectOptions",
    "FaceBox",
    "FaceRegion",
    "RasterImage",
    "SliderValues",
    "FaceWarpError",
    "InvalidInput",
    "MissingMaskAssetWarning",
    "ModelUnavailable",
    "derive_region",
    "compute_displacement",
    "displacement_field",
    "resample",
    "sample",
    "apply_effect",
    "draw_landmarks",
    "mirror_face",
    "FaceWarpPipeline",
    "LatestRunScheduler",
]
