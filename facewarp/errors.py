"""
Error taxonomy shared by the engine, the model adapters and the API layer.
"""


class FaceWarpError(Exception):
    """Base class for every error raised by facewarp."""


class InvalidInput(FaceWarpError, ValueError):
    """
    The source image is empty, zero-sized or cannot be decoded.
    Fatal for the run: no partial output is produced.
    """


class ModelUnavailable(FaceWarpError, RuntimeError):
    """An external model (face mesh, CLIP) failed to load or is still loading."""


class MissingMaskAssetWarning(UserWarning):
    """
    The mask effect was selected without a mask image.
    The compositor falls back to no effect; the run still completes.
    """
