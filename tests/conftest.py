import numpy as np
import pytest

from facewarp.datatypes import Detection, FaceBox, RasterImage


@pytest.fixture
def flat_gray():
    """200×200 flat (128, 128, 128, 255) image."""
    return RasterImage.blank(200, 200, (128, 128, 128, 255))


@pytest.fixture
def noisy_image():
    """Deterministic random RGB image, opaque."""
    rng = np.random.default_rng(1234)
    return RasterImage.from_array(rng.integers(0, 256, size=(96, 128, 3), dtype=np.uint8))


@pytest.fixture
def gradient_image():
    """Horizontal red ramp, vertical green ramp, constant blue."""
    ys, xs = np.mgrid[0:100, 0:100]
    pixels = np.zeros((100, 100, 4), dtype=np.uint8)
    pixels[..., 0] = xs * 2
    pixels[..., 1] = ys * 2
    pixels[..., 2] = 50
    pixels[..., 3] = 255
    return RasterImage(pixels)


@pytest.fixture
def detection():
    return Detection(box=FaceBox(x=10, y=10, width=100, height=100))
