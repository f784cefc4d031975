import pickle
import threading

import numpy as np
import pytest

from facewarp.config import EngineConfig
from facewarp.datatypes import EffectOptions, RasterImage, SliderValues
from facewarp.errors import InvalidInput, MissingMaskAssetWarning
from facewarp.module1_region import derive_region
from facewarp.module4_effects import mirror_face
from facewarp.module5_pipeline import (
    FaceWarpPipeline,
    LatestRunScheduler,
    ProcessExecutor,
    SerialExecutor,
    ThreadExecutor,
    WarpTask,
    make_executor,
    warp_rows,
)

STRONG = SliderValues(
    eye_size=40, eye_spacing=-25, eyebrow_height=30, nose_width=-50, nose_length=50,
    mouth_width=20, mouth_height=-35, face_width=50, chin_shape=-40, jawline=45, noise_level=30,
)


@pytest.fixture
def pipeline():
    with FaceWarpPipeline() as p:
        yield p


def _outside_mask(image, region, cutoff=1.3):
    ys, xs = np.mgrid[0:image.height, 0:image.width]
    nx = (xs - region.center_x) / region.half_width
    ny = (ys - region.center_y) / region.half_height
    return np.sqrt(nx ** 2 + ny ** 2) > cutoff


def test_neutral_run_is_identity_copy(pipeline, noisy_image):
    out = pipeline.run(noisy_image, SliderValues.neutral())
    assert out == noisy_image
    assert out is not noisy_image


def test_warp_rows_with_zero_displacement_is_identity(noisy_image):
    region = derive_region(noisy_image.width, noisy_image.height)
    task = WarpTask(
        source=noisy_image.pixels, region=region, sliders=SliderValues.neutral(),
        row_start=10, row_stop=30, seed=np.random.SeedSequence(0), config=EngineConfig(),
    )
    np.testing.assert_array_equal(warp_rows(task), noisy_image.pixels[10:30])


def test_flat_gray_face_width_scenario(pipeline, flat_gray):
    sliders = SliderValues(face_width=50, noise_level=0)
    out = pipeline.run(flat_gray, sliders)
    assert np.all(out.pixels == (128, 128, 128, 255))


def test_pixels_outside_region_are_unchanged(pipeline, noisy_image, detection):
    region = derive_region(noisy_image.width, noisy_image.height, detection)
    out = pipeline.run(noisy_image, STRONG, detection, seed=1)
    outside = _outside_mask(noisy_image, region)
    assert outside.any()
    np.testing.assert_array_equal(out.pixels[outside], noisy_image.pixels[outside])
    assert not np.array_equal(out.pixels[~outside], noisy_image.pixels[~outside])


def test_source_is_not_modified(pipeline, noisy_image):
    before = noisy_image.pixels.copy()
    pipeline.run(noisy_image, STRONG, effect_options=EffectOptions("pixelate", 20), seed=3)
    np.testing.assert_array_equal(noisy_image.pixels, before)


def test_output_has_source_shape_and_valid_alpha(pipeline):
    rng = np.random.default_rng(11)
    pixels = rng.integers(0, 256, size=(37, 53, 4), dtype=np.uint8)
    source = RasterImage(pixels)
    out = pipeline.run(source, STRONG, seed=2)
    assert (out.width, out.height) == (53, 37)
    assert out.pixels.dtype == np.uint8
    # alpha is always some source pixel's alpha
    assert set(np.unique(out.pixels[..., 3])) <= set(np.unique(pixels[..., 3]))


@pytest.mark.parametrize("size", [(1, 1), (3, 1), (1, 4)])
def test_tiny_images(pipeline, size):
    source = RasterImage.blank(*size, rgba=(40, 80, 120, 255))
    out = pipeline.run(source, STRONG, seed=0)
    assert (out.width, out.height) == size


def test_rejects_non_raster_source(pipeline):
    with pytest.raises(InvalidInput):
        pipeline.run(np.zeros((10, 10, 4), dtype=np.uint8))


def test_seed_makes_noise_reproducible(pipeline, flat_gray):
    sliders = SliderValues(noise_level=20)
    a = pipeline.run(flat_gray, sliders, seed=99)
    b = pipeline.run(flat_gray, sliders, seed=99)
    c = pipeline.run(flat_gray, sliders, seed=100)
    assert a == b
    assert a != c


def test_seeded_generator_makes_runs_reproducible(flat_gray):
    sliders = SliderValues(noise_level=20)
    with FaceWarpPipeline(rng=np.random.default_rng(5)) as p1, \
            FaceWarpPipeline(rng=np.random.default_rng(5)) as p2:
        assert p1.run(flat_gray, sliders) == p2.run(flat_gray, sliders)


@pytest.mark.parametrize("executor_cls", [ThreadExecutor, ProcessExecutor])
def test_executors_agree_with_serial(noisy_image, executor_cls):
    config = EngineConfig(rows_per_chunk=8, parallel_threshold=0)
    with FaceWarpPipeline(config, executor=SerialExecutor()) as serial, \
            FaceWarpPipeline(config, executor=executor_cls(2)) as parallel:
        expected = serial.run(noisy_image, STRONG, seed=7)
        assert parallel.run(noisy_image, STRONG, seed=7) == expected


def test_chunk_size_does_not_change_the_result(noisy_image):
    with FaceWarpPipeline(EngineConfig(rows_per_chunk=5)) as small, \
            FaceWarpPipeline(EngineConfig(rows_per_chunk=500)) as large:
        sliders = STRONG.with_values(noise_level=0)
        assert small.run(noisy_image, sliders) == large.run(noisy_image, sliders)


def test_make_executor():
    assert isinstance(make_executor(EngineConfig()), SerialExecutor)
    assert isinstance(make_executor(EngineConfig(executor="thread")), ThreadExecutor)
    assert isinstance(make_executor(EngineConfig(executor="process")), ProcessExecutor)


def test_effect_is_applied_after_the_warp(pipeline, noisy_image):
    sliders = SliderValues(eye_size=30, noise_level=0)
    warped = pipeline.run(noisy_image, sliders)
    blurred = pipeline.run(noisy_image, sliders, effect_options=EffectOptions("blur", 8))
    region = derive_region(noisy_image.width, noisy_image.height)
    x0, y0, x1, y1 = region.bounding_rect(noisy_image.width, noisy_image.height)
    outside = np.ones((noisy_image.height, noisy_image.width), dtype=bool)
    outside[y0:y1, x0:x1] = False
    np.testing.assert_array_equal(blurred.pixels[outside], warped.pixels[outside])
    assert blurred != warped


def test_missing_mask_warns_but_completes(pipeline, noisy_image):
    with pytest.warns(MissingMaskAssetWarning):
        out = pipeline.run(noisy_image, SliderValues.neutral(), effect_options=EffectOptions("mask", 10))
    assert out == noisy_image


def test_mirror_runs_before_the_warp(pipeline, gradient_image):
    sliders = SliderValues(mirror_face=1, noise_level=0)
    region = derive_region(gradient_image.width, gradient_image.height)
    assert pipeline.run(gradient_image, sliders) == mirror_face(gradient_image, region, sliders)


def test_submit_returns_future(pipeline, noisy_image):
    future = pipeline.submit(noisy_image, SliderValues.neutral())
    assert future.result(timeout=10) == noisy_image


class _GatedPipeline(FaceWarpPipeline):
    """Blocks every run until the gate opens; returns the sliders it was given."""

    def __init__(self, gate):
        super().__init__()
        self.gate = gate

    def run(self, source, sliders=None, *args, **kwargs):
        self.gate.wait(10)
        return sliders


def test_scheduler_delivers_only_the_latest_result(flat_gray):
    gate = threading.Event()
    delivered = []
    done = threading.Event()

    def callback(result):
        delivered.append(result)
        done.set()

    with _GatedPipeline(gate) as pipeline:
        scheduler = LatestRunScheduler(pipeline)
        first = SliderValues(eye_size=1)
        second = SliderValues(eye_size=2)
        third = SliderValues(eye_size=3)

        scheduler.schedule(flat_gray, first, callback=callback)
        scheduler.schedule(flat_gray, second, callback=callback)
        latest = scheduler.schedule(flat_gray, third, callback=callback)
        gate.set()

        assert latest.result(timeout=10) == third
        assert done.wait(10)

    assert scheduler.generation == 3
    assert delivered == [third]


class _RecordingExecutor(SerialExecutor):
    name = "recording"

    def __init__(self):
        self.tasks = []

    def execute(self, fn, tasks):
        self.tasks = list(tasks)
        return super().execute(fn, self.tasks)


def test_tasks_carry_only_their_band_of_source_rows():
    rng = np.random.default_rng(21)
    source = RasterImage.from_array(rng.integers(0, 256, size=(320, 200, 3), dtype=np.uint8))
    recorder = _RecordingExecutor()
    config = EngineConfig(rows_per_chunk=16, parallel_threshold=0)

    with FaceWarpPipeline(config, executor=recorder) as pipeline:
        pipeline.run(source, SliderValues(eye_size=10, noise_level=0))

    assert len(recorder.tasks) == 20
    for task in recorder.tasks:
        assert task.source.shape[0] <= (task.row_stop - task.row_start) + 2 * 3
        np.testing.assert_array_equal(
            task.source, source.pixels[task.band_start:task.band_start + task.source.shape[0]]
        )

    payload = sum(len(pickle.dumps(task)) for task in recorder.tasks)
    assert payload < 2 * source.pixels.nbytes


def test_banded_chunks_match_a_single_chunk_with_extreme_sliders(noisy_image):
    extreme = SliderValues(
        eye_size=-50, eyebrow_height=50, nose_length=-50, mouth_height=50, chin_shape=-50,
        face_width=50, jawline=-50, noise_level=0,
    )
    with FaceWarpPipeline(EngineConfig(rows_per_chunk=3)) as banded, \
            FaceWarpPipeline(EngineConfig(rows_per_chunk=1000)) as whole:
        assert banded.run(noisy_image, extreme) == whole.run(noisy_image, extreme)
