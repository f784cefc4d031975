"""
Module 5: Pipeline Driver
=========================
Responsible for:
  - The single entry point external collaborators call: source raster + sliders
    + optional detection + optional effect options → output raster
  - Running the stages in order: region → mirror → warp → effect compositing
  - Splitting the warp into independent row chunks and handing them to a
    pluggable executor strategy (serial, thread pool, process pool)
  - Asynchronous submission, and superseding stale runs when parameters change

Design Rationale
----------------
Each output pixel depends only on the read-only source and the fixed
parameter set, so the warp is embarrassingly parallel over rows.  The chunk
function ``warp_rows`` is pure and defined once; the executor only decides
WHERE it runs.  A task carries only the band of source rows its chunk can
sample from, bounded by ``vertical_bound``, so process pools ship each source
row a small number of times.  Noise generators are spawned per chunk from one
``numpy.random.SeedSequence``, so a seeded run produces identical pixels on
every executor.
"""

import enum
import logging
import math
import threading
import time
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import numpy as np

from facewarp.config import EngineConfig
from facewarp.datatypes import Detection, EffectOptions, FaceRegion, RasterImage, SliderValues
from facewarp.errors import InvalidInput
from facewarp.module1_region import derive_region
from facewarp.module2_displacement import displacement_field, vertical_bound
from facewarp.module3_resample import resample
from facewarp.module4_effects import apply_effect, mirror_face

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    IDLE        = "idle"
    WARPING     = "warping"
    COMPOSITING = "compositing"
    DONE        = "done"


# ---------------------------------------------------------------------------
# Row-chunk task (pure; picklable for process pools)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WarpTask:
    """
    Output rows ``[row_start, row_stop)`` plus the band of source rows they
    can sample from, ``source`` being rows ``[band_start, band_start + len)``.
    """
    source:     np.ndarray          # band of the H×W×4 uint8 source, read-only
    region:     FaceRegion
    sliders:    SliderValues
    row_start:  int
    row_stop:   int
    seed:       np.random.SeedSequence
    config:     EngineConfig
    band_start: int = 0


def warp_rows(task: WarpTask) -> np.ndarray:
    """
    Warp rows ``[row_start, row_stop)``.

    Pixels beyond the region cutoff are copied from the source; all others are
    bilinearly sampled at ``(x - dx, y - dy)`` with the noise term applied.
    """
    width = task.source.shape[1]
    ys, xs = np.mgrid[task.row_start:task.row_stop, 0:width]
    field = displacement_field(xs, ys, task.region, task.sliders, task.config)

    out = task.source[task.row_start - task.band_start:task.row_stop - task.band_start].copy()
    inside = ~field.outside
    if not np.any(inside):
        return out

    rng = np.random.default_rng(task.seed)
    out[inside] = resample(
        task.source,
        xs[inside] - field.dx[inside],
        ys[inside] - field.dy[inside] - task.band_start,
        noise_level=task.sliders.noise_level,
        rng=rng,
    )
    return out


# ---------------------------------------------------------------------------
# Executor strategies
# ---------------------------------------------------------------------------

class SerialExecutor:
    """Runs every task on the calling thread."""

    name = "serial"

    def execute(self, fn: Callable, tasks: Iterable) -> List:
        return [fn(task) for task in tasks]

    def close(self):
        pass


class _PoolExecutor:
    name = "pool"
    _pool_cls = None

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers or None
        self._pool = None
        self._lock = threading.Lock()

    def _ensure_pool(self):
        with self._lock:
            if self._pool is None:
                self._pool = self._pool_cls(max_workers=self.max_workers)
                logger.info("%s executor started (max_workers=%s)", self.name, self.max_workers)
            return self._pool

    def execute(self, fn: Callable, tasks: Iterable) -> List:
        # map() preserves submission order, which is the row order
        return list(self._ensure_pool().map(fn, tasks))

    def close(self):
        with self._lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None


class ThreadExecutor(_PoolExecutor):
    """Thread pool; numpy releases the GIL for the heavy array kernels."""

    name = "thread"
    _pool_cls = ThreadPoolExecutor


class ProcessExecutor(_PoolExecutor):
    """Process pool; each task is pickled with only its band of source rows."""

    name = "process"
    _pool_cls = ProcessPoolExecutor


def make_executor(config: EngineConfig):
    if config.executor == "thread":
        return ThreadExecutor(config.max_workers)
    if config.executor == "process":
        return ProcessExecutor(config.max_workers)
    return SerialExecutor()


# ---------------------------------------------------------------------------
# FaceWarpPipeline
# ---------------------------------------------------------------------------

class FaceWarpPipeline:
    """
    Stateless between calls apart from its configuration, executor and the
    optional seeded generator used to derive per-run noise seeds.
    """

    def __init__(
        self,
        config:   Optional[EngineConfig] = None,
        executor=None,
        rng:      Optional[np.random.Generator] = None,
    ):
        """
        Parameters
        ----------
        config : EngineConfig or None
            Engine constants and scheduling options.
        executor : object with ``execute(fn, tasks)`` or None
            Strategy for running row chunks. Built from ``config.executor``
            when omitted.
        rng : np.random.Generator or None
            Source of per-run noise seeds. Pass a seeded generator for
            reproducible output; otherwise OS entropy is used.
        """
        self.config   = config or EngineConfig()
        self.executor = executor or make_executor(self.config)
        self._serial  = SerialExecutor()
        self._rng     = rng
        self._background = None
        self._background_lock = threading.Lock()

        logger.info(
            "FaceWarpPipeline initialised — executor=%s, rows_per_chunk=%d, amp=%.2f",
            getattr(self.executor, "name", type(self.executor).__name__),
            self.config.rows_per_chunk,
            self.config.amplification_factor,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        source:         RasterImage,
        sliders:        Optional[SliderValues] = None,
        detection:      Optional[Detection] = None,
        effect_options: Optional[EffectOptions] = None,
        seed:           Optional[int] = None,
    ) -> RasterImage:
        """
        Produce the warped (and optionally overlaid) image.

        Parameters
        ----------
        source : RasterImage
            Input pixels; never modified.
        sliders : SliderValues or None
            Defaults to ``SliderValues()`` (all geometry 0, noiseLevel 10).
        detection : Detection or None
            External face detection; absent selects the heuristic region.
        effect_options : EffectOptions or None
            Privacy overlay composited on top of the warped result.
        seed : int or None
            Overrides the pipeline generator for this run's noise.

        Raises
        ------
        InvalidInput
            When ``source`` is not a usable image. No partial output.
        """
        if not isinstance(source, RasterImage):
            raise InvalidInput(f"Expected a RasterImage, got {type(source).__name__}")

        sliders = sliders or SliderValues()
        t_start = time.perf_counter()
        state = PipelineState.IDLE

        region = derive_region(source.width, source.height, detection, self.config)

        state = self._advance(state, PipelineState.WARPING)
        image = source
        if sliders.mirror_enabled:
            image = mirror_face(image, region, sliders, self.config)
        if sliders.has_transformations():
            image = self._warp(image, region, sliders, seed)

        state = self._advance(state, PipelineState.COMPOSITING)
        if effect_options is not None:
            image = apply_effect(image, region, effect_options)

        if image is source:
            image = RasterImage(source.pixels)

        self._advance(state, PipelineState.DONE)
        logger.debug(
            "Pipeline run on %d×%d finished in %.3f s",
            source.width, source.height, time.perf_counter() - t_start,
        )
        return image

    def submit(self, *args, **kwargs) -> "Future[RasterImage]":
        """Run on a background worker; same arguments and result as ``run``."""
        with self._background_lock:
            if self._background is None:
                self._background = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="facewarp-run"
                )
            background = self._background
        return background.submit(self.run, *args, **kwargs)

    def close(self):
        with self._background_lock:
            if self._background is not None:
                self._background.shutdown(wait=True)
                self._background = None
        self.executor.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _advance(current: PipelineState, target: PipelineState) -> PipelineState:
        logger.debug("Pipeline state %s → %s", current.value, target.value)
        return target

    def _seed_sequence(self, seed: Optional[int]) -> np.random.SeedSequence:
        if seed is not None:
            return np.random.SeedSequence(seed)
        if self._rng is not None:
            return np.random.SeedSequence(int(self._rng.integers(0, 2**63)))
        return np.random.SeedSequence()

    def _warp(
        self,
        image:   RasterImage,
        region:  FaceRegion,
        sliders: SliderValues,
        seed:    Optional[int],
    ) -> RasterImage:
        height = image.height
        step = self.config.rows_per_chunk
        bounds = [(start, min(start + step, height)) for start in range(0, height, step)]
        seeds = self._seed_sequence(seed).spawn(len(bounds))

        # rows a chunk may sample beyond its own, bilinear neighbour included
        margin = int(math.ceil(vertical_bound(sliders, self.config))) + 1

        tasks = []
        for (start, stop), chunk_seed in zip(bounds, seeds):
            band_start = max(0, start - margin)
            band_stop = min(height, stop + margin)
            tasks.append(WarpTask(
                source=image.pixels[band_start:band_stop],
                region=region,
                sliders=sliders,
                row_start=start,
                row_stop=stop,
                seed=chunk_seed,
                config=self.config,
                band_start=band_start,
            ))

        executor = self.executor
        if image.width * image.height < self.config.parallel_threshold:
            executor = self._serial

        t_start = time.perf_counter()
        chunks = executor.execute(warp_rows, tasks)
        logger.debug(
            "Warped %d chunks on %s executor in %.3f s",
            len(tasks), getattr(executor, "name", "custom"), time.perf_counter() - t_start,
        )
        return RasterImage(np.concatenate(chunks, axis=0))


# ---------------------------------------------------------------------------
# Coalescing rapid parameter changes
# ---------------------------------------------------------------------------

class LatestRunScheduler:
    """
    Submit runs as sliders change; only the newest run is authoritative.

    Every ``schedule`` call supersedes the previous one: a run that has not
    started yet is cancelled, and a run already in flight finishes but its
    result is not delivered to the callback.
    """

    def __init__(self, pipeline: FaceWarpPipeline):
        self.pipeline = pipeline
        self._lock = threading.Lock()
        self._generation = 0
        self._pending: Optional[Future] = None

    @property
    def generation(self) -> int:
        return self._generation

    def schedule(
        self,
        source:         RasterImage,
        sliders:        Optional[SliderValues] = None,
        detection:      Optional[Detection] = None,
        effect_options: Optional[EffectOptions] = None,
        callback:       Optional[Callable[[RasterImage], None]] = None,
    ) -> Future:
        with self._lock:
            self._generation += 1
            generation = self._generation
            previous = self._pending
            future = self.pipeline.submit(source, sliders, detection, effect_options)
            self._pending = future

        if previous is not None and previous.cancel():
            logger.debug("Cancelled queued run superseded by generation %d", generation)

        def _deliver(done: Future):
            if done.cancelled() or generation != self._generation:
                logger.debug("Discarding stale result of generation %d", generation)
                return
            if done.exception() is not None:
                logger.error("Run %d failed: %s", generation, done.exception())
                return
            if callback is not None:
                callback(done.result())

        future.add_done_callback(_deliver)
        return future
