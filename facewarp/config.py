"""
Configuration
=============
Dataclass settings for the warp engine and the HTTP service.

The engine constants (amplification, region cutoff, padding) default to the
values the editor ships with; the service settings can be overridden through
environment variables via ``AppConfig.from_env()``.
"""

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

EXECUTOR_KINDS = ("serial", "thread", "process")


@dataclass
class EngineConfig:
    # Displacement field
    amplification_factor: float = 3.5   # multiplier applied to every slider rule
    cutoff_distance:      float = 1.3   # normalised radius beyond which pixels pass through

    # Region model
    region_padding:   float = 1.25      # detected box is enlarged by 25 %
    fallback_width:   float = 0.6       # heuristic region as a fraction of the image
    fallback_height:  float = 0.7

    # Scheduling
    rows_per_chunk:     int = 32
    parallel_threshold: int = 500_000   # pixels; smaller images always run serially
    executor:           str = "serial"  # serial | thread | process
    max_workers:        int = 0         # 0 = let concurrent.futures decide

    def __post_init__(self):
        if self.executor not in EXECUTOR_KINDS:
            raise ValueError(
                f"Unknown executor '{self.executor}'. Expected one of {EXECUTOR_KINDS}"
            )
        if self.rows_per_chunk < 1:
            raise ValueError("rows_per_chunk must be >= 1")


@dataclass
class AppConfig:
    port:               int = 5000
    debug:              bool = False
    clip_model_id:      str = "openai/clip-vit-base-patch32"
    descriptor_enabled: bool = True
    max_upload_bytes:   int = 16 * 1024 * 1024
    engine:             EngineConfig = field(default_factory=EngineConfig)

    @classmethod
    def from_env(cls, environ=None) -> "AppConfig":
        """Build a config from ``PORT``, ``FLASK_DEBUG`` and ``FACEWARP_*`` variables."""
        env = os.environ if environ is None else environ

        engine = EngineConfig(
            executor=env.get("FACEWARP_EXECUTOR", "serial"),
            max_workers=int(env.get("FACEWARP_WORKERS", 0)),
            rows_per_chunk=int(env.get("FACEWARP_ROWS_PER_CHUNK", 32)),
        )
        config = cls(
            port=int(env.get("PORT", 5000)),
            debug=env.get("FLASK_DEBUG", "0") == "1",
            clip_model_id=env.get("FACEWARP_CLIP_MODEL", cls.clip_model_id),
            descriptor_enabled=env.get("FACEWARP_DESCRIPTOR", "1") == "1",
            engine=engine,
        )
        logger.debug("Loaded config from environment: %s", config)
        return config
