"""
Explicit load-state holder for heavy external models (MediaPipe, CLIP).

A loader is created by whoever owns the model and injected into the module
that uses it; there is no module-level "already loaded" flag.
"""

import enum
import logging
import threading
from typing import Callable, Generic, Optional, TypeVar

from facewarp.errors import ModelUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ModelState(enum.Enum):
    UNLOADED = "unloaded"
    LOADING  = "loading"
    READY    = "ready"
    FAILED   = "failed"


class ModelLoader(Generic[T]):
    """
    Loads a model once, on first use, and remembers the outcome.

    ``get()`` blocks concurrent callers while the factory runs. After a failed
    load every call raises ``ModelUnavailable`` until ``reset()`` is called.
    """

    def __init__(self, name: str, factory: Callable[[], T]):
        self.name = name
        self._factory = factory
        self._model: Optional[T] = None
        self._error: Optional[BaseException] = None
        self._state = ModelState.UNLOADED
        self._lock = threading.Lock()

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is ModelState.READY

    def get(self) -> T:
        with self._lock:
            if self._state is ModelState.READY:
                return self._model
            if self._state is ModelState.FAILED:
                raise ModelUnavailable(f"{self.name} failed to load: {self._error}")

            self._state = ModelState.LOADING
            logger.info("Loading %s …", self.name)
            try:
                self._model = self._factory()
            except Exception as exc:
                self._state = ModelState.FAILED
                self._error = exc
                logger.exception("Loading %s failed", self.name)
                raise ModelUnavailable(f"{self.name} failed to load: {exc}") from exc

            self._state = ModelState.READY
            logger.info("%s ready.", self.name)
            return self._model

    def reset(self):
        with self._lock:
            self._model = None
            self._error = None
            self._state = ModelState.UNLOADED
