"""
Module 6: Face Detection Adapter (The Vision Module)
====================================================
Responsible for:
  - Running MediaPipe FaceMesh on a decoded RasterImage
  - Reporting the face as a Detection: bounding box of the mesh + landmark points
  - Returning None when no face is found (the engine then uses its heuristic region)

Detection itself is an external capability; this module only adapts the
MediaPipe output to the engine's Detection type.  The FaceMesh graph is loaded
lazily through an injected ModelLoader.
"""

import logging
import threading
from typing import Optional

import mediapipe as mp
import numpy as np

from facewarp.datatypes import Detection, FaceBox, RasterImage
from facewarp.model_loader import ModelLoader

logger = logging.getLogger(__name__)


def _default_face_mesh():
    return mp.solutions.face_mesh.FaceMesh(
        static_image_mode=True,
        max_num_faces=1,
        refine_landmarks=True,   # enables iris landmarks too
        min_detection_confidence=0.5,
    )


class VisionModule:
    """
    Face detection over MediaPipe FaceMesh.

    A single mesh instance is shared between requests; MediaPipe graphs are
    not re-entrant, so ``process`` calls are serialised.
    """

    def __init__(self, loader: Optional[ModelLoader] = None):
        """
        Parameters
        ----------
        loader : ModelLoader or None
            Supplies the FaceMesh instance. Defaults to a loader that builds
            a static-image FaceMesh on first use.
        """
        self.loader = loader or ModelLoader("MediaPipe FaceMesh", _default_face_mesh)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def detect(self, image: RasterImage) -> Optional[Detection]:
        """
        Detect the most prominent face.

        Returns
        -------
        Detection or None
            ``box`` is the landmark bounding box in pixels, ``landmarks`` the
            (N, 2) mesh points. ``descriptor`` is left empty.
        """
        mesh = self.loader.get()
        rgb = image.to_rgb()

        with self._lock:
            results = mesh.process(rgb)

        if not results.multi_face_landmarks:
            logger.warning("VisionModule: No face detected.")
            return None

        h, w = image.height, image.width
        points = np.array(
            [[lm.x * w, lm.y * h] for lm in results.multi_face_landmarks[0].landmark],
            dtype=np.float64,
        )
        detection = self._to_detection(points, w, h)
        logger.info("VisionModule: Face detected at %s.", detection.box)
        return detection

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_detection(points: np.ndarray, width: int, height: int) -> Detection:
        x_min, y_min = np.clip(points.min(axis=0), 0, [width, height])
        x_max, y_max = np.clip(points.max(axis=0), 0, [width, height])
        box = FaceBox(
            x=float(x_min),
            y=float(y_min),
            width=float(x_max - x_min),
            height=float(y_max - y_min),
        )
        return Detection(box=box, landmarks=points)
