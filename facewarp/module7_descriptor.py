"""
Module 7: Face Descriptor & Facial Difference
=============================================
Responsible for:
  - Embedding an image with the CLIP vision encoder (openai/clip-vit-base-patch32)
  - Scoring how far the warped face has drifted from the original
    ("facial difference"), shown next to the editor preview

Theory
------
Recognition systems compare fixed-length embeddings.  We embed the original
and the warped image, take the Euclidean distance between the L2-normalised
vectors and stretch it onto a 0..2 display scale:

    difference = min((4 · ‖a − b‖) ^ 1.5, 2.0)

Values above 0.6 are reported as likely to defeat recognition.  This is an
empirical indicator, not a guarantee.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn.functional as F
from transformers import CLIPModel

from facewarp.datatypes import RasterImage
from facewarp.model_loader import ModelLoader

logger = logging.getLogger(__name__)

DIFFERENCE_THRESHOLD = 0.6
MAX_DIFFERENCE = 2.0

# CLIP preprocessing constants (ViT-B/32)
_CLIP_SIZE = 224
_CLIP_MEAN = (0.48145466, 0.4578275, 0.40821073)
_CLIP_STD  = (0.26862954, 0.26130258, 0.27577711)


def facial_difference(original: np.ndarray, modified: np.ndarray) -> float:
    """Display-scaled distance between two descriptors, in [0, 2]."""
    a = np.asarray(original, dtype=np.float64).ravel()
    b = np.asarray(modified, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    distance = float(np.linalg.norm(a - b))
    return min((distance * 4.0) ** 1.5, MAX_DIFFERENCE)


def describe_difference(value: Optional[float]) -> str:
    if value is None:
        return "unavailable"
    if value > DIFFERENCE_THRESHOLD:
        return "likely defeats recognition"
    return "may not defeat recognition"


class DescriptorModule:
    """
    CLIP image embeddings.

    The model is loaded on first use through the injected ModelLoader and
    kept in memory between requests.
    """

    CLIP_MODEL_ID = "openai/clip-vit-base-patch32"

    def __init__(
        self,
        model_id: Optional[str] = None,
        device:   Optional[str] = None,
        loader:   Optional[ModelLoader] = None,
    ):
        """
        Parameters
        ----------
        model_id : str or None
            Hugging Face model identifier. Defaults to ``CLIP_MODEL_ID``.
        device : str or None
            'cuda', 'cpu', or None (auto-detect).
        loader : ModelLoader or None
            Supplies the loaded CLIPModel; built from ``model_id`` when omitted.
        """
        self.model_id = model_id or self.CLIP_MODEL_ID
        if device is None:
            self.device = "cuda" if torch.cuda.is_available() else "cpu"
        else:
            self.device = device

        self.loader = loader or ModelLoader(f"CLIP '{self.model_id}'", self._load_clip)
        logger.info("DescriptorModule: model=%s device=%s", self.model_id, self.device)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def embed(self, image: RasterImage) -> np.ndarray:
        """L2-normalised 1-D descriptor of ``image``."""
        model = self.loader.get()
        x = self._to_tensor(image)
        with torch.no_grad():
            pooled = model.vision_model(pixel_values=x).pooler_output
            projected = model.visual_projection(pooled)
            embedding = F.normalize(projected, p=2, dim=-1)
        return embedding.squeeze(0).cpu().numpy()

    def compare(self, original: RasterImage, modified: RasterImage) -> Tuple[float, np.ndarray, np.ndarray]:
        """
        Embed both images and return ``(facial_difference, desc_original, desc_modified)``.
        """
        desc_a = self.embed(original)
        desc_b = self.embed(modified)
        score = facial_difference(desc_a, desc_b)
        logger.info("Facial difference: %.4f (%s)", score, describe_difference(score))
        return score, desc_a, desc_b

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load_clip(self) -> CLIPModel:
        model = CLIPModel.from_pretrained(self.model_id).to(self.device)
        model.eval()
        for p in model.parameters():
            p.requires_grad_(False)
        return model

    def _to_tensor(self, image: RasterImage) -> torch.Tensor:
        """RGB uint8 → 1×3×224×224 float tensor with CLIP normalisation."""
        x = (
            torch.from_numpy(image.to_rgb())
            .permute(2, 0, 1)
            .float()
            .div(255.0)
            .unsqueeze(0)
            .to(self.device)
        )
        x = F.interpolate(x, size=(_CLIP_SIZE, _CLIP_SIZE), mode="bilinear", align_corners=False)
        mean = torch.tensor(_CLIP_MEAN, device=self.device).view(1, 3, 1, 1)
        std  = torch.tensor(_CLIP_STD, device=self.device).view(1, 3, 1, 1)
        return (x - mean) / std
