"""
Face embeddings using InsightFace.
Supports GPU with CPU fallback.
"""
import logging
from typing import Dict, List

import numpy as np
from insightface.app import FaceAnalysis

from verification import cosine_similarity

logger = logging.getLogger(__name__)

GPU_PROVIDERS = ("CUDAExecutionProvider", "CoreMLExecutionProvider")


def select_providers(use_gpu: bool) -> List[str]:
    """Pick onnxruntime execution providers, preferring a GPU one when asked."""
    if not use_gpu:
        return ["CPUExecutionProvider"]

    try:
        import onnxruntime as ort
        available = ort.get_available_providers()
    except Exception as e:
        logger.warning("Could not query onnxruntime providers (%s), using CPU", e)
        return ["CPUExecutionProvider"]

    for provider in GPU_PROVIDERS:
        if provider in available:
            logger.info("Using %s for face embeddings", provider)
            return [provider, "CPUExecutionProvider"]

    logger.warning("GPU not available, using CPU")
    return ["CPUExecutionProvider"]


class FaceRecognizer:
    """
    Wrapper around InsightFace used for registration photos and kiosk frames.
    """

    def __init__(self, model_name: str = "buffalo_l", det_size: tuple = (640, 640), use_gpu: bool = True):
        logger.info("Loading InsightFace model: %s", model_name)
        self.providers = select_providers(use_gpu)
        self.model_name = model_name
        self.app = FaceAnalysis(name=model_name, providers=self.providers)
        self.app.prepare(ctx_id=0, det_size=det_size)
        logger.info("Model %s loaded with providers: %s", model_name, self.providers)

    def detect_faces(self, image: np.ndarray, min_face_size: int = 30) -> List[Dict]:
        """
        Detect faces in a BGR image.

        Returns:
            List of dicts with 'bbox' ([x, y, w, h]), 'embedding' and 'det_score'
        """
        results = []
        for face in self.app.get(image):
            x1, y1, x2, y2 = face.bbox.astype(int)
            w, h = x2 - x1, y2 - y1
            if w < min_face_size or h < min_face_size:
                continue

            results.append({
                "bbox": [int(x1), int(y1), int(w), int(h)],
                "embedding": face.embedding,
                "det_score": float(face.det_score),
            })
        return results

    @staticmethod
    def compare_embeddings(emb1: np.ndarray, emb2: np.ndarray) -> float:
        return cosine_similarity(emb1, emb2)

    def get_provider_info(self) -> Dict:
        return {
            "model": self.model_name,
            "providers": self.providers,
            "using_gpu": any(p in GPU_PROVIDERS for p in self.providers),
        }
