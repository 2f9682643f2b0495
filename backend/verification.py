"""
Verification gate: checks that the face in a kiosk frame matches the
student's registered photo before a scan is accepted.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    passed: bool
    confidence: float  # percent, 0-100
    reason: Optional[str] = None


def cosine_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
    emb1_norm = emb1 / np.linalg.norm(emb1)
    emb2_norm = emb2 / np.linalg.norm(emb2)
    return float(np.dot(emb1_norm, emb2_norm))


def decode_image(data: bytes) -> np.ndarray:
    """Decode JPEG/PNG bytes into a BGR array."""
    nparr = np.frombuffer(data, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR) if nparr.size else None
    if img is None:
        raise ValueError("Invalid image format")
    return img


def decode_base64_image(image_base64: str) -> np.ndarray:
    """Decode a base64 image, with or without a `data:image/...;base64,` prefix."""
    payload = image_base64.split(",", 1)[1] if "," in image_base64 else image_base64
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Invalid base64 image") from e
    return decode_image(data)


def encode_jpeg(img: np.ndarray) -> bytes:
    success, buffer = cv2.imencode(".jpg", img)
    if not success:
        raise ValueError("Failed to encode image")
    return buffer.tobytes()


class FaceVerificationGate:
    """
    Compares the single face in a live frame against a reference embedding.

    `recognizer` needs `detect_faces(image)` returning dicts with an
    'embedding' key and `compare_embeddings(a, b)` returning a similarity.
    """

    def __init__(self, recognizer, threshold: float = 0.6):
        self.recognizer = recognizer
        self.threshold = threshold

    def evaluate(self, frame: np.ndarray, reference: Optional[np.ndarray]) -> VerificationResult:
        if reference is None:
            return VerificationResult(False, 0.0, "No reference embedding on file")

        faces = self.recognizer.detect_faces(frame)
        if not faces:
            return VerificationResult(False, 0.0, "No face detected")
        if len(faces) > 1:
            return VerificationResult(False, 0.0, "Multiple faces detected")

        score = self.recognizer.compare_embeddings(faces[0]["embedding"], reference)
        confidence = round(max(score, 0.0) * 100, 2)

        if score < self.threshold:
            logger.info("Face match rejected (score %.3f < %.3f)", score, self.threshold)
            return VerificationResult(False, confidence, "Face does not match registered photo")
        return VerificationResult(True, confidence)
