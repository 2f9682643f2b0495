import os
import tempfile
from datetime import datetime, timedelta, timezone

import cv2
import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Keep module-level engine and request log away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REQUEST_LOG_FILE", os.path.join(tempfile.mkdtemp(), "requests.log"))

from database import init_db
from ledger import AttendanceLedger

# Fixed offset so day boundaries differ from UTC midnight
IST = timezone(timedelta(hours=5, minutes=30), "IST")


class FakeClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current


class FakeRecognizer:
    """Returns one face per image whose embedding is `embedding`, or none when `faces` is 0."""

    def __init__(self, embedding=None, faces: int = 1):
        self.embedding = np.array([1.0, 0.0, 0.0], dtype=np.float32) if embedding is None else embedding
        self.faces = faces

    def detect_faces(self, image):
        return [{"bbox": [0, 0, 40, 40], "embedding": self.embedding, "det_score": 0.99}
                for _ in range(self.faces)]

    @staticmethod
    def compare_embeddings(emb1, emb2):
        emb1 = emb1 / np.linalg.norm(emb1)
        emb2 = emb2 / np.linalg.norm(emb2)
        return float(np.dot(emb1, emb2))

    def get_provider_info(self):
        return {"providers": ["CPUExecutionProvider"], "using_gpu": False}


def make_jpeg(color=(120, 90, 200), size=64) -> bytes:
    img = np.full((size, size, 3), color, dtype=np.uint8)
    success, buffer = cv2.imencode(".jpg", img)
    assert success
    return buffer.tobytes()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 18, 0, tzinfo=IST))


@pytest.fixture
def ledger(session_factory, clock):
    return AttendanceLedger(session_factory, tz=IST, clock=clock)
