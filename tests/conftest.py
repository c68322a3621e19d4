import io
from pathlib import Path

import numpy as np
import pillow_heif
import pytest
from PIL import Image

from models.faces import BoundingBox, DetectedFace
from pipeline.aggregator import BatchAggregator
from pipeline.lifecycle import create_batch
from pipeline.orchestrator import Orchestrator
from settings import Settings
from utils.blob_store import InMemoryBlobStore
from utils.record_store import InMemoryRecordStore


class FakeFaceDetector:
    """Stands in for the remote detector. Returns `faces` or raises `error`."""

    def __init__(self, faces: list[DetectedFace] | None = None, error: Exception | None = None):
        self.faces = faces if faces is not None else [face(0.4, 0.5)]
        self.error = error
        self.calls = 0

    def detect(self, image_bytes: bytes) -> list[DetectedFace]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.faces)


def face(width: float, height: float, left: float = 0.1, top: float = 0.1,
         confidence: float = 99.0) -> DetectedFace:
    return DetectedFace(
        bounding_box=BoundingBox(width=width, height=height, left=left, top=top),
        confidence=confidence,
    )


def textured_image(size: tuple[int, int] = (400, 400), seed: int = 0, fmt: str = "PNG") -> bytes:
    """Random RGB noise: very sharp, and unrelated to any other seed."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buf, format=fmt)
    return buf.getvalue()


def heic_image(size: tuple[int, int] = (400, 300), seed: int = 0) -> bytes:
    """A real HEIC (HEVC-coded) buffer, as an iPhone camera would produce."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    img = Image.fromarray(pixels, "RGB")
    buf = io.BytesIO()
    pillow_heif.from_pillow(img).save(buf, quality=90)
    return buf.getvalue()


def flat_image(size: tuple[int, int] = (400, 400), color=(128, 128, 128), fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with all defaults. No real API key needed for unit tests."""
    return Settings(
        openai_api_key="test-key-not-used-in-unit-tests",
        data_dir=tmp_path / "data",
        _env_file=None,
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def aggregator(store) -> BatchAggregator:
    return BatchAggregator(store)


@pytest.fixture
def detector() -> FakeFaceDetector:
    return FakeFaceDetector()


@pytest.fixture
def batch(store):
    return create_batch(store, "Headshots", "user-1")


@pytest.fixture
def orchestrator(store, blobs, detector, settings, aggregator) -> Orchestrator:
    return Orchestrator(store, blobs, detector, settings, aggregator=aggregator)
