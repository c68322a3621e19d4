"""Remote face detection.

The pipeline depends only on the `FaceDetector` protocol:
`detect(image_bytes) -> list[DetectedFace]`, possibly empty, which may raise on
outage or timeout. `OpenAIFaceDetector` implements it with a GPT Vision call
using Structured Outputs.

Transport failures (timeouts, connection errors, API errors) propagate to the
caller unchanged. A response that cannot be turned into faces raises
`MalformedDetectionError`.
"""
import base64
import logging
import random
import time as time_module
from typing import Protocol

from openai import OpenAI, RateLimitError
from pydantic import BaseModel, ConfigDict, ValidationError

from models.faces import BoundingBox, DetectedFace
from pipeline.errors import MalformedDetectionError
from settings import Settings
from utils.openai_utils import strict_schema as _strict_schema

logger = logging.getLogger(__name__)

_MAX_RETRIES = 4

_SYSTEM_PROMPT = """\
You are a face detector. Find every human face visible in the photo.
For each face return:
- width, height: size of a tight box around the face, as fractions (0.0–1.0)
  of the image width and height
- left, top: position of the box's top-left corner, as fractions (0.0–1.0)
- confidence: how certain you are that this is a human face, 0–100
Return an empty list if there are no faces.
Answer only in the given JSON schema.
"""


class FaceDetector(Protocol):
    def detect(self, image_bytes: bytes) -> list[DetectedFace]: ...


class _FaceSchema(BaseModel):
    model_config = ConfigDict(json_schema_extra=_strict_schema)

    width: float
    height: float
    left: float
    top: float
    confidence: float


class _FaceDetectionSchema(BaseModel):
    model_config = ConfigDict(json_schema_extra=_strict_schema)

    faces: list[_FaceSchema]


class OpenAIFaceDetector:
    def __init__(self, settings: Settings, client: OpenAI | None = None) -> None:
        self.settings = settings
        # Retries are handled below so the client must not retry on its own
        self.client = client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.face_detection_timeout_s,
            max_retries=0,
        )

    def detect(self, image_bytes: bytes) -> list[DetectedFace]:
        parsed = self._call_vision_api(image_bytes)
        if parsed is None:
            raise MalformedDetectionError("Face detection returned no parsable result")
        try:
            return [
                DetectedFace(
                    bounding_box=BoundingBox(
                        width=face.width, height=face.height,
                        left=face.left, top=face.top,
                    ),
                    confidence=face.confidence,
                )
                for face in parsed.faces
            ]
        except ValidationError as exc:
            raise MalformedDetectionError(f"Face detection returned invalid geometry: {exc}") from exc

    def _call_vision_api(self, image_bytes: bytes) -> _FaceDetectionSchema | None:
        """Call GPT Vision with exponential-backoff retry on rate limits."""
        b64 = base64.standard_b64encode(image_bytes).decode()
        mime = _detect_mime(image_bytes)

        for attempt in range(_MAX_RETRIES):
            try:
                response = self.client.beta.chat.completions.parse(
                    model=self.settings.vision_model,
                    messages=[
                        {"role": "system", "content": _SYSTEM_PROMPT},
                        {
                            "role": "user",
                            "content": [
                                {
                                    "type": "image_url",
                                    "image_url": {
                                        "url": f"data:{mime};base64,{b64}",
                                        "detail": "high",
                                    },
                                }
                            ],
                        },
                    ],
                    response_format=_FaceDetectionSchema,
                )
                return response.choices[0].message.parsed
            except RateLimitError:
                if attempt == _MAX_RETRIES - 1:
                    raise
                delay = 2 ** attempt + random.uniform(0, 1)
                logger.debug(
                    "Rate limited; retrying in %.1fs (attempt %d/%d).",
                    delay, attempt + 1, _MAX_RETRIES,
                )
                time_module.sleep(delay)

        raise RuntimeError("Unreachable")  # pragma: no cover


def _detect_mime(image_bytes: bytes) -> str:
    """Detect MIME type from magic bytes."""
    if image_bytes[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"
