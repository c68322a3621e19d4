"""Stage 6: Faces — enforce exactly one sufficiently large face.

The detector result is reduced to FaceMetrics: face count plus the area of the
largest face as a percentage of the image. The metrics are kept for display
even when the image is rejected. Picking the largest face does not waive the
multiple-faces rule.

Policies, applied in order:
  1. no face          → rejected
  2. more than one    → rejected
  3. face area < min  → rejected
"""
import logging

from models.faces import DetectedFace, FaceMetrics
from models.validation import CheckVerdict
from pipeline.errors import MalformedDetectionError
from settings import Settings
from utils.face_detection import FaceDetector

logger = logging.getLogger(__name__)


def detect(detector: FaceDetector, data: bytes, image_id: str) -> list[DetectedFace]:
    """Call the remote detector; an outage or timeout counts as zero faces.

    Failing closed means a detector outage rejects photos instead of letting
    them through unchecked. A malformed answer is still raised.
    """
    try:
        return detector.detect(data)
    except MalformedDetectionError:
        raise
    except Exception as exc:
        logger.warning(
            "Image %s: face detection unavailable (%s); treating as no faces.",
            image_id, exc,
        )
        return []


def face_metrics(faces: list[DetectedFace]) -> FaceMetrics:
    if not faces:
        return FaceMetrics(face_count=0)

    primary = max(faces, key=lambda f: f.bounding_box.area)
    return FaceMetrics(
        face_count=len(faces),
        primary_face_area=min(100.0, primary.bounding_box.area * 100.0),
        confidence=primary.confidence,
        bounding_box=primary.bounding_box,
    )


def run(metrics: FaceMetrics, settings: Settings) -> list[CheckVerdict]:
    """Return the verdicts of the checks that ran, in order.

    The last verdict is the failing one when the image is rejected.
    """
    count = metrics.face_count
    if count == 0:
        return [CheckVerdict.fail(
            "FACE_COUNT", "No faces detected in the image", numeric_value=0.0,
        )]
    if count > 1:
        return [CheckVerdict.fail(
            "FACE_COUNT",
            f"Multiple faces detected: {count} faces found",
            numeric_value=float(count),
        )]

    verdicts = [CheckVerdict.ok("FACE_COUNT", numeric_value=1.0)]
    area = metrics.primary_face_area
    minimum = settings.min_face_area_percent
    detail = {"min_face_area_percent": minimum, "confidence": metrics.confidence}
    if area < minimum:
        verdicts.append(CheckVerdict.fail(
            "FACE_AREA",
            f"Face too small. Face area: {area:.2f}%, Minimum required: {minimum:g}%",
            numeric_value=area,
            detail=detail,
        ))
    else:
        verdicts.append(CheckVerdict.ok("FACE_AREA", numeric_value=area, detail=detail))
    return verdicts
