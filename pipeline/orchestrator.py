"""Validation orchestrator — drive one image from PROCESSING to a terminal state.

Stage order is fixed:

    normalize → geometry → hash → duplicates → sharpness → face detection → faces

The first failing check stops the chain and the image becomes REJECTED with
that check's reason. Faults that are not about photo content (unreadable
bytes, missing blob, hashing crash, malformed detector output) end in ERROR.
Each check that ran leaves one audit row. Artifacts (dimensions, hash,
sharpness score, face metrics) are saved as soon as they are known, and the
batch is recomputed after the terminal write.

Writes go through `RecordStore.update_image` with only the fields the chain
owns, so a concurrent soft delete or restore is never overwritten.
"""
import logging
import time
from datetime import datetime, timezone

from models.image_record import ImageRecord, ImageStatus
from models.validation import CheckVerdict
from pipeline import (
    stage1_normalize,
    stage2_geometry,
    stage3_hash,
    stage4_duplicates,
    stage5_sharpness,
    stage6_faces,
)
from pipeline.aggregator import BatchAggregator
from pipeline.errors import ImageNotFoundError, InvalidTransitionError
from pipeline.stage4_duplicates import FingerprintLedger
from settings import Settings
from utils.blob_store import BlobStore
from utils.face_detection import FaceDetector
from utils.record_store import RecordStore

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        store: RecordStore,
        blobs: BlobStore,
        detector: FaceDetector,
        settings: Settings,
        aggregator: BatchAggregator | None = None,
        ledger: FingerprintLedger | None = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.detector = detector
        self.settings = settings
        self.aggregator = aggregator or BatchAggregator(store)
        if ledger is None and settings.strict_duplicate_checks:
            ledger = FingerprintLedger()
        self.ledger = ledger

    def validate(self, image_id: str) -> ImageStatus:
        """Run the full chain once and return the terminal status.

        Raises ImageNotFoundError for an unknown id and InvalidTransitionError
        when the image already has a terminal status.
        """
        image = self.store.get_image(image_id)
        if image is None:
            raise ImageNotFoundError(f"Image with ID {image_id} not found")
        if image.is_terminal:
            raise InvalidTransitionError(
                f"Image {image_id} is already {image.status}; it cannot be validated again"
            )

        image = self.store.update_image(
            image_id,
            status="PROCESSING",
            processing_info=image.processing_info.model_copy(update={
                "started_at": datetime.now(timezone.utc),
                "completed_at": None,
                "duration_ms": None,
                "error": None,
            }),
            updated_at=datetime.now(timezone.utc),
        )
        run = _ValidationRun(self, image)
        started = time.perf_counter()

        error = None
        try:
            status, reason = run.execute()
        except Exception as exc:
            logger.exception("Image %s: processing failed", image_id)
            status, reason = "ERROR", None
            error = str(exc) or type(exc).__name__

        duration_ms = int((time.perf_counter() - started) * 1000)
        now = datetime.now(timezone.utc)
        try:
            self.store.update_image(
                image_id,
                status=status,
                rejection_reason=reason,
                processing_info=run.image.processing_info.model_copy(update={
                    "completed_at": now,
                    "duration_ms": duration_ms,
                    "error": error,
                }),
                updated_at=now,
            )
        finally:
            if self.ledger is not None:
                self.ledger.release(image.batch_id, image_id)

        if status == "REJECTED":
            logger.info("Image %s: REJECTED: %s (%d ms)", image_id, reason, duration_ms)
        else:
            logger.info("Image %s: %s (%d ms)", image_id, status, duration_ms)

        self.aggregator.recompute(image.batch_id)
        return status


class _ValidationRun:
    """State of a single pass through the chain. `image` always reflects what
    has been written to the store so far."""

    def __init__(self, orchestrator: Orchestrator, image: ImageRecord) -> None:
        self.store = orchestrator.store
        self.blobs = orchestrator.blobs
        self.detector = orchestrator.detector
        self.settings = orchestrator.settings
        self.ledger = orchestrator.ledger
        self.image = image

    def execute(self) -> tuple[ImageStatus, str | None]:
        settings = self.settings
        data = self.blobs.get(self.image.blob_key)

        normalized = stage1_normalize.run(data, self.image.declared_mime_type)
        self._update(
            width=normalized.width,
            height=normalized.height,
            mime_type=normalized.mime_type,
            processing_info=self.image.processing_info.model_copy(
                update={"converted_from_alternate": normalized.converted}
            ),
        )

        verdict = stage2_geometry.run(normalized.width, normalized.height, settings)
        if not self._record(verdict):
            return "REJECTED", verdict.reason

        fingerprint = stage3_hash.run(normalized.data)

        verdict = stage4_duplicates.run(self.image, fingerprint, self.store, settings, self.ledger)
        if not self._record(verdict):
            return "REJECTED", verdict.reason

        score = stage5_sharpness.sharpness_score(normalized.data)
        self._update(hash=fingerprint, sharpness_score=score)

        verdict = stage5_sharpness.run(score, settings)
        if not self._record(verdict):
            return "REJECTED", verdict.reason

        faces = stage6_faces.detect(self.detector, normalized.data, self.image.id)
        metrics = stage6_faces.face_metrics(faces)
        self._update(face_info=metrics)

        for verdict in stage6_faces.run(metrics, settings):
            if not self._record(verdict):
                return "REJECTED", verdict.reason

        return "VALIDATED", None

    def _record(self, verdict: CheckVerdict) -> bool:
        self.store.append_validation_result(self.image.id, verdict.result)
        return verdict.passed

    def _update(self, **fields) -> None:
        fields["updated_at"] = datetime.now(timezone.utc)
        self.image = self.store.update_image(self.image.id, **fields)
