"""Batch aggregation — fold image outcomes into batch counters and status.

Counters are recomputed from the current non-deleted images on every call and
never incremented in place, so redundant or out-of-order invocations converge on
the same result. Recompute-then-write is serialised per batch so the
`completed_at` transition is decided against the latest stored state.
"""
import logging
import threading
from collections import Counter
from datetime import datetime, timezone

from models.batch import BatchRecord, BatchStatus
from models.image_record import TERMINAL_STATUSES, ImageRecord
from pipeline.errors import BatchNotFoundError
from utils.record_store import RecordStore

logger = logging.getLogger(__name__)


def derive_status(images: list[ImageRecord]) -> BatchStatus:
    """PROCESSING while any image is in flight (or the batch is empty);
    otherwise COMPLETED, or FAILED if any image ended in ERROR."""
    if not images or any(img.status not in TERMINAL_STATUSES for img in images):
        return "PROCESSING"
    if any(img.status == "ERROR" for img in images):
        return "FAILED"
    return "COMPLETED"


class BatchAggregator:
    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def recompute(self, batch_id: str) -> BatchRecord:
        with self._lock_for(batch_id):
            batch = self.store.get_batch(batch_id)
            if batch is None:
                raise BatchNotFoundError(f"Batch with ID {batch_id} not found")

            images = self.store.list_images(batch_id=batch_id)
            counts = Counter(img.status for img in images)
            status = derive_status(images)

            now = datetime.now(timezone.utc)
            if status == "PROCESSING":
                completed_at = None
            elif batch.is_terminal and batch.completed_at is not None:
                completed_at = batch.completed_at
            else:
                completed_at = now

            updated = batch.model_copy(update={
                "status": status,
                "total_images": len(images),
                "valid_images": counts["VALIDATED"],
                "rejected_images": counts["REJECTED"],
                "error_images": counts["ERROR"],
                "completed_at": completed_at,
                "updated_at": now,
            })
            self.store.save_batch(updated)

        if status != batch.status:
            logger.info(
                "Batch %s: %s → %s (%d/%d processed, %d valid, %d rejected, %d errors)",
                batch_id, batch.status, status, updated.processed_images,
                updated.total_images, updated.valid_images,
                updated.rejected_images, updated.error_images,
            )
        return updated

    def _lock_for(self, batch_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(batch_id, threading.Lock())
