"""Concurrent validation of many images.

Each image is an independent unit of work on a thread pool. The orchestrator
treats a run as one attempt and records content and format faults itself, so
the only exceptions that reach this layer are store failures that prevented a
terminal write. Those are retried here with exponential backoff and jitter.
Caller errors (unknown image, already terminal) are not retried.

Images left non-terminal by a shutdown are picked up again by
`resume_pending()`; partial stage results are not resumed, the chain restarts.
"""
import logging
import random
import time as time_module
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed

from pydantic import BaseModel, ConfigDict, Field

from models.batch import BatchRecord
from models.events import ValidationEvent
from models.image_record import ImageStatus
from pipeline.orchestrator import Orchestrator
from settings import Settings
from utils.record_store import RecordStoreError

logger = logging.getLogger(__name__)

_PENDING_STATUSES = ("UPLOADED", "PROCESSING")
_RETRYABLE = (RecordStoreError, OSError)


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0.0)

    def delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt + 1` (attempt counts from 0)."""
        return self.base_delay_s * 2 ** attempt + random.uniform(0, self.base_delay_s)


class ValidationWorker:
    def __init__(
        self,
        orchestrator: Orchestrator,
        settings: Settings,
        on_event: Callable[[ValidationEvent], None] | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.on_event = on_event
        self.retry = retry or RetryPolicy(
            max_attempts=settings.worker_max_attempts,
            base_delay_s=settings.worker_backoff_s,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_workers,
            thread_name_prefix="validate",
        )

    def __enter__(self) -> "ValidationWorker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def submit(self, image_id: str) -> "Future[ImageStatus]":
        return self._executor.submit(self._validate_with_retry, image_id)

    def validate_batch(self, batch_id: str) -> BatchRecord:
        """Validate every pending, non-deleted image of a batch and return the
        recomputed batch."""
        pending = self.store.list_images(batch_id=batch_id, statuses=_PENDING_STATUSES)
        logger.info("Batch %s: validating %d images", batch_id, len(pending))

        futures = {self.submit(image.id): image for image in pending}
        for done, future in enumerate(as_completed(futures), start=1):
            image = futures[future]
            try:
                status = future.result()
            except Exception:
                logger.exception("Image %s (%s) could not be validated", image.id, image.original_name)
                continue
            self._emit(batch_id, image.id, image.original_name, status, done / len(futures))

        return self.orchestrator.aggregator.recompute(batch_id)

    def resume_pending(self) -> int:
        """Re-drive images left non-terminal (e.g. by a restart). Returns how
        many images were picked up."""
        pending = self.store.list_images(statuses=_PENDING_STATUSES)
        for batch_id in sorted({image.batch_id for image in pending}):
            self.validate_batch(batch_id)
        return len(pending)

    def _validate_with_retry(self, image_id: str) -> ImageStatus:
        for attempt in range(self.retry.max_attempts):
            try:
                if attempt > 0:
                    # An earlier attempt may have written the terminal state before failing
                    image = self.store.get_image(image_id)
                    if image is not None and image.is_terminal:
                        self.orchestrator.aggregator.recompute(image.batch_id)
                        return image.status
                return self.orchestrator.validate(image_id)
            except _RETRYABLE as exc:
                if attempt == self.retry.max_attempts - 1:
                    raise
                delay = self.retry.delay(attempt)
                logger.warning(
                    "Image %s: %s; retrying in %.1fs (attempt %d/%d).",
                    image_id, exc, delay, attempt + 1, self.retry.max_attempts,
                )
                time_module.sleep(delay)

        raise RuntimeError("Unreachable")  # pragma: no cover

    def _emit(self, batch_id: str, image_id: str, name: str, status: ImageStatus, progress: float) -> None:
        if self.on_event is None:
            return
        image = self.store.get_image(image_id)
        reason = image.rejection_reason if image is not None else None
        self.on_event(ValidationEvent(
            batch_id=batch_id,
            image_id=image_id,
            status=status,
            progress=min(1.0, progress),
            message=f"{name}: {status}" + (f" ({reason})" if reason else ""),
            payload={"rejection_reason": reason} if reason else None,
        ))
