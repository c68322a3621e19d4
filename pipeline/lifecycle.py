"""Batch and image lifecycle operations outside the validation chain.

Soft delete hides an image from batch counters and duplicate checks but keeps
the record and its audit trail; restore reverses it. Hard delete removes the
record, its audit rows and its blob. Neither changes an image's status.
"""
import logging
import uuid
from collections.abc import Iterable

from models.batch import BatchRecord, BatchStatus
from models.image_record import ImageRecord
from models.validation import ValidationResult
from pipeline.aggregator import BatchAggregator
from pipeline.errors import BatchNotFoundError, ImageNotFoundError, InvalidTransitionError
from utils.blob_store import BlobStore
from utils.record_store import RecordStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

def create_batch(
    store: RecordStore,
    name: str,
    user_id: str,
    description: str | None = None,
) -> BatchRecord:
    batch = BatchRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        name=name,
        description=description,
        status="PROCESSING",
    )
    logger.info("Created batch %s (%s)", batch.id, name)
    return store.create_batch(batch)


def get_batch(store: RecordStore, batch_id: str) -> BatchRecord:
    batch = store.get_batch(batch_id)
    if batch is None:
        raise BatchNotFoundError(f"Batch with ID {batch_id} not found")
    return batch


def list_batches(
    store: RecordStore,
    user_id: str | None = None,
    status: BatchStatus | None = None,
) -> list[BatchRecord]:
    return [
        b for b in store.list_batches(user_id=user_id)
        if status is None or b.status == status
    ]


def delete_batch(store: RecordStore, blobs: BlobStore, batch_id: str) -> BatchRecord:
    """Hard-delete a batch together with all of its images."""
    batch = get_batch(store, batch_id)
    images = store.list_images(batch_id=batch_id, include_deleted=True)
    for image in images:
        _remove_image(store, blobs, image)
    store.delete_batch(batch_id)
    logger.info("Deleted batch %s with %d images", batch_id, len(images))
    return batch


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def get_image(store: RecordStore, image_id: str, include_deleted: bool = False) -> ImageRecord:
    image = store.get_image(image_id)
    if image is None or (image.is_deleted and not include_deleted):
        raise ImageNotFoundError(f"Image with ID {image_id} not found")
    return image


def list_images(
    store: RecordStore,
    batch_id: str | None = None,
    statuses: Iterable[str] | None = None,
    include_deleted: bool = False,
) -> list[ImageRecord]:
    return store.list_images(batch_id=batch_id, statuses=statuses, include_deleted=include_deleted)


def list_deleted_images(store: RecordStore, batch_id: str | None = None) -> list[ImageRecord]:
    return [
        img for img in store.list_images(batch_id=batch_id, include_deleted=True)
        if img.is_deleted
    ]


def validation_results(store: RecordStore, image_id: str) -> list[ValidationResult]:
    get_image(store, image_id, include_deleted=True)
    return store.list_validation_results(image_id)


def soft_delete_image(
    store: RecordStore,
    aggregator: BatchAggregator,
    image_id: str,
) -> ImageRecord:
    image = get_image(store, image_id)
    deleted = store.update_image(image_id, is_deleted=True)
    aggregator.recompute(image.batch_id)
    return deleted


def restore_image(
    store: RecordStore,
    aggregator: BatchAggregator,
    image_id: str,
) -> ImageRecord:
    image = get_image(store, image_id, include_deleted=True)
    if not image.is_deleted:
        raise InvalidTransitionError(f"Image with ID {image_id} is not deleted")
    restored = store.update_image(image_id, is_deleted=False)
    aggregator.recompute(image.batch_id)
    return restored


def hard_delete_image(
    store: RecordStore,
    blobs: BlobStore,
    aggregator: BatchAggregator,
    image_id: str,
) -> ImageRecord:
    image = get_image(store, image_id, include_deleted=True)
    _remove_image(store, blobs, image)
    if store.get_batch(image.batch_id) is not None:
        aggregator.recompute(image.batch_id)
    return image


def _remove_image(store: RecordStore, blobs: BlobStore, image: ImageRecord) -> None:
    store.delete_validation_results(image.id)
    store.delete_image(image.id)
    blobs.delete(image.blob_key)
