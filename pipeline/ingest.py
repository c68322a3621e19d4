"""Upload intake: accept raw bytes into a batch.

Checks the declared mime type and size, probes dimensions, stores the bytes,
creates the image record in PROCESSING and recomputes the batch. Validation
itself is left to the orchestrator/worker.
"""
import logging
import uuid

from models.image_record import ImageRecord, ProcessingInfo
from pipeline.aggregator import BatchAggregator
from pipeline.errors import BatchNotFoundError, ConversionError, UploadRejectedError
from pipeline.stage1_normalize import read_dimensions
from settings import Settings
from utils.blob_store import BlobStore
from utils.record_store import RecordStore

logger = logging.getLogger(__name__)


def ingest_image(
    data: bytes,
    original_name: str,
    mime_type: str,
    batch_id: str,
    user_id: str,
    store: RecordStore,
    blobs: BlobStore,
    settings: Settings,
    aggregator: BatchAggregator,
) -> ImageRecord:
    """Store an upload and create its record.

    Raises UploadRejectedError for a disallowed type or oversized buffer and
    BatchNotFoundError for an unknown batch.
    """
    check_upload(len(data), mime_type, settings)

    if store.get_batch(batch_id) is None:
        raise BatchNotFoundError(f"Batch with ID {batch_id} not found")

    width, height = _probe_dimensions(data, original_name)
    blob_key = blobs.put(data, mime_type)

    image = ImageRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        batch_id=batch_id,
        original_name=original_name,
        size_bytes=len(data),
        declared_mime_type=mime_type,
        blob_key=blob_key,
        width=width,
        height=height,
        mime_type=mime_type,
        status="PROCESSING",
        processing_info=ProcessingInfo(),
    )
    try:
        image = store.create_image(image)
    except Exception:
        blobs.delete(blob_key)
        raise

    logger.debug("Ingested %s as %s (%dx%d)", original_name, image.id, width, height)
    aggregator.recompute(batch_id)
    return image


def check_upload(size_bytes: int, mime_type: str, settings: Settings) -> None:
    if mime_type not in settings.allowed_mime_types:
        raise UploadRejectedError(
            f"File type not allowed. Allowed types: {', '.join(settings.allowed_mime_types)}"
        )
    if size_bytes > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes / (1024 * 1024)
        raise UploadRejectedError(f"File too large. Maximum size is {limit_mb:g}MB")


def _probe_dimensions(data: bytes, original_name: str) -> tuple[int, int]:
    # Best effort: an unreadable upload is still stored and ends in ERROR later
    try:
        return read_dimensions(data)
    except ConversionError as exc:
        logger.warning("Could not read dimensions of %s: %s", original_name, exc)
        return 0, 0
