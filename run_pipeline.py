#!/usr/bin/env python3
"""Validate a directory of photos as one batch.

Usage:
    python run_pipeline.py photos/ --user alice                       # ingest + validate
    python run_pipeline.py photos/ --user alice --batch-name "Team"   # custom batch label
    python run_pipeline.py --resume                                   # re-drive unfinished images
"""
import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from settings import Settings
from models.events import ValidationEvent
from pipeline.aggregator import BatchAggregator
from pipeline.errors import UploadRejectedError
from pipeline.ingest import ingest_image
from pipeline.lifecycle import create_batch
from pipeline.orchestrator import Orchestrator
from pipeline.worker import ValidationWorker
from utils.blob_store import LocalBlobStore
from utils.face_detection import OpenAIFaceDetector
from utils.record_store import JsonRecordStore

logger = logging.getLogger("run_pipeline")

_PHOTO_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}


def _log_event(event: ValidationEvent) -> None:
    logger.info("  [%3.0f%%] %s", event.progress * 100, event.message)


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("photos_dir", type=Path, nargs="?",
                        help="Directory of photos to upload as a new batch")
    parser.add_argument("--user", default="local", help="Owner of the batch and images")
    parser.add_argument("--batch-name", dest="batch_name", default=None,
                        help="Batch label (defaults to the directory name)")
    parser.add_argument("--resume", action="store_true",
                        help="Re-drive images left unfinished by an earlier run")
    args = parser.parse_args()

    if args.photos_dir is None and not args.resume:
        parser.error("photos_dir is required unless --resume is given")

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    store = JsonRecordStore(settings.records_dir)
    blobs = LocalBlobStore(settings.blobs_dir)
    aggregator = BatchAggregator(store)
    orchestrator = Orchestrator(
        store, blobs, OpenAIFaceDetector(settings), settings, aggregator=aggregator,
    )

    with ValidationWorker(orchestrator, settings, on_event=_log_event) as worker:
        if args.resume:
            logger.info("=== Resuming unfinished images ===")
            count = worker.resume_pending()
            logger.info("=== Done: %d images re-driven ===", count)
            return

        photos_dir: Path = args.photos_dir
        if not photos_dir.is_dir():
            parser.error(f"Not a directory: {photos_dir}")

        batch = create_batch(store, args.batch_name or photos_dir.name, args.user)

        logger.info("=== Upload: %s ===", photos_dir)
        uploaded = 0
        for path in sorted(photos_dir.iterdir()):
            mime_type = _PHOTO_MIME_TYPES.get(path.suffix.lower())
            if not path.is_file() or mime_type is None:
                continue
            try:
                ingest_image(
                    path.read_bytes(), path.name, mime_type, batch.id, args.user,
                    store, blobs, settings, aggregator,
                )
                uploaded += 1
            except UploadRejectedError as exc:
                logger.warning("  %s — SKIPPED: %s", path.name, exc)
        logger.info("  Uploaded: %d", uploaded)

        logger.info("=== Validate batch %s ===", batch.id)
        batch = worker.validate_batch(batch.id)

    logger.info("=== Done → batch %s: %s ===", batch.id, batch.status)
    logger.info("  Total:     %d", batch.total_images)
    logger.info("  Valid:     %d", batch.valid_images)
    logger.info("  Rejected:  %d", batch.rejected_images)
    logger.info("  Errors:    %d", batch.error_images)


if __name__ == "__main__":
    main()
