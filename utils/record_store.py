"""Record storage for batches, images and their validation audit trail.

The pipeline talks to the `RecordStore` protocol only. Two adapters are provided:

  InMemoryRecordStore  — dict-backed, for tests and single-process runs.
  JsonRecordStore      — one JSON file per record under a root directory,
                         audit rows appended as JSON lines.

Both return copies of stored models, so callers never share mutable state with
the store, and both give read-your-writes within one process.

Writers that own only part of a record (the validation chain, soft delete)
use `update_image`, which applies the given fields to the latest stored copy
under the store lock. `save_image` replaces the whole record.
"""
import logging
import os
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from models.batch import BatchRecord
from models.image_record import ImageRecord
from models.validation import ValidationResult

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """The store could not read or write a record."""


class RecordStore(Protocol):
    def create_batch(self, batch: BatchRecord) -> BatchRecord: ...

    def get_batch(self, batch_id: str) -> BatchRecord | None: ...

    def save_batch(self, batch: BatchRecord) -> BatchRecord: ...

    def delete_batch(self, batch_id: str) -> None: ...

    def list_batches(self, user_id: str | None = None) -> list[BatchRecord]: ...

    def create_image(self, image: ImageRecord) -> ImageRecord: ...

    def get_image(self, image_id: str) -> ImageRecord | None: ...

    def save_image(self, image: ImageRecord) -> ImageRecord: ...

    def update_image(self, image_id: str, **fields) -> ImageRecord: ...

    def delete_image(self, image_id: str) -> None: ...

    def list_images(
        self,
        batch_id: str | None = None,
        statuses: Iterable[str] | None = None,
        include_deleted: bool = False,
    ) -> list[ImageRecord]: ...

    def append_validation_result(self, image_id: str, result: ValidationResult) -> None: ...

    def list_validation_results(self, image_id: str) -> list[ValidationResult]: ...

    def delete_validation_results(self, image_id: str) -> None: ...


def _filter_images(
    images: Iterable[ImageRecord],
    batch_id: str | None,
    statuses: Iterable[str] | None,
    include_deleted: bool,
) -> list[ImageRecord]:
    wanted = frozenset(statuses) if statuses is not None else None
    selected = [
        img for img in images
        if (batch_id is None or img.batch_id == batch_id)
        and (wanted is None or img.status in wanted)
        and (include_deleted or not img.is_deleted)
    ]
    return sorted(selected, key=lambda img: (img.uploaded_at, img.id))


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryRecordStore:
    def __init__(self) -> None:
        self._batches: dict[str, BatchRecord] = {}
        self._images: dict[str, ImageRecord] = {}
        self._audit: dict[str, list[ValidationResult]] = {}
        self._lock = threading.RLock()

    # Batches

    def create_batch(self, batch: BatchRecord) -> BatchRecord:
        with self._lock:
            if batch.id in self._batches:
                raise RecordStoreError(f"Batch {batch.id} already exists")
            self._batches[batch.id] = batch.model_copy(deep=True)
        return batch.model_copy(deep=True)

    def get_batch(self, batch_id: str) -> BatchRecord | None:
        with self._lock:
            batch = self._batches.get(batch_id)
            return batch.model_copy(deep=True) if batch else None

    def save_batch(self, batch: BatchRecord) -> BatchRecord:
        with self._lock:
            if batch.id not in self._batches:
                raise RecordStoreError(f"Batch {batch.id} does not exist")
            self._batches[batch.id] = batch.model_copy(deep=True)
        return batch.model_copy(deep=True)

    def delete_batch(self, batch_id: str) -> None:
        with self._lock:
            self._batches.pop(batch_id, None)

    def list_batches(self, user_id: str | None = None) -> list[BatchRecord]:
        with self._lock:
            batches = [
                b.model_copy(deep=True) for b in self._batches.values()
                if user_id is None or b.user_id == user_id
            ]
        return sorted(batches, key=lambda b: b.created_at, reverse=True)

    # Images

    def create_image(self, image: ImageRecord) -> ImageRecord:
        with self._lock:
            if image.id in self._images:
                raise RecordStoreError(f"Image {image.id} already exists")
            self._images[image.id] = image.model_copy(deep=True)
        return image.model_copy(deep=True)

    def get_image(self, image_id: str) -> ImageRecord | None:
        with self._lock:
            image = self._images.get(image_id)
            return image.model_copy(deep=True) if image else None

    def save_image(self, image: ImageRecord) -> ImageRecord:
        with self._lock:
            if image.id not in self._images:
                raise RecordStoreError(f"Image {image.id} does not exist")
            self._images[image.id] = image.model_copy(deep=True)
        return image.model_copy(deep=True)

    def update_image(self, image_id: str, **fields) -> ImageRecord:
        with self._lock:
            current = self._images.get(image_id)
            if current is None:
                raise RecordStoreError(f"Image {image_id} does not exist")
            updated = current.model_copy(update=fields, deep=True)
            self._images[image_id] = updated
            return updated.model_copy(deep=True)

    def delete_image(self, image_id: str) -> None:
        with self._lock:
            self._images.pop(image_id, None)
            self._audit.pop(image_id, None)

    def list_images(
        self,
        batch_id: str | None = None,
        statuses: Iterable[str] | None = None,
        include_deleted: bool = False,
    ) -> list[ImageRecord]:
        with self._lock:
            snapshot = [img.model_copy(deep=True) for img in self._images.values()]
        return _filter_images(snapshot, batch_id, statuses, include_deleted)

    # Audit trail

    def append_validation_result(self, image_id: str, result: ValidationResult) -> None:
        with self._lock:
            self._audit.setdefault(image_id, []).append(result)

    def list_validation_results(self, image_id: str) -> list[ValidationResult]:
        with self._lock:
            return list(self._audit.get(image_id, []))

    def delete_validation_results(self, image_id: str) -> None:
        with self._lock:
            self._audit.pop(image_id, None)


# ---------------------------------------------------------------------------
# JSON files
# ---------------------------------------------------------------------------

class JsonRecordStore:
    """File-backed store.

    Layout under `root`:
        batches/<id>.json
        images/<id>.json
        audit/<image_id>.jsonl   one ValidationResult per line, append-only
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        for subdir in ("batches", "images", "audit"):
            (root / subdir).mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # Batches

    def create_batch(self, batch: BatchRecord) -> BatchRecord:
        with self._lock:
            path = self._batch_path(batch.id)
            if path.exists():
                raise RecordStoreError(f"Batch {batch.id} already exists")
            self._write(path, batch.model_dump_json(indent=2))
        return batch

    def get_batch(self, batch_id: str) -> BatchRecord | None:
        return self._read(self._batch_path(batch_id), BatchRecord)

    def save_batch(self, batch: BatchRecord) -> BatchRecord:
        with self._lock:
            path = self._batch_path(batch.id)
            if not path.exists():
                raise RecordStoreError(f"Batch {batch.id} does not exist")
            self._write(path, batch.model_dump_json(indent=2))
        return batch

    def delete_batch(self, batch_id: str) -> None:
        with self._lock:
            self._batch_path(batch_id).unlink(missing_ok=True)

    def list_batches(self, user_id: str | None = None) -> list[BatchRecord]:
        batches = [
            b for b in self._read_all(self.root / "batches", BatchRecord)
            if user_id is None or b.user_id == user_id
        ]
        return sorted(batches, key=lambda b: b.created_at, reverse=True)

    # Images

    def create_image(self, image: ImageRecord) -> ImageRecord:
        with self._lock:
            path = self._image_path(image.id)
            if path.exists():
                raise RecordStoreError(f"Image {image.id} already exists")
            self._write(path, image.model_dump_json(indent=2))
        return image

    def get_image(self, image_id: str) -> ImageRecord | None:
        return self._read(self._image_path(image_id), ImageRecord)

    def save_image(self, image: ImageRecord) -> ImageRecord:
        with self._lock:
            path = self._image_path(image.id)
            if not path.exists():
                raise RecordStoreError(f"Image {image.id} does not exist")
            self._write(path, image.model_dump_json(indent=2))
        return image

    def update_image(self, image_id: str, **fields) -> ImageRecord:
        # Atomic against other writers in this process only
        with self._lock:
            current = self._read(self._image_path(image_id), ImageRecord)
            if current is None:
                raise RecordStoreError(f"Image {image_id} does not exist")
            updated = current.model_copy(update=fields)
            self._write(self._image_path(image_id), updated.model_dump_json(indent=2))
        return updated

    def delete_image(self, image_id: str) -> None:
        with self._lock:
            self._image_path(image_id).unlink(missing_ok=True)
            self._audit_path(image_id).unlink(missing_ok=True)

    def list_images(
        self,
        batch_id: str | None = None,
        statuses: Iterable[str] | None = None,
        include_deleted: bool = False,
    ) -> list[ImageRecord]:
        images = self._read_all(self.root / "images", ImageRecord)
        return _filter_images(images, batch_id, statuses, include_deleted)

    # Audit trail

    def append_validation_result(self, image_id: str, result: ValidationResult) -> None:
        with self._lock:
            try:
                with self._audit_path(image_id).open("a", encoding="utf-8") as fh:
                    fh.write(result.model_dump_json() + "\n")
            except OSError as exc:
                raise RecordStoreError(f"Could not append audit row for {image_id}: {exc}") from exc

    def list_validation_results(self, image_id: str) -> list[ValidationResult]:
        path = self._audit_path(image_id)
        if not path.exists():
            return []
        lines = path.read_text(encoding="utf-8").splitlines()
        return [ValidationResult.model_validate_json(line) for line in lines if line.strip()]

    def delete_validation_results(self, image_id: str) -> None:
        with self._lock:
            self._audit_path(image_id).unlink(missing_ok=True)

    # Helpers

    def _batch_path(self, batch_id: str) -> Path:
        return self.root / "batches" / f"{batch_id}.json"

    def _image_path(self, image_id: str) -> Path:
        return self.root / "images" / f"{image_id}.json"

    def _audit_path(self, image_id: str) -> Path:
        return self.root / "audit" / f"{image_id}.jsonl"

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        # Write-then-rename so readers never observe a half-written record
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise RecordStoreError(f"Could not write {path.name}: {exc}") from exc

    @staticmethod
    def _read(path: Path, model):
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            raise RecordStoreError(f"Could not read {path.name}: {exc}") from exc

    def _read_all(self, directory: Path, model) -> list:
        records = []
        for path in sorted(directory.glob("*.json")):
            record = self._read(path, model)
            if record is not None:
                records.append(record)
        return records
