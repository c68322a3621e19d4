"""Stage 4: Duplicates — reject near-copies of photos already accepted in the batch.

A new fingerprint is compared with the fingerprints of every non-deleted
VALIDATED image in the same batch. Duplicates are never looked up across
batches. An exact match is tried first; otherwise every candidate is compared by
Hamming distance and the first one within the threshold wins.

Concurrency: in the default mode two near-identical photos validated at the same
time may both be accepted, because neither is VALIDATED when the other checks.
With `strict_duplicate_checks` the check and a reservation of the fingerprint
happen under a per-batch lock (FingerprintLedger), so concurrently running
images also see each other. The reservation is released by the orchestrator
once the image is terminal. The lock is only held for the comparison itself.
"""
import logging
import threading
from collections.abc import Callable, Iterable

from models.image_record import ImageRecord
from models.validation import CheckVerdict
from pipeline.errors import ComparisonError
from settings import Settings
from utils.record_store import RecordStore

logger = logging.getLogger(__name__)

Candidate = tuple[str, str]  # (image_id, fingerprint)


def hamming_distance(a: str, b: str) -> int:
    """Number of differing bits between two hex fingerprints of equal length."""
    if len(a) != len(b):
        raise ComparisonError(
            f"Hash lengths must be equal (got {len(a)} and {len(b)})"
        )
    if a == b:
        return 0
    try:
        return bin(int(a, 16) ^ int(b, 16)).count("1")
    except ValueError as exc:
        raise ComparisonError(f"Fingerprint is not hexadecimal: {exc}") from exc


def find_duplicate(
    fingerprint: str,
    candidates: Iterable[Candidate],
    threshold: int,
) -> tuple[str, int] | None:
    """Return (image_id, distance) of the first candidate within `threshold`.

    Exact matches take precedence over near matches.
    """
    candidates = list(candidates)
    for image_id, other in candidates:
        if other == fingerprint:
            return image_id, 0

    for image_id, other in candidates:
        distance = hamming_distance(fingerprint, other)
        if distance <= threshold:
            return image_id, distance
    return None


class FingerprintLedger:
    """Per-batch fingerprints of images that passed the duplicate check but are
    not yet terminal. Only used when `strict_duplicate_checks` is enabled."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._pending: dict[str, dict[str, str]] = {}

    def check_and_reserve(
        self,
        batch_id: str,
        image_id: str,
        fingerprint: str,
        accepted: Callable[[], list[Candidate]],
        threshold: int,
    ) -> tuple[str, int] | None:
        with self._lock_for(batch_id):
            pending = [
                (pid, fp) for pid, fp in self._pending.get(batch_id, {}).items()
                if pid != image_id
            ]
            match = find_duplicate(fingerprint, accepted() + pending, threshold)
            if match is None:
                self._pending.setdefault(batch_id, {})[image_id] = fingerprint
            return match

    def release(self, batch_id: str, image_id: str) -> None:
        with self._lock_for(batch_id):
            reserved = self._pending.get(batch_id)
            if reserved is not None:
                reserved.pop(image_id, None)
                if not reserved:
                    del self._pending[batch_id]

    def pending(self, batch_id: str) -> dict[str, str]:
        with self._lock_for(batch_id):
            return dict(self._pending.get(batch_id, {}))

    def _lock_for(self, batch_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(batch_id, threading.Lock())


def run(
    image: ImageRecord,
    fingerprint: str,
    store: RecordStore,
    settings: Settings,
    ledger: FingerprintLedger | None = None,
) -> CheckVerdict:
    threshold = settings.duplicate_hamming_threshold

    def accepted() -> list[Candidate]:
        return _accepted_fingerprints(store, image)

    if ledger is not None:
        match = ledger.check_and_reserve(image.batch_id, image.id, fingerprint, accepted, threshold)
    else:
        match = find_duplicate(fingerprint, accepted(), threshold)

    if match is None:
        return CheckVerdict.ok("HASH_DUPLICATE", detail={"hash": fingerprint})

    duplicate_id, distance = match
    logger.debug("Image %s matches %s (distance %d)", image.id, duplicate_id, distance)
    return CheckVerdict.fail(
        "HASH_DUPLICATE",
        f"Duplicate image detected. Similar to image with ID: {duplicate_id}",
        numeric_value=float(distance),
        detail={"hash": fingerprint, "duplicate_of": duplicate_id, "threshold": threshold},
    )


def _accepted_fingerprints(store: RecordStore, image: ImageRecord) -> list[Candidate]:
    return [
        (other.id, other.hash)
        for other in store.list_images(batch_id=image.batch_id, statuses=["VALIDATED"])
        if other.id != image.id and other.hash
    ]
