"""Stage 3: Hash — perceptual fingerprint for near-duplicate detection.

Uses a DCT perceptual hash of the grayscale image (`imagehash.phash`) with a
16x16 bit grid: 256 bits, serialised as 64 lowercase hex characters.
Recompressed or lightly edited copies of a photo land within a few bits of
each other; unrelated photos differ in roughly half the bits.
"""
import io
import logging

import imagehash
from PIL import Image

from pipeline.errors import HashingError

logger = logging.getLogger(__name__)

HASH_SIZE = 16
FINGERPRINT_LENGTH = HASH_SIZE * HASH_SIZE // 4  # hex characters


def run(data: bytes) -> str:
    """Return the fingerprint of `data`. Raises HashingError on corrupt input."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fingerprint = str(imagehash.phash(img.convert("L"), hash_size=HASH_SIZE))
    except Exception as exc:
        raise HashingError(f"Failed to calculate image hash: {exc}") from exc

    if len(fingerprint) != FINGERPRINT_LENGTH:
        raise HashingError(
            f"Unexpected fingerprint length {len(fingerprint)}, expected {FINGERPRINT_LENGTH}"
        )
    return fingerprint
