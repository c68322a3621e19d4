"""Stage 1: Normalize — convert camera-native encodings to JPEG.

HEIC/HEIF uploads are decoded and re-encoded as JPEG at a fixed quality so
every later stage sees a format Pillow handles natively. All other buffers pass
through byte-for-byte. In both cases the raster is decoded once to read its
display dimensions.

A buffer that cannot be decoded raises ConversionError; the orchestrator turns
that into ERROR, not REJECTED.
"""
import io
import logging

from PIL import Image
from pillow_heif import register_heif_opener
from pydantic import BaseModel, ConfigDict

from pipeline.errors import ConversionError

logger = logging.getLogger(__name__)

register_heif_opener()

ALTERNATE_MIME_TYPES = frozenset({"image/heic", "image/heif"})
CANONICAL_MIME_TYPE = "image/jpeg"
_JPEG_QUALITY = 90

# EXIF orientation values that swap width/height for display
_TRANSPOSING_ORIENTATIONS = frozenset({5, 6, 7, 8})
_EXIF_ORIENTATION_TAG = 274


class NormalizedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str
    width: int
    height: int
    converted: bool = False


def run(data: bytes, declared_mime_type: str) -> NormalizedImage:
    """Return the canonical buffer for `data`.

    Raises ConversionError if the buffer cannot be decoded.
    """
    if declared_mime_type.lower() in ALTERNATE_MIME_TYPES:
        converted = _convert_to_jpeg(data)
        width, height = read_dimensions(converted)
        logger.debug("Converted %s upload to JPEG (%dx%d)", declared_mime_type, width, height)
        return NormalizedImage(
            data=converted,
            mime_type=CANONICAL_MIME_TYPE,
            width=width,
            height=height,
            converted=True,
        )

    width, height = read_dimensions(data)
    return NormalizedImage(
        data=data,
        mime_type=declared_mime_type,
        width=width,
        height=height,
    )


def read_dimensions(data: bytes) -> tuple[int, int]:
    """Decode `data` and return (width, height) as displayed.

    Raises ConversionError if the buffer is not a readable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            width, height = img.size
            orientation = img.getexif().get(_EXIF_ORIENTATION_TAG, 1)
    except Exception as exc:
        raise ConversionError(f"Failed to decode image: {exc}") from exc

    # Rotated camera photos are stored sideways; report what a viewer sees.
    if orientation in _TRANSPOSING_ORIENTATIONS:
        width, height = height, width
    return width, height


def _convert_to_jpeg(data: bytes) -> bytes:
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = img.convert("RGB")
            exif = img.getexif()
        buf = io.BytesIO()
        rgb.save(buf, format="JPEG", quality=_JPEG_QUALITY, exif=exif.tobytes() if exif else b"")
        return buf.getvalue()
    except Exception as exc:
        raise ConversionError(f"Failed to convert HEIC to JPEG: {exc}") from exc
