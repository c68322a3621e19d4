"""Stage 2: Geometry — enforce minimum raster dimensions."""
from models.validation import CheckVerdict
from settings import Settings


def run(width: int, height: int, settings: Settings) -> CheckVerdict:
    min_w, min_h = settings.min_image_width, settings.min_image_height
    detail = {
        "width": width,
        "height": height,
        "min_width": min_w,
        "min_height": min_h,
    }
    if width < min_w or height < min_h:
        return CheckVerdict.fail(
            "GEOMETRY",
            f"Image resolution too small. Minimum required: {min_w}x{min_h}, "
            f"Got: {width}x{height}",
            numeric_value=float(min(width, height)),
            detail=detail,
        )
    return CheckVerdict.ok("GEOMETRY", numeric_value=float(min(width, height)), detail=detail)
