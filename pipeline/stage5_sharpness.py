"""Stage 5: Sharpness — reject out-of-focus photos.

The score is the mean squared response of the discrete Laplacian

     0  1  0
     1 -4  1
     0  1  0

over all interior pixels of the grayscale image (the 1-pixel border is
excluded). Sharp edges give large responses; a blurred or flat image scores
near zero. The convolution is expressed as shifted array slices so the whole
image is processed in a handful of vectorised numpy operations.

Grayscale uses Rec. 709 luma weights (0.2126 R + 0.7152 G + 0.0722 B), not
the Rec. 601 weights of Pillow's `convert("L")`. Scores near the threshold
depend on this choice.
"""
import io

import numpy as np
from PIL import Image

from models.validation import CheckVerdict
from pipeline.errors import ConversionError
from settings import Settings

_REC709_WEIGHTS = np.array([0.2126, 0.7152, 0.0722])


def sharpness_score(data: bytes) -> float:
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = np.asarray(img.convert("RGB"), dtype=np.float64)
    except Exception as exc:
        raise ConversionError(f"Failed to calculate sharpness score: {exc}") from exc
    return laplacian_energy(luma(rgb))


def luma(rgb: np.ndarray) -> np.ndarray:
    """Rec. 709 luma of an (H, W, 3) RGB array."""
    return rgb @ _REC709_WEIGHTS


def laplacian_energy(gray: np.ndarray) -> float:
    """Mean squared 4-neighbour Laplacian response over interior pixels."""
    if gray.ndim != 2 or gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0
    center = gray[1:-1, 1:-1]
    response = (
        gray[:-2, 1:-1]    # up
        + gray[2:, 1:-1]   # down
        + gray[1:-1, :-2]  # left
        + gray[1:-1, 2:]   # right
        - 4.0 * center
    )
    return float(np.mean(np.square(response)))


def run(score: float, settings: Settings) -> CheckVerdict:
    threshold = settings.sharpness_threshold
    detail = {"threshold": threshold}
    if score < threshold:
        return CheckVerdict.fail(
            "SHARPNESS",
            f"Image is too blurry. Sharpness score: {score:.2f}, Threshold: {threshold:g}",
            numeric_value=score,
            detail=detail,
        )
    return CheckVerdict.ok("SHARPNESS", numeric_value=score, detail=detail)
