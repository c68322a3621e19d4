from pydantic import BaseModel, Field


class BoundingBox(BaseModel):
    """Face box as fractions of the image dimensions (0.0–1.0)."""

    width: float = Field(ge=0.0, le=1.0)
    height: float = Field(ge=0.0, le=1.0)
    left: float = Field(ge=0.0, le=1.0)
    top: float = Field(ge=0.0, le=1.0)

    @property
    def area(self) -> float:
        return self.width * self.height


class DetectedFace(BaseModel):
    """One face as reported by the remote face-detection capability."""

    bounding_box: BoundingBox
    confidence: float = Field(ge=0.0, le=100.0)


class FaceMetrics(BaseModel):
    """Derived face metrics stored on the image record as `face_info`.

    `primary_face_area` is a percentage of the total image area (0–100) for
    the largest detected face. Persisted even when the image is rejected.
    """

    face_count: int = Field(ge=0)
    primary_face_area: float = Field(default=0.0, ge=0.0, le=100.0)
    confidence: float = 0.0
    bounding_box: BoundingBox | None = None
