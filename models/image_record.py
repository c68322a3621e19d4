from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from models.faces import FaceMetrics

ImageStatus = Literal["UPLOADED", "PROCESSING", "VALIDATED", "REJECTED", "ERROR"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"VALIDATED", "REJECTED", "ERROR"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingInfo(BaseModel):
    """Timing and fault information for one validation run.

    Always written on completion, including runs that end in ERROR.
    """

    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    converted_from_alternate: bool = False
    error: str | None = None


class ImageRecord(BaseModel):
    """A single uploaded photo and its validation state.

    `original_name`, `size_bytes` and `declared_mime_type` describe the upload
    and are never changed. `width`, `height` and `mime_type` are updated once
    the buffer has been normalized.

    `rejection_reason` is present iff `status == "REJECTED"`. `hash` and
    `sharpness_score` are present iff the chain reached the sharpness stage.
    """

    id: str
    user_id: str
    batch_id: str
    original_name: str
    size_bytes: int = Field(ge=0)
    declared_mime_type: str
    blob_key: str
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    mime_type: str
    status: ImageStatus = "PROCESSING"
    rejection_reason: str | None = None
    hash: str | None = None
    sharpness_score: float | None = None
    processing_info: ProcessingInfo = Field(default_factory=ProcessingInfo)
    face_info: FaceMetrics | None = None
    is_deleted: bool = False
    uploaded_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("uploaded_at", "updated_at", mode="before")
    @classmethod
    def ensure_utc(cls, v: datetime | str) -> datetime | str:
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def reason_matches_status(self) -> "ImageRecord":
        if (self.status == "REJECTED") != bool(self.rejection_reason):
            raise ValueError("rejection_reason must be set iff status is REJECTED")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
