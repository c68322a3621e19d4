from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, computed_field

BatchStatus = Literal["PROCESSING", "COMPLETED", "FAILED"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchRecord(BaseModel):
    """A user-defined group of images, validated and aggregated together.

    Counters are owned by the batch aggregator and are always recomputed from
    the current non-deleted images. `processed_images` and `in_flight_images`
    are derived from them and cannot be set directly.
    """

    id: str
    user_id: str
    name: str
    description: str | None = None
    status: BatchStatus = "PROCESSING"
    total_images: int = Field(default=0, ge=0)
    valid_images: int = Field(default=0, ge=0)
    rejected_images: int = Field(default=0, ge=0)
    error_images: int = Field(default=0, ge=0)
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @computed_field  # type: ignore[misc]
    @property
    def processed_images(self) -> int:
        """Images in a terminal state. Included in JSON serialization."""
        return self.valid_images + self.rejected_images + self.error_images

    @computed_field  # type: ignore[misc]
    @property
    def in_flight_images(self) -> int:
        return self.total_images - self.processed_images

    @property
    def is_terminal(self) -> bool:
        return self.status != "PROCESSING"
