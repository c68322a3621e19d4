from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    openai_api_key: str

    data_dir: Path = Path("./data")
    min_image_width: int = 250
    min_image_height: int = 250
    sharpness_threshold: float = 10.0
    min_face_area_percent: float = 4.0
    duplicate_hamming_threshold: int = 3
    allowed_mime_types: Annotated[list[str], NoDecode] = ["image/jpeg", "image/png", "image/heic"]
    max_upload_bytes: int = 10 * 1024 * 1024
    vision_model: str = "gpt-5"
    face_detection_timeout_s: float = 30.0
    strict_duplicate_checks: bool = False
    max_workers: int = 4
    worker_max_attempts: int = 3
    worker_backoff_s: float = 1.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PHOTOGATE_",
        env_file_encoding="utf-8",
    )

    @field_validator("allowed_mime_types", mode="before")
    @classmethod
    def split_mime_types(cls, v: str | list[str]) -> list[str]:
        # Environment values arrive as "image/jpeg,image/png"
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("min_image_width", "min_image_height", "max_upload_bytes",
                     "max_workers", "worker_max_attempts")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("sharpness_threshold", "duplicate_hamming_threshold",
                     "face_detection_timeout_s", "worker_backoff_s")
    @classmethod
    def must_not_be_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("min_face_area_percent")
    @classmethod
    def face_area_must_be_percentage(cls, v: float) -> float:
        if not 0.0 <= v <= 100.0:
            raise ValueError("min_face_area_percent must be between 0.0 and 100.0")
        return v

    @property
    def blobs_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def records_dir(self) -> Path:
        return self.data_dir / "records"
