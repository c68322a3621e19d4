from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CheckKind = Literal["GEOMETRY", "HASH_DUPLICATE", "SHARPNESS", "FACE_COUNT", "FACE_AREA"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationResult(BaseModel):
    """One audit row per executed check.

    Rows are append-only: the model is frozen so a stored row can never be
    edited in place. `detail` carries check-specific structured data
    (e.g. required vs. actual dimensions, the matching image id).
    """

    model_config = ConfigDict(frozen=True)

    kind: CheckKind
    passed: bool
    numeric_value: float | None = None
    detail: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class CheckVerdict(BaseModel):
    """Outcome of a content-policy check: the audit row plus, on failure, the
    human-readable reason that becomes the image's `rejection_reason`."""

    result: ValidationResult
    reason: str | None = None

    @property
    def passed(self) -> bool:
        return self.result.passed

    @classmethod
    def ok(cls, kind: CheckKind, numeric_value: float | None = None,
           detail: dict[str, Any] | None = None) -> "CheckVerdict":
        return cls(result=ValidationResult(
            kind=kind, passed=True, numeric_value=numeric_value, detail=detail,
        ))

    @classmethod
    def fail(cls, kind: CheckKind, reason: str, numeric_value: float | None = None,
             detail: dict[str, Any] | None = None) -> "CheckVerdict":
        return cls(
            result=ValidationResult(
                kind=kind, passed=False, numeric_value=numeric_value, detail=detail,
            ),
            reason=reason,
        )
