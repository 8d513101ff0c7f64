"""Explicit per-stage outcome type for the validation pipeline."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

PayloadT = TypeVar("PayloadT")


class StageStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class StageOutcome(Generic[PayloadT]):
    """Result of one pipeline stage.

    ``degraded`` means the stage produced usable output through its declared
    recovery path; ``reason`` says what was lost. ``failed`` means the
    pipeline cannot continue.
    """

    status: StageStatus
    payload: Optional[PayloadT] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, payload: Any = None) -> "StageOutcome":
        return cls(status=StageStatus.SUCCESS, payload=payload)

    @classmethod
    def degraded(cls, reason: str, payload: Any = None) -> "StageOutcome":
        return cls(status=StageStatus.DEGRADED, payload=payload, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "StageOutcome":
        return cls(status=StageStatus.FAILED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.status != StageStatus.FAILED

    def merge(self, other: "StageOutcome") -> "StageOutcome":
        """Combine two sub-outcomes of one stage; the worse status wins."""
        order = [StageStatus.SUCCESS, StageStatus.DEGRADED, StageStatus.FAILED]
        status = max(self.status, other.status, key=order.index)
        reasons = [r for r in (self.reason, other.reason) if r]
        return StageOutcome(
            status=status,
            payload=other.payload if other.payload is not None else self.payload,
            reason="; ".join(reasons) or None,
        )
