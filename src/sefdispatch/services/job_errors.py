"""
Job outcomes.

Handlers report how a job ended by returning a ``JobOutcome``; the worker
reads ``classification`` to decide between completion, backoff retry and
permanent failure.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class ErrorClass(str, enum.Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class OutcomeKind(str, enum.Enum):
    OK = "ok"
    RESCHEDULED = "rescheduled"
    RETRYABLE = ErrorClass.RETRYABLE.value
    FATAL = ErrorClass.FATAL.value


@dataclass(frozen=True)
class JobOutcome:
    kind: OutcomeKind
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    reason: Optional[str] = None  # short metrics label, e.g. "validation"

    @classmethod
    def ok(cls, **result: Any) -> "JobOutcome":
        return cls(OutcomeKind.OK, result=result)

    @classmethod
    def rescheduled(cls, **result: Any) -> "JobOutcome":
        return cls(OutcomeKind.RESCHEDULED, result={"rescheduled": True, **result})

    @classmethod
    def retryable(cls, error: str, *, reason: str = "retryable", **result: Any) -> "JobOutcome":
        return cls(OutcomeKind.RETRYABLE, result=result, error=error, reason=reason)

    @classmethod
    def fatal(cls, error: str, *, reason: str = "fatal", **result: Any) -> "JobOutcome":
        return cls(OutcomeKind.FATAL, result=result, error=error, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.kind in (OutcomeKind.OK, OutcomeKind.RESCHEDULED)

    @property
    def classification(self) -> Optional[ErrorClass]:
        if self.succeeded:
            return None
        return ErrorClass(self.kind.value)
