"""SuaTalk Analysis - Handler result types.

Handlers report their outcome as a HandlerResult instead of raising; the
scheduler decides retry-vs-abort from its ErrorKind.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from analysis.errors import ErrorKind

if TYPE_CHECKING:
    from analysis.job_store import JobRecord


@dataclass(frozen=True, slots=True)
class HandlerResult:
    """Outcome of one handler invocation.

    Attributes:
        ok: True if the job's work is done (including idempotent no-ops).
        error_kind: Failure classification when ok is False.
        message: Human-readable failure reason.
        retry: Whether the scheduler should reschedule this job. A handler
            that arranges its own follow-up work returns retry=False.
        metrics: Free-form details for logging.
    """

    ok: bool
    error_kind: ErrorKind | None = None
    message: str | None = None
    retry: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **metrics: Any) -> HandlerResult:
        return cls(ok=True, metrics=metrics)

    @classmethod
    def skipped(cls, reason: str) -> HandlerResult:
        """Successful no-op (idempotent dispatch)."""
        return cls(ok=True, metrics={"skipped": reason})

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        retry: bool | None = None,
    ) -> HandlerResult:
        """Build a failed result; retry defaults to the kind's classification."""
        return cls(
            ok=False,
            error_kind=kind,
            message=message,
            retry=kind.retryable if retry is None else retry,
        )


JobHandler = Callable[["JobRecord"], Awaitable[HandlerResult]]
