"""
Error taxonomy for translation jobs.

Every failure the orchestrator can report maps to exactly one ErrorCode,
so callers can branch on the code instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from translate_jobs.database import Status


class ErrorCode(str, Enum):
    """Closed set of job failure codes."""

    HALTED = "halted"
    RATE_LIMITED = "rate_limited"
    TOO_SOON = "too_soon"
    BUSY = "busy"
    INVALID_TRANSITION = "invalid_transition"
    WORK_FAILED = "work_failed"


class TranslateJobsError(Exception):
    """Base class for all job errors."""

    code: ErrorCode = ErrorCode.WORK_FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AdmissionDeniedError(TranslateJobsError):
    """The admission controller refused to start a job."""

    def __init__(self, reason: ErrorCode, message: str, retry_after: float | None = None):
        if reason not in (ErrorCode.HALTED, ErrorCode.RATE_LIMITED, ErrorCode.TOO_SOON):
            raise ValueError(f"Not an admission reason: {reason}")
        super().__init__(message)
        self.code = reason
        self.retry_after = retry_after


class BusyError(TranslateJobsError):
    """Another worker holds the lock for this job key."""

    code = ErrorCode.BUSY

    def __init__(self, job_key: str, message: str | None = None):
        super().__init__(message or f"Job already in progress: {job_key}")
        self.job_key = job_key


class LockNotHeldError(BusyError):
    """A transition was attempted without holding the job key's lock."""

    def __init__(self, job_key: str, owner: str | None):
        super().__init__(job_key, f"Lock for {job_key} is not held by {owner or 'anonymous'}")
        self.owner = owner


class InvalidTransitionError(TranslateJobsError):
    """A status change that is not an edge of the state machine."""

    code = ErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        current: Status | None,
        requested: Status,
        message: str | None = None,
    ):
        current_name = current.value if current is not None else "none"
        super().__init__(
            message or f"Invalid transition: {current_name} -> {requested.value}"
        )
        self.current = current
        self.requested = requested


class WorkFailureError(TranslateJobsError):
    """The unit of work raised after the job started."""

    code = ErrorCode.WORK_FAILED

    def __init__(self, job_key: str, cause: BaseException):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.job_key = job_key
        self.cause = cause


class TranslationFailedError(TranslateJobsError):
    """The translation collaborator reported an unsuccessful translation."""

    code = ErrorCode.WORK_FAILED
