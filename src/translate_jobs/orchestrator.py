"""
Job orchestrator.

Runs one translation job end to end:

    emergency stop -> admission -> lock -> processing -> work
        -> completed | error -> release lock -> usage record

Rejections (halted, rate limited, too soon, busy, invalid transition) are
reported to the caller and never retried here. Failures inside the work
move the relationship to error; the lock is released on every exit path.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from translate_jobs.database import Status
from translate_jobs.emergency import EmergencyStop
from translate_jobs.errors import (
    AdmissionDeniedError,
    BusyError,
    ErrorCode,
    InvalidTransitionError,
    TranslateJobsError,
    WorkFailureError,
)
from translate_jobs.jobs import JobKey, JobKind
from translate_jobs.locks import LockManager
from translate_jobs.ratelimit import AdmissionController
from translate_jobs.state import TranslationStateMachine, can_transition
from translate_jobs.usage import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class WorkResult:
    """What a unit of work hands back to the orchestrator."""

    target_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, Any] = field(default_factory=dict)


Work = Callable[[], Awaitable["WorkResult | None"]]


@dataclass
class JobResult:
    """Outcome of a job request, as reported to callers."""

    success: bool
    job_key: str
    data: dict[str, Any] = field(default_factory=dict)
    error_code: ErrorCode | None = None
    message: str = ""
    retry_after: float | None = None

    @classmethod
    def ok(cls, job_key: str, data: dict[str, Any], message: str = "") -> JobResult:
        return cls(success=True, job_key=job_key, data=data, message=message)

    @classmethod
    def from_error(cls, job_key: str, error: TranslateJobsError) -> JobResult:
        """Map a job error onto the response surface."""
        return cls(
            success=False,
            job_key=job_key,
            error_code=error.code,
            message=error.message,
            retry_after=getattr(error, "retry_after", None),
        )

    def to_dict(self) -> dict[str, Any]:
        """Response surface: {success, data | error_code, message}."""
        if self.success:
            return {"success": True, "data": self.data, "message": self.message}
        result: dict[str, Any] = {
            "success": False,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.message,
        }
        if self.retry_after is not None:
            result["retry_after"] = round(self.retry_after, 3)
        return result


class JobOrchestrator:
    """Composes admission, locking and state tracking around a unit of work."""

    def __init__(
        self,
        emergency: EmergencyStop,
        admission: AdmissionController,
        locks: LockManager,
        state: TranslationStateMachine,
        usage: UsageRecorder | None = None,
    ):
        missing = [
            name
            for name, value in (
                ("emergency", emergency),
                ("admission", admission),
                ("locks", locks),
                ("state", state),
            )
            if value is None
        ]
        if missing:
            raise ValueError(f"JobOrchestrator is missing collaborators: {', '.join(missing)}")
        if state.locks is None:
            raise ValueError("The state machine must be bound to the lock manager")

        self.emergency = emergency
        self.admission = admission
        self.locks = locks
        self.state = state
        self.usage = usage

    async def run(self, job_key: str | JobKey, work: Work) -> JobResult:
        """
        Run work under the job key, at most once concurrently.

        Args:
            job_key: `translate:{source}:{lang}` or `update:{source}:{target}`.
            work: Async callable doing the translation and writing the target.

        Returns:
            JobResult; failures carry an ErrorCode.

        Raises:
            ValueError: If job_key is malformed.
        """
        key = JobKey.parse(job_key)
        key_str = str(key)

        try:
            source_id, language = self._resolve(key)
            self._preflight(source_id, language)
            self._admit(key_str)
            owner = uuid.uuid4().hex
            if not self.locks.acquire(key_str, owner=owner):
                raise BusyError(key_str)
        except TranslateJobsError as e:
            if isinstance(e, InvalidTransitionError):
                logger.error("Rejected %s: %s", key_str, e.message)
            result = JobResult.from_error(key_str, e)
            self._record(key, result)
            return result

        try:
            result = await self._execute(key_str, source_id, language, owner, work)
        finally:
            self.locks.release(key_str, owner)

        self._record(key, result)
        return result

    def _resolve(self, key: JobKey) -> tuple[int, str]:
        """Find the (source, language) relationship a job key addresses."""
        if key.kind == JobKind.TRANSLATE:
            return key.source_id, key.language

        rel = self.state.get_by_target(key.target_id)
        if rel is None or rel.source_id != key.source_id:
            raise InvalidTransitionError(
                None,
                Status.PROCESSING,
                f"Post {key.target_id} is not a translation of post {key.source_id}",
            )
        return rel.source_id, rel.language

    def _preflight(self, source_id: int, language: str) -> None:
        """
        Reject jobs whose relationship cannot start, before spending a call slot.

        A processing relationship is left to the lock: a live worker makes the
        job busy, an abandoned one is recovered once the lock is taken.
        """
        status = self.state.get_status(source_id, language)
        if status in (None, Status.PROCESSING):
            return
        if not can_transition(status, Status.PROCESSING):
            raise InvalidTransitionError(
                status,
                Status.PROCESSING,
                f"Translation of post {source_id} into {language} is {status.value}",
            )

    def _admit(self, key_str: str) -> None:
        if self.emergency.is_active():
            state = self.emergency.state()
            raise AdmissionDeniedError(
                ErrorCode.HALTED,
                f"Emergency stop is active: {state.reason or 'no reason given'}",
            )
        admission = self.admission.check_and_reserve()
        admission.raise_for_denial()
        if admission.emergency_tripped:
            logger.warning("Job %s crossed the emergency threshold; later jobs are halted", key_str)

    async def _execute(
        self,
        key_str: str,
        source_id: int,
        language: str,
        owner: str,
        work: Work,
    ) -> JobResult:
        try:
            self.state.ensure(source_id, language)
            self.state.recover_abandoned(source_id, language, job_key=key_str, owner=owner)
            self.state.transition(
                source_id, language, Status.PROCESSING, job_key=key_str, owner=owner
            )
        except InvalidTransitionError as e:
            logger.error("Cannot start %s: %s", key_str, e.message)
            return JobResult.from_error(key_str, e)
        except BusyError as e:
            return JobResult.from_error(key_str, e)

        try:
            output = await work() or WorkResult()
        except BaseException as e:
            failure = WorkFailureError(key_str, e)
            if isinstance(e, Exception):
                logger.warning("Job %s failed: %s", key_str, failure.message, exc_info=True)
            else:
                logger.warning("Job %s interrupted: %s", key_str, type(e).__name__)
            try:
                self.state.transition(
                    source_id,
                    language,
                    Status.ERROR,
                    job_key=key_str,
                    owner=owner,
                    error_message=failure.message,
                )
            except TranslateJobsError as commit_error:
                logger.error("Could not record failure of %s: %s", key_str, commit_error.message)
            if not isinstance(e, Exception):
                raise
            return JobResult.from_error(key_str, failure)

        try:
            rel = self.state.transition(
                source_id,
                language,
                Status.COMPLETED,
                job_key=key_str,
                owner=owner,
                target_id=output.target_id,
            )
        except TranslateJobsError as e:
            logger.error("Could not complete %s: %s", key_str, e.message)
            return JobResult.from_error(key_str, e)

        data = {
            "source_id": source_id,
            "language": language,
            "target_id": rel.target_id,
            "status": rel.status.value,
            **output.data,
        }
        if output.usage:
            data["usage"] = output.usage
        return JobResult.ok(key_str, data, message="Translation completed")

    def _record(self, key: JobKey, result: JobResult) -> None:
        if self.usage is None:
            return
        data: dict[str, Any] = {"source_id": key.source_id}
        if key.language:
            data["language"] = key.language
        if key.target_id is not None:
            data["target_id"] = key.target_id
        if result.success:
            data.update({k: v for k, v in result.data.items() if k in ("target_id", "usage")})
        else:
            data["message"] = result.message
        self.usage.record(
            key.kind.value,
            job_key=str(key),
            success=result.success,
            error_code=result.error_code.value if result.error_code else None,
            data=data,
        )
