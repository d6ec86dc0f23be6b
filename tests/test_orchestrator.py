"""
Tests for the job orchestrator.

Each test drives a full job through emergency stop, admission, locking,
state transitions and usage recording.
"""

import asyncio

import pytest

from translate_jobs.config import LimitsConfig
from translate_jobs.database import Status
from translate_jobs.errors import ErrorCode
from translate_jobs.jobs import JobKey
from translate_jobs.orchestrator import JobOrchestrator, JobResult, WorkResult
from translate_jobs.ratelimit import AdmissionController
from translate_jobs.state import TranslationStateMachine

KEY = "translate:1:fr"


def returning(target_id=None, **data):
    async def work():
        return WorkResult(target_id=target_id, data=data)

    return work


def failing(exc):
    async def work():
        raise exc

    return work


@pytest.fixture
def make_orchestrator(db, emergency, locks, state, usage, clock):
    def _make(**limits):
        values = {
            "calls_per_hour": 50,
            "calls_per_day": 500,
            "min_interval_seconds": 0,
            "emergency_stop_threshold": 0,
            **limits,
        }
        admission = AdmissionController(db, emergency, LimitsConfig(**values), clock=clock)
        return JobOrchestrator(emergency, admission, locks, state, usage)

    return _make


# =============================================================================
# Successful and failing work
# =============================================================================


class TestRun:
    @pytest.mark.asyncio
    async def test_success_completes_and_releases(self, orchestrator, state, locks, usage):
        result = await orchestrator.run(KEY, returning(target_id=99, title="Bonjour"))

        assert result.success
        assert result.data["target_id"] == 99
        assert result.data["title"] == "Bonjour"
        assert result.data["status"] == "completed"
        assert state.get(1, "fr").status == Status.COMPLETED
        assert state.get(1, "fr").target_id == 99
        assert locks.list_locks() == []

        entry = usage.recent(1)[0]
        assert entry.action == "translate"
        assert entry.job_key == KEY
        assert entry.success is True
        assert entry.data["target_id"] == 99

    @pytest.mark.asyncio
    async def test_work_sees_processing_under_lock(self, orchestrator, state, locks):
        seen = {}

        async def work():
            seen["status"] = state.get_status(1, "fr")
            seen["locked"] = locks.get(KEY) is not None
            return WorkResult(target_id=5)

        await orchestrator.run(KEY, work)
        assert seen == {"status": Status.PROCESSING, "locked": True}

    @pytest.mark.asyncio
    async def test_work_failure_moves_to_error(self, orchestrator, state, locks, usage):
        result = await orchestrator.run(KEY, failing(RuntimeError("provider down")))

        assert not result.success
        assert result.error_code == ErrorCode.WORK_FAILED
        assert "provider down" in result.message

        rel = state.get(1, "fr")
        assert rel.status == Status.ERROR
        assert "provider down" in rel.error_message
        assert locks.list_locks() == []

        entry = usage.recent(1)[0]
        assert entry.success is False
        assert entry.error_code == "work_failed"

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, orchestrator, state):
        await orchestrator.run(KEY, failing(ValueError("bad")))
        result = await orchestrator.run(KEY, returning(target_id=7))

        assert result.success
        assert state.get(1, "fr").status == Status.COMPLETED
        assert state.get(1, "fr").error_message is None

    @pytest.mark.asyncio
    async def test_work_returning_none(self, orchestrator, state):
        async def work():
            return None

        result = await orchestrator.run(KEY, work)
        assert result.success
        assert state.get(1, "fr").target_id is None

    @pytest.mark.asyncio
    async def test_job_key_object(self, orchestrator):
        result = await orchestrator.run(JobKey.translate(1, "fr"), returning(target_id=1))
        assert result.job_key == KEY

    @pytest.mark.asyncio
    async def test_malformed_key_raises(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.run("translate:abc", returning())


# =============================================================================
# Rejections
# =============================================================================


class TestRejections:
    @pytest.mark.asyncio
    async def test_halted(self, orchestrator, emergency, state, admission):
        emergency.trip("manual")
        result = await orchestrator.run(KEY, returning(target_id=1))

        assert result.error_code == ErrorCode.HALTED
        assert state.get(1, "fr") is None
        assert admission.status()["calls_this_hour"] == 0

    @pytest.mark.asyncio
    async def test_rate_limited(self, make_orchestrator, state):
        orchestrator = make_orchestrator(calls_per_hour=1)
        assert (await orchestrator.run("translate:1:fr", returning(target_id=1))).success

        result = await orchestrator.run("translate:2:fr", returning(target_id=2))
        assert result.error_code == ErrorCode.RATE_LIMITED
        assert result.retry_after > 0
        assert state.get(2, "fr") is None

    @pytest.mark.asyncio
    async def test_too_soon(self, make_orchestrator, clock):
        orchestrator = make_orchestrator(min_interval_seconds=5)
        await orchestrator.run("translate:1:fr", returning(target_id=1))

        clock.advance(2)
        result = await orchestrator.run("translate:2:fr", returning(target_id=2))
        assert result.error_code == ErrorCode.TOO_SOON
        assert result.retry_after == pytest.approx(3)
        assert result.to_dict()["retry_after"] == 3

    @pytest.mark.asyncio
    async def test_busy(self, orchestrator, locks, state, usage):
        locks.acquire(KEY, owner="other-worker")
        result = await orchestrator.run(KEY, returning(target_id=1))

        assert result.error_code == ErrorCode.BUSY
        assert state.get(1, "fr") is None
        assert locks.is_held(KEY, "other-worker")
        assert usage.recent(1)[0].error_code == "busy"

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_is_busy(self, orchestrator, state):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_work():
            started.set()
            await release.wait()
            return WorkResult(target_id=3)

        first = asyncio.create_task(orchestrator.run(KEY, slow_work))
        await started.wait()

        second = await orchestrator.run(KEY, returning(target_id=4))
        assert second.error_code == ErrorCode.BUSY

        release.set()
        assert (await first).success
        assert state.get(1, "fr").target_id == 3

    @pytest.mark.asyncio
    async def test_completed_is_invalid_without_spending_a_call(
        self, orchestrator, admission, state
    ):
        await orchestrator.run(KEY, returning(target_id=1))
        result = await orchestrator.run(KEY, returning(target_id=2))

        assert result.error_code == ErrorCode.INVALID_TRANSITION
        assert admission.status()["calls_this_hour"] == 1
        assert state.get(1, "fr").target_id == 1

    @pytest.mark.asyncio
    async def test_update_unknown_target(self, orchestrator):
        result = await orchestrator.run("update:1:77", returning())
        assert result.error_code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_update_wrong_source(self, orchestrator):
        await orchestrator.run(KEY, returning(target_id=10))
        result = await orchestrator.run("update:2:10", returning(target_id=10))
        assert result.error_code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_lock_lost_mid_run(self, orchestrator, locks, state):
        async def work():
            locks.clear()
            return WorkResult(target_id=1)

        result = await orchestrator.run(KEY, work)
        assert result.error_code == ErrorCode.BUSY
        assert state.get_status(1, "fr") == Status.PROCESSING


# =============================================================================
# Crashed and interrupted workers
# =============================================================================


class TestRecovery:
    @pytest.mark.asyncio
    async def test_expired_lock_does_not_block_the_key(
        self, orchestrator, state, locks, admission, clock
    ):
        locks.acquire(KEY, owner="dead-worker")
        state.ensure(1, "fr")
        state.transition(1, "fr", Status.PROCESSING, job_key=KEY, owner="dead-worker")

        clock.advance(120)
        assert locks.sweep_stale() == 1

        result = await orchestrator.run(KEY, returning(target_id=5))
        assert result.success
        assert state.get(1, "fr").status == Status.COMPLETED
        assert admission.status()["calls_this_hour"] == 1

    @pytest.mark.asyncio
    async def test_stale_lock_taken_over_on_acquire(self, orchestrator, state, locks, clock):
        locks.acquire(KEY, owner="dead-worker")
        state.ensure(1, "fr")
        state.transition(1, "fr", Status.PROCESSING, job_key=KEY, owner="dead-worker")

        clock.advance(120)
        result = await orchestrator.run(KEY, returning(target_id=5))
        assert result.success
        assert state.get(1, "fr").target_id == 5

    @pytest.mark.asyncio
    async def test_raised_cancellation_moves_to_error(self, orchestrator, state, locks):
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.run(KEY, failing(asyncio.CancelledError()))

        assert state.get_status(1, "fr") == Status.ERROR
        assert locks.list_locks() == []

    @pytest.mark.asyncio
    async def test_cancelled_task_moves_to_error(self, orchestrator, state, locks):
        started = asyncio.Event()

        async def slow_work():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(orchestrator.run(KEY, slow_work))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert state.get_status(1, "fr") == Status.ERROR
        assert locks.list_locks() == []

        result = await orchestrator.run(KEY, returning(target_id=2))
        assert result.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "running,other",
        [("update:1:10", KEY), (KEY, "update:1:10")],
        ids=["update-running", "translate-running"],
    )
    async def test_other_key_for_same_translation_is_busy(
        self, orchestrator, state, running, other
    ):
        await orchestrator.run(KEY, returning(target_id=10))
        state.mark_outdated(1)

        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_work():
            started.set()
            await release.wait()
            return WorkResult(target_id=10)

        first = asyncio.create_task(orchestrator.run(running, slow_work))
        await started.wait()

        second = await orchestrator.run(other, returning(target_id=10))
        assert second.error_code == ErrorCode.BUSY
        assert state.get_status(1, "fr") == Status.PROCESSING

        release.set()
        assert (await first).success
        assert state.get_status(1, "fr") == Status.COMPLETED


# =============================================================================
# Update cycle
# =============================================================================


class TestUpdateCycle:
    @pytest.mark.asyncio
    async def test_outdated_translation_is_updated(self, orchestrator, state):
        await orchestrator.run(KEY, returning(target_id=10))
        state.mark_outdated(1)

        result = await orchestrator.run("update:1:10", returning(target_id=10))
        assert result.success
        assert result.data["language"] == "fr"
        assert state.get(1, "fr").status == Status.COMPLETED

    @pytest.mark.asyncio
    async def test_update_of_current_translation_is_invalid(self, orchestrator):
        await orchestrator.run(KEY, returning(target_id=10))
        result = await orchestrator.run("update:1:10", returning(target_id=10))
        assert result.error_code == ErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_outdated_can_be_retranslated_by_translate_key(self, orchestrator, state):
        await orchestrator.run(KEY, returning(target_id=10))
        state.mark_outdated(1)

        result = await orchestrator.run(KEY, returning(target_id=10))
        assert result.success


class TestSetup:
    def test_missing_collaborator(self, emergency, admission, locks, state):
        with pytest.raises(ValueError, match="locks"):
            JobOrchestrator(emergency, admission, None, state)

    def test_state_without_locks(self, db, emergency, admission, locks, clock):
        with pytest.raises(ValueError):
            JobOrchestrator(emergency, admission, locks, TranslationStateMachine(db, clock=clock))


class TestJobResult:
    def test_success_dict(self):
        result = JobResult.ok(KEY, {"target_id": 1}, message="done")
        assert result.to_dict() == {"success": True, "data": {"target_id": 1}, "message": "done"}

    def test_failure_dict(self):
        result = JobResult(
            success=False, job_key=KEY, error_code=ErrorCode.BUSY, message="Job in progress"
        )
        assert result.to_dict() == {
            "success": False,
            "error_code": "busy",
            "message": "Job in progress",
        }
