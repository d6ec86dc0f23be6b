"""
Tests for maintenance tasks.
"""

import pytest

from translate_jobs.database import Status


@pytest.fixture
def maintenance(make_engine):
    # One-minute lock TTL keeps the stale-lock scenarios short
    engine = make_engine()
    engine.locks.ttl = 60
    return engine


def start_job(engine, source_id, language, owner="worker"):
    """Leave a relationship in processing, as a worker mid-job would."""
    key = f"translate:{source_id}:{language}"
    engine.locks.acquire(key, owner=owner)
    engine.state.ensure(source_id, language)
    engine.state.transition(source_id, language, Status.PROCESSING, job_key=key, owner=owner)
    return key


class TestDailyCleanup:
    def test_sweeps_locks_and_prunes_usage(self, maintenance, clock):
        engine = maintenance
        engine.usage.record("translate")
        engine.locks.acquire("translate:1:fr", owner="crashed")

        clock.advance(31 * 86400)
        summary = engine.maintenance.daily_cleanup()

        assert summary == {"stale_locks_removed": 1, "usage_entries_pruned": 1}
        assert engine.locks.list_locks() == []

    def test_keeps_live_locks(self, maintenance, clock):
        engine = maintenance
        engine.locks.acquire("translate:1:fr")
        clock.advance(30)

        assert engine.maintenance.daily_cleanup()["stale_locks_removed"] == 0
        assert len(engine.locks.list_locks()) == 1


class TestRecoverStuck:
    def test_crashed_worker_is_failed(self, maintenance, clock):
        engine = maintenance
        start_job(engine, 1, "fr")
        clock.advance(61)

        summary = engine.maintenance.recover_stuck()

        assert summary == {"stale_locks_removed": 1, "relationships_reset": 1}
        assert engine.state.get_status(1, "fr") == Status.ERROR

    def test_running_job_is_left_alone(self, maintenance, clock):
        engine = maintenance
        start_job(engine, 1, "fr")
        clock.advance(10)

        assert engine.maintenance.recover_stuck()["relationships_reset"] == 0
        assert engine.state.get_status(1, "fr") == Status.PROCESSING


class TestEmergencyCleanup:
    def test_resets_everything(self, maintenance):
        engine = maintenance
        start_job(engine, 1, "fr")
        engine.admission.check_and_reserve()
        engine.emergency.trip("runaway costs")

        summary = engine.maintenance.emergency_cleanup()

        assert summary["locks_cleared"] == 1
        assert summary["relationships_reset"] == 1
        assert summary["emergency_was_active"] is True
        assert engine.locks.list_locks() == []
        assert engine.state.get_status(1, "fr") == Status.ERROR
        assert engine.admission.status()["calls_this_hour"] == 0
        assert engine.emergency.is_active() is False

        entry = engine.usage.recent(1)[0]
        assert entry.action == "emergency_cleanup"
        assert entry.data["locks_cleared"] == 1

    @pytest.mark.asyncio
    async def test_interrupted_job_cannot_commit(self, maintenance):
        engine = maintenance
        post_id = engine.service.add_post("Hello", "World")

        async def translate_during_cleanup(*args):
            engine.maintenance.emergency_cleanup()
            return await original(*args)

        original = engine.translator.translate
        engine.translator.translate = translate_during_cleanup

        result = await engine.service.translate_post(post_id, "fr")

        assert not result.success
        assert engine.state.get_status(post_id, "fr") == Status.ERROR
