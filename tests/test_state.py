"""
Tests for the translation state machine.
"""

import pytest

from translate_jobs.database import Status, TranslationRelationship
from translate_jobs.errors import BusyError, InvalidTransitionError, LockNotHeldError
from translate_jobs.state import TRANSITIONS, can_transition

ILLEGAL_EDGES = [
    (current, to)
    for current in Status
    for to in Status
    if to not in TRANSITIONS[current]
]


def put(db, status, source_id=1, language="fr", target_id=None):
    """Store a relationship directly in the given status."""
    db.insert_relationship(
        TranslationRelationship(
            source_id=source_id,
            language=language,
            target_id=target_id,
            status=status,
            created_at=0.0,
            updated_at=0.0,
        )
    )


class TestTransitionTable:
    def test_only_pending_can_be_created(self):
        assert can_transition(None, Status.PENDING)
        for status in Status:
            if status != Status.PENDING:
                assert not can_transition(None, status)

    def test_legal_edges(self):
        assert can_transition(Status.PENDING, Status.PROCESSING)
        assert can_transition(Status.PROCESSING, Status.COMPLETED)
        assert can_transition(Status.PROCESSING, Status.ERROR)
        assert can_transition(Status.COMPLETED, Status.OUTDATED)
        assert can_transition(Status.OUTDATED, Status.PROCESSING)
        assert can_transition(Status.ERROR, Status.PROCESSING)


class TestTransitions:
    def test_ensure_creates_pending_once(self, state):
        rel = state.ensure(1, "fr")
        assert rel.status == Status.PENDING

        state.transition(1, "fr", Status.PROCESSING)
        assert state.ensure(1, "fr").status == Status.PROCESSING

    def test_full_lifecycle(self, state):
        state.ensure(1, "fr")
        state.transition(1, "fr", Status.PROCESSING)
        rel = state.transition(1, "fr", Status.COMPLETED, target_id=42)
        assert rel.target_id == 42

        state.transition(1, "fr", Status.OUTDATED)
        state.transition(1, "fr", Status.PROCESSING)
        rel = state.transition(1, "fr", Status.ERROR, error_message="boom")
        assert rel.error_message == "boom"
        assert rel.target_id == 42

        rel = state.transition(1, "fr", Status.PROCESSING)
        assert rel.error_message is None

    def test_updated_at_follows_clock(self, state, clock):
        state.ensure(1, "fr")
        clock.advance(30)
        rel = state.transition(1, "fr", Status.PROCESSING)
        assert rel.updated_at == clock()

    @pytest.mark.parametrize(
        "current,to", ILLEGAL_EDGES, ids=[f"{c.value}->{t.value}" for c, t in ILLEGAL_EDGES]
    )
    def test_illegal_edge_leaves_status_unchanged(self, db, state, current, to):
        put(db, current)

        with pytest.raises(InvalidTransitionError) as exc_info:
            state.transition(1, "fr", to)

        assert exc_info.value.current == current
        assert exc_info.value.requested == to
        assert state.get_status(1, "fr") == current

    def test_missing_relationship(self, state):
        with pytest.raises(InvalidTransitionError) as exc_info:
            state.transition(1, "fr", Status.PROCESSING)
        assert exc_info.value.current is None
        assert state.get(1, "fr") is None


class TestLockGuard:
    def test_holder_may_transition(self, state, locks):
        state.ensure(1, "fr")
        locks.acquire("translate:1:fr", owner="me")

        rel = state.transition(1, "fr", Status.PROCESSING, job_key="translate:1:fr", owner="me")
        assert rel.status == Status.PROCESSING

    def test_non_holder_is_refused(self, state, locks):
        state.ensure(1, "fr")
        locks.acquire("translate:1:fr", owner="someone-else")

        with pytest.raises(LockNotHeldError):
            state.transition(1, "fr", Status.PROCESSING, job_key="translate:1:fr", owner="me")
        assert state.get_status(1, "fr") == Status.PENDING

    def test_missing_lock_is_refused(self, state):
        state.ensure(1, "fr")
        with pytest.raises(LockNotHeldError):
            state.transition(1, "fr", Status.PROCESSING, job_key="translate:1:fr", owner="me")


class TestRecoverAbandoned:
    def test_processing_without_other_worker_moves_to_error(self, db, state, locks):
        put(db, Status.PROCESSING)
        locks.acquire("translate:1:fr", owner="me")

        assert state.recover_abandoned(1, "fr", job_key="translate:1:fr", owner="me") is True
        rel = state.get(1, "fr")
        assert rel.status == Status.ERROR
        assert "expired" in rel.error_message

    @pytest.mark.parametrize("status", [Status.PENDING, Status.ERROR, Status.OUTDATED])
    def test_other_statuses_are_untouched(self, db, state, locks, status):
        put(db, status)
        locks.acquire("translate:1:fr", owner="me")

        assert state.recover_abandoned(1, "fr", job_key="translate:1:fr", owner="me") is False
        assert state.get_status(1, "fr") == status

    def test_live_update_job_is_busy(self, db, state, locks):
        put(db, Status.PROCESSING, target_id=10)
        locks.acquire("update:1:10", owner="worker")
        locks.acquire("translate:1:fr", owner="me")

        with pytest.raises(BusyError):
            state.recover_abandoned(1, "fr", job_key="translate:1:fr", owner="me")
        assert state.get_status(1, "fr") == Status.PROCESSING

    def test_stale_update_lock_does_not_block(self, db, state, locks, clock):
        put(db, Status.PROCESSING, target_id=10)
        locks.acquire("update:1:10", owner="crashed")
        clock.advance(61)
        locks.acquire("translate:1:fr", owner="me")

        assert state.recover_abandoned(1, "fr", job_key="translate:1:fr", owner="me") is True

    def test_requires_the_lock(self, db, state):
        put(db, Status.PROCESSING)
        with pytest.raises(LockNotHeldError):
            state.recover_abandoned(1, "fr", job_key="translate:1:fr", owner="me")
        assert state.get_status(1, "fr") == Status.PROCESSING


class TestBulkOperations:
    def test_mark_outdated_moves_only_completed(self, db, state):
        put(db, Status.COMPLETED, language="fr", target_id=10)
        put(db, Status.COMPLETED, language="de", target_id=11)
        put(db, Status.ERROR, language="es")
        put(db, Status.COMPLETED, source_id=2, language="fr")

        assert state.mark_outdated(1) == 2
        assert state.get_status(1, "fr") == Status.OUTDATED
        assert state.get_status(1, "de") == Status.OUTDATED
        assert state.get_status(1, "es") == Status.ERROR
        assert state.get_status(2, "fr") == Status.COMPLETED

    def test_reset_stuck_skips_live_jobs(self, db, state, locks):
        put(db, Status.PROCESSING, language="fr")
        put(db, Status.PROCESSING, language="de")
        locks.acquire("translate:1:de", owner="worker")

        assert state.reset_stuck() == 1
        assert state.get_status(1, "fr") == Status.ERROR
        assert state.get_status(1, "de") == Status.PROCESSING

    def test_reset_stuck_checks_update_lock(self, db, state, locks):
        put(db, Status.PROCESSING, language="fr", target_id=10)
        locks.acquire("update:1:10", owner="worker")

        assert state.reset_stuck() == 0

    def test_reset_stuck_force(self, db, state, locks):
        put(db, Status.PROCESSING, language="fr")
        locks.acquire("translate:1:fr", owner="worker")

        assert state.reset_stuck(force=True) == 1
        rel = state.get(1, "fr")
        assert rel.status == Status.ERROR
        assert rel.error_message

    def test_list_and_delete(self, db, state):
        put(db, Status.COMPLETED, language="fr")
        put(db, Status.ERROR, language="de")

        assert len(state.list_relationships(source_id=1)) == 2
        assert [r.language for r in state.list_relationships(status=Status.ERROR)] == ["de"]

        assert state.delete(1, "de") is True
        assert state.delete(1, "de") is False
        assert state.get_status(1, "de") is None
