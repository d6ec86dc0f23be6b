"""
Translation state machine.

Tracks the lifecycle of each (source post, language) relationship:

    (none) -> pending -> processing -> completed | error
    completed -> outdated -> processing        (update cycle)
    error -> processing                        (retry)

Illegal transitions raise InvalidTransitionError and leave the stored
status untouched.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from translate_jobs.database import Database, Status, TranslationRelationship
from translate_jobs.errors import BusyError, InvalidTransitionError, LockNotHeldError
from translate_jobs.jobs import JobKey
from translate_jobs.locks import LockManager

logger = logging.getLogger(__name__)

TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.PENDING: frozenset({Status.PROCESSING}),
    Status.PROCESSING: frozenset({Status.COMPLETED, Status.ERROR}),
    Status.COMPLETED: frozenset({Status.OUTDATED}),
    Status.OUTDATED: frozenset({Status.PROCESSING}),
    Status.ERROR: frozenset({Status.PROCESSING}),
}


def can_transition(current: Status | None, to: Status) -> bool:
    """Whether current -> to is an edge of the state machine."""
    if current is None:
        return to == Status.PENDING
    return to in TRANSITIONS[current]


class TranslationStateMachine:
    """Status transitions for translation relationships."""

    def __init__(
        self,
        db: Database,
        locks: LockManager | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize state machine.

        Args:
            db: Database instance.
            locks: Lock manager used to check that a transition's caller
                holds the job key's lock.
            clock: Time source returning POSIX seconds.
        """
        self.db = db
        self.locks = locks
        self._clock = clock

    def ensure(self, source_id: int, language: str) -> TranslationRelationship:
        """Return the relationship, creating it as pending if it does not exist."""
        with self.db.transaction():
            rel = self.db.get_relationship(source_id, language)
            if rel is not None:
                return rel
            now = self._clock()
            rel = TranslationRelationship(
                source_id=source_id,
                language=language,
                status=Status.PENDING,
                created_at=now,
                updated_at=now,
            )
            self.db.insert_relationship(rel)
            return rel

    def get(self, source_id: int, language: str) -> TranslationRelationship | None:
        return self.db.get_relationship(source_id, language)

    def get_by_target(self, target_id: int) -> TranslationRelationship | None:
        return self.db.get_relationship_by_target(target_id)

    def get_status(self, source_id: int, language: str) -> Status | None:
        """Current status, or None when no relationship exists."""
        rel = self.db.get_relationship(source_id, language)
        return rel.status if rel else None

    def list_relationships(
        self,
        source_id: int | None = None,
        status: Status | None = None,
    ) -> list[TranslationRelationship]:
        return self.db.get_relationships(source_id=source_id, status=status)

    def transition(
        self,
        source_id: int,
        language: str,
        to: Status,
        *,
        job_key: str | None = None,
        owner: str | None = None,
        target_id: int | None = None,
        error_message: str | None = None,
    ) -> TranslationRelationship:
        """
        Move a relationship to a new status.

        Args:
            source_id: Source post ID.
            language: Target language code.
            to: Requested status.
            job_key: When given, the caller must hold this key's lock.
            owner: Lock owner token of the caller.
            target_id: Translated post ID to record (first success).
            error_message: Failure detail, stored with the error status.

        Returns:
            The updated relationship.

        Raises:
            InvalidTransitionError: The edge is not allowed or the relationship
                does not exist.
            LockNotHeldError: job_key was given and owner does not hold it.
        """
        with self.db.transaction():
            if job_key is not None and self.locks is not None:
                if not self.locks.is_held(job_key, owner):
                    raise LockNotHeldError(job_key, owner)

            rel = self.db.get_relationship(source_id, language)
            current = rel.status if rel else None
            if rel is None or not can_transition(current, to):
                raise InvalidTransitionError(current, to)

            if not self.db.compare_and_set_status(
                source_id,
                language,
                current,
                to,
                self._clock(),
                target_id=target_id,
                error_message=error_message,
            ):
                # Status moved underneath us; report what is stored now.
                latest = self.db.get_relationship(source_id, language)
                raise InvalidTransitionError(latest.status if latest else None, to)

            updated = self.db.get_relationship(source_id, language)

        logger.debug(
            "Relationship %s/%s: %s -> %s", source_id, language, current.value, to.value
        )
        return updated

    def mark_outdated(self, source_id: int) -> int:
        """
        Signal that a source post changed after translation.

        Moves every completed relationship of the source to outdated and
        returns how many moved.
        """
        moved = 0
        with self.db.transaction():
            for rel in self.db.get_relationships(source_id=source_id, status=Status.COMPLETED):
                if self.db.compare_and_set_status(
                    rel.source_id,
                    rel.language,
                    Status.COMPLETED,
                    Status.OUTDATED,
                    self._clock(),
                ):
                    moved += 1
        if moved:
            logger.info("Marked %d translation(s) of post %s as outdated", moved, source_id)
        return moved

    def delete(self, source_id: int, language: str) -> bool:
        """Explicitly remove a relationship."""
        return self.db.delete_relationship(source_id, language)

    def recover_abandoned(
        self,
        source_id: int,
        language: str,
        *,
        job_key: str,
        owner: str,
    ) -> bool:
        """
        Fail a processing relationship whose previous worker is gone.

        The caller holds job_key's lock, so a processing relationship found
        now was left by a worker whose lock expired. A live lock under the
        relationship's other job key means that worker is still running.

        Returns:
            True if a processing relationship was moved to error.

        Raises:
            LockNotHeldError: owner does not hold job_key's lock.
            BusyError: A job under another key is running this relationship.
        """
        with self.db.transaction():
            if self.locks is not None and not self.locks.is_held(job_key, owner):
                raise LockNotHeldError(job_key, owner)

            rel = self.db.get_relationship(source_id, language)
            if rel is None or rel.status != Status.PROCESSING:
                return False
            for key in self._lock_keys(rel):
                if key != job_key and self._is_live(key):
                    raise BusyError(key)

            recovered = self.db.compare_and_set_status(
                source_id,
                language,
                Status.PROCESSING,
                Status.ERROR,
                self._clock(),
                error_message="Reset: lock of the previous run expired",
            )

        if recovered:
            logger.warning(
                "Recovered %s/%s after a stale lock; previous run marked as error",
                source_id,
                language,
            )
        return recovered

    def reset_stuck(self, *, force: bool = False) -> int:
        """
        Move processing relationships that no worker holds to error.

        A translate job's lock key is derived from the relationship, so a
        processing relationship without that lock has lost its worker.
        Update jobs lock by target; both keys are checked. With force, every
        processing relationship is reset regardless of locks.
        """
        reset = 0
        with self.db.transaction():
            for rel in self.db.get_relationships(status=Status.PROCESSING):
                if not force and any(
                    self.db.get_lock(key) is not None for key in self._lock_keys(rel)
                ):
                    continue
                if self.db.compare_and_set_status(
                    rel.source_id,
                    rel.language,
                    Status.PROCESSING,
                    Status.ERROR,
                    self._clock(),
                    error_message="Reset: job stopped without finishing",
                ):
                    reset += 1
        if reset:
            logger.warning("Reset %d stuck translation(s) to error", reset)
        return reset

    def _lock_keys(self, rel: TranslationRelationship) -> list[str]:
        keys = [str(JobKey.translate(rel.source_id, rel.language))]
        if rel.target_id is not None:
            keys.append(str(JobKey.update(rel.source_id, rel.target_id)))
        return keys

    def _is_live(self, key: str) -> bool:
        if self.locks is not None:
            return self.locks.is_live(key)
        return self.db.get_lock(key) is not None
