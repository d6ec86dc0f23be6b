"""
Deduplication lock manager.

Grants exclusive, time-boxed ownership of a job key. Acquisition never
waits: a held key means "busy, reject this request". Locks left behind by
crashed workers are reaped once they are older than the TTL.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from translate_jobs.database import Database, Lock

logger = logging.getLogger(__name__)


class LockManager:
    """Durable job-key locks with TTL-based recovery."""

    def __init__(
        self,
        db: Database,
        ttl: float = 3600.0,
        *,
        sweep_on_acquire: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize lock manager.

        Args:
            db: Database instance.
            ttl: Default staleness TTL in seconds.
            sweep_on_acquire: Reap all stale locks before each acquire.
            clock: Time source returning POSIX seconds.
        """
        self.db = db
        self.ttl = ttl
        self.sweep_on_acquire = sweep_on_acquire
        self._clock = clock

    def acquire(self, key: str, ttl: float | None = None, owner: str | None = None) -> bool:
        """
        Take the lock for key if nobody holds a live one.

        A lock on this key older than ttl counts as abandoned and is taken
        over. The sweep of other keys always uses the manager's own TTL.

        Returns:
            True if the caller now owns the lock, False if the key is busy.
        """
        ttl = self.ttl if ttl is None else ttl
        owner = owner or uuid.uuid4().hex

        if self.sweep_on_acquire:
            self.sweep_stale()

        with self.db.transaction():
            now = self._clock()
            existing = self.db.get_lock(key)
            lock = Lock(key=key, owner=owner, acquired_at=now)

            if existing is None:
                self.db.insert_lock(lock)
                return True

            if existing.age(now) > ttl:
                logger.info(
                    "Taking over stale lock %s (owner %s, age %.0fs)",
                    key,
                    existing.owner,
                    existing.age(now),
                )
                self.db.replace_lock(lock)
                return True

            return False

    def release(self, key: str, owner: str | None = None) -> None:
        """
        Drop the lock for key. Releasing a missing lock is a no-op.

        With owner, only that owner's lock is removed, so a worker whose lock
        was reaped and re-granted cannot release the new holder's lock.
        """
        self.db.delete_lock(key, owner)

    def sweep_stale(self, ttl: float | None = None) -> int:
        """Remove every lock older than ttl and return how many were removed."""
        ttl = self.ttl if ttl is None else ttl
        with self.db.transaction():
            # age > ttl  <=>  acquired_at < now - ttl
            removed = self.db.delete_locks_acquired_before(self._clock() - ttl)
        for lock in removed:
            logger.info("Recovered stale lock %s (owner %s)", lock.key, lock.owner)
        return len(removed)

    def get(self, key: str) -> Lock | None:
        """Current lock for key, if any."""
        return self.db.get_lock(key)

    def is_held(self, key: str, owner: str | None) -> bool:
        """Whether owner currently holds the lock for key."""
        lock = self.db.get_lock(key)
        return lock is not None and owner is not None and lock.owner == owner

    def is_live(self, key: str) -> bool:
        """Whether someone holds a lock for key that is not yet stale."""
        lock = self.db.get_lock(key)
        return lock is not None and lock.age(self._clock()) <= self.ttl

    def list_locks(self) -> list[Lock]:
        """All locks, oldest first."""
        return self.db.get_locks()

    def clear(self) -> int:
        """Remove every lock (emergency cleanup)."""
        count = self.db.delete_all_locks()
        if count:
            logger.warning("Cleared %d job locks", count)
        return count
