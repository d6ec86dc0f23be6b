"""
Usage recorder.

Append-only log of job outcomes and operator actions, consumed for
analytics. Nothing in the engine reads it back for correctness.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from translate_jobs.database import Database, UsageEntry

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400


class UsageRecorder:
    """Bounded usage log stored in the database."""

    def __init__(
        self,
        db: Database,
        max_entries: int = 500,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.max_entries = max_entries
        self.retention_days = retention_days
        self._clock = clock

    def record(
        self,
        action: str,
        *,
        job_key: str | None = None,
        success: bool = True,
        error_code: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> int:
        """Append an entry and trim the log to max_entries."""
        with self.db.transaction():
            entry_id = self.db.add_usage_entry(
                UsageEntry(
                    action=action,
                    job_key=job_key,
                    success=success,
                    error_code=error_code,
                    data=data or {},
                    created_at=self._clock(),
                )
            )
            self.db.trim_usage(self.max_entries)
        return entry_id

    def recent(self, limit: int = 50, action: str | None = None) -> list[UsageEntry]:
        """Newest entries first."""
        return self.db.get_usage(limit=limit, action=action)

    def count(self) -> int:
        return self.db.count_usage()

    def summary(self) -> dict[str, dict[str, int]]:
        """Per-action totals and success counts."""
        return self.db.get_usage_summary()

    def prune(self, retention_days: int | None = None) -> int:
        """Delete entries older than the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        removed = self.db.delete_usage_before(self._clock() - days * DAY_SECONDS)
        if removed:
            logger.info("Pruned %d usage entries older than %d days", removed, days)
        return removed
