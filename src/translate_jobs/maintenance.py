"""
Maintenance tasks: scheduled cleanup, stuck-job recovery, and the
operator's emergency cleanup.
"""

from __future__ import annotations

import logging
from typing import Any

from translate_jobs.emergency import EmergencyStop
from translate_jobs.locks import LockManager
from translate_jobs.ratelimit import AdmissionController
from translate_jobs.state import TranslationStateMachine
from translate_jobs.usage import UsageRecorder

logger = logging.getLogger(__name__)


class Maintenance:
    """Housekeeping over locks, relationships, limits and the usage log."""

    def __init__(
        self,
        locks: LockManager,
        state: TranslationStateMachine,
        admission: AdmissionController,
        emergency: EmergencyStop,
        usage: UsageRecorder,
    ):
        self.locks = locks
        self.state = state
        self.admission = admission
        self.emergency = emergency
        self.usage = usage

    def daily_cleanup(self) -> dict[str, Any]:
        """Reap stale locks and prune old usage entries."""
        summary = {
            "stale_locks_removed": self.locks.sweep_stale(),
            "usage_entries_pruned": self.usage.prune(),
        }
        logger.info("Daily cleanup: %s", summary)
        return summary

    def recover_stuck(self) -> dict[str, Any]:
        """Reap stale locks, then fail every processing job left without a lock."""
        summary = {
            "stale_locks_removed": self.locks.sweep_stale(),
            "relationships_reset": self.state.reset_stuck(),
        }
        logger.info("Stuck job recovery: %s", summary)
        return summary

    def emergency_cleanup(self) -> dict[str, Any]:
        """
        Return the engine to a clean slate.

        Removes all locks, fails every processing relationship, resets the
        rate windows and clears the emergency stop. Jobs still running will
        fail to commit their result.
        """
        summary: dict[str, Any] = {
            "locks_cleared": self.locks.clear(),
            "relationships_reset": self.state.reset_stuck(force=True),
        }
        self.admission.reset()
        summary["rate_limits_reset"] = True
        summary["emergency_was_active"] = self.emergency.is_active()
        self.emergency.reset()

        self.usage.record("emergency_cleanup", success=True, data=summary)
        logger.warning("Emergency cleanup: %s", summary)
        return summary
