"""
Emergency stop.

Process-wide kill switch. Once tripped (manually or by the admission
controller's hourly threshold) every admission check is refused until an
operator calls reset(). There is no automatic recovery.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from translate_jobs.database import Database, EmergencyState

logger = logging.getLogger(__name__)


class EmergencyStop:
    """Durable circuit breaker shared by all workers."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self._clock = clock

    def is_active(self) -> bool:
        """Whether new jobs are currently halted."""
        return self.db.get_emergency_state().active

    def state(self) -> EmergencyState:
        """Full emergency state, for status displays."""
        return self.db.get_emergency_state()

    def trip(self, reason: str) -> EmergencyState:
        """
        Halt all new jobs.

        Tripping an already active breaker only refreshes the reason and
        timestamp.
        """
        state = EmergencyState(active=True, reason=reason, tripped_at=self._clock())
        self.db.save_emergency_state(state)
        logger.warning("Emergency stop activated: %s", reason)
        return state

    def reset(self) -> None:
        """Clear the emergency stop. Must be an explicit operator action."""
        self.db.save_emergency_state(EmergencyState())
        logger.warning("Emergency stop reset")
