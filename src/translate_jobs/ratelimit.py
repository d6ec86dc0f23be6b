"""
Admission controller.

Fixed-window rate limiting for AI calls: an hourly and a daily cap, a
minimum spacing between calls, and an hourly threshold that trips the
emergency stop. Counters live in the database so they survive restarts
and are shared by every worker.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from translate_jobs.config import LimitsConfig
from translate_jobs.database import Database, RateWindow
from translate_jobs.emergency import EmergencyStop
from translate_jobs.errors import AdmissionDeniedError, ErrorCode

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600.0
DAY_SECONDS = 86400.0


@dataclass
class Admission:
    """Outcome of an admission check."""

    allowed: bool
    reason: ErrorCode | None = None
    retry_after: float | None = None
    message: str = ""
    # True when this (allowed) call crossed the emergency threshold
    emergency_tripped: bool = False

    @property
    def halted(self) -> bool:
        return self.reason == ErrorCode.HALTED

    def raise_for_denial(self) -> None:
        """Raise AdmissionDeniedError if the call was refused."""
        if not self.allowed and self.reason is not None:
            raise AdmissionDeniedError(self.reason, self.message, self.retry_after)


def _roll(count: int, start: float | None, now: float, length: float) -> tuple[int, float]:
    """Advance a fixed window so that it contains now."""
    if start is None:
        return 0, now
    elapsed = now - start
    if elapsed >= length:
        return 0, start + (elapsed // length) * length
    return count, start


class AdmissionController:
    """
    Gate every AI call behind the emergency stop and fixed-window caps.

    check_and_reserve() is one transaction: two concurrent callers never
    both take the last slot.
    """

    def __init__(
        self,
        db: Database,
        emergency: EmergencyStop,
        limits: LimitsConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.emergency = emergency
        self.limits = limits
        self._clock = clock

    def check_and_reserve(self) -> Admission:
        """Check all gates and, if allowed, consume one call slot."""
        with self.db.transaction():
            now = self._clock()

            if self.emergency.is_active():
                state = self.emergency.state()
                return self._deny(
                    ErrorCode.HALTED,
                    f"Emergency stop is active: {state.reason or 'no reason given'}",
                )

            window = self.db.get_rate_window() or RateWindow()

            if window.last_call_at is not None:
                elapsed = now - window.last_call_at
                if elapsed < self.limits.min_interval_seconds:
                    wait = self.limits.min_interval_seconds - elapsed
                    return self._deny(
                        ErrorCode.TOO_SOON,
                        f"Please wait {wait:.1f}s between translation requests",
                        retry_after=wait,
                    )

            window.hour_count, window.hour_window_start = _roll(
                window.hour_count, window.hour_window_start, now, HOUR_SECONDS
            )
            window.day_count, window.day_window_start = _roll(
                window.day_count, window.day_window_start, now, DAY_SECONDS
            )

            if window.hour_count >= self.limits.calls_per_hour:
                self.db.save_rate_window(window)
                return self._deny(
                    ErrorCode.RATE_LIMITED,
                    f"Hourly limit of {self.limits.calls_per_hour} calls reached",
                    retry_after=window.hour_window_start + HOUR_SECONDS - now,
                )
            if window.day_count >= self.limits.calls_per_day:
                self.db.save_rate_window(window)
                return self._deny(
                    ErrorCode.RATE_LIMITED,
                    f"Daily limit of {self.limits.calls_per_day} calls reached",
                    retry_after=window.day_window_start + DAY_SECONDS - now,
                )

            window.hour_count += 1
            window.day_count += 1
            window.last_call_at = now
            self.db.save_rate_window(window)

            tripped = False
            threshold = self.limits.emergency_stop_threshold
            if threshold and window.hour_count >= threshold:
                # The threshold guards later calls; this one still goes through.
                self.emergency.trip(
                    f"Automatic stop: {window.hour_count} calls in the current hour "
                    f"(threshold {threshold})"
                )
                tripped = True

            return Admission(allowed=True, emergency_tripped=tripped)

    def _deny(
        self,
        reason: ErrorCode,
        message: str,
        retry_after: float | None = None,
    ) -> Admission:
        logger.info("Admission denied (%s): %s", reason.value, message)
        return Admission(allowed=False, reason=reason, retry_after=retry_after, message=message)

    def status(self) -> dict[str, Any]:
        """Current counters and limits, as seen by the next call."""
        now = self._clock()
        window = self.db.get_rate_window() or RateWindow()
        hour_count, hour_start = _roll(
            window.hour_count, window.hour_window_start, now, HOUR_SECONDS
        )
        day_count, day_start = _roll(window.day_count, window.day_window_start, now, DAY_SECONDS)
        threshold = self.limits.emergency_stop_threshold

        return {
            "calls_this_hour": hour_count,
            "calls_today": day_count,
            "hour_limit": self.limits.calls_per_hour,
            "day_limit": self.limits.calls_per_day,
            "hour_remaining": max(0, self.limits.calls_per_hour - hour_count),
            "day_remaining": max(0, self.limits.calls_per_day - day_count),
            "hour_resets_in": (
                hour_start + HOUR_SECONDS - now if window.hour_window_start is not None else None
            ),
            "day_resets_in": (
                day_start + DAY_SECONDS - now if window.day_window_start is not None else None
            ),
            "last_call_at": window.last_call_at,
            "min_interval_seconds": self.limits.min_interval_seconds,
            "emergency_threshold": threshold,
            "emergency_risk": hour_count / threshold if threshold else 0.0,
            "emergency_active": self.emergency.is_active(),
        }

    def reset(self) -> None:
        """Zero both windows and forget the last call time."""
        self.db.save_rate_window(RateWindow())
        logger.info("Rate limits reset")
