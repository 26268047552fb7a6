"""
Attempt countdown synchronized to server time.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from quiztaker.logger import setup_logger
from quiztaker.scheduling import ScheduledTask

logger = setup_logger(__name__)


class Clock:
    """Wall clock. Remaining time is always derived from absolute timestamps."""

    def now(self) -> float:
        return time.time()


@dataclass
class CountdownState:
    time_remaining_seconds: int
    warning_threshold_seconds: int
    total_seconds: int
    warning_fired: bool = False
    expired: bool = False


class CountdownTimer:
    """
    Tracks the time left on a timed attempt and fires a one-time warning
    and a one-time expiry.
    """

    def __init__(
        self,
        start_timestamp: float,
        time_limit_seconds: int,
        warning_threshold_seconds: int = 300,
        clock: Optional[Clock] = None,
        on_warning: Optional[Callable[[int], None]] = None,
        on_expired: Optional[Callable[[], None]] = None,
        tick_seconds: float = 1.0,
    ) -> None:
        """
        Args:
            start_timestamp: Attempt start as reported by the service (epoch seconds).
            time_limit_seconds: Quiz time limit.
            warning_threshold_seconds: Remaining time at which to warn once.
            clock: Time source (injected in tests).
            on_warning: Called once with the remaining seconds.
            on_expired: Called once when remaining time reaches zero.
            tick_seconds: Tick period while running.
        """
        if time_limit_seconds <= 0:
            raise ValueError("Countdown needs a positive time limit")

        self.clock = clock or Clock()
        self.end_timestamp = start_timestamp + time_limit_seconds
        self.on_warning = on_warning
        self.on_expired = on_expired
        self.state = CountdownState(
            time_remaining_seconds=time_limit_seconds,
            warning_threshold_seconds=warning_threshold_seconds,
            total_seconds=time_limit_seconds,
        )
        self._task = ScheduledTask("countdown", tick_seconds, self.tick)

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        """Compute the remaining time now and start ticking."""
        self.tick()
        if not self.state.expired:
            self._task.start()
        logger.info(f"⏱️  Countdown started ({self.format_remaining()} left)")

    def stop(self) -> None:
        self._task.stop()

    def time_remaining(self) -> int:
        """Seconds left, never negative and never increasing between calls."""
        computed = max(0, math.floor(self.end_timestamp - self.clock.now()))
        return min(computed, self.state.time_remaining_seconds)

    def tick(self) -> None:
        """Recompute remaining time and fire warning/expiry events."""
        if self.state.expired:
            return

        remaining = self.time_remaining()
        self.state.time_remaining_seconds = remaining

        if (
            not self.state.warning_fired
            and 0 < remaining <= self.state.warning_threshold_seconds
            and self.state.total_seconds > self.state.warning_threshold_seconds
        ):
            self.state.warning_fired = True
            logger.warning(f"⚠️ Time warning: {self.format_remaining()} left")
            if self.on_warning:
                self.on_warning(remaining)

        if remaining == 0:
            self.state.expired = True
            self._task.stop()
            logger.warning("⌛ Time limit reached")
            if self.on_expired:
                self.on_expired()

    def snapshot(self) -> CountdownState:
        return replace(self.state)

    def format_remaining(self) -> str:
        """Remaining time as MM:SS, or H:MM:SS past one hour."""
        remaining = self.state.time_remaining_seconds
        hours, rest = divmod(remaining, 3600)
        minutes, seconds = divmod(rest, 60)
        if hours:
            return f"{hours}:{minutes:02d}:{seconds:02d}"
        return f"{minutes:02d}:{seconds:02d}"
