"""
Periodic best-effort persistence of dirty answers.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from quiztaker.logger import setup_logger
from quiztaker.scheduling import ScheduledTask

logger = setup_logger(__name__)

# flush() returns True when saved, False when the save failed and
# None when the period was skipped (nothing dirty or another operation in flight).
FlushCallback = Callable[[], Awaitable[Optional[bool]]]


class AutosaveScheduler:
    """
    Calls the session's flush on a fixed period.

    A period that fires while a flush is still running is skipped, never queued.
    Failures are counted and logged; the next period retries.
    """

    def __init__(self, flush: FlushCallback, interval: float = 30.0) -> None:
        self.flush = flush
        self.interval = interval
        self.saves = 0
        self.failures = 0
        self.skipped = 0
        self._flushing = False
        self._task = ScheduledTask("autosave", interval, self.run_once)

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        self._task.start()
        logger.info(f"💾 Autosave every {self.interval:g}s")

    def stop(self) -> None:
        self._task.stop()

    async def run_once(self) -> Optional[bool]:
        """One autosave period."""
        if self._flushing:
            self.skipped += 1
            return None

        self._flushing = True
        try:
            result = await self.flush()
        finally:
            self._flushing = False

        if result is None:
            self.skipped += 1
        elif result:
            self.saves += 1
        else:
            self.failures += 1
            logger.warning(f"⚠️ Autosave failed ({self.failures} so far), retrying next period")
        return result
