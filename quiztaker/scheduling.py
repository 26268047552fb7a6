"""
Periodic asyncio tasks with an explicit cancellation token.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from quiztaker.logger import setup_logger

logger = setup_logger(__name__)

Callback = Callable[[], Union[Awaitable[Any], Any]]


class CancellationToken:
    """One-way flag shared between a scheduled task and whoever stops it."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ScheduledTask:
    """
    Runs a callback every `interval` seconds on the running event loop.

    The token is checked right before the callback starts, with no suspension
    point in between, so once stop() returns no further callback begins.
    """

    def __init__(self, name: str, interval: float, callback: Callback) -> None:
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self.callback = callback
        self._token: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def start(self) -> None:
        """Start ticking. Calling start() on a running task is a no-op."""
        if self.running:
            return
        token = CancellationToken()
        self._token = token
        self._task = asyncio.create_task(self._run(token), name=self.name)
        logger.debug(f"▶️  {self.name} started (every {self.interval}s)")

    def stop(self) -> None:
        """Stop ticking. Safe to call from inside the callback itself."""
        if self._token is not None:
            self._token.cancel()

        task, self._task = self._task, None
        if task is None or task.done():
            return

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None

        # A callback stopping its own task must be allowed to finish
        if task is not current:
            task.cancel()
        logger.debug(f"⏹️  {self.name} stopped")

    async def _run(self, token: CancellationToken) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if token.cancelled:
                return
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ {self.name} callback failed: {e}", exc_info=True)
