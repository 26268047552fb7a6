"""
In-memory registry of live attempt sessions for the host service.

Each session gets its controller's id. Sessions idle longer than the TTL are
closed and dropped on the next access, except timed attempts still counting
down: those stay until they are finalized so expiry can submit them.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from quiztaker.logger import setup_logger
from quiztaker.session.controller import AttemptSessionController
from quiztaker.timer import Clock
from quiztaker.utils.exceptions import SessionNotFound

logger = setup_logger(__name__)


class SessionRegistry:
    def __init__(self, ttl_seconds: int = 3600, clock: Optional[Clock] = None) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock or Clock()
        self._sessions: Dict[str, AttemptSessionController] = {}
        self._touched: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, controller: AttemptSessionController) -> str:
        sid = controller.session_id
        self._sessions[sid] = controller
        self._touched[sid] = self.clock.now()
        return sid

    async def get(self, sid: str) -> AttemptSessionController:
        """Look up a session and refresh its TTL."""
        await self.cleanup_expired()
        controller = self._sessions.get(sid)
        if controller is None:
            raise SessionNotFound(f"Session {sid} not found")
        self._touched[sid] = self.clock.now()
        return controller

    async def remove(self, sid: str) -> None:
        controller = self._sessions.pop(sid, None)
        self._touched.pop(sid, None)
        if controller is not None:
            await controller.close()

    async def cleanup_expired(self) -> int:
        """Close sessions idle past the TTL. Returns how many were removed."""
        now = self.clock.now()
        expired: List[str] = [
            sid
            for sid, ts in self._touched.items()
            if now - ts > self.ttl_seconds and not self._sessions[sid].awaiting_expiry
        ]
        for sid in expired:
            logger.info(f"🧹 Session {sid} expired")
            await self.remove(sid)
        return len(expired)

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            await self.remove(sid)
