"""
Lifecycle notifications published to the host UI.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from quiztaker.logger import setup_logger
from quiztaker.session.state import SessionView

logger = setup_logger(__name__)


class NotificationKind(str, Enum):
    RESUMING = "resuming"
    RESUME_FAILED = "resume_failed"
    STARTED = "started"
    INITIALIZATION_FAILED = "initialization_failed"
    PAGE_CHANGED = "page_changed"
    NAVIGATION_FAILED = "navigation_failed"
    SAVED = "saved"
    SAVE_FAILED = "save_failed"
    TIME_WARNING = "time_warning"
    TIME_EXPIRED = "time_expired"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class Notification(BaseModel):
    seq: int
    kind: NotificationKind
    session_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    view: Optional[SessionView] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationBus:
    """
    Fan-out of notifications to subscriber queues, plus a bounded history
    for hosts that poll instead of subscribing.
    """

    def __init__(self, history_size: int = 200, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._history: Deque[Notification] = deque(maxlen=history_size)
        self._seq = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(
        self,
        kind: NotificationKind,
        session_id: str,
        payload: Optional[Dict[str, Any]] = None,
        view: Optional[SessionView] = None,
    ) -> Notification:
        self._seq += 1
        notification = Notification(
            seq=self._seq,
            kind=kind,
            session_id=session_id,
            payload=payload or {},
            view=view,
        )
        self._history.append(notification)
        for queue in self._subscribers:
            self._offer(queue, notification)
        logger.debug(f"📣 {kind.value} {notification.payload}")
        return notification

    @staticmethod
    def _offer(queue: asyncio.Queue, notification: Notification) -> None:
        # A full queue means the subscriber fell behind; drop its oldest entry
        if queue.full():
            dropped = queue.get_nowait()
            logger.warning(f"⚠️ Subscriber queue full, dropped notification {dropped.seq}")
        queue.put_nowait(notification)

    @property
    def history(self) -> List[Notification]:
        return list(self._history)

    def since(self, seq: int) -> List[Notification]:
        """Notifications newer than `seq`."""
        return [n for n in self._history if n.seq > seq]

    def kinds(self) -> List[NotificationKind]:
        return [n.kind for n in self._history]
