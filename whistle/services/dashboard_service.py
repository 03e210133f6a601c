"""
Dashboard channel: live alerts for connected admin sessions.

DashboardHub keeps one bounded queue per connected session.  Publishing never
blocks: a session whose queue is full misses the message (logged as a drop).
The hub also keeps the most recent messages so a session that connects late
or polls can catch up.
"""

import logging
import queue
import threading
import uuid
from collections import deque

from whistle.services.notification import NotificationChannel, NotificationEvent

logger = logging.getLogger(__name__)


class DashboardHub:
    """Thread-safe registry of admin dashboard subscribers."""

    def __init__(self, max_queue: int = 100, history: int = 50):
        self.max_queue = max_queue
        self._subscribers: dict[str, queue.Queue] = {}
        self._recent: deque = deque(maxlen=history)
        self._lock = threading.Lock()
        self.dropped = 0

    def subscribe(self, session_id: str | None = None) -> tuple[str, queue.Queue]:
        session_id = session_id or uuid.uuid4().hex
        q: queue.Queue = queue.Queue(maxsize=self.max_queue)
        with self._lock:
            self._subscribers[session_id] = q
        logger.debug("Dashboard session connected (%d total)", len(self._subscribers))
        return session_id, q

    def unsubscribe(self, session_id: str) -> bool:
        with self._lock:
            return self._subscribers.pop(session_id, None) is not None

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: dict) -> int:
        """Offer ``message`` to every session; return how many accepted it."""
        with self._lock:
            self._recent.append(message)
            targets = list(self._subscribers.items())
        delivered = 0
        for session_id, q in targets:
            try:
                q.put_nowait(message)
                delivered += 1
            except queue.Full:
                self.dropped += 1
                logger.warning("Dashboard queue full, message dropped for session %s", session_id[:8])
        return delivered

    def drain(self, session_id: str, limit: int = 100) -> list[dict] | None:
        """Take up to ``limit`` queued messages for a session, oldest first.

        Returns None for an unknown session.
        """
        with self._lock:
            q = self._subscribers.get(session_id)
        if q is None:
            return None
        items = []
        while len(items) < limit:
            try:
                items.append(q.get_nowait())
            except queue.Empty:
                break
        return items

    def recent(self, limit: int = 20) -> list[dict]:
        with self._lock:
            items = list(self._recent)
        return items[-limit:][::-1]


class DashboardChannel(NotificationChannel):
    name = "dashboard"

    def __init__(self, hub: DashboardHub):
        self.hub = hub

    def send(self, event: NotificationEvent) -> bool:
        message = {
            "type": event.kind,
            "short_id": event.report_short_id,
            "priority": event.priority,
            "payload": event.payload,
            "timestamp": event.timestamp.isoformat(),
        }
        self.hub.publish(message)
        return True
