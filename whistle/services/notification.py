"""
Whistle Core
Notification Router: priority-aware, deduplicated multi-channel fan-out.

Flow for one event:

    1. Claim the dedupe key by inserting a NotificationDispatch row (process
       lock + unique constraint).  A second event with the same key in the
       same window is suppressed; no channel is called.
    2. Fan out on the shared thread pool, one task per channel.  Channel
       failures are isolated: an exception, a ``False`` return or a timeout
       is recorded for that channel only.
    3. Record one NotificationDelivery per channel and settle the overall
       status.

Worker threads only talk to the outside world.  Every database write
happens on the dispatching thread.

Channel selection:
    low      → dashboard
    medium   → dashboard, email
    high     → dashboard, email
    urgent   → dashboard, email, sms
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from whistle.core.exceptions import NotificationDispatchError
from whistle.models import db
from whistle.models.notification import NotificationDelivery, NotificationDispatch
from whistle.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

EVENT_KINDS = ("new_report", "escalation")
DEFAULT_DEDUPE_WINDOW_MINUTES = 60

PRIORITY_CHANNELS: dict[str, tuple[str, ...]] = {
    "low": ("dashboard",),
    "medium": ("dashboard", "email"),
    "high": ("dashboard", "email"),
    "urgent": ("dashboard", "email", "sms"),
}


# ═══════════════════════════════════════════════════════════════════════════
#  Event / result types
# ═══════════════════════════════════════════════════════════════════════════


def dedupe_bucket(timestamp: datetime, window_minutes: int) -> int:
    """Index of the ``window_minutes``-wide window that contains ``timestamp``."""
    return int(as_utc(timestamp).timestamp() // (window_minutes * 60))


@dataclass
class NotificationEvent:
    """
    One thing admins should hear about.

    ``payload`` is a redacted summary (short id, priority, category, at most
    a short message preview).  It never carries ciphertext.
    """

    report_short_id: str
    priority: str
    kind: str
    payload: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def dedupe_key_for(self, window_minutes: int) -> str:
        return f"{self.report_short_id}:{self.kind}:{dedupe_bucket(self.timestamp, window_minutes)}"

    @property
    def dedupe_key(self) -> str:
        return self.dedupe_key_for(DEFAULT_DEDUPE_WINDOW_MINUTES)


@dataclass
class DispatchResult:
    dedupe_key: str
    suppressed: bool = False
    status: str = "pending"
    outcomes: dict[str, str] = field(default_factory=dict)
    dispatch_id: int | None = None

    @property
    def delivered(self) -> bool:
        return any(v == "sent" for v in self.outcomes.values())

    def to_dict(self):
        return {
            "dedupe_key": self.dedupe_key,
            "suppressed": self.suppressed,
            "status": self.status,
            "outcomes": dict(self.outcomes),
            "dispatch_id": self.dispatch_id,
        }


class NotificationChannel(ABC):
    """Sender interface.  ``send`` is best effort and may run on a worker thread."""

    name: str = ""

    @abstractmethod
    def send(self, event: NotificationEvent) -> bool:
        """Deliver ``event``; return ``False`` (or raise) on failure."""


# ═══════════════════════════════════════════════════════════════════════════
#  Router
# ═══════════════════════════════════════════════════════════════════════════


class NotificationRouter:
    def __init__(
        self,
        channels,
        *,
        send_timeout: float = 30,
        dedupe_window_minutes: int = DEFAULT_DEDUPE_WINDOW_MINUTES,
        max_workers: int = 6,
        shutdown_grace_seconds: float = 5,
    ):
        if isinstance(channels, dict):
            self.channels = dict(channels)
        else:
            self.channels = {c.name: c for c in channels}
        self.send_timeout = send_timeout
        self.dedupe_window_minutes = dedupe_window_minutes
        self.shutdown_grace_seconds = shutdown_grace_seconds

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._claim_lock = threading.Lock()
        self._inflight: set[Future] = set()
        self._inflight_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, config, channels) -> NotificationRouter:
        return cls(
            channels,
            send_timeout=float(config.get("NOTIFICATION_SEND_TIMEOUT", 30)),
            dedupe_window_minutes=int(config.get("NOTIFICATION_DEDUPE_WINDOW_MINUTES",
                                                 DEFAULT_DEDUPE_WINDOW_MINUTES)),
            max_workers=int(config.get("NOTIFICATION_MAX_WORKERS", 6)),
            shutdown_grace_seconds=float(config.get("NOTIFICATION_SHUTDOWN_GRACE_SECONDS", 5)),
        )

    @staticmethod
    def channels_for(priority: str) -> tuple[str, ...]:
        if priority not in PRIORITY_CHANNELS:
            logger.warning("Unknown priority %r, routing as medium", priority)
            return PRIORITY_CHANNELS["medium"]
        return PRIORITY_CHANNELS[priority]

    # ── Dedupe claim ─────────────────────────────────────────────────────

    def _claim(self, event: NotificationEvent, key: str) -> NotificationDispatch | None:
        """Insert the dispatch row for ``key``; ``None`` if it already exists."""
        with self._claim_lock:
            existing = db.session.execute(
                select(NotificationDispatch.id).where(NotificationDispatch.dedupe_key == key)
            ).scalar_one_or_none()
            if existing is not None:
                return None

            dispatch = NotificationDispatch(
                dedupe_key=key,
                report_short_id=event.report_short_id,
                kind=event.kind,
                priority=event.priority,
                payload=event.payload,
                status="pending",
                created_at=as_utc(event.timestamp),
            )
            db.session.add(dispatch)
            try:
                db.session.commit()
            except IntegrityError:
                # Another process claimed the key between our check and insert
                db.session.rollback()
                return None
            return dispatch

    # ── Dispatch ─────────────────────────────────────────────────────────

    def dispatch(self, event: NotificationEvent) -> DispatchResult:
        key = event.dedupe_key_for(self.dedupe_window_minutes)
        log_extra = {"short_id": event.report_short_id, "event_kind": event.kind, "dedupe_key": key}

        dispatch = self._claim(event, key)
        if dispatch is None:
            logger.info("Duplicate notification suppressed", extra=log_extra)
            return DispatchResult(dedupe_key=key, suppressed=True, status="suppressed")

        names = self.channels_for(event.priority)
        futures: dict[str, Future] = {}
        outcomes: dict[str, tuple[str, str | None, int | None]] = {}

        for name in names:
            channel = self.channels.get(name)
            if channel is None or self._closed:
                outcomes[name] = ("skipped", "channel unavailable", None)
                continue
            futures[name] = self._submit(channel, event)

        if futures:
            wait(list(futures.values()), timeout=self.send_timeout)

        for name, future in futures.items():
            if not future.done():
                outcomes[name] = ("timeout", f"no response within {self.send_timeout}s", None)
                self._log_failure(name, key, "timed out", log_extra)
                continue
            exc = future.exception()
            if exc is not None:
                outcomes[name] = ("failed", f"{type(exc).__name__}: {exc}"[:500], None)
                self._log_failure(name, key, f"raised {type(exc).__name__}", log_extra)
                continue
            ok, duration_ms = future.result()
            if ok:
                outcomes[name] = ("sent", None, duration_ms)
            else:
                outcomes[name] = ("failed", "channel reported failure", duration_ms)
                self._log_failure(name, key, "reported failure", log_extra)

        for name in names:
            status, error, duration_ms = outcomes[name]
            dispatch.deliveries.append(NotificationDelivery(
                channel=name, status=status, error=error, duration_ms=duration_ms,
            ))
        overall = dispatch.settle()
        db.session.commit()

        logger.info(
            "Notification dispatched: %s",
            ", ".join(f"{n}={outcomes[n][0]}" for n in names),
            extra=log_extra,
        )
        return DispatchResult(
            dedupe_key=key,
            status=overall,
            outcomes={n: outcomes[n][0] for n in names},
            dispatch_id=dispatch.id,
        )

    def _submit(self, channel: NotificationChannel, event: NotificationEvent) -> Future:
        future = self._executor.submit(_timed_send, channel, event)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    @staticmethod
    def _log_failure(channel: str, key: str, reason: str, extra: dict) -> None:
        err = NotificationDispatchError(channel, key, reason)
        logger.warning("%s", err, extra={**extra, "channel": channel})

    # ── Shutdown ─────────────────────────────────────────────────────────

    def in_flight(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def shutdown(self, grace_seconds: float | None = None) -> int:
        """Wait up to ``grace_seconds`` for in-flight sends, then abandon the rest.

        Returns the number of sends abandoned.
        """
        if self._closed:
            return 0
        self._closed = True
        grace = self.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        with self._inflight_lock:
            pending = list(self._inflight)
        not_done = set()
        if pending:
            _, not_done = wait(pending, timeout=grace)
        if not_done:
            logger.warning("Abandoning %d in-flight notification send(s)", len(not_done))
        self._executor.shutdown(wait=False, cancel_futures=True)
        return len(not_done)


def _timed_send(channel: NotificationChannel, event: NotificationEvent) -> tuple[bool, int]:
    started = time.monotonic()
    ok = channel.send(event)
    return bool(ok), int((time.monotonic() - started) * 1000)
