"""
Escalation Monitor: periodic sweep over unresolved reports.

Stages, evaluated per report in this order:

    CLEARED   status not in {pending, escalated}                → nothing
    CAPPED    escalation_count >= max                           → nothing
    FRESH     age < first threshold                             → nothing
    FIRST     status pending, no record                         → fire, count = 1
    SECOND    record exists and one of
                count == 1 and age >= second threshold
                count >= 2 and hours since last >= spacing
                age >= hard ceiling and the last escalation
                happened before the ceiling was crossed         → fire, count + 1
    WAITING   anything else                                     → nothing

Escalation history lives in ``escalation_records`` (durable, keyed by
short_id).  A fresh monitor picks up exactly where the previous one stopped.

Usage:
    monitor = EscalationMonitor(store, router, EscalationThresholds.from_config(cfg))
    result = monitor.run_sweep()
"""

from __future__ import annotations

import enum
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from whistle.core.exceptions import EscalationSweepError, StoreUnavailableError, ValidationError
from whistle.models.report import UNRESOLVED_STATUSES, EscalationRecord, Report
from whistle.services.notification import NotificationEvent, NotificationRouter
from whistle.services.report_service import message_preview
from whistle.services.report_store import EscalationState, ReportStore
from whistle.utils.helpers import as_utc, hours_between, utcnow

logger = logging.getLogger(__name__)


class EscalationStage(str, enum.Enum):
    CLEARED = "cleared"
    CAPPED = "capped"
    FRESH = "fresh"
    FIRST = "first_escalation"
    SECOND = "second_escalation"
    WAITING = "waiting"


FIRING_STAGES = (EscalationStage.FIRST, EscalationStage.SECOND)


# ═════════════════════════════════════════════════════════════════════════════
# Thresholds
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EscalationThresholds:
    first_hours: float = 2
    second_hours: float = 5
    spacing_hours: float = 24
    hard_ceiling_hours: float = 48
    max_escalations: int = 3

    def __post_init__(self):
        errors = {}
        for name in ("first_hours", "second_hours", "spacing_hours", "hard_ceiling_hours"):
            if getattr(self, name) <= 0:
                errors[name] = "must be positive"
        if self.max_escalations < 1:
            errors["max_escalations"] = "must be at least 1"
        if not errors and not (self.first_hours < self.second_hours <= self.hard_ceiling_hours):
            errors["order"] = "expected first < second <= hard ceiling"
        if errors:
            raise ValidationError("Invalid escalation thresholds", details=errors)

    @classmethod
    def from_config(cls, config) -> EscalationThresholds:
        return cls(
            first_hours=float(config.get("ESCALATION_FIRST_HOURS", 2)),
            second_hours=float(config.get("ESCALATION_SECOND_HOURS", 5)),
            spacing_hours=float(config.get("ESCALATION_SPACING_HOURS", 24)),
            hard_ceiling_hours=float(config.get("ESCALATION_HARD_CEILING_HOURS", 48)),
            max_escalations=int(config.get("ESCALATION_MAX_COUNT", 3)),
        )

    @property
    def smallest_hours(self) -> float:
        return min(self.first_hours, self.second_hours, self.hard_ceiling_hours)


def evaluate_stage(
    report: Report,
    record: EscalationRecord | None,
    now: datetime,
    thresholds: EscalationThresholds,
) -> EscalationStage:
    """Pure stage decision for one report; no I/O."""
    if report.status not in UNRESOLVED_STATUSES:
        return EscalationStage.CLEARED

    has_record = record is not None and record.active
    count = record.escalation_count if has_record else 0
    if count >= thresholds.max_escalations:
        return EscalationStage.CAPPED

    age = report.age_hours(now)
    if age < thresholds.first_hours:
        return EscalationStage.FRESH

    if not has_record:
        if report.status == "pending":
            return EscalationStage.FIRST
        return EscalationStage.WAITING

    if count == 1 and age >= thresholds.second_hours:
        return EscalationStage.SECOND

    since_last = record.hours_since_last(now)
    if count >= 2 and since_last is not None and since_last >= thresholds.spacing_hours:
        return EscalationStage.SECOND

    if age >= thresholds.hard_ceiling_hours and record.last_escalated_at is not None:
        ceiling_at = as_utc(report.created_at) + timedelta(hours=thresholds.hard_ceiling_hours)
        if as_utc(record.last_escalated_at) < ceiling_at:
            return EscalationStage.SECOND

    return EscalationStage.WAITING


# ═════════════════════════════════════════════════════════════════════════════
# Sweep
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class SweepResult:
    started_at: datetime
    skipped: bool = False
    candidates: int = 0
    escalated: list[str] = field(default_factory=list)
    suppressed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stages: Counter = field(default_factory=Counter)

    def to_dict(self):
        return {
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "candidates": self.candidates,
            "escalated": list(self.escalated),
            "suppressed": list(self.suppressed),
            "errors": list(self.errors),
            "stages": dict(self.stages),
        }


class EscalationMonitor:
    """Runs escalation sweeps; overlapping calls are skipped, never queued."""

    def __init__(
        self,
        store: ReportStore,
        router: NotificationRouter,
        thresholds: EscalationThresholds | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.router = router
        self.thresholds = thresholds or EscalationThresholds()
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, store: ReportStore, router: NotificationRouter) -> EscalationMonitor:
        return cls(store, router, EscalationThresholds.from_config(config))

    def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """Evaluate every unresolved report old enough to matter.

        Raises:
            StoreUnavailableError: the store failed; the cycle is aborted.
        """
        now = as_utc(now) if now is not None else self._clock()
        if not self._lock.acquire(blocking=False):
            logger.info("Escalation sweep already running, skipped")
            return SweepResult(started_at=now, skipped=True)
        try:
            return self._sweep(now)
        finally:
            self._lock.release()

    def _sweep(self, now: datetime) -> SweepResult:
        result = SweepResult(started_at=now)
        cutoff = now - timedelta(hours=self.thresholds.smallest_hours)
        candidates = self.store.find(
            {"statuses": UNRESOLVED_STATUSES, "created_before": cutoff},
            select_encrypted=True,
        )
        result.candidates = len(candidates)

        for report in candidates:
            short_id = report.short_id
            try:
                self._process(report, now, result)
            except StoreUnavailableError:
                raise
            except Exception as exc:
                self.store.rollback()
                err = EscalationSweepError(short_id, f"{type(exc).__name__}: {exc}")
                logger.error("%s", err, extra={"short_id": short_id}, exc_info=True)
                result.errors.append(short_id)

        logger.info(
            "Escalation sweep: %d candidate(s), %d escalated, %d suppressed, %d error(s)",
            result.candidates, len(result.escalated), len(result.suppressed), len(result.errors),
        )
        return result

    def _process(self, report: Report, now: datetime, result: SweepResult) -> None:
        short_id = report.short_id
        record = self.store.get_escalation_record(short_id)
        stage = evaluate_stage(report, record, now, self.thresholds)
        result.stages[stage.value] += 1
        if stage not in FIRING_STAGES:
            return

        previous = record.escalation_count if (record is not None and record.active) else 0
        count = previous + 1
        first_at = record.first_escalated_at if previous else now
        age = hours_between(report.created_at, now)
        fields = self.store.decrypt_fields(report)

        event = NotificationEvent(
            report_short_id=short_id,
            priority=report.priority,
            kind="escalation",
            payload={
                "category": report.category,
                "priority": report.priority,
                "escalation_count": count,
                "age_hours": round(age, 1),
                "message_preview": message_preview(fields.get("message")),
            },
            timestamp=now,
        )
        dispatch = self.router.dispatch(event)
        if dispatch.suppressed:
            result.suppressed.append(short_id)
            return

        # The report may have been resolved while the dispatch was in flight
        recorded = self.store.record_escalation(
            short_id,
            EscalationState(escalation_count=count, last_escalated_at=now, first_escalated_at=first_at),
            note=f"escalation {count}",
        )
        if not recorded:
            result.stages[EscalationStage.CLEARED.value] += 1
            return

        result.escalated.append(short_id)
        logger.warning(
            "Report escalated (%s, count=%d, age=%.1fh)", stage.value, count, age,
            extra={"short_id": short_id, "event_kind": "escalation"},
        )
