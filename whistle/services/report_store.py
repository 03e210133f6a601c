"""
Report Store: persistence contract for reports and escalation records.

``ReportStore`` is the boundary the escalation monitor and report service
talk to; ``SqlReportStore`` implements it on Flask-SQLAlchemy.

Encrypted field rows are only loaded when a caller asks for them
(``select_encrypted=True``).  Otherwise ``Report.fields`` is set to
raise-on-access, so a code path that would touch ciphertext without meaning
to fails loudly in tests instead of silently pulling it.

Escalation records are written with single-statement upserts/deletes keyed by
``short_id``; concurrent writers cannot interleave a read-modify-write.
``record_escalation`` moves the report to ``escalated`` and upserts its record
in one transaction, conditional on the report still being unresolved.

Database connectivity failures surface as StoreUnavailableError.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, fields as dc_fields
from datetime import datetime

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import raiseload, selectinload

from whistle.core.exceptions import StoreUnavailableError, ValidationError
from whistle.models import db
from whistle.models.report import EscalationRecord, Report, ReportStatusEvent
from whistle.utils.crypto import FieldCipher
from whistle.utils.helpers import utcnow

logger = logging.getLogger(__name__)

ESCALATION_ACTOR = "escalation-monitor"


@dataclass
class ReportFilters:
    statuses: tuple | list | None = None
    priorities: tuple | list | None = None
    created_before: datetime | None = None
    short_id: str | None = None

    @classmethod
    def coerce(cls, filters) -> "ReportFilters":
        if filters is None:
            return cls()
        if isinstance(filters, cls):
            return filters
        known = {f.name for f in dc_fields(cls)}
        unknown = set(filters) - known
        if unknown:
            raise ValidationError(f"Unknown report filter(s): {', '.join(sorted(unknown))}")
        return cls(**filters)


@dataclass
class EscalationState:
    """Values written by ``update_escalation_record``."""

    escalation_count: int
    last_escalated_at: datetime
    first_escalated_at: datetime | None = None
    active: bool = True


class ReportStore(ABC):
    """Persistence contract used by the escalation pipeline."""

    @abstractmethod
    def save(self, report: Report) -> int:
        """Persist a new or modified report and return its id."""

    @abstractmethod
    def short_id_exists(self, short_id: str) -> bool:
        """Whether a report already uses ``short_id``."""

    @abstractmethod
    def find(self, filters=None, *, select_encrypted: bool = False) -> list[Report]:
        """Return reports matching ``filters`` ordered by creation time."""

    @abstractmethod
    def get(self, short_id: str, *, select_encrypted: bool = False) -> Report | None:
        """Return the report with ``short_id`` or ``None``."""

    @abstractmethod
    def get_escalation_record(self, short_id: str) -> EscalationRecord | None:
        """Return the escalation record for ``short_id`` or ``None``."""

    @abstractmethod
    def update_escalation_record(self, short_id: str, state: EscalationState) -> None:
        """Atomically create or replace the escalation record."""

    @abstractmethod
    def record_escalation(self, short_id: str, state: EscalationState, *, note: str = "") -> bool:
        """Set status ``escalated`` and upsert the record as one unit of work.

        Returns False, writing nothing, when the report has left the
        unresolved states since it was read.
        """

    @abstractmethod
    def clear_escalation_record(self, short_id: str) -> bool:
        """Delete the escalation record; return whether one existed."""

    @abstractmethod
    def decrypt_fields(self, report: Report) -> dict:
        """Decrypt a report's sensitive fields, placeholders for failures."""

    @abstractmethod
    def rollback(self) -> None:
        """Discard uncommitted changes after a failed unit of work."""


class SqlReportStore(ReportStore):
    """Flask-SQLAlchemy implementation of ``ReportStore``."""

    def __init__(self, cipher: FieldCipher, session=None):
        self.cipher = cipher
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    @contextmanager
    def _guard(self, operation: str):
        """Translate connectivity failures; integrity errors propagate as-is."""
        try:
            yield
        except IntegrityError:
            self.session.rollback()
            raise
        except DBAPIError as exc:
            self.session.rollback()
            logger.error("Report store %s failed: %s", operation, type(exc.orig).__name__)
            raise StoreUnavailableError(f"Report store unavailable during {operation}") from exc

    # ── Reports ──────────────────────────────────────────────────────────

    def save(self, report: Report) -> int:
        with self._guard("save"):
            self.session.add(report)
            self.session.commit()
        return report.id

    def rollback(self) -> None:
        self.session.rollback()

    def short_id_exists(self, short_id: str) -> bool:
        with self._guard("lookup"):
            stmt = select(func.count()).select_from(Report).where(Report.short_id == short_id)
            return self.session.execute(stmt).scalar_one() > 0

    def find(self, filters=None, *, select_encrypted: bool = False) -> list[Report]:
        f = ReportFilters.coerce(filters)
        stmt = select(Report)
        if f.statuses is not None:
            stmt = stmt.where(Report.status.in_(list(f.statuses)))
        if f.priorities is not None:
            stmt = stmt.where(Report.priority.in_(list(f.priorities)))
        if f.created_before is not None:
            stmt = stmt.where(Report.created_at <= f.created_before)
        if f.short_id is not None:
            stmt = stmt.where(Report.short_id == f.short_id)

        loader = selectinload(Report.fields) if select_encrypted else raiseload(Report.fields)
        stmt = (
            stmt.options(loader)
            .order_by(Report.created_at, Report.id)
            .execution_options(populate_existing=True)
        )
        with self._guard("find"):
            return list(self.session.execute(stmt).scalars().all())

    def get(self, short_id: str, *, select_encrypted: bool = False) -> Report | None:
        found = self.find({"short_id": short_id}, select_encrypted=select_encrypted)
        return found[0] if found else None

    def decrypt_fields(self, report: Report) -> dict:
        values = {f.field_name: f.to_encrypted_value() for f in report.fields}
        return self.cipher.decrypt_fields(values, short_id=report.short_id)

    # ── Escalation records ───────────────────────────────────────────────

    def get_escalation_record(self, short_id: str) -> EscalationRecord | None:
        stmt = (
            select(EscalationRecord)
            .where(EscalationRecord.short_id == short_id)
            .execution_options(populate_existing=True)
        )
        with self._guard("get_escalation_record"):
            return self.session.execute(stmt).scalar_one_or_none()

    def update_escalation_record(self, short_id: str, state: EscalationState) -> None:
        with self._guard("update_escalation_record"):
            self._upsert_record(short_id, state)
            self.session.commit()

        logger.debug(
            "Escalation record upserted (count=%d)", state.escalation_count,
            extra={"short_id": short_id},
        )

    def record_escalation(self, short_id: str, state: EscalationState, *, note: str = "") -> bool:
        with self._guard("record_escalation"):
            moved = self.session.execute(
                update(Report)
                .where(Report.short_id == short_id, Report.status == "pending")
                .values(status="escalated")
                .execution_options(synchronize_session=False)
            ).rowcount
            if moved:
                report_id = self.session.execute(
                    select(Report.id).where(Report.short_id == short_id)
                ).scalar_one()
                self.session.add(ReportStatusEvent(
                    report_id=report_id, from_status="pending", to_status="escalated",
                    actor=ESCALATION_ACTOR, note=note,
                ))
            else:
                # Same-value write: takes the row lock and re-checks the status
                still_open = self.session.execute(
                    update(Report)
                    .where(Report.short_id == short_id, Report.status == "escalated")
                    .values(status="escalated")
                    .execution_options(synchronize_session=False)
                ).rowcount
                if not still_open:
                    self.session.rollback()
                    logger.info("Escalation dropped, report no longer unresolved",
                                extra={"short_id": short_id})
                    return False

            self._upsert_record(short_id, state)
            self.session.commit()

        logger.debug(
            "Escalation recorded (count=%d)", state.escalation_count,
            extra={"short_id": short_id},
        )
        return True

    def _upsert_record(self, short_id: str, state: EscalationState) -> None:
        """Upsert inside the caller's transaction; no commit."""
        now = utcnow()
        values = {
            "short_id": short_id,
            "escalation_count": state.escalation_count,
            "first_escalated_at": state.first_escalated_at or state.last_escalated_at,
            "last_escalated_at": state.last_escalated_at,
            "active": state.active,
            "updated_at": now,
        }
        dialect = self.session.get_bind(mapper=EscalationRecord).dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(EscalationRecord).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[EscalationRecord.short_id],
                set_={
                    "escalation_count": stmt.excluded.escalation_count,
                    # first escalation time is set once per active history
                    "first_escalated_at": case(
                        (EscalationRecord.active.is_(False), stmt.excluded.first_escalated_at),
                        else_=func.coalesce(
                            EscalationRecord.first_escalated_at, stmt.excluded.first_escalated_at,
                        ),
                    ),
                    "last_escalated_at": stmt.excluded.last_escalated_at,
                    "active": stmt.excluded.active,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            self.session.execute(stmt)
        else:
            record = self.session.execute(
                select(EscalationRecord).where(EscalationRecord.short_id == short_id).with_for_update()
            ).scalar_one_or_none()
            if record is None:
                self.session.add(EscalationRecord(**values))
            else:
                record.escalation_count = values["escalation_count"]
                if not record.active or record.first_escalated_at is None:
                    record.first_escalated_at = values["first_escalated_at"]
                record.last_escalated_at = values["last_escalated_at"]
                record.active = values["active"]

    def clear_escalation_record(self, short_id: str) -> bool:
        with self._guard("clear_escalation_record"):
            result = self.session.execute(
                delete(EscalationRecord)
                .where(EscalationRecord.short_id == short_id)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        cleared = bool(result.rowcount)
        if cleared:
            logger.info("Escalation record cleared", extra={"short_id": short_id})
        return cleared
