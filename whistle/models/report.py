"""
Whistle Core
Report domain models.

Models:
    - Report: anonymous incident report (public short_id, status, priority)
    - ReportField: one encrypted sensitive field of a report
    - ReportFile: encrypted attachment reference (envelope + storage id)
    - EncryptedBlob: default opaque object store for attachment ciphertext
    - ReportStatusEvent: ordered status history
    - EscalationRecord: durable escalation history, keyed by short_id

Plaintext of sensitive fields is never stored in any of these tables.
"""

from datetime import datetime, timezone

from whistle.models import db
from whistle.utils.crypto import SENSITIVE_FIELDS, EncryptedValue
from whistle.utils.helpers import as_utc, hours_between


# ── Constants ────────────────────────────────────────────────────────────────

REPORT_STATUSES = {"pending", "in_progress", "resolved", "escalated"}
UNRESOLVED_STATUSES = ("pending", "escalated")
REPORT_PRIORITIES = ("low", "medium", "high", "urgent")
REPORT_CATEGORIES = {"general", "harassment", "safety", "emergency", "fraud", "other"}

__all__ = [
    "REPORT_STATUSES", "UNRESOLVED_STATUSES", "REPORT_PRIORITIES", "REPORT_CATEGORIES",
    "SENSITIVE_FIELDS", "Report", "ReportField", "ReportFile", "EncryptedBlob",
    "ReportStatusEvent", "EscalationRecord",
]


def _utcnow():
    return datetime.now(timezone.utc)


class Report(db.Model):
    """
    Anonymous incident report.

    ``short_id`` is the public tracking token handed to the submitter; ``id``
    is internal.  Sensitive content lives in ``fields`` as ciphertext.
    """

    __tablename__ = "reports"

    id = db.Column(db.Integer, primary_key=True)
    short_id = db.Column(db.String(16), unique=True, nullable=False, index=True,
                         comment="Public, immutable tracking token")
    status = db.Column(db.String(20), nullable=False, default="pending", index=True,
                       comment="pending, in_progress, resolved, escalated")
    priority = db.Column(db.String(20), nullable=False, default="medium",
                         comment="low, medium, high, urgent")
    category = db.Column(db.String(30), nullable=False, default="general")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    fields = db.relationship(
        "ReportField", back_populates="report",
        cascade="all, delete-orphan", order_by="ReportField.id",
    )
    files = db.relationship(
        "ReportFile", back_populates="report",
        cascade="all, delete-orphan", order_by="ReportFile.id",
    )
    status_history = db.relationship(
        "ReportStatusEvent", back_populates="report",
        cascade="all, delete-orphan", order_by="ReportStatusEvent.id",
    )
    escalation = db.relationship(
        "EscalationRecord", uselist=False, viewonly=True,
        primaryjoin="Report.short_id == EscalationRecord.short_id",
    )

    @property
    def is_unresolved(self) -> bool:
        return self.status in UNRESOLVED_STATUSES

    def age_hours(self, now: datetime) -> float:
        return hours_between(self.created_at, now)

    def record_status(self, to_status: str, *, actor: str = "system", note: str = "") -> "ReportStatusEvent":
        """Change status and append the transition to the history."""
        event = ReportStatusEvent(
            from_status=self.status,
            to_status=to_status,
            actor=actor,
            note=note,
        )
        self.status_history.append(event)
        self.status = to_status
        return event

    def to_dict(self):
        """Public, ciphertext-free view of the report."""
        return {
            "id": self.id,
            "short_id": self.short_id,
            "status": self.status,
            "priority": self.priority,
            "category": self.category,
            "file_count": len(self.files),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Report {self.short_id} [{self.status}/{self.priority}]>"


class ReportField(db.Model):
    """One encrypted sensitive field (AEAD envelope)."""

    __tablename__ = "report_fields"
    __table_args__ = (
        db.UniqueConstraint("report_id", "field_name", name="uq_report_field_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    field_name = db.Column(db.String(50), nullable=False)
    ciphertext = db.Column(db.LargeBinary, nullable=False)
    nonce = db.Column(db.LargeBinary(12), nullable=False)
    auth_tag = db.Column(db.LargeBinary(16), nullable=False)
    algorithm_id = db.Column(db.String(32), nullable=False)

    report = db.relationship("Report", back_populates="fields")

    def to_encrypted_value(self) -> EncryptedValue:
        return EncryptedValue(
            ciphertext=self.ciphertext,
            nonce=self.nonce,
            auth_tag=self.auth_tag,
            algorithm_id=self.algorithm_id,
        )

    @classmethod
    def from_encrypted_value(cls, field_name, value):
        return cls(
            field_name=field_name,
            ciphertext=value.ciphertext,
            nonce=value.nonce,
            auth_tag=value.auth_tag,
            algorithm_id=value.algorithm_id,
        )

    def __repr__(self):
        return f"<ReportField {self.report_id}:{self.field_name}>"


class ReportFile(db.Model):
    """
    Encrypted attachment reference.

    Immutable after creation.  The ciphertext itself lives in the blob store
    under ``storage_id``; this row keeps the envelope needed to invert it.
    """

    __tablename__ = "report_files"

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    storage_id = db.Column(db.String(64), nullable=False, unique=True)
    original_filename = db.Column(db.String(255), nullable=False)
    mime_type = db.Column(db.String(100), nullable=False)
    size = db.Column(db.Integer, nullable=False, comment="Plaintext size in bytes")
    nonce = db.Column(db.LargeBinary(12), nullable=False)
    auth_tag = db.Column(db.LargeBinary(16), nullable=False)
    algorithm_id = db.Column(db.String(32), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    report = db.relationship("Report", back_populates="files")

    def to_dict(self):
        return {
            "id": self.id,
            "storage_id": self.storage_id,
            "original_filename": self.original_filename,
            "mime_type": self.mime_type,
            "size": self.size,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ReportFile {self.storage_id} {self.mime_type}>"


class EncryptedBlob(db.Model):
    """Opaque ciphertext storage used by DatabaseBlobStore."""

    __tablename__ = "encrypted_blobs"

    storage_id = db.Column(db.String(64), primary_key=True)
    data = db.Column(db.LargeBinary, nullable=False)
    length = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f"<EncryptedBlob {self.storage_id} ({self.length} bytes)>"


class ReportStatusEvent(db.Model):
    """One status transition in a report's history."""

    __tablename__ = "report_status_events"

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=False)
    actor = db.Column(db.String(150), default="system")
    note = db.Column(db.String(500), default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    report = db.relationship("Report", back_populates="status_history")

    def to_dict(self):
        return {
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EscalationRecord(db.Model):
    """
    Durable escalation history for one report.

    Created on first escalation, deleted when the report leaves the
    unresolved states.  Written only through ReportStore upserts/deletes.

    ``active`` is never cleared by this package (resolution deletes the row).
    A row written with ``active=False``, e.g. by an operator resetting
    a report's escalation history, is read as "no record"; the next
    escalation overwrites it and counts from one again.
    """

    __tablename__ = "escalation_records"

    id = db.Column(db.Integer, primary_key=True)
    short_id = db.Column(
        db.String(16), db.ForeignKey("reports.short_id", ondelete="CASCADE"),
        unique=True, nullable=False,
    )
    escalation_count = db.Column(db.Integer, nullable=False, default=0)
    first_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True,
                       comment="False: read as no record; next escalation restarts at 1")
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def hours_since_last(self, now: datetime) -> float | None:
        if not self.last_escalated_at:
            return None
        return hours_between(self.last_escalated_at, now)

    def to_dict(self):
        return {
            "short_id": self.short_id,
            "escalation_count": self.escalation_count,
            "first_escalated_at": as_utc(self.first_escalated_at).isoformat() if self.first_escalated_at else None,
            "last_escalated_at": as_utc(self.last_escalated_at).isoformat() if self.last_escalated_at else None,
            "active": self.active,
        }

    def __repr__(self):
        return f"<EscalationRecord {self.short_id} x{self.escalation_count}>"
