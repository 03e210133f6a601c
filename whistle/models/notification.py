"""
Whistle Core
Notification dispatch log.

Models:
    - NotificationDispatch: one row per dispatched event; the unique
      ``dedupe_key`` is the claim that suppresses duplicates in a window
    - NotificationDelivery: per-channel outcome of a dispatch
"""

from datetime import datetime, timezone

from whistle.models import db


DISPATCH_STATUSES = {"pending", "sent", "partial", "failed"}
DELIVERY_STATUSES = {"sent", "failed", "timeout", "skipped"}


class NotificationDispatch(db.Model):
    __tablename__ = "notification_dispatches"

    id = db.Column(db.Integer, primary_key=True)
    dedupe_key = db.Column(db.String(120), unique=True, nullable=False,
                           comment="{short_id}:{kind}:{window bucket}")
    report_short_id = db.Column(db.String(16), nullable=False, index=True)
    kind = db.Column(db.String(30), nullable=False,
                     comment="new_report, escalation")
    priority = db.Column(db.String(20), nullable=False)
    payload = db.Column(db.JSON, default=dict,
                        comment="Redacted summary; never ciphertext")
    status = db.Column(db.String(20), default="pending",
                       comment="pending, sent, partial, failed")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc), index=True)

    deliveries = db.relationship(
        "NotificationDelivery", back_populates="dispatch",
        cascade="all, delete-orphan", order_by="NotificationDelivery.id",
    )

    def settle(self):
        """Derive the overall status from the channel deliveries."""
        outcomes = [d.status for d in self.deliveries]
        if outcomes and all(o == "sent" for o in outcomes):
            self.status = "sent"
        elif any(o == "sent" for o in outcomes):
            self.status = "partial"
        else:
            self.status = "failed"
        return self.status

    def to_dict(self, include_deliveries=True):
        d = {
            "id": self.id,
            "dedupe_key": self.dedupe_key,
            "report_short_id": self.report_short_id,
            "kind": self.kind,
            "priority": self.priority,
            "payload": self.payload,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_deliveries:
            d["deliveries"] = [x.to_dict() for x in self.deliveries]
        return d

    def __repr__(self):
        return f"<NotificationDispatch {self.dedupe_key} [{self.status}]>"


class NotificationDelivery(db.Model):
    __tablename__ = "notification_deliveries"

    id = db.Column(db.Integer, primary_key=True)
    dispatch_id = db.Column(
        db.Integer, db.ForeignKey("notification_dispatches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    channel = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False,
                       comment="sent, failed, timeout, skipped")
    error = db.Column(db.String(500), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)

    dispatch = db.relationship("NotificationDispatch", back_populates="deliveries")

    def to_dict(self):
        return {
            "channel": self.channel,
            "status": self.status,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }
