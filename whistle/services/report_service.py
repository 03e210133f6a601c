"""
Report Service: submission, status updates and the decrypted admin view.

Submission encrypts every sensitive field (and every attachment) before
anything is persisted.  If encryption fails the submission is rejected as a
whole; the submitter sees EncryptionError.public_message.

Leaving the unresolved states (pending, escalated) clears the report's
escalation record, so a later reopen starts counting from zero.

Emergency-category reports are stored and routed as ``urgent``, so they
reach SMS as well as the dashboard and email.
"""

import logging
import secrets
import string
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from whistle.core.exceptions import EncryptionError, NotFoundError, ValidationError
from whistle.models import db
from whistle.models.report import (
    REPORT_CATEGORIES,
    REPORT_PRIORITIES,
    REPORT_STATUSES,
    UNRESOLVED_STATUSES,
    Report,
    ReportField,
)
from whistle.services.notification import NotificationEvent, NotificationRouter
from whistle.services.report_store import ReportStore
from whistle.utils.crypto import FieldCipher
from whistle.utils.helpers import utcnow

logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 8
SHORT_ID_ALPHABET = string.ascii_uppercase + string.digits
MESSAGE_MAX_CHARS = 5000
PREVIEW_MAX_CHARS = 100
SUBMISSION_FIELDS = ("message", "location", "reporter_contact")
# Categories that always alert on every channel, whatever the submitted priority
URGENT_CATEGORIES = {"emergency"}


def generate_short_id(store: ReportStore, attempts: int = 5) -> str:
    for _ in range(attempts):
        candidate = "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(SHORT_ID_LENGTH))
        if not store.short_id_exists(candidate):
            return candidate
    raise RuntimeError("Could not allocate a unique short id")


def message_preview(text: str | None) -> str:
    """Plaintext preview for notifications, at most PREVIEW_MAX_CHARS long."""
    text = (text or "").strip()
    if len(text) <= PREVIEW_MAX_CHARS:
        return text
    return text[: PREVIEW_MAX_CHARS - 3] + "..."


def _validate_submission(data: dict) -> tuple[str, str]:
    errors = {}
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        errors["message"] = "required"
    elif len(message) > MESSAGE_MAX_CHARS:
        errors["message"] = f"at most {MESSAGE_MAX_CHARS} characters"

    category = data.get("category") or "general"
    if category not in REPORT_CATEGORIES:
        errors["category"] = f"must be one of {sorted(REPORT_CATEGORIES)}"
    priority = data.get("priority") or "medium"
    if priority not in REPORT_PRIORITIES:
        errors["priority"] = f"must be one of {list(REPORT_PRIORITIES)}"

    if errors:
        raise ValidationError("Invalid report submission", details=errors)
    if category in URGENT_CATEGORIES:
        priority = "urgent"
    return category, priority


# ═══════════════════════════════════════════════════════════════════════════
#  Submission
# ═══════════════════════════════════════════════════════════════════════════


def submit_report(
    store: ReportStore,
    cipher: FieldCipher,
    router: NotificationRouter | None,
    data: dict,
    files=(),
    *,
    media=None,
    now: datetime | None = None,
) -> Report:
    """Encrypt, persist and announce a new report.

    Args:
        data: ``message`` (required), ``category``, ``priority``,
            ``location`` (str or dict), ``reporter_contact``.
        files: iterable of ``(filename, mime_type, bytes or binary file)``;
            requires ``media``.
        now: creation time override.

    Raises:
        ValidationError: bad input; nothing persisted.
        EncryptionError: a field or attachment could not be encrypted;
            nothing persisted.
    """
    category, priority = _validate_submission(data)
    files = list(files)
    if files and media is None:
        raise ValidationError("Attachments require a media service")

    # Encrypt first; a failure here leaves nothing behind
    encrypted = cipher.encrypt_fields(data, field_names=SUBMISSION_FIELDS)

    report = Report(
        short_id=generate_short_id(store),
        priority=priority,
        category=category,
    )
    if now is not None:
        report.created_at = now
        report.updated_at = now
    for name, value in encrypted.items():
        report.fields.append(ReportField.from_encrypted_value(name, value))
    report.record_status("pending", actor="submitter", note="submitted")

    try:
        for filename, mime_type, blob in files:
            media.attach_file(report, filename, mime_type, blob)
    except (EncryptionError, ValidationError):
        db.session.rollback()
        raise

    store.save(report)
    logger.info(
        "Report submitted (%s/%s, %d file(s))", priority, category, len(files),
        extra={"short_id": report.short_id},
    )

    if router is not None:
        event = NotificationEvent(
            report_short_id=report.short_id,
            priority=priority,
            kind="new_report",
            payload={
                "category": category,
                "priority": priority,
                "message_preview": message_preview(data.get("message")),
            },
            timestamp=now or utcnow(),
        )
        try:
            router.dispatch(event)
        except SQLAlchemyError:
            # The report is stored; the sweep will still pick it up
            db.session.rollback()
            logger.exception("New-report notification failed", extra={"short_id": report.short_id})

    return report


# ═══════════════════════════════════════════════════════════════════════════
#  Status updates
# ═══════════════════════════════════════════════════════════════════════════


def update_status(
    store: ReportStore,
    short_id: str,
    new_status: str,
    *,
    actor: str = "admin",
    note: str = "",
    admin_notes: str | None = None,
    cipher: FieldCipher | None = None,
) -> Report:
    """Change a report's status and clear its escalation record when resolved.

    Raises:
        ValidationError: unknown status, or admin notes without a cipher.
        NotFoundError: no report with ``short_id``.
        EncryptionError: admin notes could not be encrypted; nothing persisted.
    """
    if new_status not in REPORT_STATUSES:
        raise ValidationError(
            f"Invalid status: {new_status}", details={"status": sorted(REPORT_STATUSES)},
        )
    if admin_notes is not None and cipher is None:
        raise ValidationError("Admin notes require a cipher")

    report = store.get(short_id, select_encrypted=admin_notes is not None)
    if report is None:
        raise NotFoundError(resource="Report", resource_id=short_id)

    if admin_notes is not None:
        value = cipher.encrypt(admin_notes)
        existing = next((f for f in report.fields if f.field_name == "admin_notes"), None)
        if existing is None:
            report.fields.append(ReportField.from_encrypted_value("admin_notes", value))
        else:
            existing.ciphertext = value.ciphertext
            existing.nonce = value.nonce
            existing.auth_tag = value.auth_tag
            existing.algorithm_id = value.algorithm_id

    previous = report.status
    if new_status != previous:
        report.record_status(new_status, actor=actor, note=note)
    store.save(report)

    if new_status not in UNRESOLVED_STATUSES:
        store.clear_escalation_record(short_id)

    logger.info(
        "Report status %s -> %s by %s", previous, new_status, actor,
        extra={"short_id": short_id},
    )
    return report


# ═══════════════════════════════════════════════════════════════════════════
#  Admin view
# ═══════════════════════════════════════════════════════════════════════════


def view_report(store: ReportStore, cipher: FieldCipher, short_id: str) -> dict:
    """Decrypted admin view; undecryptable fields render as a placeholder."""
    report = store.get(short_id, select_encrypted=True)
    if report is None:
        raise NotFoundError(resource="Report", resource_id=short_id)

    values = {f.field_name: f.to_encrypted_value() for f in report.fields}
    d = report.to_dict()
    d["fields"] = cipher.decrypt_fields(values, short_id=short_id)
    d["files"] = [f.to_dict() for f in report.files]
    d["status_history"] = [e.to_dict() for e in report.status_history]
    record = store.get_escalation_record(short_id)
    d["escalation"] = record.to_dict() if record else None
    return d
