"""
Whistle Core
Tests: report submission, status updates and the admin view.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from whistle.core.exceptions import EncryptionError, NotFoundError, ValidationError
from whistle.models import db
from whistle.models.notification import NotificationDispatch
from whistle.models.report import EncryptedBlob, Report, ReportField
from whistle.services.report_service import (
    PREVIEW_MAX_CHARS,
    SHORT_ID_LENGTH,
    generate_short_id,
    message_preview,
    submit_report,
    update_status,
    view_report,
)
from whistle.services.report_store import EscalationState
from whistle.utils.crypto import UNDECRYPTABLE_PLACEHOLDER

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

SUBMISSION = {
    "message": "The fire exit on level 2 is chained shut.",
    "category": "safety",
    "priority": "high",
    "location": {"lat": 41.0082, "lng": 28.9784},
    "reporter_contact": "anon-drop-box-17",
}


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestHelpers:

    def test_short_id_shape(self, store):
        sid = generate_short_id(store)
        assert len(sid) == SHORT_ID_LENGTH
        assert sid.isalnum() and sid.upper() == sid

    def test_short_id_gives_up_when_every_candidate_is_taken(self):
        always_taken = MagicMock()
        always_taken.short_id_exists.return_value = True
        with pytest.raises(RuntimeError):
            generate_short_id(always_taken, attempts=3)
        assert always_taken.short_id_exists.call_count == 3

    def test_message_preview(self):
        assert message_preview("  short  ") == "short"
        assert message_preview(None) == ""
        long = message_preview("y" * 500)
        assert len(long) == PREVIEW_MAX_CHARS
        assert long.endswith("...")


# ═══════════════════════════════════════════════════════════════════════════
#  Submission
# ═══════════════════════════════════════════════════════════════════════════

class TestSubmitReport:

    def test_fields_encrypted_at_rest(self, store, cipher, router):
        report = submit_report(store, cipher, router, SUBMISSION, now=T0)

        rows = ReportField.query.filter_by(report_id=report.id).all()
        assert {r.field_name for r in rows} == {"message", "location", "reporter_contact"}
        for row in rows:
            assert b"chained" not in row.ciphertext
            assert b"anon-drop-box" not in row.ciphertext
            assert b"41.0082" not in row.ciphertext

        saved = Report.query.filter_by(short_id=report.short_id).one()
        assert saved.status == "pending"
        assert saved.priority == "high"
        assert [e.to_status for e in saved.status_history] == ["pending"]

    def test_new_report_notification(self, store, cipher, router, channels):
        report = submit_report(store, cipher, router, SUBMISSION, now=T0)

        dispatch = NotificationDispatch.query.one()
        assert dispatch.kind == "new_report"
        assert dispatch.report_short_id == report.short_id
        assert dispatch.payload["message_preview"] == SUBMISSION["message"]
        assert channels["email"].calls == 1
        assert channels["sms"].calls == 0

    def test_emergency_reports_alert_every_channel(self, store, cipher, router, channels):
        report = submit_report(store, cipher, router,
                               {"message": "Someone collapsed in hall B", "category": "emergency",
                                "priority": "low"}, now=T0)

        assert report.priority == "urgent"
        assert store.get(report.short_id).priority == "urgent"
        assert channels["sms"].calls == 1
        assert channels["sms"].events[0].payload["priority"] == "urgent"
        assert NotificationDispatch.query.one().priority == "urgent"

    def test_defaults(self, store, cipher):
        report = submit_report(store, cipher, None, {"message": "Minimal"})
        assert report.priority == "medium"
        assert report.category == "general"

    @pytest.mark.parametrize("data,field", [
        ({}, "message"),
        ({"message": "   "}, "message"),
        ({"message": "x" * 5001}, "message"),
        ({"message": "ok", "priority": "critical"}, "priority"),
        ({"message": "ok", "category": "gossip"}, "category"),
    ])
    def test_invalid_submission(self, store, cipher, data, field):
        with pytest.raises(ValidationError) as exc_info:
            submit_report(store, cipher, None, data)
        assert field in exc_info.value.details
        assert Report.query.count() == 0

    def test_encryption_failure_persists_nothing(self, store, cipher, router, channels):
        bad = dict(SUBMISSION, reporter_contact=5551234)
        with pytest.raises(EncryptionError):
            submit_report(store, cipher, router, bad)
        assert Report.query.count() == 0
        assert ReportField.query.count() == 0
        assert NotificationDispatch.query.count() == 0
        assert channels["dashboard"].calls == 0

    def test_with_attachment(self, store, cipher, media):
        report = submit_report(store, cipher, None, SUBMISSION,
                               files=[("exit.jpg", "image/jpeg", b"\xff\xd8 chained door")],
                               media=media)
        assert EncryptedBlob.query.count() == 1
        view = view_report(store, cipher, report.short_id)
        assert view["files"][0]["original_filename"] == "exit.jpg"

    def test_bad_attachment_persists_nothing(self, store, cipher, media):
        with pytest.raises(ValidationError):
            submit_report(store, cipher, None, SUBMISSION,
                          files=[("run.exe", "application/x-msdownload", b"MZ")], media=media)
        assert Report.query.count() == 0
        assert EncryptedBlob.query.count() == 0

    def test_attachments_need_media_service(self, store, cipher):
        with pytest.raises(ValidationError):
            submit_report(store, cipher, None, SUBMISSION, files=[("a.png", "image/png", b"x")])


# ═══════════════════════════════════════════════════════════════════════════
#  Status updates
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateStatus:

    def test_resolving_clears_escalation_record(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION, now=T0)
        store.update_escalation_record(report.short_id, EscalationState(1, T0, T0))

        update_status(store, report.short_id, "resolved", note="fixed")
        assert store.get_escalation_record(report.short_id) is None
        saved = store.get(report.short_id)
        assert saved.status == "resolved"
        assert saved.status_history[-1].note == "fixed"

    def test_in_progress_also_clears(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION, now=T0)
        store.update_escalation_record(report.short_id, EscalationState(1, T0, T0))
        update_status(store, report.short_id, "in_progress")
        assert store.get_escalation_record(report.short_id) is None

    def test_reopen_keeps_nothing_to_clear(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION, now=T0)
        update_status(store, report.short_id, "resolved")
        update_status(store, report.short_id, "pending", note="reopened")
        saved = store.get(report.short_id)
        assert saved.status == "pending"
        assert [e.to_status for e in saved.status_history] == ["pending", "resolved", "pending"]

    def test_invalid_status(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION)
        with pytest.raises(ValidationError):
            update_status(store, report.short_id, "archived")

    def test_unknown_report(self, store):
        with pytest.raises(NotFoundError):
            update_status(store, "NOPE0000", "resolved")

    def test_admin_notes_encrypted(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION)
        update_status(store, report.short_id, "in_progress", admin_notes="Facilities notified",
                      cipher=cipher)
        update_status(store, report.short_id, "in_progress", admin_notes="Chain removed",
                      cipher=cipher)

        row = ReportField.query.filter_by(field_name="admin_notes").one()
        assert b"Chain" not in row.ciphertext
        assert view_report(store, cipher, report.short_id)["fields"]["admin_notes"] == "Chain removed"

    def test_admin_notes_need_cipher(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION)
        with pytest.raises(ValidationError):
            update_status(store, report.short_id, "resolved", admin_notes="x")


# ═══════════════════════════════════════════════════════════════════════════
#  Admin view
# ═══════════════════════════════════════════════════════════════════════════

class TestViewReport:

    def test_decrypted_view(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION, now=T0)
        view = view_report(store, cipher, report.short_id)
        assert view["fields"]["message"] == SUBMISSION["message"]
        assert view["fields"]["location"] == SUBMISSION["location"]
        assert view["status_history"][0]["to_status"] == "pending"
        assert view["escalation"] is None

    def test_tampered_field_renders_placeholder(self, store, cipher):
        report = submit_report(store, cipher, None, SUBMISSION)
        row = ReportField.query.filter_by(field_name="reporter_contact").one()
        row.ciphertext = bytes([row.ciphertext[0] ^ 0x01]) + row.ciphertext[1:]
        db.session.commit()

        view = view_report(store, cipher, report.short_id)
        assert view["fields"]["reporter_contact"] == UNDECRYPTABLE_PLACEHOLDER
        assert view["fields"]["message"] == SUBMISSION["message"]

    def test_unknown_report(self, store, cipher):
        with pytest.raises(NotFoundError):
            view_report(store, cipher, "NOPE0000")
