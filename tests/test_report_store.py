"""
Whistle Core
Tests: SqlReportStore.

Covers:
    1. Report persistence and lookups
    2. Encrypted field loading (select_encrypted)
    3. Escalation record upsert / clear
    4. Store failures surface as StoreUnavailableError
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import InvalidRequestError, OperationalError

from whistle.core.exceptions import StoreUnavailableError, ValidationError
from whistle.models import db
from whistle.models.report import EscalationRecord, Report, ReportField
from whistle.services.report_store import EscalationState, SqlReportStore
from whistle.utils.helpers import as_utc

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _make_report(cipher, *, short_id="AAAA1111", status="pending", priority="medium",
                 created_at=T0, message="Water leak in the lab"):
    r = Report(short_id=short_id, status=status, priority=priority, category="safety",
               created_at=created_at, updated_at=created_at)
    r.fields.append(ReportField.from_encrypted_value("message", cipher.encrypt(message)))
    return r


# ═══════════════════════════════════════════════════════════════════════════
#  1. Persistence
# ═══════════════════════════════════════════════════════════════════════════

class TestReportPersistence:

    def test_save_and_get(self, store, cipher):
        rid = store.save(_make_report(cipher))
        assert rid is not None
        report = store.get("AAAA1111")
        assert report.id == rid
        assert report.status == "pending"
        assert store.short_id_exists("AAAA1111")
        assert not store.short_id_exists("ZZZZ9999")
        assert store.get("ZZZZ9999") is None

    def test_find_filters_and_orders_by_creation(self, store, cipher):
        store.save(_make_report(cipher, short_id="NEWER001", created_at=T0 + timedelta(hours=5)))
        store.save(_make_report(cipher, short_id="OLDER001", created_at=T0))
        store.save(_make_report(cipher, short_id="DONE0001", status="resolved", created_at=T0))
        store.save(_make_report(cipher, short_id="URGENT01", priority="urgent", created_at=T0))

        unresolved = store.find({"statuses": ("pending", "escalated")})
        assert [r.short_id for r in unresolved] == ["OLDER001", "URGENT01", "NEWER001"]

        old = store.find({"statuses": ("pending",), "created_before": T0 + timedelta(hours=1)})
        assert {r.short_id for r in old} == {"OLDER001", "URGENT01"}

        urgent = store.find({"priorities": ["urgent"]})
        assert [r.short_id for r in urgent] == ["URGENT01"]

    def test_unknown_filter_rejected(self, store):
        with pytest.raises(ValidationError):
            store.find({"owner": "someone"})

    def test_duplicate_short_id_is_integrity_error(self, store, cipher):
        from sqlalchemy.exc import IntegrityError

        store.save(_make_report(cipher))
        with pytest.raises(IntegrityError):
            store.save(_make_report(cipher))


# ═══════════════════════════════════════════════════════════════════════════
#  2. Encrypted field loading
# ═══════════════════════════════════════════════════════════════════════════

class TestEncryptedFieldLoading:

    def test_fields_not_loaded_by_default(self, store, cipher):
        store.save(_make_report(cipher))
        db.session.expunge_all()
        report = store.get("AAAA1111")
        with pytest.raises(InvalidRequestError):
            _ = report.fields

    def test_select_encrypted_loads_and_decrypts(self, store, cipher):
        store.save(_make_report(cipher, message="Smoke in stairwell C"))
        db.session.expunge_all()
        report = store.get("AAAA1111", select_encrypted=True)
        assert [f.field_name for f in report.fields] == ["message"]
        assert store.decrypt_fields(report) == {"message": "Smoke in stairwell C"}

    def test_ciphertext_is_stored_not_plaintext(self, store, cipher):
        store.save(_make_report(cipher, message="Smoke in stairwell C"))
        row = ReportField.query.one()
        assert b"Smoke" not in row.ciphertext
        assert row.algorithm_id == "AES-256-GCM"


# ═══════════════════════════════════════════════════════════════════════════
#  3. Escalation records
# ═══════════════════════════════════════════════════════════════════════════

class TestEscalationRecords:

    def test_upsert_creates_then_updates(self, store, cipher):
        store.save(_make_report(cipher))
        first = T0 + timedelta(hours=3)
        store.update_escalation_record("AAAA1111", EscalationState(1, first, first))

        record = store.get_escalation_record("AAAA1111")
        assert record.escalation_count == 1
        assert as_utc(record.first_escalated_at) == first
        assert record.active is True

        second = T0 + timedelta(hours=6)
        store.update_escalation_record("AAAA1111", EscalationState(2, second, second))
        record = store.get_escalation_record("AAAA1111")
        assert record.escalation_count == 2
        assert as_utc(record.last_escalated_at) == second
        # first escalation time never moves
        assert as_utc(record.first_escalated_at) == first
        assert EscalationRecord.query.count() == 1

    def test_clear(self, store, cipher):
        store.save(_make_report(cipher))
        store.update_escalation_record("AAAA1111", EscalationState(1, T0, T0))
        assert store.clear_escalation_record("AAAA1111") is True
        assert store.get_escalation_record("AAAA1111") is None
        assert store.clear_escalation_record("AAAA1111") is False

    def test_record_requires_existing_report(self, store):
        from sqlalchemy.exc import IntegrityError

        with pytest.raises(IntegrityError):
            store.update_escalation_record("NOPE0000", EscalationState(1, T0, T0))

    def test_inactive_record_restarts_history(self, store, cipher):
        store.save(_make_report(cipher))
        store.update_escalation_record("AAAA1111", EscalationState(2, T0, T0, active=False))

        later = T0 + timedelta(hours=10)
        store.update_escalation_record("AAAA1111", EscalationState(1, later, later))
        record = store.get_escalation_record("AAAA1111")
        assert record.active is True
        assert as_utc(record.first_escalated_at) == later


class TestRecordEscalation:

    def test_pending_report_moves_to_escalated(self, store, cipher):
        store.save(_make_report(cipher))
        at = T0 + timedelta(hours=3)
        assert store.record_escalation("AAAA1111", EscalationState(1, at, at), note="escalation 1")

        report = store.get("AAAA1111")
        assert report.status == "escalated"
        event = report.status_history[-1]
        assert (event.from_status, event.to_status) == ("pending", "escalated")
        assert event.actor == "escalation-monitor"
        assert store.get_escalation_record("AAAA1111").escalation_count == 1

    def test_escalated_report_keeps_its_history(self, store, cipher):
        store.save(_make_report(cipher, status="escalated"))
        at = T0 + timedelta(hours=6)
        assert store.record_escalation("AAAA1111", EscalationState(2, at, at))
        assert store.get("AAAA1111").status_history == []
        assert store.get_escalation_record("AAAA1111").escalation_count == 2

    @pytest.mark.parametrize("status", ["resolved", "in_progress"])
    def test_resolved_report_is_left_alone(self, store, cipher, status):
        store.save(_make_report(cipher, status=status))
        at = T0 + timedelta(hours=3)
        assert store.record_escalation("AAAA1111", EscalationState(1, at, at)) is False

        report = store.get("AAAA1111")
        assert report.status == status
        assert report.status_history == []
        assert store.get_escalation_record("AAAA1111") is None

    def test_failed_upsert_rolls_back_status(self, cipher):
        class _UpsertFails(SqlReportStore):
            def _upsert_record(self, short_id, state):
                raise OperationalError("INSERT", {}, Exception("connection reset"))

        failing = _UpsertFails(cipher)
        failing.save(_make_report(cipher))
        at = T0 + timedelta(hours=3)
        with pytest.raises(StoreUnavailableError):
            failing.record_escalation("AAAA1111", EscalationState(1, at, at))

        db.session.expire_all()
        report = failing.get("AAAA1111")
        assert report.status == "pending"
        assert report.status_history == []
        assert EscalationRecord.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  4. Store failures
# ═══════════════════════════════════════════════════════════════════════════

class TestStoreUnavailable:

    def _broken_store(self, cipher):
        session = MagicMock()
        session.execute.side_effect = OperationalError(
            "SELECT 1", {}, Exception("could not connect to server"),
        )
        return SqlReportStore(cipher, session=session), session

    def test_lookup_failure(self, cipher):
        store, session = self._broken_store(cipher)
        with pytest.raises(StoreUnavailableError):
            store.short_id_exists("AAAA1111")
        session.rollback.assert_called_once()

    def test_find_failure(self, cipher):
        store, _ = self._broken_store(cipher)
        with pytest.raises(StoreUnavailableError):
            store.find({"statuses": ["pending"]})

    def test_clear_failure(self, cipher):
        store, _ = self._broken_store(cipher)
        with pytest.raises(StoreUnavailableError):
            store.clear_escalation_record("AAAA1111")
