"""
Whistle Core
Tests: notification channels (dashboard, email, SMS).

External services are never contacted: SMTP and the Twilio HTTP call are
patched with unittest.mock.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httpx
import pytest

from whistle.services.dashboard_service import DashboardChannel, DashboardHub
from whistle.services.email_service import EmailChannel, render
from whistle.services.notification import NotificationEvent
from whistle.services.sms_service import SMS_MAX_CHARS, SmsChannel, format_sms

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _event(kind="new_report", priority="urgent", **payload):
    base = {"category": "emergency", "priority": priority, "message_preview": "Fire alarm in lab 2"}
    base.update(payload)
    return NotificationEvent(report_short_id="CHAN0001", priority=priority, kind=kind,
                             payload=base, timestamp=T0)


# ═══════════════════════════════════════════════════════════════════════════
#  Dashboard
# ═══════════════════════════════════════════════════════════════════════════

class TestDashboardChannel:

    def test_publishes_to_every_session(self):
        hub = DashboardHub()
        _, q1 = hub.subscribe()
        sid2, q2 = hub.subscribe("admin-2")
        assert sid2 == "admin-2"
        assert hub.subscriber_count() == 2

        assert DashboardChannel(hub).send(_event()) is True
        m1, m2 = q1.get_nowait(), q2.get_nowait()
        assert m1 == m2
        assert m1["type"] == "new_report"
        assert m1["short_id"] == "CHAN0001"
        assert m1["payload"]["priority"] == "urgent"

    def test_full_queue_drops_without_blocking(self):
        hub = DashboardHub(max_queue=1)
        _, q = hub.subscribe()
        channel = DashboardChannel(hub)
        channel.send(_event())
        assert channel.send(_event(kind="escalation")) is True
        assert hub.dropped == 1
        assert q.qsize() == 1

    def test_recent_history_newest_first(self):
        hub = DashboardHub(history=2)
        channel = DashboardChannel(hub)
        for kind in ("new_report", "escalation", "escalation"):
            channel.send(_event(kind=kind, escalation_count=1))
        recent = hub.recent()
        assert len(recent) == 2
        assert all(m["type"] == "escalation" for m in recent)

    def test_unsubscribe(self):
        hub = DashboardHub()
        sid, _ = hub.subscribe()
        assert hub.unsubscribe(sid) is True
        assert hub.unsubscribe("never-subscribed") is False
        assert hub.subscriber_count() == 0
        assert hub.publish({"type": "ping"}) == 0


# ═══════════════════════════════════════════════════════════════════════════
#  Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailRendering:

    def test_new_report_subject(self):
        subject, body = render(_event(priority="high"), "https://whistle.example/admin")
        assert subject == "[Whistle] HIGH report received: CHAN0001"
        assert "Fire alarm in lab 2" in body
        assert "https://whistle.example/admin" in body

    def test_escalation_subject(self):
        subject, body = render(_event(kind="escalation", escalation_count=2, age_hours=6.5), "")
        assert subject == "[Whistle] ESCALATION #2: CHAN0001 unresolved for 6.5h"
        assert "6.5 hours" in body

    def test_payload_is_html_escaped(self):
        _, body = render(_event(message_preview="<script>alert(1)</script>"), "")
        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    def test_unknown_kind(self):
        assert render(_event(kind="digest"), "") is None


class TestEmailChannel:

    def test_dev_mode_logs_only(self):
        channel = EmailChannel(server=None, admin_email="admin@example.org")
        with patch("whistle.services.email_service.smtplib.SMTP") as smtp:
            assert channel.send(_event()) is True
        smtp.assert_not_called()

    def test_sends_over_smtp(self):
        channel = EmailChannel(server="smtp.example.org", port=2525, username="u", password="p",
                               sender="alerts@example.org", admin_email="admin@example.org")
        with patch("whistle.services.email_service.smtplib.SMTP") as smtp:
            conn = smtp.return_value.__enter__.return_value
            assert channel.send(_event()) is True

        smtp.assert_called_once_with("smtp.example.org", 2525, timeout=30)
        conn.starttls.assert_called_once()
        conn.login.assert_called_once_with("u", "p")
        msg = conn.send_message.call_args[0][0]
        assert msg["To"] == "admin@example.org"
        assert msg["From"] == "alerts@example.org"
        assert msg["Subject"] == "[Whistle] URGENT report received: CHAN0001"

    def test_smtp_error_propagates_to_router(self):
        channel = EmailChannel(server="smtp.example.org", admin_email="admin@example.org")
        with patch("whistle.services.email_service.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(OSError):
                channel.send(_event())

    def test_missing_admin_email(self):
        channel = EmailChannel(server="smtp.example.org", admin_email=None)
        with patch("whistle.services.email_service.smtplib.SMTP") as smtp:
            assert channel.send(_event()) is False
        smtp.assert_not_called()

    def test_from_config(self, app):
        channel = EmailChannel.from_config(app.config)
        assert channel.server is None
        assert channel.timeout == app.config["NOTIFICATION_SEND_TIMEOUT"]


# ═══════════════════════════════════════════════════════════════════════════
#  SMS
# ═══════════════════════════════════════════════════════════════════════════

def _sms_channel():
    return SmsChannel(account_sid="AC123", auth_token="secret", from_number="+15550001111",
                      to_number="+15559998888", api_base="https://api.twilio.test/2010-04-01/")


class TestSmsChannel:

    def test_format_new_report(self):
        text = format_sms(_event())
        assert text.startswith("WHISTLE ALERT: new report")
        assert "URGENT priority, type EMERGENCY" in text
        assert "ID: CHAN0001" in text

    def test_format_escalation(self):
        text = format_sms(_event(kind="escalation", escalation_count=3, age_hours=30.0))
        assert text.startswith("WHISTLE ESCALATION #3: unresolved for 30.0h")

    def test_format_is_capped(self):
        assert len(format_sms(_event(message_preview="x" * 5000))) == SMS_MAX_CHARS

    def test_unconfigured_reports_failure(self):
        with patch("whistle.services.sms_service.httpx.post") as post:
            assert SmsChannel().send(_event()) is False
        post.assert_not_called()

    def test_sends_via_twilio_api(self):
        response = MagicMock()
        response.json.return_value = {"sid": "SM42"}
        with patch("whistle.services.sms_service.httpx.post", return_value=response) as post:
            assert _sms_channel().send(_event()) is True

        url = post.call_args[0][0]
        kwargs = post.call_args[1]
        assert url == "https://api.twilio.test/2010-04-01/Accounts/AC123/Messages.json"
        assert kwargs["auth"] == ("AC123", "secret")
        assert kwargs["data"]["To"] == "+15559998888"
        assert kwargs["data"]["Body"].startswith("WHISTLE ALERT")
        response.raise_for_status.assert_called_once()

    def test_missing_sid_is_failure(self):
        response = MagicMock()
        response.json.return_value = {}
        with patch("whistle.services.sms_service.httpx.post", return_value=response):
            assert _sms_channel().send(_event()) is False

    def test_http_error_propagates(self):
        request = httpx.Request("POST", "https://api.twilio.test")
        response = MagicMock()
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "401 Unauthorized", request=request, response=httpx.Response(401, request=request),
        )
        with patch("whistle.services.sms_service.httpx.post", return_value=response):
            with pytest.raises(httpx.HTTPStatusError):
                _sms_channel().send(_event())
