"""
SMS channel: Twilio REST API over httpx.

Only urgent events are routed here.  Without TWILIO_ACCOUNT_SID,
TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER and ADMIN_PHONE_NUMBER the channel is
unconfigured: it logs a warning and reports failure.
"""

from __future__ import annotations

import logging

import httpx

from whistle.services.notification import NotificationChannel, NotificationEvent

logger = logging.getLogger(__name__)

SMS_MAX_CHARS = 1600


def format_sms(event: NotificationEvent) -> str:
    payload = event.payload or {}
    priority = event.priority.upper()
    category = str(payload.get("category", "general")).upper()
    if event.kind == "escalation":
        headline = (
            f"WHISTLE ESCALATION #{payload.get('escalation_count', 1)}: "
            f"unresolved for {payload.get('age_hours', '?')}h"
        )
    else:
        headline = "WHISTLE ALERT: new report"
    lines = [
        headline,
        f"{priority} priority, type {category}",
        f"ID: {event.report_short_id}",
    ]
    preview = payload.get("message_preview")
    if preview:
        lines.append(str(preview))
    lines.append("Check the admin dashboard for details.")
    return "\n".join(lines)[:SMS_MAX_CHARS]


class SmsChannel(NotificationChannel):
    name = "sms"

    def __init__(self, *, account_sid=None, auth_token=None, from_number=None,
                 to_number=None, api_base="https://api.twilio.com/2010-04-01", timeout=30):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.to_number = to_number
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> SmsChannel:
        return cls(
            account_sid=config.get("TWILIO_ACCOUNT_SID"),
            auth_token=config.get("TWILIO_AUTH_TOKEN"),
            from_number=config.get("TWILIO_FROM_NUMBER"),
            to_number=config.get("ADMIN_PHONE_NUMBER"),
            api_base=config.get("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
            timeout=float(config.get("NOTIFICATION_SEND_TIMEOUT", 30)),
        )

    def is_configured(self) -> bool:
        return all([self.account_sid, self.auth_token, self.from_number, self.to_number])

    def send(self, event: NotificationEvent) -> bool:
        if not self.is_configured():
            logger.warning(
                "Twilio SMS not configured, SMS alert skipped",
                extra={"short_id": event.report_short_id, "channel": self.name},
            )
            return False

        resp = httpx.post(
            f"{self.api_base}/Accounts/{self.account_sid}/Messages.json",
            data={"From": self.from_number, "To": self.to_number, "Body": format_sms(event)},
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        sid = resp.json().get("sid")
        if not sid:
            logger.error("Twilio accepted request but returned no message sid")
            return False
        logger.info(
            "SMS sent (sid=%s)", sid,
            extra={"short_id": event.report_short_id, "channel": self.name},
        )
        return True
