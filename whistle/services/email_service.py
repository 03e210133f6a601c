"""
Whistle Core
Email channel: HTML alert emails to the administrator over SMTP.

When SMTP is not configured, emails are logged but not sent (dev/test mode)
and the send counts as delivered.

Configuration (env vars):
    MAIL_SERVER          SMTP host (default: None → log-only mode)
    MAIL_PORT            SMTP port (default: 587)
    MAIL_USE_TLS         Use TLS (default: true)
    MAIL_USERNAME        SMTP username
    MAIL_PASSWORD        SMTP password
    MAIL_DEFAULT_SENDER  From address
    ADMIN_EMAIL          Recipient of all alerts
    ADMIN_DASHBOARD_URL  Link rendered in the email body

Config is captured when the channel is built; ``send`` runs on a router worker
thread without an application context.
"""

from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from whistle.services.notification import NotificationChannel, NotificationEvent

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {priority_color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        <p style="margin: 0 0 8px;"><strong>Report:</strong> {short_id}</p>
        <p style="margin: 0 0 8px;"><strong>Priority:</strong> {priority}</p>
        <p style="margin: 0 0 8px;"><strong>Category:</strong> {category}</p>
        {body}
        <div style="text-align: center; margin-top: 24px;">
            <a href="{dashboard_url}"
               style="background: {priority_color}; color: white; padding: 12px 24px;
                      text-decoration: none; border-radius: 5px; display: inline-block;">
                Open admin dashboard
            </a>
        </div>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "new_report": {
        "subject": "[Whistle] {priority_label} report received: {short_id}",
        "heading": "New report received",
        "body": """
        <div style="background: #ffffff; padding: 12px; border-radius: 5px; margin: 12px 0;">
            {message_preview}
        </div>
        """,
    },
    "escalation": {
        "subject": "[Whistle] ESCALATION #{escalation_count}: {short_id} unresolved for {age_hours}h",
        "heading": "Report escalated",
        "body": """
        <p style="color: #b91c1c;">
            This report has been unresolved for <strong>{age_hours} hours</strong>
            (escalation {escalation_count}).
        </p>
        <div style="background: #ffffff; padding: 12px; border-radius: 5px; margin: 12px 0;">
            {message_preview}
        </div>
        """,
    },
}

PRIORITY_COLORS = {
    "urgent": "#dc2626",
    "high": "#ea580c",
    "medium": "#ca8a04",
    "low": "#2563eb",
}


def render(event: NotificationEvent, dashboard_url: str) -> tuple[str, str] | None:
    """Return ``(subject, html_body)`` for ``event`` or ``None`` if no template."""
    template = _TEMPLATES.get(event.kind)
    if not template:
        return None
    payload = event.payload or {}
    context = _SafeDict({
        k: html.escape(str(v)) for k, v in payload.items() if v is not None
    })
    context.update({
        "short_id": html.escape(event.report_short_id),
        "priority": html.escape(event.priority),
        "priority_label": html.escape(event.priority.upper()),
        "priority_color": PRIORITY_COLORS.get(event.priority, "#475569"),
        "dashboard_url": html.escape(dashboard_url, quote=True),
    })
    context.setdefault("category", "general")
    context.setdefault("message_preview", "")

    subject = template["subject"].format_map(context)
    body = template["body"].format_map(context)
    html_body = _LAYOUT.format_map(_SafeDict(context, heading=template["heading"], body=body))
    return subject, html_body


class EmailChannel(NotificationChannel):
    """SMTP email to ADMIN_EMAIL."""

    name = "email"

    def __init__(self, *, server=None, port=587, use_tls=True, username=None, password=None,
                 sender=None, admin_email=None, dashboard_url="", timeout=30):
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.sender = sender or (f"noreply@{server}" if server else "noreply@whistle.local")
        self.admin_email = admin_email
        self.dashboard_url = dashboard_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> EmailChannel:
        return cls(
            server=config.get("MAIL_SERVER"),
            port=int(config.get("MAIL_PORT", 587)),
            use_tls=config.get("MAIL_USE_TLS", True),
            username=config.get("MAIL_USERNAME"),
            password=config.get("MAIL_PASSWORD"),
            sender=config.get("MAIL_DEFAULT_SENDER"),
            admin_email=config.get("ADMIN_EMAIL"),
            dashboard_url=config.get("ADMIN_DASHBOARD_URL", ""),
            timeout=float(config.get("NOTIFICATION_SEND_TIMEOUT", 30)),
        )

    def is_configured(self) -> bool:
        return bool(self.server)

    def send(self, event: NotificationEvent) -> bool:
        rendered = render(event, self.dashboard_url)
        if rendered is None:
            logger.warning("Email template not found: %s", event.kind)
            return False
        subject, html_body = rendered

        if not self.is_configured():
            # Dev/test mode: log only
            logger.info(
                "Email (dev mode): subject='%s'", subject,
                extra={"short_id": event.report_short_id, "channel": self.name},
            )
            return True

        if not self.admin_email:
            logger.warning("ADMIN_EMAIL not set, email alert skipped")
            return False

        self._send_smtp(subject=subject, html_body=html_body)
        logger.info(
            "Email sent: subject='%s'", subject,
            extra={"short_id": event.report_short_id, "channel": self.name},
        )
        return True

    def _send_smtp(self, *, subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = self.admin_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
