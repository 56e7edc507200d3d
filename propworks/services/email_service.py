"""
Property Works — Intervention Workflow Engine
Email Service.

Email channel of the notification dispatcher.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app
from markupsafe import Markup, escape

logger = logging.getLogger(__name__)


_TEMPLATES: dict[str, dict[str, str]] = {
    "workflow_notification": {
        "subject": "[Property Works] {title}",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <div style="background: #1e293b; color: white; padding: 16px 24px;">
                <h2 style="margin: 0; font-size: 18px;">Property Works</h2>
            </div>
            <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
                <p style="color: #1e293b;">Hello {name},</p>
                <h3 style="margin: 16px 0 8px; color: #1e293b;">{title}</h3>
                <p style="color: #64748b; line-height: 1.6;">{message}</p>
                {entity_line}
            </div>
        </div>
        """,
    },
}


class EmailService:
    """
    Email sending service with template support.

    Without MAIL_SERVER, messages are logged and reported as not sent.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        return _TEMPLATES.get(template_name)

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
    ) -> bool:
        """
        Send one email.

        Returns:
            True if handed to the SMTP server, False in log-only mode.

        Raises:
            smtplib.SMTPException / OSError on delivery failure.
        """
        if not cls.is_configured():
            logger.info("Email (log-only): to=%s subject='%s'", to_email, subject)
            return False

        cls._send_smtp(to_email=to_email, to_name=to_name,
                       subject=subject, html_body=html_body)
        logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        return True

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
    ) -> bool:
        """Send an email using a named template; variables come from ``context``.

        Context values are HTML-escaped in the body unless they are already
        ``Markup``. The subject is plain text and uses them as given.
        """
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return False

        subject = template["subject"].format_map(_SafeDict(context))
        html_body = template["html"].format_map(
            _SafeDict({key: escape(value) for key, value in context.items()}),
        )
        return cls.send(to_email=to_email, to_name=to_name,
                        subject=subject, html_body=html_body)

    @classmethod
    def send_notification(cls, *, user, title: str, message: str,
                          entity_type: str = "", entity_id: int | None = None) -> bool:
        """Email a workflow notification to one user."""
        entity_line = Markup("")
        if entity_type and entity_id is not None:
            entity_line = Markup('<p style="color: #94a3b8; font-size: 12px;">{} #{}</p>').format(
                entity_type, entity_id,
            )
        return cls.send_from_template(
            to_email=user.email,
            to_name=user.full_name,
            template_name="workflow_notification",
            context={
                "name": user.full_name or user.email,
                "title": title,
                "message": message,
                "entity_line": entity_line,
            },
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
