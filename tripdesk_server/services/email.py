# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending service. Logs to console when SMTP not configured."""

import asyncio
import enum
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from tripdesk_server.config import settings

logger = logging.getLogger(__name__)


class EmailKind(str, enum.Enum):
    REGISTRATION_CODE = "registration_code"
    LOGIN_CODE = "login_code"
    GUEST_CODE = "guest_code"
    GUEST_WELCOME = "guest_welcome"
    NEW_DEVICE_LOGIN = "new_device_login"


_TEMPLATES: dict[EmailKind, tuple[str, str]] = {
    EmailKind.REGISTRATION_CODE: (
        "Verify your TripDesk account",
        "Your verification code is: {code}\n\n"
        "Enter this code in the app to complete registration.\n\n"
        "The code expires in {minutes} minutes.",
    ),
    EmailKind.LOGIN_CODE: (
        "Your TripDesk login code",
        "Hi {name},\n\nYour login code is: {code}\n\n"
        "The code expires in {minutes} minutes. If you did not try to sign in, ignore this email.",
    ),
    EmailKind.GUEST_CODE: (
        "Your TripDesk guest checkout code",
        "Your guest verification code is: {code}\n\nThe code expires in {minutes} minutes.",
    ),
    EmailKind.GUEST_WELCOME: (
        "Welcome to TripDesk",
        "Hi {name},\n\nYour guest account is ready. You can finish booking now, "
        "and upgrade to a full account any time at {frontend_url}.",
    ),
    EmailKind.NEW_DEVICE_LOGIN: (
        "New device sign-in to TripDesk",
        "Hi {name},\n\nWe detected a sign-in to your TripDesk account from a new device:\n\n"
        "Time: {time}\nDevice: {device}\nIP address: {ip}\n\n"
        "If this was you, no action is needed. If not, contact support right away "
        "to secure your account.",
    ),
}


def wrap_body_html(plain_body: str) -> str:
    """Wrap plain text body in minimal HTML."""
    body_escaped = plain_body.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace("\n", "<br>\n")
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; color: #333; max-width: 560px;">
<div style="white-space: pre-wrap;">{body_escaped}</div>
</body>
</html>"""


def _send_smtp(to: str, subject: str, body: str) -> None:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from
    msg["To"] = to
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(wrap_body_html(body), "html"))
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password or "")
        server.sendmail(settings.smtp_from, [to], msg.as_string())


async def send_email(to: str, subject: str, body: str) -> None:
    """Send an email (plain and HTML). Logs to console if SMTP not configured."""
    if settings.smtp_host and settings.smtp_user:
        try:
            await asyncio.to_thread(_send_smtp, to, subject, body)
        except Exception as e:
            logger.exception("Failed to send email: %s", e)
    else:
        # Body may hold a code; only log that a message would have gone out
        logger.info("Email (SMTP not configured): To=%s Subject=%s", to, subject)


class Mailer:
    """Renders a template kind and sends it. Never raises."""

    def render(self, kind: EmailKind, **context) -> tuple[str, str]:
        subject, body = _TEMPLATES[kind]
        context.setdefault("name", "traveller")
        context.setdefault("minutes", settings.otp_ttl_seconds // 60)
        context.setdefault("frontend_url", settings.frontend_url)
        return subject, body.format(**context)

    async def send(self, to: str, kind: EmailKind, **context) -> None:
        subject, body = self.render(kind, **context)
        await send_email(to, subject, body)
