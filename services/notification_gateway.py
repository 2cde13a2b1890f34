import os
import ssl
import smtplib
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from datetime import datetime, timezone
from typing import Dict, Optional

from models import VerificationPurpose
from services.verification_errors import NotificationError
from utils.email_utils import mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurposeTemplate:
    subject: str
    message_line: str


PURPOSE_TEMPLATES: Dict[VerificationPurpose, PurposeTemplate] = {
    VerificationPurpose.SIGNUP: PurposeTemplate(
        "[Software Campus] Sign-up verification code",
        "Your sign-up verification code is",
    ),
    VerificationPurpose.PASSWORD_RESET: PurposeTemplate(
        "[Software Campus] Password reset code",
        "Your password reset code is",
    ),
    VerificationPurpose.PASSWORD_CHANGE: PurposeTemplate(
        "[Software Campus] Confirm your password change",
        "Your password change confirmation code is",
    ),
}


class NotificationGateway:
    """Delivers a verification code. Implementations raise NotificationError on failure."""

    def send(self, to: str, code: str, purpose: VerificationPurpose) -> None:
        raise NotImplementedError


# ────────────────────────────────────────────────────────────
# SMTP
# ────────────────────────────────────────────────────────────
def _build_html_email(pin: str, message_line: str, ttl_minutes: int, logo_url: str, sender_name: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="margin: 0; padding: 0; background-color: #F4F6FA; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;">
    <table role="presentation" width="100%" cellspacing="0" cellpadding="0">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width: 480px; background-color: #FFFFFF; border-radius: 16px;">
                    <tr>
                        <td align="center" style="padding: 40px 40px 24px 40px;">
                            <img src="{logo_url}" alt="{sender_name}" width="120" style="display: block; max-width: 120px; height: auto;">
                        </td>
                    </tr>
                    <tr>
                        <td style="padding: 0 40px 20px 40px;">
                            <p style="margin: 0 0 20px 0; color: #333333; font-size: 16px; line-height: 1.5;">
                                {message_line}:
                            </p>
                            <div style="padding: 20px; background-color: #F0F3F9; border-radius: 12px; text-align: center;">
                                <span style="font-size: 36px; font-weight: 700; letter-spacing: 8px; color: #1A1A1A; font-family: 'SF Mono', Monaco, 'Courier New', monospace;">
                                    {pin}
                                </span>
                            </div>
                            <p style="margin: 20px 0 0 0; color: #808080; font-size: 14px; text-align: center;">
                                This code expires in {ttl_minutes} minutes.
                            </p>
                        </td>
                    </tr>
                    <tr>
                        <td style="padding: 0 40px 40px 40px;">
                            <p style="margin: 0; color: #808080; font-size: 13px; line-height: 1.5;">
                                If you didn't request this code, you can safely ignore this email.
                            </p>
                            <p style="margin: 16px 0 0 0; color: #A0A0A0; font-size: 12px; text-align: center;">
                                &copy; {datetime.now(timezone.utc).year} {sender_name}
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""


class SmtpNotificationGateway(NotificationGateway):
    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        sender: str,
        sender_name: str = "Software Campus",
        logo_url: str = "",
        ttl_seconds: int = 180,
        suppress_send: bool = False,
        timeout: int = 15,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.sender_name = sender_name
        self.logo_url = logo_url
        self.ttl_seconds = ttl_seconds
        self.suppress_send = suppress_send
        self.timeout = timeout

    @classmethod
    def from_env(cls, ttl_seconds: int = 180) -> "SmtpNotificationGateway":
        user = os.getenv("SMTP_USER")
        return cls(
            host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=user,
            password=os.getenv("SMTP_PASS"),
            sender=os.getenv("EMAIL_FROM", user or ""),
            sender_name=os.getenv("EMAIL_FROM_NAME", "Software Campus"),
            logo_url=os.getenv("EMAIL_LOGO_URL", ""),
            ttl_seconds=ttl_seconds,
            suppress_send=os.getenv("MAIL_SUPPRESS_SEND", "").lower() in {"1", "true", "yes"},
        )

    def build_message(self, to: str, code: str, purpose: VerificationPurpose) -> EmailMessage:
        template = PURPOSE_TEMPLATES[purpose]
        ttl_minutes = max(1, self.ttl_seconds // 60)

        msg = EmailMessage()
        msg["From"] = f"{self.sender_name} <{self.sender}>"
        msg["To"] = to
        msg["Subject"] = template.subject
        msg["Reply-To"] = self.sender
        msg.set_content(
            f"Hi,\n\n"
            f"{template.message_line}: {code}\n"
            f"It expires in {ttl_minutes} minutes.\n\n"
            f"If you didn't request this, you can safely ignore this email.\n\n"
            f"- {self.sender_name}"
        )
        msg.add_alternative(
            _build_html_email(code, template.message_line, ttl_minutes, self.logo_url, self.sender_name),
            subtype="html",
        )
        return msg

    def send(self, to: str, code: str, purpose: VerificationPurpose) -> None:
        msg = self.build_message(to, code, purpose)

        if self.suppress_send:
            logger.info(f"Email suppressed (MAIL_SUPPRESS_SEND) to={mask_email(to)} purpose={purpose.value}")
            return

        if not all([self.host, self.port, self.user, self.password, self.sender]):
            raise NotificationError("SMTP configuration missing")

        try:
            context = ssl.create_default_context()
            if self.port == 465:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    server.login(self.user, self.password)
                    server.send_message(msg, from_addr=self.sender, to_addrs=[to])
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    server.login(self.user, self.password)
                    server.send_message(msg, from_addr=self.sender, to_addrs=[to])
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Verification email to {mask_email(to)} failed: {e}")
            raise NotificationError() from e

        logger.info(f"Verification email sent to={mask_email(to)} purpose={purpose.value}")
