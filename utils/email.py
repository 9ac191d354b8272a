from datetime import datetime, timezone
from html import escape
from typing import Optional

import httpx
import structlog

from config import APP_NAME, APP_URL, EMAIL_FROM, EMAIL_FROM_NAME, SENDGRID_API_KEY
from errors import EmailDeliveryError

logger = structlog.get_logger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailSender:
    """Delivers a rendered HTML message. Subclasses pick the transport."""

    def send(self, to: str, subject: str, html: str) -> None:
        raise NotImplementedError


class SendGridEmailSender(EmailSender):
    def __init__(self, api_key: str, from_email: str = EMAIL_FROM, from_name: str = EMAIL_FROM_NAME,
                 timeout: float = 15.0):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": to}], "subject": subject}],
            "from": {"email": self.from_email, "name": self.from_name},
            "content": [{"type": "text/html", "value": html}],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = httpx.post(SENDGRID_URL, json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Email transport failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error("email_rejected", status=response.status_code, body=response.text[:500])
            raise EmailDeliveryError()

        logger.info("email_sent", subject=subject)


class LogEmailSender(EmailSender):
    """Used when no provider is configured: the message only reaches the log."""

    def send(self, to: str, subject: str, html: str) -> None:
        logger.warning("email_not_sent_no_provider", subject=subject)
        logger.debug("email_body", subject=subject, html=html)


def get_email_sender() -> EmailSender:
    if SENDGRID_API_KEY:
        return SendGridEmailSender(SENDGRID_API_KEY)
    return LogEmailSender()


def _layout(body: str) -> str:
    return f'<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">{body}</div>'


def _button(url: str, label: str, color: str) -> str:
    return (
        f'<div style="text-align: center; margin: 30px 0;">'
        f'<a href="{url}" style="background-color: {color}; color: white; padding: 12px 24px; '
        f'text-decoration: none; border-radius: 6px; display: inline-block;">{label}</a></div>'
        f'<p>If the button does not work, copy this link into your browser:</p>'
        f'<p style="word-break: break-all; color: #666;">{url}</p>'
    )


def send_email_verification(sender: EmailSender, to: str, token: str, name: Optional[str]) -> None:
    url = f"{APP_URL}/auth/verify-email?token={token}"
    html = _layout(
        f"<h1>Welcome, {escape(name or 'there')}!</h1>"
        f"<p>Thanks for joining {escape(APP_NAME)}. Please confirm your email address to finish signing up.</p>"
        + _button(url, "Confirm email address", "#007bff")
        + "<p><small>This link expires in 24 hours.</small></p>"
    )
    sender.send(to, "Confirm your email address", html)


def send_password_reset(sender: EmailSender, to: str, token: str, name: Optional[str]) -> None:
    url = f"{APP_URL}/auth/reset-password?token={token}"
    html = _layout(
        "<h1>Password reset</h1>"
        f"<p>Hello, {escape(name or 'there')}!</p>"
        "<p>We received a request to reset the password for your account. "
        "If you did not ask for this, you can ignore this email.</p>"
        + _button(url, "Reset password", "#dc3545")
        + "<p><small>This link expires in 1 hour.</small></p>"
    )
    sender.send(to, "Reset your password", html)


def send_security_alert(sender: EmailSender, to: str, name: Optional[str], action: str,
                        ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> None:
    when = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    html = _layout(
        "<h1>Security notice</h1>"
        f"<p>Hello, {escape(name or 'there')}!</p>"
        "<p>We want to let you know about the following activity on your account:</p>"
        '<div style="background-color: #fff3cd; border: 1px solid #ffeaa7; border-radius: 6px; '
        'padding: 15px; margin: 20px 0;">'
        f"<strong>Action:</strong> {escape(action)}<br>"
        f"<strong>Time:</strong> {when}<br>"
        f"<strong>IP address:</strong> {escape(ip_address or 'Unknown')}<br>"
        f"<strong>Device:</strong> {escape(user_agent or 'Unknown')}"
        "</div>"
        "<p>If this wasn't you, sign in right away and change your password.</p>"
    )
    sender.send(to, "Security notice", html)
