"""Outbound email notifications.

Delivery is best-effort: callers catch NotificationError, log it and carry on.
A state transition is never undone because an email could not be sent.
"""

import logging
from abc import ABC, abstractmethod
from html import escape

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

# Informational only: communicated to both parties, never computed or collected here
FEE_SCHEDULE = {"client_percent": 3, "owner_percent": 2}


class NotificationError(Exception):
    """The message could not be handed to the email relay."""


class Notifier(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, html: str) -> None:
        """Deliver one message or raise NotificationError."""


class LoggingNotifier(Notifier):
    """Used when no email relay is configured."""

    def send(self, to: str, subject: str, html: str) -> None:
        logger.info("Email to %s: %s (no relay configured, not sent)", to, subject)


class HttpEmailNotifier(Notifier):
    """Posts messages to an HTTP email relay."""

    def __init__(self, endpoint: str, api_key: str | None, timeout: float = 30.0):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = httpx.post(
                self.endpoint,
                json={"to": to, "subject": subject, "html": html},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Email relay rejected message to {to}: {e}") from e
        logger.info("Email sent to %s: %s", to, subject)


def build_notifier(settings: Settings) -> Notifier:
    if settings.email_endpoint:
        return HttpEmailNotifier(settings.email_endpoint, settings.email_api_key, settings.http_timeout_seconds)
    return LoggingNotifier()


# =============================================================================
# MESSAGE BUILDERS
# =============================================================================


def contact_request_notice(
    *, client_name: str, client_email: str | None, owner_name: str, matricule: str,
    contact_id: str, app_url: str,
) -> tuple[str, str]:
    """Admin notice for a new introduction request."""
    subject = f"New contact request for parcel {matricule}"
    html = f"""
        <h2>New contact request</h2>
        <p><strong>Client:</strong> {escape(client_name)} ({escape(client_email or 'no email')})</p>
        <p><strong>Owner:</strong> {escape(owner_name)}</p>
        <p><strong>Parcel:</strong> {escape(matricule)}</p>
        <p><a href="{escape(app_url)}/admin/contacts/{escape(contact_id)}">Review the request</a></p>
    """
    return subject, html


def contact_disclosure_notice(
    *, client_name: str, owner_name: str, owner_email: str | None, owner_phone: str | None,
    matricule: str,
) -> tuple[str, str]:
    """Client notice carrying the owner's contact details and the fee schedule."""
    subject = f"Owner contact details for parcel {matricule}"
    html = f"""
        <h2>Your contact request was approved</h2>
        <p>Hello {escape(client_name)},</p>
        <p>You can now reach the owner of parcel <strong>{escape(matricule)}</strong>:</p>
        <ul>
            <li><strong>Name:</strong> {escape(owner_name)}</li>
            <li><strong>Email:</strong> {escape(owner_email or 'not provided')}</li>
            <li><strong>Phone:</strong> {escape(owner_phone or 'not provided')}</li>
        </ul>
        <p><strong>Brokerage fees</strong> on the eventual sale price:
           client {FEE_SCHEDULE['client_percent']}%, owner {FEE_SCHEDULE['owner_percent']}%.</p>
    """
    return subject, html
