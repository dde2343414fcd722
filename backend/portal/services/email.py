# backend/portal/services/email.py
"""
Email delivery for the nutrition portal.

``EmailService`` sends through the Resend API. ``ConsoleEmailService`` only
logs, and is what local runs and tests use. ``get_email_service`` picks one
from ``settings.email_provider``.
"""

import logging
import re
from typing import Any, Dict, Optional, Protocol

import resend
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import ServiceException, UpstreamCollaboratorException
from .base import BaseService

logger = logging.getLogger(__name__)


def html_to_text(html_content: str) -> str:
    """Convert HTML content to plain text for better deliverability"""
    text = re.sub(r"<[^>]+>", "", html_content)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


class EmailSender(Protocol):
    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        to_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...


class EmailService(BaseService):
    """Send emails using the Resend API."""

    def __init__(self, db: Optional[Session] = None):
        super().__init__(db)  # type: ignore[arg-type]

        api_key = settings.resend_api_key
        if not api_key:
            raise ServiceException("Resend API key not configured")

        resend.api_key = api_key
        self.from_email = settings.from_email
        self.logger.info("EmailService initialized successfully")

    @BaseService.measure_operation("send_email")
    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        to_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a single email.

        Args:
            to_email: Recipient email address
            subject: Email subject
            html_content: HTML content of the email
            text_content: Optional plain text version (derived from the HTML otherwise)
            to_name: Optional recipient display name

        Returns:
            Dict containing the Resend API response

        Raises:
            UpstreamCollaboratorException: If Resend rejects the message
        """
        recipient = f"{to_name} <{to_email}>" if to_name else to_email
        email_data = {
            "from": self.from_email,
            "to": recipient,
            "subject": subject,
            "html": html_content,
            "text": text_content or html_to_text(html_content),
        }
        try:
            response = resend.Emails.send(email_data)
        except Exception as e:
            error_msg = str(e) or type(e).__name__
            self.logger.error(f"Failed to send email to {to_email}: {error_msg}")
            self.log_operation("email_failed", to_email=to_email, subject=subject, error=error_msg)
            raise UpstreamCollaboratorException("email", f"Email sending failed: {error_msg}")

        self.logger.info(f"Email sent successfully to {to_email} - Subject: {subject}")
        self.log_operation("email_sent", to_email=to_email, subject=subject)
        return dict(response) if response else {}


class ConsoleEmailService:
    """Email sender that only logs; used when no real provider is configured."""

    def __init__(self, *_: Any, **__: Any) -> None:
        self.sent: list[Dict[str, Any]] = []

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        to_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        message = {
            "to": to_email,
            "to_name": to_name,
            "subject": subject,
            "text": text_content or html_to_text(html_content),
        }
        self.sent.append(message)
        logger.info("[console email] to=%s subject=%s", to_email, subject)
        return {"id": f"console-{len(self.sent)}"}


def get_email_service(db: Optional[Session] = None) -> EmailSender:
    """Build the configured email sender."""
    if settings.email_provider == "resend":
        return EmailService(db)
    return ConsoleEmailService()
