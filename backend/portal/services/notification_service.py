# backend/portal/services/notification_service.py
"""
Notification dispatcher for the nutrition portal.

Domain services never talk to the email provider directly. They append a row
to the ``mail_queue`` outbox through ``enqueue``; the Celery consumer later
calls ``deliver`` once per row. Delivery first claims the row with a
conditional UPDATE so a second trigger for the same row is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import MAIL_DISPATCH_BATCH_SIZE
from ..core.exceptions import NotFoundException, RepositoryException
from ..models.mail_queue import MailQueueEntry
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.mail_queue_repository import MailQueueRepository
from .base import BaseService
from .email import EmailSender, get_email_service
from .email_subjects import EmailSubject
from .template_registry import MailEvent, get_template_for_event
from .template_service import TemplateService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: Optional[str] = None


def admin_recipient() -> Recipient:
    return Recipient(email=settings.admin_email, name=settings.admin_name)


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationService(BaseService):
    """
    Outbox producer and consumer.

    Args:
        db: Database session
        email_service: Sender used by ``deliver`` (built from settings when omitted)
        template_service: Renderer used by ``deliver``
    """

    def __init__(
        self,
        db: Session,
        email_service: Optional[EmailSender] = None,
        template_service: Optional[TemplateService] = None,
    ) -> None:
        super().__init__(db)
        self.repository = MailQueueRepository(db)
        self._email_service = email_service
        self._template_service = template_service

    @property
    def email_service(self) -> EmailSender:
        if self._email_service is None:
            self._email_service = get_email_service(self.db)
        return self._email_service

    @property
    def template_service(self) -> TemplateService:
        if self._template_service is None:
            self._template_service = TemplateService(self.db)
        return self._template_service

    # Producer

    def enqueue(
        self,
        event_type: str | MailEvent,
        recipient: Recipient,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Optional[MailQueueEntry]:
        """
        Append a pending entry inside the caller's transaction.

        The insert runs in a SAVEPOINT; a storage failure is logged and
        ``None`` returned so the caller's own write still commits.

        Raises:
            ValidationException: unknown event type
        """
        event = MailEvent.parse(event_type)
        try:
            entry = self.repository.enqueue(
                event_type=event.value,
                to_email=recipient.email,
                to_name=recipient.name,
                payload=jsonable_encoder(dict(payload or {})),
            )
        except (SQLAlchemyError, RepositoryException) as exc:
            self.logger.error(
                f"Failed to enqueue {event.value} for {recipient.email}: {exc}",
                extra={"event_type": event.value},
            )
            return None

        self.logger.debug(f"Queued {event.value} mail {entry.id} for {recipient.email}")
        return entry

    def notify_admin(
        self, event_type: str | MailEvent, payload: Optional[Mapping[str, Any]] = None
    ) -> Optional[MailQueueEntry]:
        return self.enqueue(event_type, admin_recipient(), payload)

    @BaseService.measure_operation("queue_email")
    def queue_email(
        self,
        event_type: str | MailEvent,
        recipient: Recipient,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Optional[MailQueueEntry]:
        """Enqueue and commit; used by the manual email endpoint."""
        with self.transaction():
            return self.enqueue(event_type, recipient, payload)

    # Consumer

    def pending_ids(self, limit: int = MAIL_DISPATCH_BATCH_SIZE) -> List[str]:
        return [entry.id for entry in self.repository.fetch_pending(limit)]

    @BaseService.measure_operation("deliver_mail")
    def deliver(self, entry_id: str) -> DeliveryOutcome:
        """
        Claim, render, send, and record one outbox entry.

        Returns:
            SKIPPED when another consumer already owns the entry, otherwise the
            terminal status written to the row.
        """
        with self.transaction():
            claimed = self.repository.claim(entry_id)
        if not claimed:
            if self.repository.get_by_id(entry_id) is None:
                raise NotFoundException(f"Mail entry {entry_id} not found", code="MAIL_NOT_FOUND")
            return DeliveryOutcome.SKIPPED

        entry = self.repository.get_by_id(entry_id)
        if entry is None:
            raise NotFoundException(f"Mail entry {entry_id} not found", code="MAIL_NOT_FOUND")
        self.db.refresh(entry)

        event_type = entry.event_type
        prometheus_metrics.record_mail_attempt(event_type)
        started = time.monotonic()
        try:
            subject, html = self.render(entry)
            self.email_service.send_email(
                to_email=entry.to_email,
                subject=subject,
                html_content=html,
                to_name=entry.to_name,
            )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            self.logger.error(f"Mail {entry_id} ({event_type}) failed: {error}")
            with self.transaction():
                self.repository.mark_failed(entry_id, error)
            prometheus_metrics.record_mail_outcome(event_type, DeliveryOutcome.FAILED.value)
            return DeliveryOutcome.FAILED
        finally:
            prometheus_metrics.observe_mail_dispatch(event_type, time.monotonic() - started)

        with self.transaction():
            self.repository.mark_sent(entry_id)
        prometheus_metrics.record_mail_outcome(event_type, DeliveryOutcome.SENT.value)
        self.log_operation("mail_sent", entry_id=entry_id, event_type=event_type)
        return DeliveryOutcome.SENT

    def render(self, entry: MailQueueEntry) -> tuple[str, str]:
        """Resolve the event to its template and subject and render the body."""
        event = MailEvent.parse(entry.event_type)
        payload: Dict[str, Any] = dict(entry.payload or {})
        context = {**payload, "recipient_name": entry.to_name, "event_type": event.value}
        html = self.template_service.render_template(get_template_for_event(event), context=context)
        return EmailSubject.for_event(event, payload), html
