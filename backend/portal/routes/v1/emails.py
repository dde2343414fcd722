# backend/portal/routes/v1/emails.py
"""Manual email endpoint: queue any templated event for a recipient."""

import logging

from fastapi import APIRouter, Depends, status

from ...api.dependencies import get_notification_service
from ...schemas.email import EmailEnqueueRequest, EmailQueuedResponse
from ...services.notification_service import NotificationService, Recipient
from ...services.template_registry import MailEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["emails"])


@router.post("/{event_type}", response_model=EmailQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
def queue_email(
    event_type: str,
    payload: EmailEnqueueRequest,
    service: NotificationService = Depends(get_notification_service),
) -> EmailQueuedResponse:
    event = MailEvent.parse(event_type)
    entry = service.queue_email(
        event, Recipient(str(payload.to_email), payload.to_name), payload.payload
    )
    return EmailQueuedResponse(
        id=entry.id if entry is not None else None,
        event_type=event.value,
        queued=entry is not None,
    )
