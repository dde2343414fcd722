# backend/portal/tasks/notification_tasks.py
"""
Celery tasks for the mail outbox.

1. `mail.dispatch_pending` runs every minute and schedules one delivery per
   pending, unclaimed entry.
2. `mail.deliver` claims the entry and sends it once. Scheduling the same
   entry twice is harmless because the second claim fails.
"""

from __future__ import annotations

from typing import Optional

from celery.utils.log import get_task_logger

from portal.core.constants import MAIL_DISPATCH_BATCH_SIZE
from portal.core.exceptions import NotFoundException
from portal.database import session_scope
from portal.services.notification_service import NotificationService
from portal.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="mail.dispatch_pending", max_retries=0, queue="notifications")
def dispatch_pending(limit: int = MAIL_DISPATCH_BATCH_SIZE) -> int:
    """
    Fetch pending mail entries and enqueue delivery tasks.

    Returns the number of entries scheduled.
    """
    with session_scope() as session:
        entry_ids = NotificationService(session).pending_ids(limit)

    for entry_id in entry_ids:
        deliver.apply_async((entry_id,), queue="notifications")
    if entry_ids:
        logger.info("Scheduled %s mail entries for delivery", len(entry_ids))
    return len(entry_ids)


@celery_app.task(name="mail.deliver", max_retries=0, queue="notifications")
def deliver(entry_id: str) -> Optional[str]:
    """Deliver a single mail entry; returns the resulting status."""
    with session_scope() as session:
        try:
            outcome = NotificationService(session).deliver(entry_id)
        except NotFoundException:
            logger.warning("Mail entry %s missing; skipping", entry_id)
            return None
    logger.info("Mail entry %s: %s", entry_id, outcome.value)
    return outcome.value
