# backend/portal/tasks/appointment_tasks.py
"""Appointment sweeps."""

from __future__ import annotations

from typing import Dict

from celery.utils.log import get_task_logger

from portal.core.timezone_utils import utc_now
from portal.database import session_scope
from portal.services.appointment_service import AppointmentService
from portal.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="appointments.send_daily_reminders", max_retries=0)
def send_daily_reminders() -> Dict[str, int]:
    """Queue a reminder for every confirmed appointment tomorrow (practice time)."""
    with session_scope() as session:
        queued = AppointmentService(session).send_reminders_for_tomorrow(utc_now())
    logger.info("Queued %s appointment reminders", queued)
    return {"queued": queued}
