# backend/portal/tasks/beat_schedule.py
"""
Celery Beat schedule for the nutrition portal.

Crontab entries are evaluated in the Celery ``timezone``, which is the
practice timezone.
"""

from datetime import timedelta
import logging
from typing import Any, Dict

from celery.schedules import crontab

logger = logging.getLogger(__name__)

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    "send-daily-appointment-reminders": {
        "task": "appointments.send_daily_reminders",
        "schedule": crontab(hour=18, minute=0),
        "options": {"queue": "celery", "priority": 6},
    },
    "process-scheduled-downgrades": {
        "task": "billing.process_scheduled_downgrades",
        "schedule": crontab(hour=8, minute=0),
        "options": {"queue": "billing", "priority": 8},
    },
    "process-monthly-billing": {
        "task": "billing.process_monthly_billing",
        "schedule": crontab(hour=9, minute=0),
        "options": {"queue": "billing", "priority": 8},
    },
    "dispatch-pending-mail": {
        "task": "mail.dispatch_pending",
        "schedule": crontab(minute="*"),
        "options": {"queue": "notifications", "priority": 7},
    },
}

# Local development polls the outbox faster
DEVELOPMENT_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "dispatch-pending-mail": {"schedule": timedelta(seconds=15)},
}


def get_beat_schedule(environment: str = "production") -> Dict[str, Dict[str, Any]]:
    """Return the beat schedule for ``environment``."""
    schedule = {name: dict(entry) for name, entry in CELERYBEAT_SCHEDULE.items()}
    if environment == "development":
        for name, override in DEVELOPMENT_OVERRIDES.items():
            schedule[name].update(override)
    logger.debug(f"Beat schedule for {environment}: {sorted(schedule)}")
    return schedule
