# backend/portal/tasks/billing_tasks.py
"""Daily billing sweeps. Both are safe to run more than once per day."""

from __future__ import annotations

from typing import Any, Dict

from celery.utils.log import get_task_logger

from portal.core.timezone_utils import utc_now
from portal.database import session_scope
from portal.services.billing_service import SubscriptionBillingService
from portal.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="billing.process_monthly_billing", max_retries=0, queue="billing")
def process_monthly_billing() -> Dict[str, Any]:
    """Apply due downgrades, then invoice every Complete Program cycle that has come due."""
    with session_scope() as session:
        summary = SubscriptionBillingService(session).run_monthly_billing(utc_now())
    logger.info(
        "Monthly billing: processed=%s invoices=%s completed=%s downgraded=%s errors=%s",
        summary["processed"],
        summary["invoices_created"],
        summary["completed"],
        summary["downgraded"],
        summary["errors"],
    )
    return summary


@celery_app.task(name="billing.process_scheduled_downgrades", max_retries=0, queue="billing")
def process_scheduled_downgrades() -> Dict[str, Any]:
    with session_scope() as session:
        summary = SubscriptionBillingService(session).run_downgrade_sweep(utc_now())
    if summary["downgraded"]:
        logger.info("Processed %s scheduled downgrades", summary["downgraded"])
    return summary
