# backend/portal/repositories/mail_queue_repository.py
"""
Repository for mail queue operations.

Implements enqueue, pending fetch, the atomic claim used by the consumer, and
terminal status updates.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from ..models.mail_queue import MailQueueEntry, MailStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class MailQueueRepository(BaseRepository[MailQueueEntry]):
    """Data access helpers for mail queue rows."""

    def __init__(self, db: Session):
        super().__init__(db, MailQueueEntry)

    def enqueue(
        self,
        *,
        event_type: str,
        to_email: str,
        to_name: Optional[str],
        payload: dict[str, Any],
    ) -> MailQueueEntry:
        return self.create(
            event_type=event_type,
            to_email=to_email,
            to_name=to_name,
            payload=payload,
            status=MailStatus.PENDING.value,
        )

    def fetch_pending(self, limit: int = 200) -> list[MailQueueEntry]:
        """Return pending, unclaimed entries in creation order."""
        stmt: Select[Any] = (
            select(MailQueueEntry)
            .where(MailQueueEntry.status == MailStatus.PENDING.value)
            .where(MailQueueEntry.claimed_at.is_(None))
            .order_by(MailQueueEntry.created_at.asc(), MailQueueEntry.id.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim(self, entry_id: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically take ownership of a pending entry.

        Returns True only for the single caller whose UPDATE matched the row.
        """
        result = self.db.execute(
            update(MailQueueEntry)
            .where(MailQueueEntry.id == entry_id)
            .where(MailQueueEntry.status == MailStatus.PENDING.value)
            .where(MailQueueEntry.claimed_at.is_(None))
            .values(claimed_at=now or _now_utc())
            .execution_options(synchronize_session=False)
        )
        claimed = (result.rowcount or 0) == 1
        if not claimed:
            logger.info("Mail entry %s already claimed or finished; skipping", entry_id)
        return claimed

    def mark_sent(self, entry_id: str) -> None:
        now = _now_utc()
        self.db.execute(
            update(MailQueueEntry)
            .where(MailQueueEntry.id == entry_id)
            .values(status=MailStatus.SENT.value, sent_at=now, error=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()

    def mark_failed(self, entry_id: str, error: str) -> None:
        now = _now_utc()
        self.db.execute(
            update(MailQueueEntry)
            .where(MailQueueEntry.id == entry_id)
            .values(
                status=MailStatus.FAILED.value,
                failed_at=now,
                error=(error or "unknown error")[:1000],
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
