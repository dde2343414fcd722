# backend/portal/models/mail_queue.py
"""
Mail queue persistence model.

Every domain event that needs an email writes one row here inside the same
transaction as the state change. The dispatcher claims a row before sending,
so each row is delivered at most once.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..database import Base


class MailStatus(str, Enum):
    """Lifecycle states for a mail queue entry."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MailQueueEntry(Base):
    """Queued transactional email awaiting delivery."""

    __tablename__ = "mail_queue"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    to_email = Column(String(255), nullable=False)
    to_name = Column(String(200), nullable=True)
    event_type = Column(String(64), nullable=False, index=True)
    payload = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )
    status = Column(String(20), nullable=False, default=MailStatus.PENDING.value)
    error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (Index("ix_mail_queue_status_claimed", "status", "claimed_at"),)

    def __repr__(self) -> str:
        return f"<MailQueueEntry {self.id} {self.event_type} -> {self.to_email} {self.status}>"
