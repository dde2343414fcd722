# backend/portal/models/intake.py
"""Health intake records submitted before a consultation."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..database import Base


class ConsentRecord(Base):
    """A signed consent (data processing, treatment, marketing, ...)."""

    __tablename__ = "consent_records"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    appointment_id = Column(String(26), ForeignKey("appointments.id"), nullable=True, index=True)
    consent_type = Column(String(50), nullable=False)
    consent_given = Column(Boolean, nullable=False)
    consent_version = Column(String(20), nullable=False, default="1.0")
    consent_date = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PreEvaluation(Base):
    """Pre-consultation health questionnaire."""

    __tablename__ = "pre_evaluations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    appointment_id = Column(String(26), ForeignKey("appointments.id"), nullable=True, index=True)
    health_goals = Column(Text, nullable=True)
    answers = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )
    submitted_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
