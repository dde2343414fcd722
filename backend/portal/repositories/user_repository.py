# backend/portal/repositories/user_repository.py
"""Data access for client accounts and their subscription state."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.user import ServicePlan, SubscriptionStatus, User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_for_update(self, user_id: str) -> Optional[User]:
        stmt = select(User).where(User.id == user_id)
        if self.dialect_name == "postgresql":
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_active_complete_program(self) -> List[User]:
        """Users the monthly billing sweep has to look at."""
        stmt = (
            select(User)
            .where(
                User.service_plan == ServicePlan.COMPLETE_PROGRAM.value,
                User.subscription_status == SubscriptionStatus.ACTIVE.value,
            )
            .order_by(User.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_due_downgrades(self, today: date) -> List[User]:
        stmt = (
            select(User)
            .where(
                User.planned_downgrade.is_(True),
                User.downgrade_effective_date.is_not(None),
                User.downgrade_effective_date <= today,
            )
            .order_by(User.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())
