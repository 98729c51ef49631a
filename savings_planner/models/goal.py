"""Savings goal model."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Date, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from savings_planner.models.base import Base, enum_column, utcnow


class GoalStatus(str, Enum):
    """Goal lifecycle status. Only ACTIVE goals are scheduled."""

    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"
    DELETED = "DELETED"


class Goal(Base):
    """A savings target with currency, amount and deadline."""

    __tablename__ = "goals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    target_amount: Mapped[Decimal] = mapped_column(nullable=False)
    deadline: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False, default=lambda: utcnow().date())
    status: Mapped[GoalStatus] = mapped_column(
        enum_column(GoalStatus), default=GoalStatus.ACTIVE, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="check_goal_target_positive"),
        Index("idx_goals_status_deadline", "status", "deadline"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == GoalStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<Goal(id={self.id}, name={self.name}, target={self.target_amount} "
            f"{self.currency}, deadline={self.deadline}, status={self.status})>"
        )
