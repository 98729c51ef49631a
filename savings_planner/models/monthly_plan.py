"""Monthly plan model: one goal's required contribution for one period."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from savings_planner.models.base import MONEY, Base, enum_column, utcnow


class PlanState(str, Enum):
    """Plan lifecycle. Moves forward only, except gated undo steps."""

    DRAFT = "DRAFT"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"


class FlexState(str, Enum):
    """Whether bulk flex adjustment may alter the plan's amount."""

    FLEXIBLE = "FLEXIBLE"
    PROTECTED = "PROTECTED"
    SKIPPED = "SKIPPED"


class RequirementStatus(str, Enum):
    COMPLETED = "COMPLETED"
    ON_TRACK = "ON_TRACK"
    ATTENTION = "ATTENTION"
    CRITICAL = "CRITICAL"


class MonthlyPlan(Base):
    """Computed, user-overridable required contribution for a goal in a period."""

    __tablename__ = "monthly_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    goal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    period_label: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    required_monthly: Mapped[Decimal] = mapped_column(nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(nullable=False)
    months_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    requirement_status: Mapped[RequirementStatus] = mapped_column(
        enum_column(RequirementStatus), default=RequirementStatus.ON_TRACK, nullable=False
    )
    flex_state: Mapped[FlexState] = mapped_column(
        enum_column(FlexState), default=FlexState.FLEXIBLE, nullable=False
    )
    custom_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    plan_state: Mapped[PlanState] = mapped_column(
        enum_column(PlanState), default=PlanState.DRAFT, nullable=False, index=True
    )
    last_calculated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("goal_id", "period_label", name="uq_monthly_plan_goal_period"),
        CheckConstraint("required_monthly >= 0", name="check_required_non_negative"),
        CheckConstraint("months_remaining > 0", name="check_months_positive"),
        Index("idx_monthly_plans_period_state", "period_label", "plan_state"),
    )

    @property
    def is_skipped(self) -> bool:
        return self.flex_state == FlexState.SKIPPED

    @property
    def is_protected(self) -> bool:
        return self.flex_state == FlexState.PROTECTED

    @property
    def effective_amount(self) -> Decimal:
        """Amount the user intends to contribute this period."""
        if self.is_skipped:
            return Decimal("0")
        if self.custom_amount is not None:
            return self.custom_amount
        return self.required_monthly

    @property
    def is_actionable(self) -> bool:
        return not self.is_skipped and self.remaining_amount > 0 and self.effective_amount > 0

    def __repr__(self) -> str:
        return (
            f"<MonthlyPlan(goal_id={self.goal_id}, period={self.period_label}, "
            f"required={self.required_monthly}, state={self.plan_state}, "
            f"flex={self.flex_state})>"
        )
