"""Schemas for execution snapshots and frozen completion records.

These are embedded as JSON in ``execution_records`` rows and validated back
into models when read.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContributionSource(str, Enum):
    """What moved money toward a goal."""

    DEPOSIT = "DEPOSIT"
    REALLOCATION = "REALLOCATION"


class GoalPlanSnapshot(BaseModel):
    """Planned amount for one goal at the moment tracking started."""

    model_config = ConfigDict(frozen=True)

    goal_id: UUID
    goal_name: str
    planned_amount: Decimal = Field(..., ge=0)
    currency: str
    flex_state: str
    is_skipped: bool = False
    is_protected: bool = False

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are upper-case."""
        return v.upper()


class SnapshotComparison(BaseModel):
    """Planned vs. contributed for one goal."""

    goal_id: UUID
    goal_name: str
    planned: Decimal
    contributed: Decimal
    currency: str
    is_fulfilled: bool
    percentage: float


class ExecutionSnapshot(BaseModel):
    """Immutable capture of every tracked goal's planned amount."""

    model_config = ConfigDict(frozen=True)

    captured_at: datetime
    total_planned: Decimal
    goals: List[GoalPlanSnapshot] = Field(default_factory=list)

    def for_goal(self, goal_id: UUID) -> Optional[GoalPlanSnapshot]:
        return next((g for g in self.goals if g.goal_id == goal_id), None)

    @property
    def goal_count(self) -> int:
        return len(self.goals)

    @property
    def active_goal_count(self) -> int:
        return sum(1 for g in self.goals if not g.is_skipped)

    def compare(self, contributions: Dict[UUID, Decimal]) -> List[SnapshotComparison]:
        """Compare each planned amount with contributed totals.

        Args:
            contributions: Contributed amount per goal, in goal currency

        Returns:
            One comparison per snapshot goal, in snapshot order
        """
        comparisons = []
        for goal in self.goals:
            contributed = contributions.get(goal.goal_id, Decimal("0"))
            percentage = (
                float(contributed / goal.planned_amount * 100) if goal.planned_amount > 0 else 0.0
            )
            comparisons.append(
                SnapshotComparison(
                    goal_id=goal.goal_id,
                    goal_name=goal.goal_name,
                    planned=goal.planned_amount,
                    contributed=contributed,
                    currency=goal.currency,
                    is_fulfilled=contributed >= goal.planned_amount,
                    percentage=percentage,
                )
            )
        return comparisons

    def overall_completion(self, contributions: Dict[UUID, Decimal]) -> float:
        total = sum(contributions.values(), Decimal("0"))
        return float(total / self.total_planned * 100) if self.total_planned > 0 else 0.0


class ContributionSnapshot(BaseModel):
    """One replayed contribution event, valued at the rate frozen at close."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    source: ContributionSource
    asset_id: UUID
    asset_currency: str
    goal_id: UUID
    goal_currency: str
    asset_amount: Decimal
    amount_in_goal_currency: Decimal
    exchange_rate_used: Decimal


class CompletedExecution(BaseModel):
    """Frozen record of a closed period: rates used and per-event amounts."""

    model_config = ConfigDict(frozen=True)

    period_label: str
    completed_at: datetime
    exchange_rates: Dict[str, Decimal] = Field(default_factory=dict)
    goal_snapshots: List[GoalPlanSnapshot] = Field(default_factory=list)
    contributions: List[ContributionSnapshot] = Field(default_factory=list)
    missing_rates: List[str] = Field(default_factory=list)

    def contributed_totals_by_goal(self) -> Dict[UUID, Decimal]:
        totals: Dict[UUID, Decimal] = {}
        for contribution in self.contributions:
            totals[contribution.goal_id] = (
                totals.get(contribution.goal_id, Decimal("0"))
                + contribution.amount_in_goal_currency
            )
        return totals
