"""Pydantic schemas package."""

from savings_planner.schemas.execution import (
    CompletedExecution,
    ContributionSnapshot,
    ContributionSource,
    ExecutionSnapshot,
    GoalPlanSnapshot,
    SnapshotComparison,
)
from savings_planner.schemas.plan import FlexAdjustmentRequest, PlanAmountUpdate

__all__ = [
    "CompletedExecution",
    "ContributionSnapshot",
    "ContributionSource",
    "ExecutionSnapshot",
    "GoalPlanSnapshot",
    "SnapshotComparison",
    "FlexAdjustmentRequest",
    "PlanAmountUpdate",
]
