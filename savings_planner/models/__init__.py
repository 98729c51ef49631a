"""Database models package."""

from savings_planner.models.base import Base
from savings_planner.models.goal import Goal, GoalStatus
from savings_planner.models.asset import (
    Allocation,
    AllocationHistory,
    AllocationKind,
    Asset,
    AssetTransaction,
)
from savings_planner.models.monthly_plan import (
    FlexState,
    MonthlyPlan,
    PlanState,
    RequirementStatus,
)
from savings_planner.models.execution_record import ExecutionRecord, ExecutionStatus

__all__ = [
    "Base",
    "Goal",
    "GoalStatus",
    "Asset",
    "AssetTransaction",
    "Allocation",
    "AllocationKind",
    "AllocationHistory",
    "MonthlyPlan",
    "PlanState",
    "FlexState",
    "RequirementStatus",
    "ExecutionRecord",
    "ExecutionStatus",
]
