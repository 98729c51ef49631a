"""Execution record model: one tracking lifecycle per period."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from savings_planner.models.base import Base, UTCDateTime, enum_column, utcnow
from savings_planner.schemas.execution import CompletedExecution, ExecutionSnapshot


class ExecutionStatus(str, Enum):
    DRAFT = "DRAFT"
    EXECUTING = "EXECUTING"
    CLOSED = "CLOSED"


class ExecutionRecord(Base):
    """Tracking lifecycle for one period across all tracked goals.

    The snapshot and the completed execution are stored as JSON and exposed
    as validated pydantic models.
    """

    __tablename__ = "execution_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    period_label: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    status: Mapped[ExecutionStatus] = mapped_column(
        enum_column(ExecutionStatus), default=ExecutionStatus.DRAFT, nullable=False, index=True
    )
    tracked_goal_ids_data: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    can_undo_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    snapshot_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    completed_execution_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        # At most one live record per period
        Index(
            "uq_execution_records_live_period",
            "period_label",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    @property
    def tracked_goal_ids(self) -> list[uuid.UUID]:
        return [uuid.UUID(value) for value in self.tracked_goal_ids_data or []]

    @tracked_goal_ids.setter
    def tracked_goal_ids(self, goal_ids: list[uuid.UUID]) -> None:
        # Preserve order, drop duplicates
        self.tracked_goal_ids_data = list(dict.fromkeys(str(goal_id) for goal_id in goal_ids))

    @property
    def snapshot(self) -> Optional[ExecutionSnapshot]:
        if self.snapshot_data is None:
            return None
        return ExecutionSnapshot.model_validate(self.snapshot_data)

    @snapshot.setter
    def snapshot(self, value: Optional[ExecutionSnapshot]) -> None:
        self.snapshot_data = value.model_dump(mode="json") if value is not None else None

    @property
    def completed_execution(self) -> Optional[CompletedExecution]:
        if self.completed_execution_data is None:
            return None
        return CompletedExecution.model_validate(self.completed_execution_data)

    @completed_execution.setter
    def completed_execution(self, value: Optional[CompletedExecution]) -> None:
        self.completed_execution_data = (
            value.model_dump(mode="json") if value is not None else None
        )

    def can_undo(self, now: datetime) -> bool:
        return self.can_undo_until is not None and now <= self.can_undo_until

    def __repr__(self) -> str:
        return (
            f"<ExecutionRecord(id={self.id}, period={self.period_label}, "
            f"status={self.status}, goals={len(self.tracked_goal_ids_data or [])})>"
        )
