"""Asset, deposit and allocation models (the goal ledger)."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from savings_planner.models.base import Base, enum_column, utcnow


class AllocationKind(str, Enum):
    """How an allocation's stored value is interpreted.

    FIXED values are amounts in the asset currency. SHARE values are a 0..1
    fraction of the asset balance, resolved to a fixed amount when loaded.
    """

    FIXED = "FIXED"
    SHARE = "SHARE"


class Asset(Base):
    """A pooled holding whose balance is the sum of its transactions."""

    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Asset(id={self.id}, name={self.name}, currency={self.currency})>"


class AssetTransaction(Base):
    """Append-only deposit (or withdrawal) against an asset."""

    __tablename__ = "asset_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("idx_asset_transactions_asset_time", "asset_id", "occurred_at"),)

    def __repr__(self) -> str:
        return (
            f"<AssetTransaction(asset_id={self.asset_id}, amount={self.amount}, "
            f"occurred_at={self.occurred_at})>"
        )


class Allocation(Base):
    """A directional claim of part of an asset's balance toward a goal.

    ``goal_id`` is not a foreign key: goals can be removed by lifecycle
    operations outside this package, and such orphaned claims are filtered
    when the ledger is read.
    """

    __tablename__ = "allocations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    goal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount_kind: Mapped[AllocationKind] = mapped_column(
        enum_column(AllocationKind), default=AllocationKind.FIXED, nullable=False
    )
    amount_value: Mapped[Decimal] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("asset_id", "goal_id", name="uq_allocation_asset_goal"),
        CheckConstraint("amount_value >= 0", name="check_allocation_non_negative"),
    )

    def resolve_amount(self, asset_balance: Decimal) -> Decimal:
        """Fixed amount claimed, given the asset's current balance."""
        if self.amount_kind == AllocationKind.SHARE:
            share = min(max(self.amount_value, Decimal("0")), Decimal("1"))
            return max(asset_balance, Decimal("0")) * share
        return self.amount_value

    def __repr__(self) -> str:
        return (
            f"<Allocation(asset_id={self.asset_id}, goal_id={self.goal_id}, "
            f"{self.amount_kind}={self.amount_value})>"
        )


class AllocationHistory(Base):
    """Append-only log of allocation target changes for (asset, goal) pairs."""

    __tablename__ = "allocation_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    goal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    period_label: Mapped[str] = mapped_column(String(7), nullable=False, index=True)

    __table_args__ = (
        Index("idx_allocation_history_pair_time", "asset_id", "goal_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AllocationHistory(asset_id={self.asset_id}, goal_id={self.goal_id}, "
            f"amount={self.amount}, recorded_at={self.recorded_at})>"
        )
