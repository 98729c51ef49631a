"""Goal ledger access: goals, assets, deposits and allocations."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from savings_planner.exceptions import InvalidAmountError, RecordNotFoundError
from savings_planner.logging_config import get_logger
from savings_planner.models import (
    Allocation,
    AllocationHistory,
    AllocationKind,
    Asset,
    AssetTransaction,
    Goal,
    GoalStatus,
)
from savings_planner.models.base import utcnow
from savings_planner.money import ZERO
from savings_planner.periods import period_label

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanningGoal:
    """Plain goal record handed to the scheduler and plan service.

    ``current_total`` is the funded amount in the goal currency; it is zero
    until filled in by ``GoalCalculationService.with_current_totals``.
    """

    id: UUID
    name: str
    currency: str
    target_amount: Decimal
    deadline: date
    status: GoalStatus
    current_total: Decimal = ZERO
    is_approximate: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == GoalStatus.ACTIVE

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, self.target_amount - self.current_total)


@dataclass(frozen=True)
class AllocationRecord:
    """Allocation with its amount resolved to asset currency."""

    asset_id: UUID
    asset_currency: str
    goal_id: UUID
    amount: Decimal
    asset_balance: Decimal

    @property
    def is_over_allocated(self) -> bool:
        return self.amount > self.asset_balance


class LedgerRepository:
    """Reads and writes the goal ledger through an ``AsyncSession``."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        """Initialize ledger repository.

        Args:
            db: Database session
            clock: Source of the current UTC instant
        """
        self.db = db
        self.clock = clock

    # Goals

    async def get_goal(self, goal_id: UUID) -> Optional[Goal]:
        return await self.db.get(Goal, goal_id)

    async def list_goals(self, status: Optional[GoalStatus] = None) -> List[Goal]:
        """List goals ordered by deadline.

        Args:
            status: Optional status filter

        Returns:
            List of goals
        """
        stmt = select(Goal)
        if status:
            stmt = stmt.where(Goal.status == status)
        stmt = stmt.order_by(Goal.deadline, Goal.created_at)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def load_planning_goals(
        self, goal_ids: Optional[Iterable[UUID]] = None
    ) -> List[PlanningGoal]:
        """Load plain goal records, all non-deleted goals when ``goal_ids`` is None."""
        stmt = select(Goal).where(Goal.status != GoalStatus.DELETED)
        if goal_ids is not None:
            stmt = stmt.where(Goal.id.in_(list(goal_ids)))
        stmt = stmt.order_by(Goal.deadline, Goal.created_at)

        result = await self.db.execute(stmt)
        return [
            PlanningGoal(
                id=goal.id,
                name=goal.name,
                currency=goal.currency,
                target_amount=goal.target_amount,
                deadline=goal.deadline,
                status=goal.status,
            )
            for goal in result.scalars().all()
        ]

    # Assets and deposits

    async def get_asset(self, asset_id: UUID) -> Optional[Asset]:
        return await self.db.get(Asset, asset_id)

    async def get_assets(self, asset_ids: Iterable[UUID]) -> Dict[UUID, Asset]:
        ids = list(set(asset_ids))
        if not ids:
            return {}
        result = await self.db.execute(select(Asset).where(Asset.id.in_(ids)))
        return {asset.id: asset for asset in result.scalars().all()}

    async def get_asset_balance(
        self, asset_id: UUID, as_of: Optional[datetime] = None
    ) -> Decimal:
        """Sum of the asset's transactions.

        Args:
            asset_id: Asset ID
            as_of: Only count transactions strictly before this instant

        Returns:
            Balance in asset currency
        """
        stmt = select(AssetTransaction.amount).where(AssetTransaction.asset_id == asset_id)
        if as_of is not None:
            stmt = stmt.where(AssetTransaction.occurred_at < as_of)

        result = await self.db.execute(stmt)
        return sum(result.scalars().all(), ZERO)

    async def add_transaction(
        self, asset_id: UUID, amount: Decimal, occurred_at: Optional[datetime] = None
    ) -> AssetTransaction:
        """Append a deposit (positive) or withdrawal (negative)."""
        if amount == 0:
            raise InvalidAmountError("Transaction amount cannot be zero")
        if await self.get_asset(asset_id) is None:
            raise RecordNotFoundError(f"Asset {asset_id} not found")

        transaction = AssetTransaction(
            asset_id=asset_id, amount=amount, occurred_at=occurred_at or self.clock()
        )
        self.db.add(transaction)
        await self.db.flush()

        logger.info(
            "Asset transaction recorded",
            asset_id=str(asset_id),
            amount=str(amount),
            occurred_at=transaction.occurred_at.isoformat(),
        )
        return transaction

    async def list_transactions(
        self,
        asset_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AssetTransaction]:
        """Transactions with ``start <= occurred_at <= end``, oldest first."""
        stmt = select(AssetTransaction).where(AssetTransaction.asset_id == asset_id)
        if start is not None:
            stmt = stmt.where(AssetTransaction.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(AssetTransaction.occurred_at <= end)
        stmt = stmt.order_by(AssetTransaction.occurred_at)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # Allocations

    async def list_allocations(
        self, goal_ids: Optional[Iterable[UUID]] = None
    ) -> List[AllocationRecord]:
        """Load allocations with amounts resolved against current balances.

        Allocations pointing at a missing asset, a missing goal or a deleted
        goal are dropped with a warning.
        """
        stmt = (
            select(Allocation, Asset, Goal)
            .outerjoin(Asset, Asset.id == Allocation.asset_id)
            .outerjoin(Goal, Goal.id == Allocation.goal_id)
        )
        if goal_ids is not None:
            stmt = stmt.where(Allocation.goal_id.in_(list(goal_ids)))

        result = await self.db.execute(stmt)

        records: List[AllocationRecord] = []
        balances: Dict[UUID, Decimal] = {}
        for allocation, asset, goal in result.all():
            if asset is None or goal is None or goal.status == GoalStatus.DELETED:
                logger.warning(
                    "Skipping orphaned allocation",
                    allocation_id=str(allocation.id),
                    asset_id=str(allocation.asset_id),
                    goal_id=str(allocation.goal_id),
                )
                continue

            if asset.id not in balances:
                balances[asset.id] = await self.get_asset_balance(asset.id)
            balance = balances[asset.id]

            records.append(
                AllocationRecord(
                    asset_id=asset.id,
                    asset_currency=asset.currency,
                    goal_id=goal.id,
                    amount=allocation.resolve_amount(balance),
                    asset_balance=balance,
                )
            )
        return records

    async def list_goal_allocations(self, goal_ids: Iterable[UUID]) -> List[Allocation]:
        """Raw allocation rows of the given goals, unresolved."""
        ids = list(set(goal_ids))
        if not ids:
            return []
        result = await self.db.execute(select(Allocation).where(Allocation.goal_id.in_(ids)))
        return list(result.scalars().all())

    async def set_allocation(
        self,
        asset_id: UUID,
        goal_id: UUID,
        amount: Decimal,
        kind: AllocationKind = AllocationKind.FIXED,
        recorded_at: Optional[datetime] = None,
    ) -> Allocation:
        """Create or update the allocation of an asset to a goal.

        A history row recording the resolved target is appended in both cases.

        Raises:
            InvalidAmountError: If amount is negative, or a share is above 1
            RecordNotFoundError: If the asset or goal does not exist
        """
        if amount < 0:
            raise InvalidAmountError("Allocation amount cannot be negative")
        if kind == AllocationKind.SHARE and amount > 1:
            raise InvalidAmountError("Allocation share must be between 0 and 1")

        asset = await self.get_asset(asset_id)
        if asset is None:
            raise RecordNotFoundError(f"Asset {asset_id} not found")
        if await self.get_goal(goal_id) is None:
            raise RecordNotFoundError(f"Goal {goal_id} not found")

        stmt = select(Allocation).where(
            and_(Allocation.asset_id == asset_id, Allocation.goal_id == goal_id)
        )
        allocation = (await self.db.execute(stmt)).scalar_one_or_none()
        if allocation is None:
            allocation = Allocation(asset_id=asset_id, goal_id=goal_id)
            self.db.add(allocation)
        allocation.amount_kind = kind
        allocation.amount_value = amount

        balance = await self.get_asset_balance(asset_id)
        self.record_history(
            asset_id, goal_id, allocation.resolve_amount(balance), recorded_at or self.clock()
        )
        await self.db.flush()

        logger.info(
            "Allocation set",
            asset_id=str(asset_id),
            goal_id=str(goal_id),
            kind=kind.value,
            amount=str(amount),
        )
        return allocation

    async def release_allocations(self, goal_id: UUID) -> int:
        """Remove every allocation of a goal and log zero targets.

        Returns:
            Number of allocations removed
        """
        stmt = select(Allocation).where(Allocation.goal_id == goal_id)
        allocations = list((await self.db.execute(stmt)).scalars().all())

        now = self.clock()
        for allocation in allocations:
            self.record_history(allocation.asset_id, goal_id, ZERO, now)
            await self.db.delete(allocation)
        await self.db.flush()

        logger.info("Allocations released", goal_id=str(goal_id), count=len(allocations))
        return len(allocations)

    # Allocation history

    def record_history(
        self, asset_id: UUID, goal_id: UUID, amount: Decimal, recorded_at: datetime
    ) -> AllocationHistory:
        history = AllocationHistory(
            asset_id=asset_id,
            goal_id=goal_id,
            amount=amount,
            recorded_at=recorded_at,
            period_label=period_label(recorded_at),
        )
        self.db.add(history)
        return history

    async def list_history(
        self,
        asset_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AllocationHistory]:
        """History rows with ``after < recorded_at <= until``, oldest first."""
        stmt = select(AllocationHistory).where(AllocationHistory.asset_id == asset_id)
        if after is not None:
            stmt = stmt.where(AllocationHistory.recorded_at > after)
        if until is not None:
            stmt = stmt.where(AllocationHistory.recorded_at <= until)
        stmt = stmt.order_by(AllocationHistory.recorded_at)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_goal_history(
        self, goal_ids: Iterable[UUID], until: Optional[datetime] = None
    ) -> List[AllocationHistory]:
        """History rows of the given goals recorded at or before ``until``, oldest first."""
        ids = list(set(goal_ids))
        if not ids:
            return []
        stmt = select(AllocationHistory).where(AllocationHistory.goal_id.in_(ids))
        if until is not None:
            stmt = stmt.where(AllocationHistory.recorded_at <= until)
        stmt = stmt.order_by(AllocationHistory.recorded_at)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def history_at(
        self, asset_ids: Iterable[UUID], goal_ids: Iterable[UUID], recorded_at: datetime
    ) -> List[AllocationHistory]:
        """History rows of the given (asset, goal) scope recorded exactly at ``recorded_at``."""
        assets = list(set(asset_ids))
        goals = list(set(goal_ids))
        if not assets or not goals:
            return []
        stmt = select(AllocationHistory).where(
            and_(
                AllocationHistory.asset_id.in_(assets),
                AllocationHistory.goal_id.in_(goals),
                AllocationHistory.recorded_at == recorded_at,
            )
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
