"""Execution tracking: one record per period from start to close."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from savings_planner.config import Settings
from savings_planner.exceptions import (
    InvalidStateError,
    PersistenceError,
    RecordAlreadyExistsError,
    UndoPeriodExpiredError,
)
from savings_planner.logging_config import get_logger
from savings_planner.models import ExecutionRecord, ExecutionStatus, MonthlyPlan, PlanState
from savings_planner.models.base import utcnow
from savings_planner.money import ONE, ZERO, is_negligible, same_currency
from savings_planner.periods import period_label
from savings_planner.schemas.execution import (
    CompletedExecution,
    ContributionSnapshot,
    ExecutionSnapshot,
    GoalPlanSnapshot,
    SnapshotComparison,
)
from savings_planner.services.ledger_repository import LedgerRepository, PlanningGoal
from savings_planner.services.plan_service import MonthlyPlanService
from savings_planner.services.progress_calculator import (
    ContributionTotals,
    ExecutionProgressCalculator,
)
from savings_planner.services.rate_service import RateTable

logger = get_logger(__name__)


class ExecutionTrackingService:
    """Service driving execution records through DRAFT, EXECUTING and CLOSED.

    Contributions of an executing period are derived live from the ledger.
    Closing a period freezes them, together with the rates used, so a closed
    period's totals never change afterwards.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        ledger: LedgerRepository,
        calculator: ExecutionProgressCalculator,
        plan_service: MonthlyPlanService,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize execution tracking service.

        Args:
            db: Database session
            settings: Application settings (undo grace period)
            ledger: Goal ledger access
            calculator: Contribution replay
            plan_service: Plan state transitions that accompany record changes
            clock: Source of the current UTC instant
        """
        self.db = db
        self.settings = settings
        self.ledger = ledger
        self.calculator = calculator
        self.plan_service = plan_service
        self.clock = clock

    @property
    def undo_grace(self) -> timedelta:
        return timedelta(hours=self.settings.undo_grace_hours)

    async def _commit(self, operation: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to save execution record", operation=operation, error=str(e), exc_info=True
            )
            raise PersistenceError(f"Failed to save execution record ({operation})") from e

    # Queries

    def _live(self):
        return select(ExecutionRecord).where(ExecutionRecord.deleted_at.is_(None))

    async def get_record(self, period_label: str) -> Optional[ExecutionRecord]:
        stmt = self._live().where(ExecutionRecord.period_label == period_label)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current_period_record(self) -> Optional[ExecutionRecord]:
        return await self.get_record(period_label(self.clock()))

    async def get_active_record(self) -> Optional[ExecutionRecord]:
        """Most recently started executing record, if any."""
        stmt = (
            self._live()
            .where(ExecutionRecord.status == ExecutionStatus.EXECUTING)
            .order_by(ExecutionRecord.started_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_completed_records(
        self, limit: int = 10, offset: int = 0
    ) -> List[ExecutionRecord]:
        """Closed records, newest period first.

        Args:
            limit: Maximum number of records
            offset: Number of records to skip

        Returns:
            List of closed records
        """
        stmt = (
            self._live()
            .where(ExecutionRecord.status == ExecutionStatus.CLOSED)
            .order_by(ExecutionRecord.period_label.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_records(self) -> int:
        stmt = select(func.count(ExecutionRecord.id)).where(ExecutionRecord.deleted_at.is_(None))
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def _tracked_plans(
        self, record: ExecutionRecord, state: PlanState
    ) -> List[MonthlyPlan]:
        tracked = set(record.tracked_goal_ids)
        plans = await self.plan_service.fetch_plans(record.period_label, state)
        return [plan for plan in plans if plan.goal_id in tracked]

    # Lifecycle

    def _build_snapshot(
        self, plans: Sequence[MonthlyPlan], goals: Sequence[PlanningGoal]
    ) -> ExecutionSnapshot:
        names = {goal.id: goal.name for goal in goals}
        entries = [
            GoalPlanSnapshot(
                goal_id=plan.goal_id,
                goal_name=names.get(plan.goal_id, "Unknown goal"),
                planned_amount=plan.effective_amount,
                currency=plan.currency,
                flex_state=plan.flex_state.value,
                is_skipped=plan.is_skipped,
                is_protected=plan.is_protected,
            )
            for plan in plans
            # Plans with nothing planned or required do not belong in the snapshot
            if plan.effective_amount > 0 or plan.required_monthly > 0
        ]
        return ExecutionSnapshot(
            captured_at=self.clock(),
            total_planned=sum((entry.planned_amount for entry in entries), ZERO),
            goals=entries,
        )

    def _begin(self, record: ExecutionRecord) -> None:
        now = self.clock()
        record.status = ExecutionStatus.EXECUTING
        record.started_at = now
        record.can_undo_until = now + self.undo_grace

    async def start_tracking(
        self,
        period_label: str,
        plans: Sequence[MonthlyPlan],
        goals: Sequence[PlanningGoal],
    ) -> ExecutionRecord:
        """Start (or refresh) tracking of a period.

        An open record for the period is refreshed in place with the current
        plans. A new record starts EXECUTING immediately. Draft plans move to
        EXECUTING with it.

        Args:
            period_label: Period to track ("YYYY-MM")
            plans: The period's plans
            goals: Goals of those plans, for names in the snapshot

        Returns:
            The executing record

        Raises:
            RecordAlreadyExistsError: If the period is already closed
        """
        logger.info("Starting execution tracking", period_label=period_label)
        record = await self.get_record(period_label)

        if record is not None and record.status == ExecutionStatus.CLOSED:
            raise RecordAlreadyExistsError(period_label)

        if record is None:
            record = ExecutionRecord(period_label=period_label, status=ExecutionStatus.DRAFT)
            self.db.add(record)
        else:
            record.completed_execution = None

        record.tracked_goal_ids = [plan.goal_id for plan in plans]
        record.snapshot = self._build_snapshot(plans, goals)

        fresh = record.status == ExecutionStatus.DRAFT or record.started_at is None
        if fresh:
            self._begin(record)

        await self._seed_allocation_baseline(
            record.tracked_goal_ids, record.started_at, fresh=fresh
        )
        await self._commit("start_tracking")

        draft_plans = [plan for plan in plans if plan.plan_state == PlanState.DRAFT]
        await self.plan_service.start_execution(draft_plans)

        logger.info(
            "Execution tracking started",
            period_label=period_label,
            record_id=str(record.id),
            goals=len(record.tracked_goal_ids),
        )
        return record

    async def _seed_allocation_baseline(
        self, goal_ids: List[UUID], at: datetime, fresh: bool
    ) -> None:
        """Write the tracked allocations' targets as history rows at ``at``.

        Rows already present at ``at`` are never touched, so a refresh only
        adds pairs that are missing. On a fresh start a missing pair takes its
        current resolved amount. On a refresh it takes the latest target
        recorded at or before ``at``, or zero when it had none then.
        """
        allocations = await self.ledger.list_goal_allocations(goal_ids)
        assets = await self.ledger.get_assets(a.asset_id for a in allocations)
        allocations = [a for a in allocations if a.asset_id in assets]

        existing = {
            (history.asset_id, history.goal_id)
            for history in await self.ledger.history_at(
                [a.asset_id for a in allocations], goal_ids, at
            )
        }
        missing = [a for a in allocations if (a.asset_id, a.goal_id) not in existing]
        if not missing:
            return

        earlier: Dict[Tuple[UUID, UUID], Decimal] = {}
        if not fresh:
            for history in await self.ledger.list_goal_history(goal_ids, until=at):
                earlier[(history.asset_id, history.goal_id)] = history.amount

        balances: Dict[UUID, Decimal] = {}
        for allocation in missing:
            pair = (allocation.asset_id, allocation.goal_id)
            if fresh:
                if allocation.asset_id not in balances:
                    balances[allocation.asset_id] = await self.ledger.get_asset_balance(
                        allocation.asset_id, as_of=at
                    )
                amount = allocation.resolve_amount(balances[allocation.asset_id])
            else:
                amount = earlier.get(pair, ZERO)
            self.ledger.record_history(allocation.asset_id, allocation.goal_id, amount, at)

        logger.debug("Allocation baseline written", count=len(missing), at=at.isoformat())

    async def mark_complete(self, record: ExecutionRecord) -> ExecutionRecord:
        """Close an executing record and freeze its contributions.

        Each currency pair is priced once. Contributions whose rate is
        unavailable are left out and the pair is listed in ``missing_rates``.

        Raises:
            InvalidStateError: If the record is not executing
        """
        if record.status != ExecutionStatus.EXECUTING:
            raise InvalidStateError(
                f"Only executing records can be completed (current: {record.status.value})",
                current_state=record.status.value,
            )

        completed_at = self.clock()
        events = await self.calculator.derived_events(record, completed_at)
        rates = RateTable(self.calculator.converter)

        contributions: List[ContributionSnapshot] = []
        for event in events:
            if is_negligible(event.asset_delta):
                continue
            if same_currency(event.asset_currency, event.goal_currency):
                rate = ONE
            else:
                rate = await rates.rate(event.asset_currency, event.goal_currency)
                if rate is None:
                    continue
            contributions.append(
                ContributionSnapshot(
                    timestamp=event.timestamp,
                    source=event.source,
                    asset_id=event.asset_id,
                    asset_currency=event.asset_currency,
                    goal_id=event.goal_id,
                    goal_currency=event.goal_currency,
                    asset_amount=event.asset_delta,
                    amount_in_goal_currency=event.asset_delta * rate,
                    exchange_rate_used=rate,
                )
            )

        snapshot = record.snapshot
        record.completed_execution = CompletedExecution(
            period_label=record.period_label,
            completed_at=completed_at,
            exchange_rates=dict(rates.rates),
            goal_snapshots=snapshot.goals if snapshot else [],
            contributions=contributions,
            missing_rates=list(rates.missing),
        )
        record.status = ExecutionStatus.CLOSED
        record.completed_at = completed_at
        record.can_undo_until = completed_at + self.undo_grace

        if rates.missing:
            logger.warning(
                "Contributions skipped for missing rates",
                period_label=record.period_label,
                missing_rates=rates.missing,
            )

        await self._commit("mark_complete")

        await self.plan_service.complete_plans(
            await self._tracked_plans(record, PlanState.EXECUTING)
        )
        logger.info(
            "Execution completed",
            period_label=record.period_label,
            contributions=len(contributions),
        )
        return record

    def _require_undo_window(self, record: ExecutionRecord) -> None:
        if not record.can_undo(self.clock()):
            raise UndoPeriodExpiredError(record.period_label)

    async def undo_completion(self, record: ExecutionRecord) -> ExecutionRecord:
        """Reopen a closed record within the grace period.

        Raises:
            InvalidStateError: If the record is not closed
            UndoPeriodExpiredError: If the grace period has elapsed
        """
        if record.status != ExecutionStatus.CLOSED:
            raise InvalidStateError(
                f"Only closed records can be reopened (current: {record.status.value})",
                current_state=record.status.value,
            )
        self._require_undo_window(record)

        record.status = ExecutionStatus.EXECUTING
        record.completed_at = None
        record.completed_execution = None
        # One step per grace window
        record.can_undo_until = None
        await self._commit("undo_completion")

        await self.plan_service.revert_plans(
            await self._tracked_plans(record, PlanState.COMPLETED), PlanState.EXECUTING
        )
        logger.info("Execution completion undone", period_label=record.period_label)
        return record

    async def undo_start_tracking(self, record: ExecutionRecord) -> ExecutionRecord:
        """Return an executing record to DRAFT within the grace period.

        Raises:
            InvalidStateError: If the record is not executing
            UndoPeriodExpiredError: If the grace period has elapsed
        """
        if record.status != ExecutionStatus.EXECUTING:
            raise InvalidStateError(
                f"Only executing records can be returned to draft (current: {record.status.value})",
                current_state=record.status.value,
            )
        self._require_undo_window(record)

        record.status = ExecutionStatus.DRAFT
        record.started_at = None
        record.can_undo_until = None
        await self._commit("undo_start_tracking")

        await self.plan_service.revert_plans(
            await self._tracked_plans(record, PlanState.EXECUTING), PlanState.DRAFT
        )
        logger.info("Execution start undone", period_label=record.period_label)
        return record

    async def delete_record(self, record: ExecutionRecord) -> None:
        """Soft delete a record, freeing its period for a new one."""
        record.deleted_at = self.clock()
        await self._commit("delete_record")
        logger.info("Execution record deleted", period_label=record.period_label)

    # Progress

    async def get_contribution_totals(self, record: ExecutionRecord) -> ContributionTotals:
        """Contributed amount per goal for a record.

        Closed records read only their frozen completion data. Executing
        records are replayed up to now. Draft records have no contributions.
        """
        if record.status == ExecutionStatus.CLOSED:
            completed = record.completed_execution
            if completed is None:
                return ContributionTotals(is_frozen=True)
            return ContributionTotals(
                totals=completed.contributed_totals_by_goal(),
                is_frozen=True,
                is_approximate=bool(completed.missing_rates),
                missing_rates=list(completed.missing_rates),
            )

        if record.status == ExecutionStatus.EXECUTING:
            return await self.calculator.contribution_totals(record, self.clock())

        return ContributionTotals()

    async def get_fulfillment_status(
        self, record: ExecutionRecord, plans: Sequence[MonthlyPlan]
    ) -> Dict[UUID, bool]:
        """Whether each tracked goal's contributions reach its planned amount."""
        totals = await self.get_contribution_totals(record)
        plans_by_goal = {plan.goal_id: plan for plan in plans}

        status = {}
        for goal_id in record.tracked_goal_ids:
            plan = plans_by_goal.get(goal_id)
            if plan is None:
                continue
            status[goal_id] = totals.for_goal(goal_id) >= plan.effective_amount
        return status

    async def calculate_progress(
        self, record: ExecutionRecord, plans: Optional[Sequence[MonthlyPlan]] = None
    ) -> float:
        """Contributed share of the planned total, as a percentage.

        Closed records compare against the snapshot taken at start; open
        records against the current plans of the period.
        """
        totals = await self.get_contribution_totals(record)
        contributed = totals.total

        if record.status == ExecutionStatus.CLOSED:
            snapshot = record.snapshot
            if snapshot is None or snapshot.total_planned <= 0:
                return 0.0
            return float(contributed / snapshot.total_planned * 100)

        if plans is None:
            plans = await self.plan_service.fetch_plans(record.period_label)
        tracked = set(record.tracked_goal_ids)
        planned = sum((plan.effective_amount for plan in plans if plan.goal_id in tracked), ZERO)
        return float(contributed / planned * 100) if planned > 0 else 0.0

    async def compare_with_snapshot(self, record: ExecutionRecord) -> List[SnapshotComparison]:
        snapshot = record.snapshot
        if snapshot is None:
            return []
        totals = await self.get_contribution_totals(record)
        return snapshot.compare(totals.totals)
