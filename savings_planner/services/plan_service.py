"""Monthly plan lifecycle: creation, user adjustments and state transitions."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from savings_planner.config import Settings
from savings_planner.exceptions import (
    InvalidAmountError,
    InvalidStateError,
    PersistenceError,
    ValidationFailure,
)
from savings_planner.logging_config import get_logger
from savings_planner.models import FlexState, MonthlyPlan, PlanState, RequirementStatus
from savings_planner.models.base import utcnow
from savings_planner.money import ZERO
from savings_planner.periods import period_label, periods_until
from savings_planner.schemas.plan import FlexAdjustmentRequest, PlanAmountUpdate
from savings_planner.services.goal_calculation_service import GoalCalculationService
from savings_planner.services.ledger_repository import PlanningGoal
from savings_planner.services.serial_executor import AsyncSerialExecutor

logger = get_logger(__name__)

# Undo steps allowed by revert_plans: target state -> required current state
_REVERSIBLE = {
    PlanState.EXECUTING: PlanState.COMPLETED,
    PlanState.DRAFT: PlanState.EXECUTING,
}


@dataclass
class MonthlyRequirement:
    """What a goal needs this period, computed from its funded total."""

    goal_id: UUID
    goal_name: str
    currency: str
    target_amount: Decimal
    current_total: Decimal
    remaining_amount: Decimal
    months_remaining: int
    required_monthly: Decimal
    status: RequirementStatus
    is_approximate: bool = False


@dataclass
class PlanSummary:
    """Aggregate view of one period's plans."""

    period_label: str
    total_plans: int
    total_required: Decimal
    total_contributed: Decimal
    fulfilled_count: int
    skipped_count: int
    active_count: int

    @property
    def progress(self) -> float:
        if self.total_required <= 0:
            return 1.0
        return min(float(self.total_contributed / self.total_required), 1.0)

    @property
    def is_complete(self) -> bool:
        return self.fulfilled_count == self.active_count


class MonthlyPlanService:
    """Service owning the monthly plans of every goal.

    Plan creation and bulk flex adjustment run inside one process-wide
    serial executor, so concurrent callers never create duplicate plans or
    interleave a batch edit.
    """

    shared_executor = AsyncSerialExecutor("monthly_plans")

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        goal_calculation: GoalCalculationService,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize plan service.

        Args:
            db: Database session
            settings: Application settings (payment day, status thresholds)
            goal_calculation: Source of funded goal totals
            clock: Source of the current UTC instant
        """
        self.db = db
        self.settings = settings
        self.goal_calculation = goal_calculation
        self.clock = clock

    def current_period_label(self) -> str:
        return period_label(self.clock())

    async def _commit(self, operation: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to save plans", operation=operation, error=str(e), exc_info=True)
            raise PersistenceError(f"Failed to save plans ({operation})") from e

    # Creation

    async def get_or_create_plans_for_current_month(
        self, goals: Sequence[PlanningGoal]
    ) -> List[MonthlyPlan]:
        """Return this period's plans, creating any that are missing.

        Args:
            goals: Goals that should have a plan this period

        Returns:
            Existing plans followed by newly created ones
        """
        return await self.shared_executor.run(self._get_or_create_plans, list(goals))

    async def _get_or_create_plans(self, goals: List[PlanningGoal]) -> List[MonthlyPlan]:
        label = self.current_period_label()
        existing = await self.fetch_plans(label)

        if not existing:
            return await self._create_plans(goals, label)

        logger.info("Found existing plans", period_label=label, count=len(existing))
        existing_goal_ids = {plan.goal_id for plan in existing}
        missing = [goal for goal in goals if goal.id not in existing_goal_ids]
        if not missing:
            return existing

        logger.info("Creating plans for new goals", period_label=label, count=len(missing))
        return existing + await self._create_plans(missing, label)

    async def _create_plans(self, goals: List[PlanningGoal], label: str) -> List[MonthlyPlan]:
        plans: List[MonthlyPlan] = []
        created = 0

        for goal in goals:
            existing = await self.fetch_plan(goal.id, label)
            if existing is not None:
                logger.warning(
                    "Plan already exists, skipping creation",
                    goal_id=str(goal.id),
                    period_label=label,
                )
                plans.append(existing)
                continue

            requirement = await self.calculate_requirement(goal)
            plan = MonthlyPlan(
                goal_id=goal.id,
                period_label=label,
                required_monthly=requirement.required_monthly,
                remaining_amount=requirement.remaining_amount,
                months_remaining=requirement.months_remaining,
                currency=goal.currency,
                requirement_status=requirement.status,
                flex_state=FlexState.FLEXIBLE,
                plan_state=PlanState.DRAFT,
                last_calculated_at=self.clock(),
            )
            self.db.add(plan)
            plans.append(plan)
            created += 1

        await self._commit("create_plans")
        logger.info("Created plans", period_label=label, count=created)
        return plans

    async def calculate_requirement(self, goal: PlanningGoal) -> MonthlyRequirement:
        """Required contribution for ``goal`` from its current funded total."""
        total = await self.goal_calculation.get_current_total(goal)
        remaining = max(ZERO, goal.target_amount - total.amount)
        months = periods_until(goal.deadline, self.clock().date(), self.settings.payment_day)
        required = remaining / months

        if remaining <= 0:
            status = RequirementStatus.COMPLETED
        elif required > self.settings.critical_monthly_threshold:
            status = RequirementStatus.CRITICAL
        elif required > self.settings.attention_monthly_threshold or months <= 1:
            status = RequirementStatus.ATTENTION
        else:
            status = RequirementStatus.ON_TRACK

        return MonthlyRequirement(
            goal_id=goal.id,
            goal_name=goal.name,
            currency=goal.currency,
            target_amount=goal.target_amount,
            current_total=total.amount,
            remaining_amount=remaining,
            months_remaining=months,
            required_monthly=required,
            status=status,
            is_approximate=total.is_approximate,
        )

    # Fetching

    async def fetch_plans(
        self, period_label: str, state: Optional[PlanState] = None
    ) -> List[MonthlyPlan]:
        """Plans of a period, optionally filtered by state."""
        stmt = select(MonthlyPlan).where(MonthlyPlan.period_label == period_label)
        if state:
            stmt = stmt.where(MonthlyPlan.plan_state == state)
        stmt = stmt.order_by(MonthlyPlan.created_at, MonthlyPlan.goal_id)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def fetch_plan(self, goal_id: UUID, period_label: str) -> Optional[MonthlyPlan]:
        stmt = select(MonthlyPlan).where(
            and_(MonthlyPlan.goal_id == goal_id, MonthlyPlan.period_label == period_label)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def fetch_current_period_plans(
        self, state: Optional[PlanState] = None
    ) -> List[MonthlyPlan]:
        return await self.fetch_plans(self.current_period_label(), state)

    # User adjustments

    @staticmethod
    def _require_draft(plan: MonthlyPlan, action: str) -> None:
        if plan.plan_state != PlanState.DRAFT:
            raise InvalidStateError(
                f"Cannot {action} a plan in state {plan.plan_state.value}",
                current_state=plan.plan_state.value,
            )

    async def recalculate_plan(self, plan: MonthlyPlan, goal: PlanningGoal) -> MonthlyPlan:
        """Refresh a draft plan's computed fields, keeping user overrides.

        Raises:
            InvalidStateError: If the plan is not a draft
        """
        self._require_draft(plan, "recalculate")

        requirement = await self.calculate_requirement(goal)
        plan.required_monthly = requirement.required_monthly
        plan.remaining_amount = requirement.remaining_amount
        plan.months_remaining = requirement.months_remaining
        plan.requirement_status = requirement.status
        plan.last_calculated_at = self.clock()

        await self._commit("recalculate_plan")
        logger.info(
            "Plan recalculated",
            goal_id=str(plan.goal_id),
            period_label=plan.period_label,
            required_monthly=str(plan.required_monthly),
        )
        return plan

    async def set_custom_amount(
        self, plan: MonthlyPlan, amount: Optional[Decimal]
    ) -> MonthlyPlan:
        """Set or clear (``None``) a plan's custom amount.

        Raises:
            InvalidAmountError: If the amount is negative
            InvalidStateError: If the plan is not a draft
        """
        try:
            update = PlanAmountUpdate(custom_amount=amount)
        except ValidationError as e:
            raise InvalidAmountError(f"Invalid custom amount {amount}") from e
        self._require_draft(plan, "edit")

        plan.custom_amount = update.custom_amount
        await self._commit("set_custom_amount")
        return plan

    async def toggle_protection(self, plan: MonthlyPlan) -> MonthlyPlan:
        self._require_draft(plan, "edit")
        plan.flex_state = FlexState.FLEXIBLE if plan.is_protected else FlexState.PROTECTED
        await self._commit("toggle_protection")
        return plan

    async def skip_plan(self, plan: MonthlyPlan, skip: bool = True) -> MonthlyPlan:
        self._require_draft(plan, "edit")
        plan.flex_state = FlexState.SKIPPED if skip else FlexState.FLEXIBLE
        await self._commit("skip_plan")
        return plan

    async def apply_bulk_flex_adjustment(
        self,
        plans: Sequence[MonthlyPlan],
        adjustment: Decimal,
        protected_goal_ids: Iterable[UUID] = (),
        skipped_goal_ids: Iterable[UUID] = (),
    ) -> List[MonthlyPlan]:
        """Scale every flexible draft plan's amount by ``adjustment``.

        Skipped goals are marked SKIPPED. Protected goals are marked PROTECTED
        and keep their amount, including any custom amount. Every other plan
        becomes FLEXIBLE with ``custom_amount = required_monthly * adjustment``.
        The batch is all-or-nothing.

        Raises:
            InvalidStateError: If any plan is not a draft
            InvalidAmountError: If any adjusted amount is not positive
        """
        return await self.shared_executor.run(
            self._apply_bulk_flex_adjustment,
            list(plans),
            adjustment,
            set(protected_goal_ids),
            set(skipped_goal_ids),
        )

    async def apply_flex_request(
        self, plans: Sequence[MonthlyPlan], request: FlexAdjustmentRequest
    ) -> List[MonthlyPlan]:
        return await self.apply_bulk_flex_adjustment(
            plans, request.adjustment, request.protected_goal_ids, request.skipped_goal_ids
        )

    async def _apply_bulk_flex_adjustment(
        self,
        plans: List[MonthlyPlan],
        adjustment: Decimal,
        protected_goal_ids: set,
        skipped_goal_ids: set,
    ) -> List[MonthlyPlan]:
        non_draft = [plan for plan in plans if plan.plan_state != PlanState.DRAFT]
        if non_draft:
            goal_ids = ", ".join(str(plan.goal_id) for plan in non_draft)
            raise InvalidStateError(
                f"Can only adjust draft plans. Non-draft plans: {goal_ids}",
                current_state=non_draft[0].plan_state.value,
            )

        # Compute every change before touching any plan
        changes = []
        for plan in plans:
            if plan.goal_id in skipped_goal_ids:
                changes.append((plan, FlexState.SKIPPED, plan.custom_amount))
            elif plan.goal_id in protected_goal_ids:
                changes.append((plan, FlexState.PROTECTED, plan.custom_amount))
            else:
                adjusted = plan.required_monthly * adjustment
                if adjusted <= 0:
                    raise InvalidAmountError(
                        f"Adjusted amount must be positive for goal {plan.goal_id}"
                    )
                changes.append((plan, FlexState.FLEXIBLE, adjusted))

        for plan, flex_state, custom_amount in changes:
            plan.flex_state = flex_state
            plan.custom_amount = custom_amount

        await self._commit("apply_bulk_flex_adjustment")

        flexible_count = sum(1 for _, state, _ in changes if state == FlexState.FLEXIBLE)
        logger.info(
            "Applied flex adjustment",
            adjustment=str(adjustment),
            flexible_plans=flexible_count,
            protected_plans=len(protected_goal_ids),
            skipped_plans=len(skipped_goal_ids),
        )
        return plans

    # State transitions

    async def _transition(
        self,
        plans: Sequence[MonthlyPlan],
        from_state: PlanState,
        to_state: PlanState,
        operation: str,
    ) -> int:
        moved = 0
        for plan in plans:
            if plan.plan_state != from_state:
                logger.warning(
                    "Skipping plan in unexpected state",
                    operation=operation,
                    goal_id=str(plan.goal_id),
                    plan_state=plan.plan_state.value,
                    expected=from_state.value,
                )
                continue
            plan.plan_state = to_state
            moved += 1

        await self._commit(operation)
        logger.info(
            "Plan states changed",
            operation=operation,
            from_state=from_state.value,
            to_state=to_state.value,
            plans=moved,
        )
        return moved

    async def start_execution(self, plans: Sequence[MonthlyPlan]) -> int:
        """Move draft plans to EXECUTING; other plans are left as they are."""
        return await self._transition(
            plans, PlanState.DRAFT, PlanState.EXECUTING, "start_execution"
        )

    async def complete_plans(self, plans: Sequence[MonthlyPlan]) -> int:
        """Move executing plans to COMPLETED; other plans are left as they are."""
        return await self._transition(
            plans, PlanState.EXECUTING, PlanState.COMPLETED, "complete_plans"
        )

    async def revert_plans(self, plans: Sequence[MonthlyPlan], to_state: PlanState) -> int:
        """Step plans back one state as part of an undo.

        Raises:
            InvalidStateError: If ``to_state`` is not reachable by an undo step
        """
        from_state = _REVERSIBLE.get(to_state)
        if from_state is None:
            raise InvalidStateError(f"Plans cannot be reverted to {to_state.value}")
        return await self._transition(plans, from_state, to_state, "revert_plans")

    async def validate_plans_for_execution(self, plans: Sequence[MonthlyPlan]) -> None:
        """Check plans can start execution.

        Raises:
            ValidationFailure: Listing every problem found
        """
        errors = []
        for plan in plans:
            if plan.plan_state != PlanState.DRAFT:
                errors.append(
                    f"Plan for goal {plan.goal_id} is not in draft state "
                    f"(current: {plan.plan_state.value})"
                )
            if not plan.is_skipped and plan.effective_amount <= 0:
                errors.append(
                    f"Plan for goal {plan.goal_id} has zero or negative effective amount: "
                    f"{plan.effective_amount}"
                )
            if not plan.period_label:
                errors.append(f"Plan for goal {plan.goal_id} has empty period label")

        if errors:
            raise ValidationFailure("; ".join(errors))

    # Reporting and removal

    async def get_plan_summary(
        self, period_label: str, contributed_totals: Optional[Dict[UUID, Decimal]] = None
    ) -> PlanSummary:
        """Summarise a period's plans.

        Args:
            period_label: Period to summarise
            contributed_totals: Contributed amount per goal, in goal currency

        Returns:
            PlanSummary
        """
        plans = await self.fetch_plans(period_label)
        contributed_totals = contributed_totals or {}

        total_required = sum((plan.effective_amount for plan in plans), ZERO)
        total_contributed = sum(
            (contributed_totals.get(plan.goal_id, ZERO) for plan in plans), ZERO
        )
        fulfilled = sum(
            1
            for plan in plans
            if not plan.is_skipped
            and contributed_totals.get(plan.goal_id, ZERO) >= plan.effective_amount
        )
        skipped = sum(1 for plan in plans if plan.is_skipped)

        return PlanSummary(
            period_label=period_label,
            total_plans=len(plans),
            total_required=total_required,
            total_contributed=total_contributed,
            fulfilled_count=fulfilled,
            skipped_count=skipped,
            active_count=len(plans) - skipped,
        )

    async def delete_plan(self, plan: MonthlyPlan) -> None:
        await self.db.delete(plan)
        await self._commit("delete_plan")
        logger.info("Plan deleted", goal_id=str(plan.goal_id), period_label=plan.period_label)
