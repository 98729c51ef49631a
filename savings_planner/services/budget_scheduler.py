"""Budget scheduling: minimum budget, feasibility and payment schedules.

Goals compete for one fixed monthly budget. Payments go to goals in
earliest-deadline-first order, and the minimum budget is the largest
cumulative-remaining-over-periods ratio across the deadline-sorted goals.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from savings_planner.config import Settings
from savings_planner.logging_config import get_logger
from savings_planner.models.base import utcnow
from savings_planner.money import GOAL_SATISFIED_TOLERANCE, ZERO, is_satisfied, same_currency
from savings_planner.periods import add_months, next_payment_date, periods_until
from savings_planner.services.ledger_repository import PlanningGoal
from savings_planner.services.rate_service import CurrencyConverter

logger = get_logger(__name__)


@dataclass
class InfeasibleGoal:
    """A goal whose deadline cannot be met with the given budget."""

    goal_id: UUID
    goal_name: str
    deadline: date
    required_monthly: Decimal
    shortfall: Decimal
    currency: str


@dataclass
class IncreaseBudget:
    to: Decimal
    currency: str


@dataclass
class ExtendDeadline:
    goal_id: UUID
    goal_name: str
    by_periods: int


@dataclass
class ReduceTarget:
    """Lower the goal's target to ``to`` (in the goal currency)."""

    goal_id: UUID
    goal_name: str
    to: Decimal
    currency: str


@dataclass
class EditGoal:
    goal_id: UUID
    goal_name: str


FeasibilitySuggestion = Union[IncreaseBudget, ExtendDeadline, ReduceTarget, EditGoal]


@dataclass
class FeasibilityResult:
    """Whether a budget meets every deadline, and what to change if not."""

    is_feasible: bool
    minimum_required: Decimal
    currency: str
    infeasible_goals: List[InfeasibleGoal] = field(default_factory=list)
    suggestions: List[FeasibilitySuggestion] = field(default_factory=list)
    is_approximate: bool = False

    @property
    def has_infeasible_goals(self) -> bool:
        return bool(self.infeasible_goals)


@dataclass
class GoalContribution:
    """Amount paid toward one goal in one scheduled payment."""

    goal_id: UUID
    goal_name: str
    amount: Decimal
    is_goal_start: bool
    is_goal_complete: bool
    running_total: Decimal


@dataclass
class ScheduledPayment:
    period_date: date
    period_number: int
    contributions: List[GoalContribution] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return sum((c.amount for c in self.contributions), ZERO)


@dataclass
class BudgetPlan:
    """Preview schedule for a fixed monthly budget. Never persisted."""

    monthly_budget: Decimal
    currency: str
    schedule: List[ScheduledPayment]
    minimum_required: Decimal
    is_leveled: bool
    remaining_by_goal: Dict[UUID, Decimal] = field(default_factory=dict)
    is_complete: bool = True
    is_approximate: bool = False

    @property
    def total_amount(self) -> Decimal:
        return sum((p.total_amount for p in self.schedule), ZERO)

    @property
    def total_periods(self) -> int:
        return len(self.schedule)

    @property
    def start_date(self) -> Optional[date]:
        return self.schedule[0].period_date if self.schedule else None

    @property
    def end_date(self) -> Optional[date]:
        return self.schedule[-1].period_date if self.schedule else None


@dataclass
class ScheduledGoalBlock:
    """Span of consecutive periods in which one goal receives payments."""

    goal_id: UUID
    goal_name: str
    start_period_number: int
    end_period_number: int
    start_date: date
    end_date: date
    total_amount: Decimal
    payment_count: int


@dataclass
class _GoalDemand:
    goal: PlanningGoal
    remaining_goal_currency: Decimal
    remaining: Decimal  # in the display currency
    conversion_rate: Optional[Decimal]
    periods: int


@dataclass
class _CachedPlan:
    goal_ids: FrozenSet[UUID]
    budget: Decimal
    currency: str
    plan: BudgetPlan
    created_at: datetime


class BudgetScheduler:
    """Distributes a fixed monthly budget across goals by deadline."""

    def __init__(
        self,
        settings: Settings,
        converter: CurrencyConverter,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize scheduler.

        Args:
            settings: Application settings (payment day, cache TTL, period cap)
            converter: Converter into the display currency
            clock: Source of the current UTC instant
        """
        self.settings = settings
        self.converter = converter
        self.clock = clock
        self._cache: Optional[_CachedPlan] = None

    def clear_cache(self) -> None:
        self._cache = None

    async def _demands(
        self, goals: Iterable[PlanningGoal], currency: str
    ) -> Tuple[List[_GoalDemand], bool]:
        """Active goals by deadline with remaining amounts in ``currency``.

        Each goal's remaining amount is converted exactly once.
        """
        today = self.clock().date()
        active = sorted((g for g in goals if g.is_active), key=lambda g: g.deadline)

        demands: List[_GoalDemand] = []
        is_approximate = False
        for goal in active:
            remaining = goal.remaining
            converted = remaining
            rate: Optional[Decimal] = None
            if not same_currency(goal.currency, currency):
                conversion = await self.converter.convert(remaining, goal.currency, currency)
                converted = conversion.amount
                rate = conversion.rate
                is_approximate = is_approximate or conversion.is_approximate
            is_approximate = is_approximate or goal.is_approximate

            demands.append(
                _GoalDemand(
                    goal=goal,
                    remaining_goal_currency=remaining,
                    remaining=converted,
                    conversion_rate=rate,
                    periods=periods_until(goal.deadline, today, self.settings.payment_day),
                )
            )
        return demands, is_approximate

    @staticmethod
    def _minimum_from(demands: List[_GoalDemand]) -> Decimal:
        cumulative = ZERO
        minimum = ZERO
        for demand in demands:
            if demand.remaining <= 0:
                continue
            cumulative += demand.remaining
            minimum = max(minimum, cumulative / demand.periods)
        return minimum

    async def calculate_minimum_budget(
        self, goals: Iterable[PlanningGoal], display_currency: str
    ) -> Decimal:
        """Smallest monthly budget that meets every active goal's deadline.

        Args:
            goals: Goals with current totals filled in
            display_currency: Currency of the result

        Returns:
            Minimum monthly budget, zero when nothing is left to fund
        """
        demands, _ = await self._demands(goals, display_currency)
        return self._minimum_from(demands)

    async def check_feasibility(
        self, goals: Iterable[PlanningGoal], budget: Decimal, currency: str
    ) -> FeasibilityResult:
        """Check a budget against every deadline and suggest fixes.

        Only the first infeasible goal in deadline order gets goal-specific
        suggestions; an ``IncreaseBudget`` suggestion closes the list.
        """
        goals = list(goals)
        if not goals:
            return FeasibilityResult(is_feasible=True, minimum_required=ZERO, currency=currency)

        demands, is_approximate = await self._demands(goals, currency)
        minimum_required = self._minimum_from(demands)
        is_feasible = budget >= minimum_required and (budget > 0 or minimum_required == 0)

        result = FeasibilityResult(
            is_feasible=is_feasible,
            minimum_required=minimum_required,
            currency=currency,
            is_approximate=is_approximate,
        )
        if is_feasible:
            return result

        cumulative = ZERO
        added_goal_suggestions = False
        for demand in demands:
            if demand.remaining <= 0:
                continue
            cumulative += demand.remaining
            required = cumulative / demand.periods
            if required <= budget:
                continue

            goal = demand.goal
            shortfall = required - budget
            result.infeasible_goals.append(
                InfeasibleGoal(
                    goal_id=goal.id,
                    goal_name=goal.name,
                    deadline=goal.deadline,
                    required_monthly=required,
                    shortfall=shortfall,
                    currency=currency,
                )
            )

            if added_goal_suggestions or budget <= 0:
                continue

            periods_needed = math.ceil(cumulative / budget)
            extension = periods_needed - demand.periods
            if extension > 0:
                result.suggestions.append(
                    ExtendDeadline(goal_id=goal.id, goal_name=goal.name, by_periods=extension)
                )

            reduction = shortfall * demand.periods
            if demand.conversion_rate:
                reduction = reduction / demand.conversion_rate
            funded = max(ZERO, goal.target_amount - demand.remaining_goal_currency)
            proposed_target = max(funded, goal.target_amount - reduction)
            if proposed_target < goal.target_amount:
                result.suggestions.append(
                    ReduceTarget(
                        goal_id=goal.id,
                        goal_name=goal.name,
                        to=proposed_target,
                        currency=goal.currency,
                    )
                )

            result.suggestions.append(EditGoal(goal_id=goal.id, goal_name=goal.name))
            added_goal_suggestions = True

        if result.infeasible_goals:
            result.suggestions.append(IncreaseBudget(to=minimum_required, currency=currency))

        logger.info(
            "Budget infeasible",
            budget=str(budget),
            minimum_required=str(minimum_required),
            currency=currency,
            infeasible_goals=len(result.infeasible_goals),
        )
        return result

    def _cached(
        self, goal_ids: FrozenSet[UUID], budget: Decimal, currency: str
    ) -> Optional[BudgetPlan]:
        cached = self._cache
        if cached is None:
            return None
        ttl = timedelta(seconds=self.settings.schedule_cache_ttl_seconds)
        if (
            cached.goal_ids == goal_ids
            and abs(cached.budget - budget) < GOAL_SATISFIED_TOLERANCE
            and same_currency(cached.currency, currency)
            and self.clock() - cached.created_at < ttl
        ):
            return cached.plan
        return None

    async def generate_schedule(
        self, goals: Iterable[PlanningGoal], budget: Decimal, currency: str
    ) -> BudgetPlan:
        """Build the period-by-period payment schedule for ``budget``.

        Each period's budget is spent on goals in deadline order, skipping
        goals whose deadline has passed or that are already funded. The
        schedule stops when every goal is funded, when a period allocates
        nothing, or at the configured period cap; the last two leave
        ``is_complete`` False.

        Args:
            goals: Goals with current totals filled in
            budget: Monthly budget in ``currency``
            currency: Display currency

        Returns:
            BudgetPlan, served from cache for repeated identical requests
        """
        goals = list(goals)
        goal_ids = frozenset(g.id for g in goals)
        cached = self._cached(goal_ids, budget, currency)
        if cached is not None:
            return cached

        demands, is_approximate = await self._demands(goals, currency)
        minimum_required = self._minimum_from(demands)
        remaining_by_goal = {d.goal.id: d.remaining for d in demands}

        if not demands:
            return BudgetPlan(
                monthly_budget=budget,
                currency=currency,
                schedule=[],
                minimum_required=ZERO,
                is_leveled=True,
            )

        if budget <= 0:
            return BudgetPlan(
                monthly_budget=budget,
                currency=currency,
                schedule=[],
                minimum_required=minimum_required,
                is_leveled=False,
                remaining_by_goal=remaining_by_goal,
                is_complete=all(is_satisfied(r) for r in remaining_by_goal.values()),
                is_approximate=is_approximate,
            )

        schedule: List[ScheduledPayment] = []
        left = dict(remaining_by_goal)
        running_totals: Dict[UUID, Decimal] = {d.goal.id: ZERO for d in demands}
        period_date = next_payment_date(self.clock().date(), self.settings.payment_day)
        first_period_date = period_date
        period_number = 1
        periods = 0

        while any(not is_satisfied(r) for r in left.values()):
            if periods >= self.settings.schedule_max_periods:
                logger.warning(
                    "Schedule period cap reached",
                    max_periods=self.settings.schedule_max_periods,
                    budget=str(budget),
                )
                break
            periods += 1

            starting_totals = dict(running_totals)
            allocations: Dict[UUID, Decimal] = {}
            budget_left = budget

            for demand in demands:
                goal_id = demand.goal.id
                if period_date > demand.goal.deadline:
                    continue
                goal_left = left[goal_id]
                if is_satisfied(goal_left):
                    continue
                amount = min(budget_left, goal_left)
                if is_satisfied(amount):
                    continue

                allocations[goal_id] = allocations.get(goal_id, ZERO) + amount
                running_totals[goal_id] += amount
                left[goal_id] = max(ZERO, goal_left - amount)
                budget_left -= amount
                if is_satisfied(budget_left):
                    break

            if not allocations:
                # Every goal still unfunded is past its deadline
                break

            contributions = [
                GoalContribution(
                    goal_id=d.goal.id,
                    goal_name=d.goal.name,
                    amount=allocations[d.goal.id],
                    is_goal_start=is_satisfied(starting_totals[d.goal.id]),
                    is_goal_complete=is_satisfied(left[d.goal.id]),
                    running_total=running_totals[d.goal.id],
                )
                for d in demands
                if d.goal.id in allocations and not is_satisfied(allocations[d.goal.id])
            ]
            if contributions:
                schedule.append(
                    ScheduledPayment(
                        period_date=period_date,
                        period_number=period_number,
                        contributions=contributions,
                    )
                )

            period_number += 1
            period_date = add_months(first_period_date, period_number - 1)

        plan = BudgetPlan(
            monthly_budget=budget,
            currency=currency,
            schedule=schedule,
            minimum_required=minimum_required,
            is_leveled=abs(budget - minimum_required) < GOAL_SATISFIED_TOLERANCE,
            remaining_by_goal=remaining_by_goal,
            is_complete=all(is_satisfied(r) for r in left.values()),
            is_approximate=is_approximate,
        )

        if not plan.is_complete:
            logger.info(
                "Schedule incomplete",
                budget=str(budget),
                currency=currency,
                unfunded_goals=sum(1 for r in left.values() if not is_satisfied(r)),
            )

        self._cache = _CachedPlan(
            goal_ids=goal_ids,
            budget=budget,
            currency=currency,
            plan=plan,
            created_at=self.clock(),
        )
        return plan

    def build_timeline_blocks(
        self, plan: BudgetPlan, goals: Iterable[PlanningGoal]
    ) -> List[ScheduledGoalBlock]:
        """Summarise a schedule into one block per goal, by first period."""
        deadlines = {g.id: g.deadline for g in goals}
        blocks: Dict[UUID, ScheduledGoalBlock] = {}

        for payment in plan.schedule:
            for contribution in payment.contributions:
                deadline = deadlines.get(contribution.goal_id)
                if deadline is None or payment.period_date > deadline:
                    continue
                block = blocks.get(contribution.goal_id)
                if block is None:
                    blocks[contribution.goal_id] = ScheduledGoalBlock(
                        goal_id=contribution.goal_id,
                        goal_name=contribution.goal_name,
                        start_period_number=payment.period_number,
                        end_period_number=payment.period_number,
                        start_date=payment.period_date,
                        end_date=payment.period_date,
                        total_amount=contribution.amount,
                        payment_count=1,
                    )
                else:
                    block.end_period_number = payment.period_number
                    block.end_date = payment.period_date
                    block.total_amount += contribution.amount
                    block.payment_count = block.end_period_number - block.start_period_number + 1

        return sorted(blocks.values(), key=lambda b: b.start_period_number)
