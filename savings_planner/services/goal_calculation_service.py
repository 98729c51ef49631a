"""Funded totals of goals from their shares of pooled assets."""

from collections import defaultdict
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from savings_planner.logging_config import get_logger
from savings_planner.money import ZERO
from savings_planner.services.ledger_repository import (
    AllocationRecord,
    LedgerRepository,
    PlanningGoal,
)
from savings_planner.services.rate_service import CurrencyConverter

logger = get_logger(__name__)


def funded_amounts(
    balance: Decimal,
    targets: Mapping[UUID, Decimal],
    dedicated_goal_id: Optional[UUID] = None,
) -> Dict[UUID, Decimal]:
    """Split an asset balance between the goals that target it.

    Args:
        balance: Asset balance in asset currency
        targets: Allocation target per goal in asset currency
        dedicated_goal_id: The only goal allocated from this asset, if any

    Returns:
        Funded amount per goal. Every goal gets its target when the balance
        covers all targets, otherwise a proportional share. When no target
        is set, a dedicated goal receives the whole balance.
    """
    if balance <= 0:
        return {goal_id: ZERO for goal_id in targets}

    total_targets = sum(targets.values(), ZERO)
    if total_targets <= 0:
        if dedicated_goal_id is not None:
            return {dedicated_goal_id: balance}
        return {goal_id: ZERO for goal_id in targets}

    if balance >= total_targets:
        return dict(targets)

    return {goal_id: target * balance / total_targets for goal_id, target in targets.items()}


@dataclass
class GoalTotal:
    """Funded amount of a goal in the goal currency."""

    goal_id: UUID
    amount: Decimal
    currency: str
    is_approximate: bool = False


class GoalCalculationService:
    """Computes how much of each goal is currently funded."""

    def __init__(self, ledger: LedgerRepository, converter: CurrencyConverter):
        self.ledger = ledger
        self.converter = converter

    async def get_current_total(self, goal: PlanningGoal) -> GoalTotal:
        totals = await self.get_funded_totals([goal])
        return totals[goal.id]

    async def get_funded_totals(self, goals: Iterable[PlanningGoal]) -> Dict[UUID, GoalTotal]:
        """Funded totals for several goals.

        Args:
            goals: Goals to compute

        Returns:
            GoalTotal per goal ID, zero for goals without allocations
        """
        goals = list(goals)
        totals = {
            goal.id: GoalTotal(goal_id=goal.id, amount=ZERO, currency=goal.currency)
            for goal in goals
        }
        if not goals:
            return totals

        # Shares depend on every claim against an asset, not only these goals
        by_asset: Dict[UUID, List[AllocationRecord]] = defaultdict(list)
        for record in await self.ledger.list_allocations():
            by_asset[record.asset_id].append(record)

        for records in by_asset.values():
            asset_currency = records[0].asset_currency
            balance = records[0].asset_balance
            dedicated = records[0].goal_id if len(records) == 1 else None
            funded = funded_amounts(balance, {r.goal_id: r.amount for r in records}, dedicated)

            for goal_id, amount in funded.items():
                total = totals.get(goal_id)
                if total is None or amount <= 0:
                    continue
                conversion = await self.converter.convert(amount, asset_currency, total.currency)
                total.amount += conversion.amount
                total.is_approximate = total.is_approximate or conversion.is_approximate

        logger.debug("Funded totals computed", goal_count=len(goals))
        return totals

    async def with_current_totals(self, goals: Iterable[PlanningGoal]) -> List[PlanningGoal]:
        """Return copies of ``goals`` with ``current_total`` filled in."""
        goals = list(goals)
        totals = await self.get_funded_totals(goals)
        return [
            replace(
                goal,
                current_total=totals[goal.id].amount,
                is_approximate=totals[goal.id].is_approximate,
            )
            for goal in goals
        ]
