"""Replay of deposits and allocation changes into per-goal contributions.

Contributions are never stored while a period is executing. They are derived
on demand from the append-only deposit log and allocation history, starting
at the moment tracking began.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set
from uuid import UUID

from savings_planner.logging_config import get_logger
from savings_planner.models import Allocation, AllocationHistory, Asset, ExecutionRecord
from savings_planner.money import ZERO, is_negligible, same_currency
from savings_planner.schemas.execution import ContributionSource
from savings_planner.services.goal_calculation_service import funded_amounts
from savings_planner.services.ledger_repository import LedgerRepository
from savings_planner.services.rate_service import CurrencyConverter, RateTable

logger = get_logger(__name__)


@dataclass(frozen=True)
class DerivedContribution:
    """Change of a goal's funded amount from one asset, in asset currency."""

    timestamp: datetime
    source: ContributionSource
    asset_id: UUID
    asset_currency: str
    goal_id: UUID
    goal_currency: str
    asset_delta: Decimal


@dataclass
class ContributionTotals:
    """Contributed amount per goal, in each goal's currency.

    Live totals are valued at current rates and marked approximate when any
    rate was missing. Frozen totals come from a closed period's record.
    """

    totals: Dict[UUID, Decimal] = field(default_factory=dict)
    is_frozen: bool = False
    is_approximate: bool = False
    missing_rates: List[str] = field(default_factory=list)

    def for_goal(self, goal_id: UUID) -> Decimal:
        return self.totals.get(goal_id, ZERO)

    @property
    def total(self) -> Decimal:
        return sum(self.totals.values(), ZERO)


def _deltas(previous: Dict[UUID, Decimal], current: Dict[UUID, Decimal]) -> Dict[UUID, Decimal]:
    deltas = {}
    for goal_id in set(previous) | set(current):
        delta = current.get(goal_id, ZERO) - previous.get(goal_id, ZERO)
        if not is_negligible(delta):
            deltas[goal_id] = delta
    return deltas


class ExecutionProgressCalculator:
    """Derives contribution events for an execution record."""

    def __init__(self, ledger: LedgerRepository, converter: CurrencyConverter):
        self.ledger = ledger
        self.converter = converter

    async def derived_events(
        self, record: ExecutionRecord, end: datetime
    ) -> List[DerivedContribution]:
        """Replay every relevant asset from ``record.started_at`` to ``end``.

        For each asset the funded amount per tracked goal is recomputed after
        every allocation change and every deposit, and each change above the
        negligible threshold becomes an event. Allocation changes are applied
        before deposits sharing the same timestamp.

        Args:
            record: Execution record with ``started_at`` set
            end: Inclusive end of the replay window

        Returns:
            Events ordered by timestamp
        """
        started_at = record.started_at
        tracked: Set[UUID] = set(record.tracked_goal_ids)
        if started_at is None or not tracked:
            return []

        goals = await self.ledger.load_planning_goals(tracked)
        goal_currency = {goal.id: goal.currency for goal in goals}

        allocations_by_asset: Dict[UUID, List[Allocation]] = defaultdict(list)
        for allocation in await self.ledger.list_goal_allocations(tracked):
            allocations_by_asset[allocation.asset_id].append(allocation)

        histories_by_asset: Dict[UUID, List[AllocationHistory]] = defaultdict(list)
        for history in await self.ledger.list_goal_history(tracked, until=end):
            histories_by_asset[history.asset_id].append(history)

        assets = await self.ledger.get_assets(set(allocations_by_asset) | set(histories_by_asset))

        events: List[DerivedContribution] = []
        for asset in assets.values():
            events.extend(
                await self._replay_asset(
                    asset,
                    allocations_by_asset.get(asset.id, []),
                    histories_by_asset.get(asset.id, []),
                    tracked,
                    goal_currency,
                    started_at,
                    end,
                )
            )

        events.sort(key=lambda event: event.timestamp)
        return events

    async def _replay_asset(
        self,
        asset: Asset,
        allocations: List[Allocation],
        histories: List[AllocationHistory],
        tracked: Set[UUID],
        goal_currency: Dict[UUID, str],
        started_at: datetime,
        end: datetime,
    ) -> List[DerivedContribution]:
        allocated_goals = {a.goal_id for a in allocations if a.goal_id in tracked}
        dedicated_goal_id = next(iter(allocated_goals)) if len(allocated_goals) == 1 else None

        balance = await self.ledger.get_asset_balance(asset.id, as_of=started_at)

        # Targets at start: latest history at or before start. A pair whose
        # history begins later did not exist yet; a pair without any history
        # falls back to the current allocation.
        targets: Dict[UUID, Decimal] = {}
        recorded_goals: Set[UUID] = set()
        for history in histories:
            recorded_goals.add(history.goal_id)
            if history.recorded_at <= started_at:
                targets[history.goal_id] = max(ZERO, history.amount)
        for allocation in allocations:
            if allocation.goal_id in tracked and allocation.goal_id not in recorded_goals:
                targets[allocation.goal_id] = max(ZERO, allocation.resolve_amount(balance))

        deposits: Dict[datetime, Decimal] = defaultdict(lambda: ZERO)
        for transaction in await self.ledger.list_transactions(asset.id, start=started_at, end=end):
            deposits[transaction.occurred_at] += transaction.amount

        updates: Dict[datetime, Dict[UUID, Decimal]] = defaultdict(dict)
        for history in histories:
            if started_at < history.recorded_at <= end:
                updates[history.recorded_at][history.goal_id] = max(ZERO, history.amount)

        events: List[DerivedContribution] = []

        def emit(deltas: Dict[UUID, Decimal], timestamp: datetime, source: ContributionSource):
            for goal_id, delta in deltas.items():
                currency = goal_currency.get(goal_id)
                if currency is None:
                    continue
                events.append(
                    DerivedContribution(
                        timestamp=timestamp,
                        source=source,
                        asset_id=asset.id,
                        asset_currency=asset.currency,
                        goal_id=goal_id,
                        goal_currency=currency,
                        asset_delta=delta,
                    )
                )

        funded = funded_amounts(balance, targets, dedicated_goal_id)
        for timestamp in sorted(set(deposits) | set(updates)):
            if updates.get(timestamp):
                targets.update(updates[timestamp])
                new_funded = funded_amounts(balance, targets, dedicated_goal_id)
                emit(_deltas(funded, new_funded), timestamp, ContributionSource.REALLOCATION)
                funded = new_funded

            deposit = deposits.get(timestamp, ZERO)
            if not is_negligible(deposit):
                balance += deposit
                new_funded = funded_amounts(balance, targets, dedicated_goal_id)
                emit(_deltas(funded, new_funded), timestamp, ContributionSource.DEPOSIT)
                funded = new_funded

        return events

    async def contribution_totals(
        self,
        record: ExecutionRecord,
        end: datetime,
        rates: Optional[RateTable] = None,
    ) -> ContributionTotals:
        """Net contributions per goal, converted at current rates.

        Deltas are netted per (goal, asset currency) before conversion, so
        each pair needs one rate. Pairs whose rate is unavailable are left
        out and listed in ``missing_rates``.
        """
        rates = rates or RateTable(self.converter)
        events = await self.derived_events(record, end)

        net: Dict[UUID, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        currency_by_goal: Dict[UUID, str] = {}
        for event in events:
            net[event.goal_id][event.asset_currency.upper()] += event.asset_delta
            currency_by_goal[event.goal_id] = event.goal_currency

        result = ContributionTotals()
        for goal_id, by_currency in net.items():
            goal_currency = currency_by_goal[goal_id]
            total = ZERO
            for asset_currency, delta in by_currency.items():
                if is_negligible(delta):
                    continue
                if same_currency(asset_currency, goal_currency):
                    total += delta
                    continue
                rate = await rates.rate(asset_currency, goal_currency)
                if rate is None:
                    continue
                total += delta * rate
            result.totals[goal_id] = total

        result.missing_rates = list(rates.missing)
        result.is_approximate = bool(result.missing_rates)
        if result.missing_rates:
            logger.warning(
                "Contribution totals missing rates",
                period_label=record.period_label,
                missing_rates=result.missing_rates,
            )
        return result
