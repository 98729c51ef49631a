"""Tests for funded goal totals."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from savings_planner.services.goal_calculation_service import funded_amounts

DEPOSIT_TIME = datetime(2025, 1, 2, tzinfo=timezone.utc)


class TestFundedAmounts:
    """Test splitting an asset balance between goals."""

    def test_no_balance_funds_nothing(self):
        goal_id = uuid4()

        assert funded_amounts(Decimal("0"), {goal_id: Decimal("100")}) == {goal_id: Decimal("0")}

    def test_balance_covering_all_targets(self):
        first, second = uuid4(), uuid4()
        targets = {first: Decimal("100"), second: Decimal("50")}

        assert funded_amounts(Decimal("1000"), targets) == targets

    def test_under_allocated_balance_is_split_proportionally(self):
        first, second = uuid4(), uuid4()

        funded = funded_amounts(
            Decimal("500"), {first: Decimal("600"), second: Decimal("400")}
        )

        assert funded == {first: Decimal("300"), second: Decimal("200")}

    def test_dedicated_goal_without_target_gets_whole_balance(self):
        goal_id = uuid4()

        funded = funded_amounts(Decimal("250"), {goal_id: Decimal("0")}, dedicated_goal_id=goal_id)

        assert funded == {goal_id: Decimal("250")}

    def test_shared_asset_without_targets_funds_nothing(self):
        first, second = uuid4(), uuid4()

        funded = funded_amounts(Decimal("250"), {first: Decimal("0"), second: Decimal("0")})

        assert funded == {first: Decimal("0"), second: Decimal("0")}


@pytest.mark.asyncio
class TestGoalCalculationService:
    """Test goal calculation service functionality."""

    async def _fund(self, ledger, asset, amount):
        await ledger.add_transaction(asset.id, Decimal(amount), occurred_at=DEPOSIT_TIME)

    async def test_single_allocation(self, goal_calculation, ledger, make_asset, make_goal):
        asset = await make_asset()
        goal = await make_goal()
        await self._fund(ledger, asset, "1000")
        await ledger.set_allocation(asset.id, goal.id, Decimal("400"))
        planning_goal = (await ledger.load_planning_goals([goal.id]))[0]

        total = await goal_calculation.get_current_total(planning_goal)

        assert total.amount == Decimal("400")
        assert total.currency == "USD"
        assert not total.is_approximate

    async def test_shared_asset_split(self, goal_calculation, ledger, make_asset, make_goal):
        asset = await make_asset()
        first = await make_goal(name="First")
        second = await make_goal(name="Second")
        await self._fund(ledger, asset, "500")
        await ledger.set_allocation(asset.id, first.id, Decimal("600"))
        await ledger.set_allocation(asset.id, second.id, Decimal("400"))

        # Only one goal is requested; the other claim still reduces its share
        goals = await ledger.load_planning_goals([first.id])
        totals = await goal_calculation.get_funded_totals(goals)

        assert totals[first.id].amount == Decimal("300")
        assert second.id not in totals

    async def test_converts_asset_currency(self, goal_calculation, ledger, make_asset, make_goal):
        asset = await make_asset(currency="EUR")
        goal = await make_goal(currency="USD")
        await self._fund(ledger, asset, "100")
        await ledger.set_allocation(asset.id, goal.id, Decimal("100"))
        goals = await ledger.load_planning_goals([goal.id])

        total = (await goal_calculation.get_funded_totals(goals))[goal.id]

        assert total.amount == Decimal("110")
        assert not total.is_approximate

    async def test_missing_rate_marks_total_approximate(
        self, goal_calculation, ledger, make_asset, make_goal
    ):
        asset = await make_asset(currency="GBP")
        goal = await make_goal(currency="USD")
        await self._fund(ledger, asset, "100")
        await ledger.set_allocation(asset.id, goal.id, Decimal("100"))
        goals = await ledger.load_planning_goals([goal.id])

        total = (await goal_calculation.get_funded_totals(goals))[goal.id]

        assert total.amount == Decimal("100")
        assert total.is_approximate

    async def test_goal_without_allocations(self, goal_calculation, ledger, make_goal):
        goal = await make_goal()
        goals = await ledger.load_planning_goals([goal.id])

        total = (await goal_calculation.get_funded_totals(goals))[goal.id]

        assert total.amount == Decimal("0")

    async def test_with_current_totals(self, goal_calculation, ledger, make_asset, make_goal):
        asset = await make_asset()
        goal = await make_goal(target_amount=Decimal("1000"))
        await self._fund(ledger, asset, "250")
        await ledger.set_allocation(asset.id, goal.id, Decimal("0"))
        goals = await ledger.load_planning_goals([goal.id])

        [updated] = await goal_calculation.with_current_totals(goals)

        assert updated.current_total == Decimal("250")
        assert updated.remaining == Decimal("750")
        assert goals[0].current_total == Decimal("0")
