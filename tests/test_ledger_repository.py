"""Tests for the goal ledger repository."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from savings_planner.exceptions import InvalidAmountError, RecordNotFoundError
from savings_planner.models import Allocation, AllocationKind, GoalStatus


def _at(day: int, hour: int = 0) -> datetime:
    return datetime(2025, 1, day, hour, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestGoals:
    """Test goal queries."""

    async def test_list_goals_ordered_by_deadline(self, ledger, make_goal):
        later = await make_goal(name="Car", deadline=date(2026, 1, 1))
        sooner = await make_goal(name="Trip", deadline=date(2025, 4, 1))
        await make_goal(name="Done", status=GoalStatus.FINISHED)

        goals = await ledger.list_goals(GoalStatus.ACTIVE)

        assert [g.id for g in goals] == [sooner.id, later.id]

    async def test_load_planning_goals_excludes_deleted(self, ledger, make_goal):
        active = await make_goal(name="Active")
        await make_goal(name="Deleted", status=GoalStatus.DELETED)

        goals = await ledger.load_planning_goals()

        assert [g.id for g in goals] == [active.id]
        assert goals[0].current_total == Decimal("0")
        assert goals[0].remaining == Decimal("1000")


@pytest.mark.asyncio
class TestTransactions:
    """Test deposits and balances."""

    async def test_balance_sums_transactions(self, ledger, make_asset):
        asset = await make_asset()
        await ledger.add_transaction(asset.id, Decimal("100"), occurred_at=_at(2))
        await ledger.add_transaction(asset.id, Decimal("50"), occurred_at=_at(5))
        await ledger.add_transaction(asset.id, Decimal("-30"), occurred_at=_at(8))

        assert await ledger.get_asset_balance(asset.id) == Decimal("120")
        assert await ledger.get_asset_balance(asset.id, as_of=_at(5)) == Decimal("100")

    async def test_transaction_defaults_to_clock(self, ledger, make_asset, clock):
        asset = await make_asset()

        transaction = await ledger.add_transaction(asset.id, Decimal("10"))

        assert transaction.occurred_at == clock()

    async def test_zero_transaction_rejected(self, ledger, make_asset):
        asset = await make_asset()

        with pytest.raises(InvalidAmountError):
            await ledger.add_transaction(asset.id, Decimal("0"))

    async def test_unknown_asset_rejected(self, ledger):
        with pytest.raises(RecordNotFoundError):
            await ledger.add_transaction(uuid4(), Decimal("10"))

    async def test_list_transactions_inclusive_window(self, ledger, make_asset):
        asset = await make_asset()
        for day in (2, 5, 8):
            await ledger.add_transaction(asset.id, Decimal(day), occurred_at=_at(day))

        transactions = await ledger.list_transactions(asset.id, start=_at(5), end=_at(8))

        assert [t.amount for t in transactions] == [Decimal("5"), Decimal("8")]


@pytest.mark.asyncio
class TestAllocations:
    """Test allocation writes and reads."""

    async def test_set_allocation_creates_and_updates(self, ledger, make_asset, make_goal):
        asset = await make_asset()
        goal = await make_goal()

        await ledger.set_allocation(asset.id, goal.id, Decimal("300"), recorded_at=_at(2))
        allocation = await ledger.set_allocation(
            asset.id, goal.id, Decimal("400"), recorded_at=_at(4)
        )

        assert allocation.amount_value == Decimal("400")
        assert len(await ledger.list_goal_allocations([goal.id])) == 1

        history = await ledger.list_history(asset.id)
        assert [h.amount for h in history] == [Decimal("300"), Decimal("400")]
        assert history[0].period_label == "2025-01"

    async def test_share_allocation_resolves_against_balance(
        self, ledger, make_asset, make_goal
    ):
        asset = await make_asset()
        goal = await make_goal()
        await ledger.add_transaction(asset.id, Decimal("800"), occurred_at=_at(1))

        await ledger.set_allocation(asset.id, goal.id, Decimal("0.25"), kind=AllocationKind.SHARE)
        records = await ledger.list_allocations()

        assert len(records) == 1
        assert records[0].amount == Decimal("200")
        assert records[0].asset_balance == Decimal("800")
        assert not records[0].is_over_allocated

    async def test_invalid_allocations_rejected(self, ledger, make_asset, make_goal):
        asset = await make_asset()
        goal = await make_goal()

        with pytest.raises(InvalidAmountError):
            await ledger.set_allocation(asset.id, goal.id, Decimal("-1"))
        with pytest.raises(InvalidAmountError):
            await ledger.set_allocation(
                asset.id, goal.id, Decimal("1.5"), kind=AllocationKind.SHARE
            )
        with pytest.raises(RecordNotFoundError):
            await ledger.set_allocation(uuid4(), goal.id, Decimal("10"))
        with pytest.raises(RecordNotFoundError):
            await ledger.set_allocation(asset.id, uuid4(), Decimal("10"))

    async def test_orphaned_allocations_skipped(
        self, ledger, make_asset, make_goal, db_session
    ):
        asset = await make_asset()
        kept = await make_goal(name="Kept")
        deleted = await make_goal(name="Deleted")
        await ledger.set_allocation(asset.id, kept.id, Decimal("100"))
        await ledger.set_allocation(asset.id, deleted.id, Decimal("100"))
        deleted.status = GoalStatus.DELETED
        db_session.add(Allocation(asset_id=asset.id, goal_id=uuid4(), amount_value=Decimal("5")))
        db_session.add(Allocation(asset_id=uuid4(), goal_id=kept.id, amount_value=Decimal("5")))
        await db_session.flush()

        records = await ledger.list_allocations()

        assert [(r.asset_id, r.goal_id) for r in records] == [(asset.id, kept.id)]

    async def test_release_allocations_logs_zero_targets(
        self, ledger, make_asset, make_goal, clock
    ):
        first = await make_asset(name="First")
        second = await make_asset(name="Second")
        goal = await make_goal()
        await ledger.set_allocation(first.id, goal.id, Decimal("100"), recorded_at=_at(2))
        await ledger.set_allocation(second.id, goal.id, Decimal("50"), recorded_at=_at(2))

        released = await ledger.release_allocations(goal.id)

        assert released == 2
        assert await ledger.list_goal_allocations([goal.id]) == []
        history = await ledger.list_goal_history([goal.id])
        zero_rows = [h for h in history if h.amount == 0]
        assert len(zero_rows) == 2
        assert all(h.recorded_at == clock() for h in zero_rows)


@pytest.mark.asyncio
class TestAllocationHistory:
    """Test allocation history windows."""

    async def test_list_history_window_excludes_start(
        self, ledger, make_asset, make_goal, db_session
    ):
        asset = await make_asset()
        goal = await make_goal()
        for day in (2, 5, 8):
            ledger.record_history(asset.id, goal.id, Decimal(day * 10), _at(day))
        await db_session.flush()

        history = await ledger.list_history(asset.id, after=_at(2), until=_at(8))

        assert [h.recorded_at for h in history] == [_at(5), _at(8)]

    async def test_goal_history_until(self, ledger, make_asset, make_goal, db_session):
        asset = await make_asset()
        goal = await make_goal()
        ledger.record_history(asset.id, goal.id, Decimal("10"), _at(2))
        ledger.record_history(asset.id, goal.id, Decimal("20"), _at(9))
        await db_session.flush()

        history = await ledger.list_goal_history([goal.id], until=_at(5))

        assert [h.amount for h in history] == [Decimal("10")]

    async def test_history_at_scoped_to_goals(self, ledger, make_asset, make_goal, db_session):
        asset = await make_asset()
        goal = await make_goal()
        other = await make_goal(name="Other")
        at = _at(3, 12)
        ledger.record_history(asset.id, goal.id, Decimal("10"), at)
        ledger.record_history(asset.id, other.id, Decimal("15"), at)
        ledger.record_history(asset.id, goal.id, Decimal("20"), at + timedelta(hours=1))
        await db_session.flush()

        [history] = await ledger.history_at([asset.id], [goal.id], at)

        assert history.amount == Decimal("10")
        assert len(await ledger.history_at([asset.id], [goal.id, other.id], at)) == 2
        assert await ledger.history_at([asset.id], [], at) == []
