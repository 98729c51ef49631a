"""Tests for execution tracking service."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from savings_planner.exceptions import (
    InvalidStateError,
    PersistenceError,
    RecordAlreadyExistsError,
    UndoPeriodExpiredError,
)
from savings_planner.models import ExecutionStatus, PlanState
from savings_planner.schemas.execution import ContributionSource


@pytest.fixture
async def setup(ledger, plan_service, make_goal, make_asset):
    """Two goals; the first is funded from a dedicated USD asset."""
    fund = await make_goal(name="Emergency Fund", target_amount=Decimal("1000"))
    laptop = await make_goal(name="Laptop", target_amount=Decimal("500"))
    asset = await make_asset()
    await ledger.set_allocation(asset.id, fund.id, Decimal("0"))

    goals = await ledger.load_planning_goals()
    plans = await plan_service.get_or_create_plans_for_current_month(goals)
    return {"fund": fund, "laptop": laptop, "asset": asset, "goals": goals, "plans": plans}


@pytest.fixture
async def record(execution_service, setup):
    return await execution_service.start_tracking("2025-01", setup["plans"], setup["goals"])


@pytest.mark.asyncio
class TestStartTracking:
    """Test starting and refreshing tracking."""

    async def test_start_tracking(self, execution_service, record, setup, clock, ledger):
        assert record.status == ExecutionStatus.EXECUTING
        assert record.started_at == clock()
        assert record.can_undo_until == clock() + timedelta(hours=24)
        assert set(record.tracked_goal_ids) == {setup["fund"].id, setup["laptop"].id}
        assert record.snapshot.total_planned == Decimal("300")
        assert all(p.plan_state == PlanState.EXECUTING for p in setup["plans"])

        assert await execution_service.get_record("2025-01") is record
        assert await execution_service.get_current_period_record() is record
        assert await execution_service.get_active_record() is record
        baseline = await ledger.history_at(
            [setup["asset"].id], record.tracked_goal_ids, record.started_at
        )
        assert len(baseline) == 1

    async def test_restart_refreshes_open_record(
        self, execution_service, plan_service, record, setup, clock
    ):
        started_at = record.started_at
        clock.advance(hours=1)
        await plan_service.revert_plans(setup["plans"][:1], PlanState.DRAFT)
        await plan_service.set_custom_amount(setup["plans"][0], Decimal("10"))

        again = await execution_service.start_tracking(
            "2025-01", setup["plans"], setup["goals"]
        )

        assert again.id == record.id
        assert again.started_at == started_at
        assert again.status == ExecutionStatus.EXECUTING
        planned = {g.goal_id: g.planned_amount for g in again.snapshot.goals}
        assert planned[setup["plans"][0].goal_id] == Decimal("10")
        assert setup["plans"][0].plan_state == PlanState.EXECUTING
        assert await execution_service.count_records() == 1

    async def test_closed_period_cannot_restart(self, execution_service, record, setup):
        await execution_service.mark_complete(record)

        with pytest.raises(RecordAlreadyExistsError):
            await execution_service.start_tracking("2025-01", setup["plans"], setup["goals"])

    async def test_plans_without_amount_left_out_of_snapshot(
        self, execution_service, plan_service, setup
    ):
        laptop_plan = next(p for p in setup["plans"] if p.goal_id == setup["laptop"].id)
        laptop_plan.required_monthly = Decimal("0")
        await plan_service.set_custom_amount(laptop_plan, None)

        record = await execution_service.start_tracking(
            "2025-01", setup["plans"], setup["goals"]
        )

        assert [g.goal_id for g in record.snapshot.goals] == [setup["fund"].id]

    async def test_refresh_keeps_allocation_baseline(
        self, execution_service, plan_service, ledger, make_goal, make_asset, clock
    ):
        fund = await make_goal(name="Emergency Fund")
        bike = await make_goal(name="Bike")
        asset = await make_asset()
        before_start = clock() - timedelta(days=1)
        await ledger.add_transaction(asset.id, Decimal("1000"), occurred_at=before_start)
        await ledger.set_allocation(asset.id, fund.id, Decimal("100"), recorded_at=before_start)
        goals = await ledger.load_planning_goals()
        plans = await plan_service.get_or_create_plans_for_current_month(goals)
        record = await execution_service.start_tracking("2025-01", plans, goals)

        clock.advance(days=2)
        await ledger.set_allocation(asset.id, fund.id, Decimal("300"))
        await ledger.set_allocation(asset.id, bike.id, Decimal("50"))
        before = await execution_service.get_contribution_totals(record)

        clock.advance(hours=1)
        refreshed = await execution_service.start_tracking("2025-01", plans, goals)
        after = await execution_service.get_contribution_totals(refreshed)

        assert before.totals == {fund.id: Decimal("200"), bike.id: Decimal("50")}
        assert after.totals == before.totals
        baseline = await ledger.history_at([asset.id], [fund.id, bike.id], record.started_at)
        assert {(h.goal_id, h.amount) for h in baseline} == {
            (fund.id, Decimal("100")),
            (bike.id, Decimal("0")),
        }

    async def test_commit_failure_raises_persistence_error(
        self, execution_service, setup, db_session
    ):
        error = OperationalError("COMMIT", {}, Exception("database is gone"))
        db_session.commit = AsyncMock(side_effect=error)
        db_session.rollback = AsyncMock()

        with pytest.raises(PersistenceError, match="start_tracking"):
            await execution_service.start_tracking("2025-01", setup["plans"], setup["goals"])

        db_session.rollback.assert_awaited_once()


@pytest.mark.asyncio
class TestMarkComplete:
    """Test closing a period."""

    async def test_live_totals_follow_deposits(
        self, execution_service, record, setup, ledger, clock
    ):
        clock.set(datetime(2025, 1, 15, tzinfo=timezone.utc))
        await ledger.add_transaction(setup["asset"].id, Decimal("200"))

        totals = await execution_service.get_contribution_totals(record)

        assert not totals.is_frozen
        assert totals.for_goal(setup["fund"].id) == Decimal("200")
        assert totals.for_goal(setup["laptop"].id) == Decimal("0")

    async def test_closed_totals_are_frozen(
        self, execution_service, record, setup, ledger, clock
    ):
        clock.set(datetime(2025, 1, 15, tzinfo=timezone.utc))
        await ledger.add_transaction(setup["asset"].id, Decimal("200"))
        clock.set(datetime(2025, 1, 20, tzinfo=timezone.utc))

        closed = await execution_service.mark_complete(record)

        assert closed.status == ExecutionStatus.CLOSED
        assert closed.completed_at == clock()
        assert closed.can_undo_until == clock() + timedelta(hours=24)
        assert all(p.plan_state == PlanState.COMPLETED for p in setup["plans"])
        [contribution] = closed.completed_execution.contributions
        assert contribution.source == ContributionSource.DEPOSIT
        assert contribution.exchange_rate_used == Decimal("1")

        clock.set(datetime(2025, 1, 22, tzinfo=timezone.utc))
        await ledger.add_transaction(setup["asset"].id, Decimal("300"))
        totals = await execution_service.get_contribution_totals(closed)

        assert totals.is_frozen
        assert totals.for_goal(setup["fund"].id) == Decimal("200")

    async def test_closed_totals_ignore_rate_changes(
        self, execution_service, plan_service, ledger, make_goal, make_asset, rate_gateway, clock
    ):
        goal = await make_goal(name="Trip", currency="USD")
        asset = await make_asset(name="Euro account", currency="EUR")
        await ledger.set_allocation(asset.id, goal.id, Decimal("0"))
        goals = await ledger.load_planning_goals([goal.id])
        plans = await plan_service.get_or_create_plans_for_current_month(goals)
        record = await execution_service.start_tracking("2025-01", plans, goals)
        clock.advance(days=1)
        await ledger.add_transaction(asset.id, Decimal("100"))
        clock.advance(days=1)

        closed = await execution_service.mark_complete(record)
        rate_gateway.rates[("EUR", "USD")] = Decimal("2")
        totals = await execution_service.get_contribution_totals(closed)

        assert totals.for_goal(goal.id) == Decimal("110")
        assert closed.completed_execution.exchange_rates == {"EUR->USD": Decimal("1.1")}

    async def test_missing_rate_skips_contribution(
        self, execution_service, plan_service, ledger, make_goal, make_asset, clock
    ):
        goal = await make_goal(name="Trip", currency="USD")
        asset = await make_asset(name="Pound account", currency="GBP")
        await ledger.set_allocation(asset.id, goal.id, Decimal("0"))
        goals = await ledger.load_planning_goals([goal.id])
        plans = await plan_service.get_or_create_plans_for_current_month(goals)
        record = await execution_service.start_tracking("2025-01", plans, goals)
        clock.advance(days=1)
        await ledger.add_transaction(asset.id, Decimal("100"))
        clock.advance(days=1)

        closed = await execution_service.mark_complete(record)
        totals = await execution_service.get_contribution_totals(closed)

        assert closed.completed_execution.contributions == []
        assert closed.completed_execution.missing_rates == ["GBP->USD"]
        assert totals.is_approximate
        assert totals.for_goal(goal.id) == Decimal("0")

    async def test_only_executing_records_complete(self, execution_service, record):
        await execution_service.mark_complete(record)

        with pytest.raises(InvalidStateError):
            await execution_service.mark_complete(record)


@pytest.mark.asyncio
class TestUndo:
    """Test undo within the grace period."""

    async def test_undo_completion(self, execution_service, record, setup, clock):
        await execution_service.mark_complete(record)
        clock.advance(hours=1)

        reopened = await execution_service.undo_completion(record)

        assert reopened.status == ExecutionStatus.EXECUTING
        assert reopened.completed_at is None
        assert reopened.completed_execution is None
        assert all(p.plan_state == PlanState.EXECUTING for p in setup["plans"])
        assert not (await execution_service.get_contribution_totals(reopened)).is_frozen

    async def test_undo_completion_undoes_one_step_only(self, execution_service, record, clock):
        await execution_service.mark_complete(record)
        clock.advance(hours=1)
        await execution_service.undo_completion(record)

        assert record.can_undo_until is None
        with pytest.raises(UndoPeriodExpiredError):
            await execution_service.undo_start_tracking(record)

        assert record.status == ExecutionStatus.EXECUTING
        assert record.started_at is not None

    async def test_undo_completion_after_grace_period(self, execution_service, record, clock):
        await execution_service.mark_complete(record)
        clock.advance(hours=25)

        with pytest.raises(UndoPeriodExpiredError):
            await execution_service.undo_completion(record)

        assert record.status == ExecutionStatus.CLOSED

    async def test_undo_completion_requires_closed(self, execution_service, record):
        with pytest.raises(InvalidStateError):
            await execution_service.undo_completion(record)

    async def test_undo_start_tracking(self, execution_service, record, setup, clock):
        clock.advance(hours=2)

        draft = await execution_service.undo_start_tracking(record)

        assert draft.status == ExecutionStatus.DRAFT
        assert draft.started_at is None
        assert draft.can_undo_until is None
        assert all(p.plan_state == PlanState.DRAFT for p in setup["plans"])
        assert (await execution_service.get_contribution_totals(draft)).totals == {}

        restarted = await execution_service.start_tracking(
            "2025-01", setup["plans"], setup["goals"]
        )
        assert restarted.id == record.id
        assert restarted.started_at == clock()

    async def test_undo_start_after_grace_period(self, execution_service, record, clock):
        clock.advance(days=2)

        with pytest.raises(UndoPeriodExpiredError):
            await execution_service.undo_start_tracking(record)


@pytest.mark.asyncio
class TestRecords:
    """Test record queries and removal."""

    async def test_soft_delete_frees_period(self, execution_service, record, setup):
        await execution_service.delete_record(record)

        assert record.deleted_at is not None
        assert await execution_service.get_record("2025-01") is None
        assert await execution_service.count_records() == 0

        await execution_service.plan_service.revert_plans(setup["plans"], PlanState.DRAFT)
        fresh = await execution_service.start_tracking("2025-01", setup["plans"], setup["goals"])
        assert fresh.id != record.id

    async def test_completed_records_newest_first(self, execution_service, record, setup):
        older = await execution_service.start_tracking("2024-12", [], setup["goals"])
        await execution_service.mark_complete(older)
        await execution_service.mark_complete(record)

        completed = await execution_service.get_completed_records()

        assert [r.period_label for r in completed] == ["2025-01", "2024-12"]
        assert await execution_service.get_completed_records(limit=1, offset=1) == [older]
        assert await execution_service.get_active_record() is None


@pytest.mark.asyncio
class TestProgress:
    """Test progress against plans and the snapshot."""

    async def test_progress_and_fulfillment(
        self, execution_service, record, setup, ledger, clock
    ):
        clock.set(datetime(2025, 1, 15, tzinfo=timezone.utc))
        await ledger.add_transaction(setup["asset"].id, Decimal("200"))

        status = await execution_service.get_fulfillment_status(record, setup["plans"])
        progress = await execution_service.calculate_progress(record)

        assert status == {setup["fund"].id: True, setup["laptop"].id: False}
        assert progress == pytest.approx(200 / 300 * 100)

    async def test_closed_progress_uses_snapshot(
        self, execution_service, record, setup, ledger, clock
    ):
        clock.set(datetime(2025, 1, 15, tzinfo=timezone.utc))
        await ledger.add_transaction(setup["asset"].id, Decimal("150"))
        await execution_service.mark_complete(record)

        comparisons = await execution_service.compare_with_snapshot(record)
        progress = await execution_service.calculate_progress(record)

        by_goal = {c.goal_id: c for c in comparisons}
        assert by_goal[setup["fund"].id].contributed == Decimal("150")
        assert not by_goal[setup["fund"].id].is_fulfilled
        assert by_goal[setup["fund"].id].percentage == pytest.approx(75.0)
        assert progress == pytest.approx(50.0)

    async def test_plan_summary_with_contributions(
        self, execution_service, plan_service, record, setup, ledger, clock
    ):
        clock.set(datetime(2025, 1, 15, tzinfo=timezone.utc))
        await ledger.add_transaction(setup["asset"].id, Decimal("250"))
        totals = await execution_service.get_contribution_totals(record)

        summary = await plan_service.get_plan_summary("2025-01", totals.totals)

        assert summary.total_required == Decimal("300")
        assert summary.total_contributed == Decimal("250")
        assert summary.fulfilled_count == 1
        assert not summary.is_complete
