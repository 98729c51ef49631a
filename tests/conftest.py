"""Pytest configuration and fixtures."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, Optional, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from savings_planner.config import Settings
from savings_planner.database import create_session_factory
from savings_planner.exceptions import RateUnavailableError
from savings_planner.models import Asset, Base, Goal, GoalStatus
from savings_planner.money import ONE, same_currency
from savings_planner.services.budget_scheduler import BudgetScheduler
from savings_planner.services.execution_service import ExecutionTrackingService
from savings_planner.services.goal_calculation_service import GoalCalculationService
from savings_planner.services.ledger_repository import LedgerRepository
from savings_planner.services.plan_service import MonthlyPlanService
from savings_planner.services.progress_calculator import ExecutionProgressCalculator
from savings_planner.services.rate_service import CurrencyConverter

TEST_DATABASE_URL = "sqlite+aiosqlite://"

# 2025-01-10 12:00 UTC: next payment date is 2025-02-01 with payment day 1
FIXED_NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class StaticRateGateway:
    """In-memory rate gateway. Unknown pairs are unavailable."""

    def __init__(self, rates: Optional[Dict[Tuple[str, str], Decimal]] = None):
        self.rates = dict(rates or {})
        self.calls = []

    async def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        pair = (from_currency.upper(), to_currency.upper())
        self.calls.append(pair)
        if same_currency(*pair):
            return ONE
        if pair not in self.rates:
            raise RateUnavailableError(*pair, reason="no rate configured")
        return self.rates[pair]


@pytest.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture(scope="function")
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = create_session_factory(engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    """Settings independent of the environment and any .env file."""
    return Settings(
        _env_file=None,
        PAYMENT_DAY=1,
        DISPLAY_CURRENCY="USD",
        UNDO_GRACE_HOURS=24,
        SCHEDULE_CACHE_TTL_SECONDS=300,
        SCHEDULE_MAX_PERIODS=600,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def rate_gateway() -> StaticRateGateway:
    return StaticRateGateway(
        {
            ("EUR", "USD"): Decimal("1.1"),
            ("USD", "EUR"): Decimal("0.9"),
        }
    )


@pytest.fixture
def converter(rate_gateway) -> CurrencyConverter:
    return CurrencyConverter(rate_gateway)


@pytest.fixture
def ledger(db_session, clock) -> LedgerRepository:
    """Create ledger repository instance."""
    return LedgerRepository(db_session, clock=clock)


@pytest.fixture
def goal_calculation(ledger, converter) -> GoalCalculationService:
    return GoalCalculationService(ledger, converter)


@pytest.fixture
def scheduler(settings, converter, clock) -> BudgetScheduler:
    return BudgetScheduler(settings, converter, clock=clock)


@pytest.fixture
def plan_service(db_session, settings, goal_calculation, clock) -> MonthlyPlanService:
    """Create monthly plan service instance."""
    return MonthlyPlanService(db_session, settings, goal_calculation, clock=clock)


@pytest.fixture
def calculator(ledger, converter) -> ExecutionProgressCalculator:
    return ExecutionProgressCalculator(ledger, converter)


@pytest.fixture
def execution_service(
    db_session, settings, ledger, calculator, plan_service, clock
) -> ExecutionTrackingService:
    """Create execution tracking service instance."""
    return ExecutionTrackingService(
        db_session, settings, ledger, calculator, plan_service, clock=clock
    )


@pytest.fixture
def make_goal(db_session):
    """Factory persisting a goal."""

    async def _make_goal(
        name: str = "Emergency Fund",
        target_amount: Decimal = Decimal("1000"),
        deadline: date = date(2025, 6, 15),
        currency: str = "USD",
        status: GoalStatus = GoalStatus.ACTIVE,
    ) -> Goal:
        goal = Goal(
            name=name,
            currency=currency,
            target_amount=target_amount,
            deadline=deadline,
            start_date=date(2025, 1, 1),
            status=status,
        )
        db_session.add(goal)
        await db_session.flush()
        return goal

    return _make_goal


@pytest.fixture
def make_asset(db_session):
    """Factory persisting an asset."""

    async def _make_asset(name: str = "Savings Account", currency: str = "USD") -> Asset:
        asset = Asset(name=name, currency=currency)
        db_session.add(asset)
        await db_session.flush()
        return asset

    return _make_asset
