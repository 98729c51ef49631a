"""Composition root: builds settings, storage, the rate gateway and services."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from savings_planner.cache import CacheManager
from savings_planner.config import Settings, get_settings
from savings_planner.database import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    session_scope,
)
from savings_planner.logging_config import configure_logging, get_logger
from savings_planner.models.base import utcnow
from savings_planner.services.budget_scheduler import BudgetScheduler
from savings_planner.services.execution_service import ExecutionTrackingService
from savings_planner.services.goal_calculation_service import GoalCalculationService
from savings_planner.services.ledger_repository import LedgerRepository
from savings_planner.services.plan_service import MonthlyPlanService
from savings_planner.services.progress_calculator import ExecutionProgressCalculator
from savings_planner.services.rate_service import (
    CurrencyConverter,
    HttpRateGateway,
    RateGateway,
)

logger = get_logger(__name__)


@dataclass
class SessionServices:
    """Services bound to one database session."""

    session: AsyncSession
    ledger: LedgerRepository
    goal_calculation: GoalCalculationService
    plans: MonthlyPlanService
    calculator: ExecutionProgressCalculator
    execution: ExecutionTrackingService


class DependencyContainer:
    """Owns long-lived resources and builds per-session services.

    Use as an async context manager::

        async with DependencyContainer() as container:
            async with container.session() as services:
                plans = await services.plans.get_or_create_plans_for_current_month(goals)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        rate_gateway: Optional[RateGateway] = None,
        engine: Optional[AsyncEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self._engine = engine
        self._rate_gateway = rate_gateway
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self.cache: Optional[CacheManager] = None
        self.rate_gateway: Optional[RateGateway] = None
        self.converter: Optional[CurrencyConverter] = None
        self.scheduler: Optional[BudgetScheduler] = None

    async def __aenter__(self) -> "DependencyContainer":
        configure_logging(self.settings)

        self.engine = self._engine or create_engine_from_settings(self.settings)
        self.session_factory = create_session_factory(self.engine)

        if self._rate_gateway is not None:
            self.rate_gateway = self._rate_gateway
        else:
            self.cache = CacheManager(self.settings)
            try:
                await self.cache.connect()
            except Exception as e:
                # Rates are still fetched, just not cached
                logger.warning("Rate cache unavailable", error=str(e))
                self.cache = None
            self.rate_gateway = HttpRateGateway(self.settings, cache=self.cache)

        self.converter = CurrencyConverter(self.rate_gateway)
        # The scheduler outlives sessions so its schedule cache is shared
        self.scheduler = BudgetScheduler(self.settings, self.converter, clock=self.clock)

        logger.info(
            "Savings planner started",
            app_name=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.environment,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if isinstance(self.rate_gateway, HttpRateGateway):
            await self.rate_gateway.aclose()
        if self.cache:
            await self.cache.disconnect()
        if self.engine is not None and self._engine is None:
            await close_db(self.engine)
        logger.info("Savings planner stopped")

    def build_services(self, session: AsyncSession) -> SessionServices:
        """Build every session-scoped service over ``session``."""
        if self.converter is None:
            raise RuntimeError("DependencyContainer must be entered before building services")

        ledger = LedgerRepository(session, clock=self.clock)
        goal_calculation = GoalCalculationService(ledger, self.converter)
        plans = MonthlyPlanService(session, self.settings, goal_calculation, clock=self.clock)
        calculator = ExecutionProgressCalculator(ledger, self.converter)
        execution = ExecutionTrackingService(
            session, self.settings, ledger, calculator, plans, clock=self.clock
        )
        return SessionServices(
            session=session,
            ledger=ledger,
            goal_calculation=goal_calculation,
            plans=plans,
            calculator=calculator,
            execution=execution,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SessionServices]:
        """Yield services over a session that commits on success."""
        if self.session_factory is None:
            raise RuntimeError("DependencyContainer must be entered before opening sessions")
        async with session_scope(self.session_factory) as session:
            yield self.build_services(session)
