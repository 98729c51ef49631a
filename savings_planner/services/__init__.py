"""Services package."""

from importlib import import_module

# Imported lazily so that importing one service does not load them all
_EXPORTS = {
    "BudgetScheduler": "budget_scheduler",
    "ExecutionProgressCalculator": "progress_calculator",
    "ExecutionTrackingService": "execution_service",
    "GoalCalculationService": "goal_calculation_service",
    "LedgerRepository": "ledger_repository",
    "MonthlyPlanService": "plan_service",
    "AsyncSerialExecutor": "serial_executor",
    "CurrencyConverter": "rate_service",
    "HttpRateGateway": "rate_service",
}

__all__ = list(_EXPORTS)


def __getattr__(name):
    """Lazy import for service classes."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(f"{__name__}.{module_name}")
    return getattr(module, name)
