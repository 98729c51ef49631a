"""Domain exceptions for planning and execution tracking."""

from typing import Optional


class SavingsPlannerError(Exception):
    """Base class for all savings planner errors."""


class ValidationFailure(SavingsPlannerError):
    """Operation rejected before any write was made."""


class InvalidAmountError(ValidationFailure):
    """An amount is zero, negative or otherwise unusable."""


class InvalidStateError(ValidationFailure):
    """Requested state transition is not legal from the current state."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class RecordAlreadyExistsError(SavingsPlannerError):
    """A closed execution record already exists for the period."""

    def __init__(self, period_label: str):
        super().__init__(f"An execution record for {period_label} already exists")
        self.period_label = period_label


class RecordNotFoundError(SavingsPlannerError):
    """A referenced record does not exist."""


class UndoPeriodExpiredError(SavingsPlannerError):
    """The undo grace period has elapsed."""

    def __init__(self, period_label: str):
        super().__init__(f"The undo grace period for {period_label} has expired")
        self.period_label = period_label


class RateUnavailableError(SavingsPlannerError):
    """Exchange rate could not be obtained."""

    def __init__(self, from_currency: str, to_currency: str, reason: str = ""):
        message = f"Exchange rate {from_currency}->{to_currency} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.from_currency = from_currency
        self.to_currency = to_currency


class PersistenceError(SavingsPlannerError):
    """Saving changes to the store failed; the transaction was rolled back."""
