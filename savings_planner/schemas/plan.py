"""Validated inputs for monthly plan edits."""

from decimal import Decimal
from typing import Optional, Set
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class PlanAmountUpdate(BaseModel):
    """Custom amount override for one plan. ``None`` clears the override."""

    custom_amount: Optional[Decimal] = Field(None, ge=0)


class FlexAdjustmentRequest(BaseModel):
    """Bulk flex adjustment across a period's draft plans.

    ``adjustment`` multiplies each flexible plan's required amount
    (1.0 keeps it, 0.8 lowers it by a fifth).
    """

    adjustment: Decimal
    protected_goal_ids: Set[UUID] = Field(default_factory=set)
    skipped_goal_ids: Set[UUID] = Field(default_factory=set)

    @model_validator(mode="after")
    def validate_disjoint(self) -> "FlexAdjustmentRequest":
        """A goal cannot be both protected and skipped."""
        overlap = self.protected_goal_ids & self.skipped_goal_ids
        if overlap:
            raise ValueError(
                f"Goals cannot be both protected and skipped: {sorted(str(g) for g in overlap)}"
            )
        return self
