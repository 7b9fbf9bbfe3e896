"""
Data models for storage layer.

Defines limit definitions and per-entity usage pivots.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..core.reset import ResetFrequency


@dataclass(frozen=True)
class LimitDefinition:
    """Named, optionally plan-scoped quota record.
    
    The pair (name, plan) is unique; a None plan is distinct from
    every named plan.
    """
    id: int
    name: str
    allowed_amount: float
    plan: Optional[str] = None
    reset_frequency: Optional[ResetFrequency] = None

    def __str__(self) -> str:
        if self.plan:
            return f"{self.name} ({self.plan})"
        return self.name


@dataclass(frozen=True)
class UsagePivot:
    """Live usage of one limit by one entity."""
    limit_id: int
    model_type: str
    model_id: str
    used_amount: float
    extra_amount: float
    extra_used_amount: float
    last_reset: datetime
    next_reset: Optional[datetime] = None


@dataclass(frozen=True)
class AttachedLimit:
    """A limit definition together with an entity's pivot for it."""
    limit: LimitDefinition
    pivot: UsagePivot

    @property
    def allowed_amount(self) -> float:
        return self.limit.allowed_amount + self.pivot.extra_amount

    @property
    def used_amount(self) -> float:
        return self.pivot.used_amount + self.pivot.extra_used_amount

    @property
    def remaining_amount(self) -> float:
        return self.allowed_amount - self.used_amount

    @property
    def has_enough(self) -> bool:
        return self.allowed_amount > self.used_amount
