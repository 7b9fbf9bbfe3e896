"""
Usage ledger.

Per-entity accounting against limit definitions.

Invariants (at rest, for every pivot):
- 0 <= used_amount <= allowed_amount
- 0 <= extra_used_amount <= extra_amount

Consumption draws from the extra allowance first. Every mutation reads
the pivot, validates and writes inside one transaction, so a failed
call leaves the row exactly as it was.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Protocol, Tuple, Union, runtime_checkable

from ..storage.db import transaction
from ..storage.models import AttachedLimit, LimitDefinition, UsagePivot
from ..storage.repository import PivotRepository

from .catalog import LimitCatalog
from .errors import (
    InvalidAmount,
    InvalidArgument,
    LimitNotSetOnModel,
    UsageLimiterError,
)
from .reset import next_reset

logger = logging.getLogger(__name__)

LimitRef = Union[str, LimitDefinition]


@runtime_checkable
class UsageTrackable(Protocol):
    """Anything that can own limits.

    The pair (limit_model_type, limit_model_id) identifies the owner in
    the pivot table.
    """
    limit_model_type: str
    limit_model_id: Union[str, int]


@dataclass(frozen=True)
class LimitOwner:
    """Plain owner reference, e.g. for use from the CLI."""
    limit_model_type: str
    limit_model_id: Union[str, int]


def _owner_key(entity: UsageTrackable) -> Tuple[str, str]:
    return str(entity.limit_model_type), str(entity.limit_model_id)


class UsageLedger:
    """Accounting operations for entities that own limits."""

    def __init__(
        self,
        catalog: LimitCatalog,
        repository: Optional[PivotRepository] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.catalog = catalog
        self.repository = repository or PivotRepository(catalog.config)
        self.clock = clock

    @contextmanager
    def _pivot_transaction(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str]) -> Iterator[Tuple[sqlite3.Connection, LimitDefinition, UsagePivot]]:
        """Open a write transaction holding the entity's pivot for a limit.

        Raises:
            LimitDoesNotExist: If the limit is not defined
            LimitNotSetOnModel: If the entity has no pivot for it
        """
        limit = self.catalog.find_by_name(name, plan)
        model_type, model_id = _owner_key(entity)

        conn = self.repository.connect()
        try:
            with transaction(conn):
                pivot = self.repository.get(conn, model_type, model_id, limit.id)
                if pivot is None:
                    raise LimitNotSetOnModel(limit.name, limit.plan)
                yield conn, limit, pivot
        finally:
            conn.close()

    # Attachment

    def set_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None, used_amount: float = 0.0) -> bool:
        """Attach a limit to an entity.

        Attaching an already attached limit is a no-op.

        Raises:
            LimitDoesNotExist: If the limit is not defined
            InvalidArgument: If used_amount is negative or above the allowed amount
        """
        limit = self.catalog.find_by_name(name, plan)
        model_type, model_id = _owner_key(entity)

        conn = self.repository.connect()
        try:
            with transaction(conn):
                if self.repository.get(conn, model_type, model_id, limit.id) is not None:
                    return True

                if used_amount > limit.allowed_amount:
                    raise InvalidArgument('"used_amount" should always be less than or equal to the limit "allowed_amount"')
                if used_amount < 0:
                    raise InvalidArgument('"used_amount" should be greater than or equal to 0')

                now = self.clock()
                self.repository.insert(conn, UsagePivot(
                    limit_id=limit.id,
                    model_type=model_type,
                    model_id=model_id,
                    used_amount=float(used_amount),
                    extra_amount=0.0,
                    extra_used_amount=0.0,
                    last_reset=now,
                    next_reset=next_reset(limit.reset_frequency, now) if limit.reset_frequency else None
                ))
        finally:
            conn.close()

        logger.info("Set limit %s on %s:%s", limit, model_type, model_id)
        return True

    def is_limit_set(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> bool:
        """Check whether the entity has a pivot for the limit.

        Raises:
            LimitDoesNotExist: If the limit is not defined
        """
        limit = self.catalog.find_by_name(name, plan)
        model_type, model_id = _owner_key(entity)

        conn = self.repository.connect()
        try:
            return self.repository.get(conn, model_type, model_id, limit.id) is not None
        finally:
            conn.close()

    def unset_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> bool:
        with self._pivot_transaction(entity, name, plan) as (conn, limit, pivot):
            self.repository.delete(conn, pivot.model_type, pivot.model_id, limit.id)

        logger.info("Unset limit %s on %s:%s", limit, pivot.model_type, pivot.model_id)
        return True

    # Usage

    def use_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None, amount: float = 1.0) -> bool:
        """Consume amount, drawing from unused extra allowance first.

        The whole amount comes from one pool; it is never split across
        the extra and base allowances.

        Raises:
            InvalidAmount: If the chosen pool would go to <= 0 or above its bound
        """
        with self._pivot_transaction(entity, name, plan) as (conn, limit, pivot):
            if pivot.extra_amount > pivot.extra_used_amount:
                new_extra_used = pivot.extra_used_amount + amount
                if new_extra_used <= 0 or new_extra_used > pivot.extra_amount:
                    raise InvalidAmount()
                updated = replace(pivot, extra_used_amount=new_extra_used)
            else:
                new_used = pivot.used_amount + amount
                if new_used <= 0 or new_used > limit.allowed_amount:
                    raise InvalidAmount()
                updated = replace(pivot, used_amount=new_used)

            self.repository.update(conn, updated)

        return True

    def unuse_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None, amount: float = 1.0) -> bool:
        """Give back amount, returning extra usage first.

        Same pool order as use_limit. Returning usage down to exactly
        zero is allowed.

        Raises:
            InvalidAmount: If amount <= 0 or the chosen pool would leave 0..bound
        """
        if amount <= 0:
            raise InvalidAmount()

        with self._pivot_transaction(entity, name, plan) as (conn, limit, pivot):
            if pivot.extra_used_amount > 0:
                new_extra_used = pivot.extra_used_amount - amount
                if new_extra_used < 0 or new_extra_used > pivot.extra_amount:
                    raise InvalidAmount()
                updated = replace(pivot, extra_used_amount=new_extra_used)
            else:
                new_used = pivot.used_amount - amount
                if new_used < 0 or new_used > limit.allowed_amount:
                    raise InvalidAmount()
                updated = replace(pivot, used_amount=new_used)

            self.repository.update(conn, updated)

        return True

    def reset_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> bool:
        """Zero the base usage. Extra usage and reset timestamps are kept."""
        with self._pivot_transaction(entity, name, plan) as (conn, limit, pivot):
            self.repository.update(conn, replace(pivot, used_amount=0.0))

        return True

    def increase_extra_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None, amount: float = 1.0) -> bool:
        """Grant additional extra allowance.

        Raises:
            InvalidArgument: If amount <= 0
        """
        if amount <= 0:
            raise InvalidArgument('"amount" should be greater than 0')

        with self._pivot_transaction(entity, name, plan) as (conn, limit, pivot):
            self.repository.update(conn, replace(pivot, extra_amount=pivot.extra_amount + amount))

        return True

    def clear_extra_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> bool:
        with self._pivot_transaction(entity, name, plan) as (conn, limit, pivot):
            self.repository.update(conn, replace(pivot, extra_amount=0.0, extra_used_amount=0.0))

        return True

    def reset_due_usages(self, now: Optional[datetime] = None) -> int:
        """Reset base usage of every pivot whose next reset has passed.

        Meant to be called periodically by an external scheduler.
        last_reset becomes now and next_reset moves one period ahead of it.

        Returns:
            Number of pivots reset
        """
        now = now or self.clock()

        conn = self.repository.connect()
        try:
            with transaction(conn):
                due = self.repository.list_due(conn, now)
                for pivot, frequency in due:
                    self.repository.update(conn, replace(
                        pivot,
                        used_amount=0.0,
                        last_reset=now,
                        next_reset=next_reset(frequency, now) if frequency else None
                    ))
        finally:
            conn.close()

        if due:
            logger.info("Reset usage of %d limit attachments", len(due))
        return len(due)

    # Queries

    def get_model_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> AttachedLimit:
        """Get a limit with the entity's pivot.

        Raises:
            LimitDoesNotExist: If the limit is not defined
            LimitNotSetOnModel: If the entity has no pivot for it
        """
        limit = self.catalog.find_by_name(name, plan)
        model_type, model_id = _owner_key(entity)

        conn = self.repository.connect()
        try:
            pivot = self.repository.get(conn, model_type, model_id, limit.id)
        finally:
            conn.close()

        if pivot is None:
            raise LimitNotSetOnModel(limit.name, limit.plan)
        return AttachedLimit(limit=limit, pivot=pivot)

    def get_model_limits(self, entity: UsageTrackable) -> List[AttachedLimit]:
        """Get every limit attached to the entity, ordered by limit id."""
        model_type, model_id = _owner_key(entity)

        conn = self.repository.connect()
        try:
            pivots = self.repository.list_for_model(conn, model_type, model_id)
        finally:
            conn.close()

        attached = []
        for pivot in pivots:
            limit = self.catalog.get(id=pivot.limit_id)
            if limit is None:
                # Cached snapshot predates this limit
                self.catalog.flush_cache()
                limit = self.catalog.find_by_id(pivot.limit_id)
            attached.append(AttachedLimit(limit=limit, pivot=pivot))
        return attached

    def has_enough_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> bool:
        """Check for remaining allowance. Never raises for missing limits.

        Returns:
            False when the limit is undefined or not set on the entity
        """
        try:
            return self.get_model_limit(entity, name, plan).has_enough
        except UsageLimiterError:
            return False

    def allowed_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> float:
        return self.get_model_limit(entity, name, plan).allowed_amount

    def used_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> float:
        return self.get_model_limit(entity, name, plan).used_amount

    def remaining_limit(self, entity: UsageTrackable, name: LimitRef, plan: Optional[str] = None) -> float:
        return self.get_model_limit(entity, name, plan).remaining_amount
