"""
Limit catalog.

Resolves limit definitions by id or by (name, plan) through a two-tier
cache: a process-wide snapshot in front of a named cache store.

Consistency:
Snapshots are keyed by (cache store, cache key), so every catalog in the
process sharing that pair sees the same snapshot and a flush from any of
them clears it for all. A flush from another process only clears the
shared cache entry; this process keeps serving its snapshot until it
flushes too.
"""

import logging
import sqlite3
import threading
from typing import Dict, Optional, Tuple, Union

from ..config.loader import DEFAULT_CONFIG, LimiterConfig
from ..storage.db import transaction
from ..storage.models import LimitDefinition
from ..storage.repository import LimitRepository

from .cache import CacheStore, get_cache_store
from .errors import InvalidArgument, LimitDoesNotExist
from .reset import ResetFrequency

logger = logging.getLogger(__name__)

# Process-wide snapshots keyed by (cache store name, cache key)
_snapshots: Dict[Tuple[str, str], Tuple[LimitDefinition, ...]] = {}
_snapshots_lock = threading.Lock()


def reset_catalog_snapshots() -> None:
    """Drop every process-wide limit snapshot."""
    with _snapshots_lock:
        _snapshots.clear()


def _normalize_plan(plan: Optional[str]) -> Optional[str]:
    if plan is None:
        return None
    plan = plan.strip()
    return plan or None


class LimitCatalog:
    """Catalog of limit definitions backed by a read-through cache."""

    def __init__(
        self,
        config: LimiterConfig = DEFAULT_CONFIG,
        repository: Optional[LimitRepository] = None,
        cache: Optional[CacheStore] = None
    ):
        self.config = config
        self.repository = repository or LimitRepository(config)
        self.cache = cache or get_cache_store(config.cache_store)

    @property
    def _snapshot_key(self) -> Tuple[str, str]:
        return self.cache.name, self.config.cache_key

    # Read path

    def _load_limits(self) -> Tuple[LimitDefinition, ...]:
        with _snapshots_lock:
            limits = _snapshots.get(self._snapshot_key)
        if limits:
            return limits

        limits = self.cache.remember(
            self.config.cache_key,
            self.config.cache_expiration,
            self._fetch_limits
        )
        with _snapshots_lock:
            _snapshots[self._snapshot_key] = limits
        return limits

    def _fetch_limits(self) -> Tuple[LimitDefinition, ...]:
        limits = tuple(self.repository.fetch_all())
        logger.debug("Loaded %d limits from %s", len(limits), self.config.db_path)
        return limits

    def all(self) -> Tuple[LimitDefinition, ...]:
        """Get every limit definition, loading the snapshot if needed."""
        return self._load_limits()

    def get(
        self,
        id: Optional[int] = None,
        name: Optional[str] = None,
        plan: Optional[str] = None
    ) -> Optional[LimitDefinition]:
        """Look up a limit by id, or by exact (name, plan).

        Returns:
            Matching limit or None

        Raises:
            InvalidArgument: If neither id nor name is given
        """
        if id is None and name is None:
            raise InvalidArgument("Either Limit id OR name parameters should be filled.")

        limits = self._load_limits()

        if id is not None:
            return next((limit for limit in limits if limit.id == id), None)

        plan = _normalize_plan(plan)
        return next(
            (limit for limit in limits if limit.name == name and limit.plan == plan),
            None
        )

    def find_by_name(self, name: Union[str, LimitDefinition], plan: Optional[str] = None) -> LimitDefinition:
        """Resolve a limit by name and plan.

        A LimitDefinition may be passed instead of a name; its own
        name and plan are used.

        Raises:
            LimitDoesNotExist: If no limit matches
        """
        if isinstance(name, LimitDefinition):
            name, plan = name.name, name.plan

        limit = self.get(name=name, plan=plan)
        if limit is None:
            raise LimitDoesNotExist(name, plan)
        return limit

    def find_by_id(self, id: int) -> LimitDefinition:
        """Resolve a limit by id.

        Raises:
            LimitDoesNotExist: If no limit has this id
        """
        limit = self.get(id=id)
        if limit is None:
            raise LimitDoesNotExist(f"#{id}")
        return limit

    # Write path

    def find_or_create(
        self,
        name: Optional[str],
        allowed_amount: Optional[float],
        plan: Optional[str] = None,
        reset_frequency: Optional[Union[ResetFrequency, str]] = None
    ) -> LimitDefinition:
        """Return the limit for (name, plan), creating it when missing.

        An existing row is returned unchanged; its allowance and reset
        frequency are not updated.

        Raises:
            InvalidArgument: If name or allowed_amount is missing or allowed_amount < 0
            InvalidResetFrequency: If reset_frequency is not recognized
        """
        if name is None or not str(name).strip():
            raise InvalidArgument('"name" is required to create a limit')
        if allowed_amount is None:
            raise InvalidArgument('"allowed_amount" is required to create a limit')
        if allowed_amount < 0:
            raise InvalidArgument('"allowed_amount" should be greater than or equal to 0')

        name = str(name).strip()
        plan = _normalize_plan(plan)
        frequency = ResetFrequency.parse(reset_frequency) if reset_frequency else None

        conn = self.repository.connect()
        try:
            try:
                with transaction(conn):
                    existing = self.repository.find(conn, name, plan)
                    if existing is not None:
                        return existing
                    limit = self.repository.insert(conn, name, plan, float(allowed_amount), frequency)
            except sqlite3.IntegrityError:
                # Another writer created the same (name, plan) first
                existing = self.repository.find(conn, name, plan)
                if existing is None:
                    raise
                return existing
        finally:
            conn.close()

        logger.info("Created limit %s with allowed amount %s", limit, limit.allowed_amount)
        self.flush_cache()
        return limit

    def increment_by(self, limit: LimitDefinition, amount: float = 1.0) -> LimitDefinition:
        """Increase a limit's allowed amount.

        Raises:
            InvalidArgument: If amount <= 0
        """
        if amount <= 0:
            raise InvalidArgument('"amount" should be greater than 0')

        return self._change_allowed_amount(limit, amount)

    def decrement_by(self, limit: LimitDefinition, amount: float = 1.0) -> LimitDefinition:
        """Decrease a limit's allowed amount, keeping it strictly positive.

        Raises:
            InvalidArgument: If amount <= 0 or the result would be <= 0
        """
        if amount <= 0:
            raise InvalidArgument('"amount" should be greater than 0')

        return self._change_allowed_amount(limit, -amount)

    def _change_allowed_amount(self, limit: LimitDefinition, delta: float) -> LimitDefinition:
        conn = self.repository.connect()
        try:
            with transaction(conn):
                current = self.repository.find_by_id(conn, limit.id)
                if current is None:
                    raise LimitDoesNotExist(limit.name, limit.plan)
                if current.allowed_amount + delta <= 0:
                    raise InvalidArgument('"allowed_amount" should be greater than 0 after decrementing')
                self.repository.update_allowed_amount(conn, limit.id, delta)
                updated = self.repository.find_by_id(conn, limit.id)
        finally:
            conn.close()

        logger.info("Changed allowed amount of limit %s to %s", updated, updated.allowed_amount)
        self.flush_cache()
        return updated

    def delete(self, limit: LimitDefinition) -> None:
        """Delete a limit together with every pivot attached to it.

        Raises:
            LimitDoesNotExist: If the limit is already gone
        """
        conn = self.repository.connect()
        try:
            with transaction(conn):
                deleted = self.repository.delete(conn, limit.id)
        finally:
            conn.close()

        self.flush_cache()
        if not deleted:
            raise LimitDoesNotExist(limit.name, limit.plan)
        logger.info("Deleted limit %s", limit)

    def flush_cache(self) -> None:
        """Clear the process-wide snapshot and the shared cache entry."""
        with _snapshots_lock:
            _snapshots.pop(self._snapshot_key, None)
        self.cache.forget(self.config.cache_key)
        logger.debug("Flushed limit cache %s", self.config.cache_key)
