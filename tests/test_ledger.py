"""
Tests for usage accounting on entities.
"""
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from helpers import FIXED_NOW, LimiterTestCase, User

from usage_limiter.core.catalog import LimitCatalog
from usage_limiter.core.errors import (
    InvalidAmount,
    InvalidArgument,
    LimitDoesNotExist,
    LimitNotSetOnModel,
)
from usage_limiter.core.ledger import LimitOwner, UsageLedger, UsageTrackable
from usage_limiter.core.reset import ResetFrequency
from usage_limiter.storage.db import transaction
from usage_limiter.storage.models import UsagePivot
from usage_limiter.storage.repository import LimitRepository


class LedgerTestCase(LimiterTestCase):
    """Ledger tests with a 'locations' limit already attached."""

    attach = True

    def setup_method(self):
        super().setup_method()
        self.limit = self.create_limit(name="locations", plan="standard", allowed_amount=5)
        if self.attach:
            self.ledger.set_limit(self.user, "locations", "standard")

    def pivot(self, entity=None):
        return self.ledger.get_model_limit(entity or self.user, "locations", "standard").pivot


class TestEntities:
    """Test the owner protocol."""

    def test_user_is_trackable(self):
        assert isinstance(User(id=1), UsageTrackable)

    def test_limit_owner_is_trackable(self):
        assert isinstance(LimitOwner("team", "abc"), UsageTrackable)


class TestSetLimit(LedgerTestCase):
    """Test attaching limits to entities."""

    attach = False

    def test_limit_can_be_set(self):
        assert self.ledger.set_limit(self.user, "locations", "standard") is True
        assert self.ledger.is_limit_set(self.user, "locations", "standard") is True

        pivot = self.pivot()
        assert pivot.used_amount == 0.0
        assert pivot.extra_amount == 0.0
        assert pivot.extra_used_amount == 0.0
        assert pivot.last_reset == FIXED_NOW
        assert pivot.next_reset is None

    def test_limit_can_be_set_by_definition(self):
        self.ledger.set_limit(self.user, self.limit)
        assert self.ledger.is_limit_set(self.user, self.limit)

    def test_limit_can_be_set_with_initial_usage(self):
        self.ledger.set_limit(self.user, "locations", "standard", used_amount=3)
        assert self.ledger.used_limit(self.user, "locations", "standard") == 3.0

    def test_initial_usage_above_allowed_raises(self):
        with pytest.raises(InvalidArgument):
            self.ledger.set_limit(self.user, "locations", "standard", used_amount=6)

        assert self.ledger.is_limit_set(self.user, "locations", "standard") is False

    def test_negative_initial_usage_raises(self):
        with pytest.raises(InvalidArgument):
            self.ledger.set_limit(self.user, "locations", "standard", used_amount=-1)

    def test_setting_twice_is_a_noop(self):
        self.ledger.set_limit(self.user, "locations", "standard", used_amount=2)

        # Even an invalid initial usage is ignored once attached
        assert self.ledger.set_limit(self.user, "locations", "standard", used_amount=99) is True
        assert self.ledger.used_limit(self.user, "locations", "standard") == 2.0

    def test_next_reset_is_computed_from_frequency(self):
        self.create_limit(name="projects", plan=None, allowed_amount=3, reset_frequency="every month")

        self.ledger.set_limit(self.user, "projects")

        pivot = self.ledger.get_model_limit(self.user, "projects").pivot
        assert pivot.last_reset == FIXED_NOW
        # Jan 31 clamps to Feb 29 in a leap year
        assert pivot.next_reset == FIXED_NOW.replace(month=2, day=29)

    def test_unknown_limit_raises(self):
        with pytest.raises(LimitDoesNotExist):
            self.ledger.set_limit(self.user, "missing")

    def test_is_limit_set_for_unknown_limit_raises(self):
        with pytest.raises(LimitDoesNotExist):
            self.ledger.is_limit_set(self.user, "missing")

    def test_limits_are_per_entity(self):
        other = User(id=2)
        self.ledger.set_limit(self.user, "locations", "standard")

        assert self.ledger.is_limit_set(other, "locations", "standard") is False

    def test_same_id_different_type_is_another_entity(self):
        self.ledger.set_limit(self.user, "locations", "standard")
        team = LimitOwner("team", self.user.id)

        assert self.ledger.is_limit_set(team, "locations", "standard") is False


class TestUnsetLimit(LedgerTestCase):
    """Test detaching limits."""

    def test_limit_can_be_unset(self):
        assert self.ledger.unset_limit(self.user, "locations", "standard") is True
        assert self.ledger.is_limit_set(self.user, "locations", "standard") is False

    def test_unsetting_not_set_limit_raises(self):
        with pytest.raises(LimitNotSetOnModel):
            self.ledger.unset_limit(User(id=2), "locations", "standard")


class TestUseLimit(LedgerTestCase):
    """Test consuming allowance."""

    def test_use_within_allowance(self):
        assert self.ledger.use_limit(self.user, "locations", "standard", amount=3) is True

        assert self.ledger.used_limit(self.user, "locations", "standard") == 3.0
        assert self.ledger.has_enough_limit(self.user, "locations", "standard") is True

    def test_use_beyond_allowance_raises_and_keeps_state(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=3)

        with pytest.raises(InvalidAmount):
            self.ledger.use_limit(self.user, "locations", "standard", amount=3)

        assert self.pivot().used_amount == 3.0

    def test_use_up_to_allowance_exactly(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=5)

        assert self.ledger.remaining_limit(self.user, "locations", "standard") == 0.0
        assert self.ledger.has_enough_limit(self.user, "locations", "standard") is False

    def test_default_amount_is_one(self):
        self.ledger.use_limit(self.user, "locations", "standard")
        assert self.pivot().used_amount == 1.0

    def test_zero_amount_on_unused_limit_raises(self):
        with pytest.raises(InvalidAmount):
            self.ledger.use_limit(self.user, "locations", "standard", amount=0)

    def test_use_not_set_limit_raises(self):
        with pytest.raises(LimitNotSetOnModel):
            self.ledger.use_limit(User(id=2), "locations", "standard")

    def test_use_unknown_limit_raises(self):
        with pytest.raises(LimitDoesNotExist):
            self.ledger.use_limit(self.user, "missing")

    def test_use_respects_incremented_allowance(self):
        self.catalog.increment_by(self.limit, 3)

        self.ledger.use_limit(self.user, "locations", "standard", amount=8)

        assert self.ledger.used_limit(self.user, "locations", "standard") == 8.0


class TestExtraLimit(LedgerTestCase):
    """Test the separately tracked extra allowance."""

    def test_extra_is_consumed_before_base(self):
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=2)

        self.ledger.use_limit(self.user, "locations", "standard", amount=2)
        pivot = self.pivot()
        assert pivot.extra_used_amount == 2.0
        assert pivot.used_amount == 0.0

        self.ledger.use_limit(self.user, "locations", "standard", amount=1)
        pivot = self.pivot()
        assert pivot.extra_used_amount == 2.0
        assert pivot.used_amount == 1.0

    def test_amount_is_not_split_across_pools(self):
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=2)

        with pytest.raises(InvalidAmount):
            self.ledger.use_limit(self.user, "locations", "standard", amount=3)

        pivot = self.pivot()
        assert pivot.extra_used_amount == 0.0
        assert pivot.used_amount == 0.0

    def test_aggregates_include_extra(self):
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=2)
        self.ledger.use_limit(self.user, "locations", "standard", amount=2)
        self.ledger.use_limit(self.user, "locations", "standard", amount=1)

        assert self.ledger.allowed_limit(self.user, "locations", "standard") == 7.0
        assert self.ledger.used_limit(self.user, "locations", "standard") == 3.0
        assert self.ledger.remaining_limit(self.user, "locations", "standard") == 4.0

    def test_extra_keeps_limit_available_after_base_is_exhausted(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=5)
        assert self.ledger.has_enough_limit(self.user, "locations", "standard") is False

        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=1)
        assert self.ledger.has_enough_limit(self.user, "locations", "standard") is True

    def test_extra_increase_must_be_positive(self):
        with pytest.raises(InvalidArgument):
            self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=0)

    def test_extra_can_be_cleared(self):
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=2)
        self.ledger.use_limit(self.user, "locations", "standard", amount=1)

        assert self.ledger.clear_extra_limit(self.user, "locations", "standard") is True

        pivot = self.pivot()
        assert pivot.extra_amount == 0.0
        assert pivot.extra_used_amount == 0.0


class TestUnuseLimit(LedgerTestCase):
    """Test giving allowance back."""

    def test_unuse_base_usage(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=3)

        self.ledger.unuse_limit(self.user, "locations", "standard", amount=2)

        assert self.pivot().used_amount == 1.0

    def test_unuse_down_to_zero(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=3)

        self.ledger.unuse_limit(self.user, "locations", "standard", amount=3)

        assert self.pivot().used_amount == 0.0

    def test_unuse_returns_extra_first(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=2)
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=2)
        self.ledger.use_limit(self.user, "locations", "standard", amount=1)

        self.ledger.unuse_limit(self.user, "locations", "standard", amount=1)
        pivot = self.pivot()
        assert pivot.extra_used_amount == 0.0
        assert pivot.used_amount == 2.0

        self.ledger.unuse_limit(self.user, "locations", "standard", amount=1)
        assert self.pivot().used_amount == 1.0

    def test_use_then_unuse_restores_state(self):
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=1)
        before = self.pivot()

        self.ledger.use_limit(self.user, "locations", "standard", amount=1)
        self.ledger.unuse_limit(self.user, "locations", "standard", amount=1)

        after = self.pivot()
        assert after.used_amount == before.used_amount
        assert after.extra_used_amount == before.extra_used_amount

    def test_unuse_beyond_usage_raises_and_keeps_state(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=1)

        with pytest.raises(InvalidAmount):
            self.ledger.unuse_limit(self.user, "locations", "standard", amount=2)

        assert self.pivot().used_amount == 1.0

    def test_unuse_non_positive_amount_raises(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=1)

        with pytest.raises(InvalidAmount):
            self.ledger.unuse_limit(self.user, "locations", "standard", amount=0)
        with pytest.raises(InvalidAmount):
            self.ledger.unuse_limit(self.user, "locations", "standard", amount=-1)


class TestUsageInvariant(LedgerTestCase):
    """Usage never exceeds allowance across a sequence of calls."""

    def test_invariant_holds_after_every_call(self):
        operations = [
            ("use", 2), ("extra", 2), ("use", 1), ("use", 2), ("use", 4),
            ("unuse", 1), ("use", 3), ("unuse", 5), ("use", 1), ("use", 1),
        ]

        for operation, amount in operations:
            before = self.pivot()
            try:
                if operation == "use":
                    self.ledger.use_limit(self.user, "locations", "standard", amount=amount)
                elif operation == "unuse":
                    self.ledger.unuse_limit(self.user, "locations", "standard", amount=amount)
                else:
                    self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=amount)
            except InvalidAmount:
                assert self.pivot() == before

            pivot = self.pivot()
            assert 0 <= pivot.used_amount <= self.limit.allowed_amount
            assert 0 <= pivot.extra_used_amount <= pivot.extra_amount
            assert (pivot.used_amount + pivot.extra_used_amount
                    <= self.limit.allowed_amount + pivot.extra_amount)


class TestResetLimit(LedgerTestCase):
    """Test manual and scheduled resets."""

    def test_reset_zeroes_base_usage_only(self):
        self.ledger.use_limit(self.user, "locations", "standard", amount=3)
        self.ledger.increase_extra_limit(self.user, "locations", "standard", amount=2)
        self.ledger.use_limit(self.user, "locations", "standard", amount=1)
        before = self.pivot()

        assert self.ledger.reset_limit(self.user, "locations", "standard") is True

        after = self.pivot()
        assert after.used_amount == 0.0
        assert after.extra_amount == 2.0
        assert after.extra_used_amount == 1.0
        assert after.last_reset == before.last_reset
        assert after.next_reset == before.next_reset

    def test_reset_not_set_limit_raises(self):
        with pytest.raises(LimitNotSetOnModel):
            self.ledger.reset_limit(User(id=2), "locations", "standard")

    def test_due_usages_are_reset(self):
        self.create_limit(name="projects", plan=None, allowed_amount=3, reset_frequency="every day")
        self.ledger.set_limit(self.user, "projects")
        self.ledger.use_limit(self.user, "projects", amount=2)
        self.ledger.use_limit(self.user, "locations", "standard", amount=2)

        assert self.ledger.reset_due_usages(FIXED_NOW + timedelta(hours=12)) == 0
        assert self.ledger.used_limit(self.user, "projects") == 2.0

        later = FIXED_NOW + timedelta(days=1)
        assert self.ledger.reset_due_usages(later) == 1

        pivot = self.ledger.get_model_limit(self.user, "projects").pivot
        assert pivot.used_amount == 0.0
        assert pivot.last_reset == later
        assert pivot.next_reset == later + timedelta(days=1)
        # Limits without a frequency never reset
        assert self.ledger.used_limit(self.user, "locations", "standard") == 2.0

    def test_due_usages_reschedule_limit_created_after_snapshot_loaded(self):
        self.catalog.all()

        other_ledger = UsageLedger(LimitCatalog(self.config), clock=lambda: self.now)
        other_ledger.catalog.find_or_create(name="projects", allowed_amount=3, reset_frequency="every day")
        other_ledger.set_limit(self.user, "projects")

        later = FIXED_NOW + timedelta(days=1)
        assert self.ledger.reset_due_usages(later) == 1

        pivot = self.ledger.get_model_limit(self.user, "projects").pivot
        assert pivot.next_reset == later + timedelta(days=1)

    def test_due_usages_reschedule_limit_unknown_to_stale_snapshot(self):
        """A limit written by another process is rescheduled from the stored frequency."""
        self.catalog.all()

        conn = self.ledger.repository.connect()
        try:
            with transaction(conn):
                limit = LimitRepository(self.config).insert(conn, "projects", None, 3.0, ResetFrequency.EVERY_DAY)
                self.ledger.repository.insert(conn, UsagePivot(
                    limit_id=limit.id,
                    model_type="user",
                    model_id="1",
                    used_amount=2.0,
                    extra_amount=0.0,
                    extra_used_amount=0.0,
                    last_reset=FIXED_NOW,
                    next_reset=FIXED_NOW + timedelta(days=1)
                ))
        finally:
            conn.close()
        assert self.catalog.get(name="projects") is None

        later = FIXED_NOW + timedelta(days=1)
        assert self.ledger.reset_due_usages(later) == 1

        conn = self.ledger.repository.connect()
        try:
            pivot = self.ledger.repository.get(conn, "user", "1", limit.id)
        finally:
            conn.close()
        assert pivot.used_amount == 0.0
        assert pivot.next_reset == later + timedelta(days=1)


class TestQueries(LedgerTestCase):
    """Test read-only helpers."""

    def test_has_enough_limit_is_false_for_unknown_limit(self):
        assert self.ledger.has_enough_limit(self.user, "missing") is False

    def test_has_enough_limit_is_false_when_not_set(self):
        assert self.ledger.has_enough_limit(User(id=2), "locations", "standard") is False

    def test_aggregates_raise_when_not_set(self):
        other = User(id=2)
        for query in (self.ledger.allowed_limit, self.ledger.used_limit, self.ledger.remaining_limit):
            with pytest.raises(LimitNotSetOnModel):
                query(other, "locations", "standard")

    def test_get_model_limits_lists_attached(self):
        self.create_limit(name="users", plan="standard", allowed_amount=10)
        self.ledger.set_limit(self.user, "users", "standard")

        names = [attached.limit.name for attached in self.ledger.get_model_limits(self.user)]

        assert names == ["locations", "users"]


class TestConcurrentUsage(LimiterTestCase):
    """Test that concurrent consumers never lose an update."""

    threads = 8
    calls_per_thread = 10

    def test_parallel_use_limit_counts_every_call(self):
        total = self.threads * self.calls_per_thread
        self.create_limit(name="requests", plan=None, allowed_amount=total)
        self.ledger.set_limit(self.user, "requests")

        ledger = UsageLedger(LimitCatalog(replace(self.config, db_timeout=30.0)))
        errors = []

        def consume():
            for _ in range(self.calls_per_thread):
                try:
                    ledger.use_limit(self.user, "requests")
                except Exception as e:
                    errors.append(e)

        workers = [threading.Thread(target=consume) for _ in range(self.threads)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert errors == []
        assert self.ledger.used_limit(self.user, "requests") == float(total)
        assert self.ledger.remaining_limit(self.user, "requests") == 0.0

    def test_parallel_use_limit_never_exceeds_allowance(self):
        allowed = self.calls_per_thread
        self.create_limit(name="requests", plan=None, allowed_amount=allowed)
        self.ledger.set_limit(self.user, "requests")

        ledger = UsageLedger(LimitCatalog(replace(self.config, db_timeout=30.0)))
        rejected = []

        def consume():
            for _ in range(self.calls_per_thread):
                try:
                    ledger.use_limit(self.user, "requests")
                except InvalidAmount:
                    rejected.append(1)

        workers = [threading.Thread(target=consume) for _ in range(self.threads)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert self.ledger.used_limit(self.user, "requests") == float(allowed)
        assert len(rejected) == self.threads * self.calls_per_thread - allowed
