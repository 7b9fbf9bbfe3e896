"""
Test helpers shared across test modules.
"""

import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime

from usage_limiter.config.loader import LimiterConfig
from usage_limiter.core.catalog import LimitCatalog
from usage_limiter.core.ledger import UsageLedger
from usage_limiter.storage.repository import initialize_schema

FIXED_NOW = datetime(2024, 1, 31, 12, 0, 0)


@dataclass
class User:
    """Minimal entity owning limits."""
    id: int
    limit_model_type = "user"

    @property
    def limit_model_id(self):
        return self.id


class LimiterTestCase:
    """Base class creating a fresh database, catalog and ledger per test."""

    now = FIXED_NOW

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = LimiterConfig(db_path=os.path.join(self.temp_dir, "test.db"))
        initialize_schema(self.config)
        self.catalog = LimitCatalog(self.config)
        self.ledger = UsageLedger(self.catalog, clock=lambda: self.now)
        self.user = User(id=1)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def create_limit(self, name="locations", plan="standard", allowed_amount=5, reset_frequency=None):
        return self.catalog.find_or_create(
            name=name,
            plan=plan,
            allowed_amount=allowed_amount,
            reset_frequency=reset_frequency
        )
