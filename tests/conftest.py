"""
Shared pytest fixtures.
"""

import pytest

from usage_limiter.core.cache import reset_cache_stores
from usage_limiter.core.catalog import reset_catalog_snapshots


@pytest.fixture(autouse=True)
def fresh_cache_stores():
    """Process-wide caches and snapshots must not leak limits between tests."""
    reset_cache_stores()
    reset_catalog_snapshots()
    yield
    reset_cache_stores()
    reset_catalog_snapshots()
