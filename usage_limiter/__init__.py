"""
Usage Limiter.

Tracks per-entity usage against named, optionally plan-scoped limits.
"""

from .core.catalog import LimitCatalog
from .core.ledger import LimitOwner, UsageLedger, UsageTrackable
from .core.report import ReportBuilder

__all__ = [
    "LimitCatalog",
    "LimitOwner",
    "ReportBuilder",
    "UsageLedger",
    "UsageTrackable",
]
