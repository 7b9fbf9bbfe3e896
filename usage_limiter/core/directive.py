"""
Template helper for limit checks.

Templates need a plain boolean, so every failure here reads as
"not enough limit".
"""

import logging
from typing import Optional

from .ledger import LimitRef, UsageLedger, UsageTrackable

logger = logging.getLogger(__name__)


def limit_directive(
    ledger: UsageLedger,
    entity: UsageTrackable,
    name: LimitRef,
    plan: Optional[str] = None
) -> bool:
    """Evaluate whether entity still has allowance left on a limit.

    Returns:
        True if the limit is set and not exhausted, False otherwise
        including on any error
    """
    try:
        return ledger.has_enough_limit(entity, name, plan)
    except Exception as e:
        logger.debug("Limit check for %s failed: %s", name, e)
        return False
