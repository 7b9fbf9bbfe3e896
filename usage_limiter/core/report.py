"""
Usage reporting.

Builds point-in-time snapshots of allowed, used and remaining amounts
for the limits attached to an entity.
"""

from dataclasses import asdict, dataclass
from typing import Dict, Optional

from .ledger import LimitRef, UsageLedger, UsageTrackable


@dataclass(frozen=True)
class LimitUsage:
    """Aggregated base plus extra usage of one limit."""
    allowed_amount: float
    used_amount: float
    remaining_amount: float


class ReportBuilder:
    """Produces usage reports from the ledger."""

    def __init__(self, ledger: UsageLedger):
        self.ledger = ledger

    def report(
        self,
        entity: UsageTrackable,
        name: Optional[LimitRef] = None,
        plan: Optional[str] = None
    ) -> Dict[str, Dict[str, float]]:
        """Report usage for one limit or for every attached limit.

        Args:
            entity: Limit owner
            name: Optional limit to report on; all attached limits when omitted
            plan: Plan of the named limit

        Returns:
            Mapping of limit name to allowed_amount, used_amount and remaining_amount

        Raises:
            LimitDoesNotExist: If the named limit is not defined
            LimitNotSetOnModel: If the named limit is not set on the entity
        """
        if name is not None:
            attached = [self.ledger.get_model_limit(entity, name, plan)]
        else:
            attached = self.ledger.get_model_limits(entity)

        return {
            item.limit.name: asdict(LimitUsage(
                allowed_amount=item.allowed_amount,
                used_amount=item.used_amount,
                remaining_amount=item.remaining_amount
            ))
            for item in attached
        }
