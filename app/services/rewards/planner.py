"""
Distribution Planner: flattens a reward calculation into ordered payments.
"""

from collections import Counter
from typing import List

import structlog

from app.core.exceptions import ComputationError
from app.utils.validation import EvmValidator
from .types import (
    DistributionPlan, RecipientValidationReport, RewardCalculation,
    RewardCategory, RewardLineItem
)


logger = structlog.get_logger(__name__)


class DistributionPlanner:
    """Orders, validates and deduplicates reward line items."""

    def __init__(self):
        self.logger = logger.bind(service="distribution_planner")

    @staticmethod
    def _sort_key(item: RewardLineItem) -> tuple:
        # Creators first by rank, then supporters by rank and address
        category_order = 0 if item.category == RewardCategory.CREATOR_WINNER else 1
        return (category_order, item.rank, item.recipient.lower(), item.content_id)

    def plan(self, calculation: RewardCalculation) -> DistributionPlan:
        seen = set()
        for item in calculation.line_items:
            if item.dedupe_key in seen:
                raise ComputationError(
                    "Duplicate payment in distribution plan",
                    {
                        "recipient": item.recipient,
                        "category": item.category.value,
                        "content_id": item.content_id,
                    }
                )
            seen.add(item.dedupe_key)

        plan = DistributionPlan()
        for item in sorted(calculation.line_items, key=self._sort_key):
            if EvmValidator.is_valid_address(item.recipient):
                plan.items.append(item)
            else:
                plan.excluded.append({**item.to_dict(), "reason": "invalid_address"})

        if plan.excluded:
            self.logger.warning(
                "Recipients excluded from plan",
                excluded=len(plan.excluded),
                recipients=[entry["recipient"] for entry in plan.excluded]
            )

        self.logger.info(
            "Distribution plan built",
            recipient_count=plan.recipient_count,
            total_amount=str(plan.total_amount)
        )
        return plan

    def validate_recipients(self, items: List[RewardLineItem]) -> RecipientValidationReport:
        """Re-check every recipient of a stored plan."""
        report = RecipientValidationReport()

        for index, item in enumerate(items):
            if not EvmValidator.is_valid_address(item.recipient):
                report.invalid += 1
                report.errors.append({
                    "index": index,
                    "recipient": item.recipient,
                    "error": "invalid_address",
                })
            elif item.amount <= 0:
                report.invalid += 1
                report.errors.append({
                    "index": index,
                    "recipient": item.recipient,
                    "error": "non_positive_amount",
                })
            else:
                report.valid += 1
                report.total_amount += item.amount

        counts = Counter(item.recipient.lower() for item in items)
        report.duplicate_recipients = sorted(address for address, count in counts.items() if count > 1)

        return report
