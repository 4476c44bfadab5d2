"""
Cost Explorer queries: per-instance billing over a window and promotional credits usage.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from .aws import AWS_ERRORS, make_client, translate
from .models import BillingItem, BillingSummary, CreditsSummary, InstanceBilling, TrackedInstance

logger = logging.getLogger(__name__)

EC2_COMPUTE_SERVICE = "Amazon Elastic Compute Cloud - Compute"

# Resource-level data is only kept for the last 14 days.
MAX_RESOURCE_LOOKBACK_DAYS = 14


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingClient:
    """Per-instance cost for the last N hours, from resource-level Cost Explorer data."""

    def __init__(
        self,
        client_factory: Callable[[str, str], Any] = make_client,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ce = client_factory("ce", "us-east-1")
        self._clock = clock

    def query_billing(self, instances: Iterable[TrackedInstance], hours: int) -> BillingSummary:
        now = self._clock()
        start_time = now - timedelta(hours=hours)
        tracked = {inst.instance_id: inst for inst in instances}
        summary = BillingSummary(
            start=start_time, end=now, hours=hours, instances=[], total=Decimal("0")
        )
        if not tracked:
            return summary

        earliest = (now - timedelta(days=MAX_RESOURCE_LOOKBACK_DAYS - 1)).date()
        start_day = max(start_time.date(), earliest)
        end_day = now.date() + timedelta(days=1)

        logger.debug(
            "Querying billing for %d instances, last %d hours (%s to %s)",
            len(tracked), hours, start_day, end_day,
        )

        billings: dict[str, InstanceBilling] = {}
        request: dict[str, Any] = {
            "TimePeriod": {"Start": start_day.isoformat(), "End": end_day.isoformat()},
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost"],
            "Filter": {
                "And": [
                    {"Dimensions": {"Key": "SERVICE", "Values": [EC2_COMPUTE_SERVICE]}},
                    {"Dimensions": {"Key": "RESOURCE_ID", "Values": sorted(tracked)}},
                ]
            },
            "GroupBy": [
                {"Type": "DIMENSION", "Key": "RESOURCE_ID"},
                {"Type": "DIMENSION", "Key": "USAGE_TYPE"},
            ],
        }
        try:
            while True:
                response = self.ce.get_cost_and_usage_with_resources(**request)
                for result in response.get("ResultsByTime", []):
                    for group in result.get("Groups", []):
                        keys = group.get("Keys", [])
                        if len(keys) < 2 or keys[0] not in tracked:
                            continue
                        cost = group.get("Metrics", {}).get("UnblendedCost", {})
                        amount = Decimal(cost.get("Amount", "0"))
                        if cost.get("Unit"):
                            summary.currency = cost["Unit"]
                        inst = tracked[keys[0]]
                        billing = billings.setdefault(
                            inst.instance_id,
                            InstanceBilling(
                                instance_id=inst.instance_id, name=inst.name, region=inst.region
                            ),
                        )
                        _add_item(billing, keys[1], amount)
                token = response.get("NextPageToken")
                if not token:
                    break
                request["NextPageToken"] = token
        except AWS_ERRORS as e:
            raise translate(e, "get_cost_and_usage_with_resources") from e

        summary.instances = sorted(billings.values(), key=lambda b: b.total, reverse=True)
        summary.total = sum((b.total for b in summary.instances), Decimal("0"))
        logger.info(
            "Found billing for %d instances in last %d hours, total: %.4f, monthly estimate: %.2f",
            len(summary.instances), hours, summary.total, summary.monthly_estimate,
        )
        return summary


def _add_item(billing: InstanceBilling, usage_type: str, amount: Decimal) -> None:
    """Merge daily rows of the same usage type into one line item."""
    for item in billing.items:
        if item.usage_type == usage_type:
            item.amount += amount
            break
    else:
        billing.items.append(BillingItem(usage_type=usage_type, amount=amount))
    billing.total += amount


class CreditsClient:
    """Tracks how much of a fixed promotional credit has been consumed."""

    def __init__(
        self,
        total: Decimal,
        start_date: date,
        client_factory: Callable[[str, str], Any] = make_client,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.total = Decimal(str(total))
        self.start_date = start_date
        self.ce = client_factory("ce", "us-east-1")
        self._clock = clock

    def query_credits(self, now: Optional[datetime] = None) -> CreditsSummary:
        now = now or self._clock()
        end = (now + timedelta(days=1)).strftime("%Y-%m-%d")
        start = self.start_date.strftime("%Y-%m-%d")

        used = Decimal("0")
        request: dict[str, Any] = {
            "TimePeriod": {"Start": start, "End": end},
            "Granularity": "MONTHLY",
            "Metrics": ["UnblendedCost"],
            # Gross usage; credit records would cancel it out.
            "Filter": {"Dimensions": {"Key": "RECORD_TYPE", "Values": ["Usage"]}},
        }
        try:
            while True:
                response = self.ce.get_cost_and_usage(**request)
                for result in response.get("ResultsByTime", []):
                    amount = result.get("Total", {}).get("UnblendedCost", {}).get("Amount", "0")
                    used += Decimal(amount)
                token = response.get("NextPageToken")
                if not token:
                    break
                request["NextPageToken"] = token
        except AWS_ERRORS as e:
            raise translate(e, "get_cost_and_usage (credits)") from e

        return CreditsSummary(total=self.total, used=used, query_time=now)
