"""
Month-to-date internet egress from Cost Explorer, split into China / non-China.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .aws import AWS_ERRORS, make_client, translate
from .models import RegionGroup, RegionTraffic, TrafficSummary, region_group

logger = logging.getLogger(__name__)

INTERNET_OUT_USAGE_GROUP = "EC2: Data Transfer - Internet (Out)"


class TrafficClient:
    """Queries internet egress volume (GB) grouped by region."""

    def __init__(
        self,
        client_factory: Callable[[str, str], Any] = make_client,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        # Cost Explorer is a global API served from us-east-1
        self.ce = client_factory("ce", "us-east-1")
        self._clock = clock

    def query_traffic(self, now: Optional[datetime] = None) -> TrafficSummary:
        now = now or self._clock()
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        # End is exclusive in Cost Explorer; tomorrow includes today's partial usage.
        end = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

        per_region: dict[str, float] = {}
        request: dict[str, Any] = {
            "TimePeriod": {"Start": start.strftime("%Y-%m-%d"), "End": end.strftime("%Y-%m-%d")},
            "Granularity": "MONTHLY",
            "Metrics": ["UsageQuantity"],
            "Filter": {
                "Dimensions": {"Key": "USAGE_TYPE_GROUP", "Values": [INTERNET_OUT_USAGE_GROUP]}
            },
            "GroupBy": [{"Type": "DIMENSION", "Key": "REGION"}],
        }
        try:
            while True:
                response = self.ce.get_cost_and_usage(**request)
                for result in response.get("ResultsByTime", []):
                    for group in result.get("Groups", []):
                        keys = group.get("Keys") or ["unknown"]
                        amount = group.get("Metrics", {}).get("UsageQuantity", {}).get("Amount", "0")
                        per_region[keys[0]] = per_region.get(keys[0], 0.0) + float(amount)
                token = response.get("NextPageToken")
                if not token:
                    break
                request["NextPageToken"] = token
        except AWS_ERRORS as e:
            raise translate(e, "get_cost_and_usage (traffic)") from e

        regions = [RegionTraffic(region=r, traffic_gb=gb) for r, gb in sorted(per_region.items())]
        china = sum(r.traffic_gb for r in regions if region_group(r.region) is RegionGroup.CHINA)
        non_china = sum(r.traffic_gb for r in regions if region_group(r.region) is RegionGroup.NON_CHINA)
        logger.debug("Traffic month-to-date: china=%.2f GB non-china=%.2f GB", china, non_china)
        return TrafficSummary(
            start=start, end=end, china_gb=china, non_china_gb=non_china, regions=regions
        )
