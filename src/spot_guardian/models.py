"""
Data records passed between the monitor and its collaborators.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class InstanceStatus(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    STARTING = "Starting"
    STOPPING = "Stopping"
    UNKNOWN = "Unknown"


class SpotStrategy(str, Enum):
    SPOT = "spot"
    ON_DEMAND = "on-demand"


class StopMode(str, Enum):
    """How a stop command treats the instance's billable resources."""

    COST_SAVING = "cost-saving"  # plain stop, compute billing ends
    HIBERNATE = "hibernate"  # memory persisted to the root volume


class RegionGroup(str, Enum):
    CHINA = "china"
    NON_CHINA = "non-china"


# Hong Kong uses a cn- prefix on some providers but is billed as non-mainland traffic.
NON_MAINLAND_CN_REGIONS = frozenset({"cn-hongkong"})


def is_china_mainland_region(region: str) -> bool:
    """True for mainland China regions (cn-north-1, cn-northwest-1, cn-hangzhou, ...)."""
    return region.startswith("cn-") and region not in NON_MAINLAND_CN_REGIONS


def region_group(region: str) -> RegionGroup:
    return RegionGroup.CHINA if is_china_mainland_region(region) else RegionGroup.NON_CHINA


@dataclass(frozen=True)
class TrackedInstance:
    """Last observed state of one spot instance."""

    instance_id: str
    name: str
    region: str
    status: InstanceStatus = InstanceStatus.UNKNOWN
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    strategy: SpotStrategy = SpotStrategy.SPOT

    @property
    def group(self) -> RegionGroup:
        return region_group(self.region)

    def describe(self) -> str:
        return f"{self.name} ({self.instance_id}) - {self.region}"


@dataclass
class RegionTraffic:
    region: str
    traffic_gb: float


@dataclass
class TrafficSummary:
    """Month-to-date internet egress split into the two region groups."""

    start: datetime
    end: datetime
    china_gb: float
    non_china_gb: float
    regions: list[RegionTraffic] = field(default_factory=list)

    @property
    def total_gb(self) -> float:
        return self.china_gb + self.non_china_gb

    def traffic_for(self, group: RegionGroup) -> float:
        return self.china_gb if group is RegionGroup.CHINA else self.non_china_gb


@dataclass
class BillingItem:
    usage_type: str
    amount: Decimal


@dataclass
class InstanceBilling:
    instance_id: str
    name: str
    region: str
    items: list[BillingItem] = field(default_factory=list)
    total: Decimal = Decimal("0")


@dataclass
class BillingSummary:
    start: datetime
    end: datetime
    hours: int
    instances: list[InstanceBilling]
    total: Decimal
    currency: str = "USD"

    @property
    def monthly_estimate(self) -> Decimal:
        """Hourly rate extrapolated to a 30 day month."""
        if self.hours <= 0 or self.total <= 0:
            return Decimal("0")
        return self.total / self.hours * 24 * 30


@dataclass
class CreditsSummary:
    total: Decimal
    used: Decimal
    query_time: datetime

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0"), self.total - self.used)

    @property
    def remaining_pct(self) -> Decimal:
        if self.total <= 0:
            return Decimal("0")
        return self.remaining / self.total * 100


@dataclass
class PublicAddress:
    """Elastic IP attached to an instance."""

    allocation_id: str
    ip_address: str
    instance_id: str
    region: str
    package_id: Optional[str] = None  # set when the address sits in a bandwidth package


@dataclass
class BandwidthPackage:
    """Shared pool that public addresses can be attached to."""

    package_id: str
    name: str
    region: str
    bandwidth: str = ""
    arn: str = ""

    @property
    def label(self) -> str:
        return self.name or self.package_id


@dataclass(frozen=True)
class InlineButton:
    text: str
    callback_data: str


Keyboard = list[list[InlineButton]]
