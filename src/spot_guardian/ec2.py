"""
Compute API wrapper over EC2: region listing, spot discovery, status, start and stop.
"""

import logging
from typing import Any, Callable, Optional

from .aws import AWS_ERRORS, make_client, translate
from .errors import NotFound, StateConflict
from .models import InstanceStatus, SpotStrategy, StopMode, TrackedInstance

logger = logging.getLogger(__name__)

# EC2 instance-state names mapped onto the provider-neutral status.
STATE_MAP = {
    "pending": InstanceStatus.STARTING,
    "running": InstanceStatus.RUNNING,
    "stopping": InstanceStatus.STOPPING,
    "shutting-down": InstanceStatus.STOPPING,
    "stopped": InstanceStatus.STOPPED,
}

# Terminated instances cannot be restarted, so they are never tracked.
TRACKED_STATES = ["pending", "running", "stopping", "stopped"]


def map_state(state_name: Optional[str]) -> InstanceStatus:
    return STATE_MAP.get(state_name or "", InstanceStatus.UNKNOWN)


def _tag(instance: dict[str, Any], key: str) -> Optional[str]:
    for tag in instance.get("Tags", []) or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def to_tracked(instance: dict[str, Any], region: str) -> TrackedInstance:
    """Build a TrackedInstance from one describe_instances record."""
    instance_id = instance["InstanceId"]
    strategy = (
        SpotStrategy.SPOT if instance.get("InstanceLifecycle") == "spot" else SpotStrategy.ON_DEMAND
    )
    return TrackedInstance(
        instance_id=instance_id,
        name=_tag(instance, "Name") or instance_id,
        region=region,
        status=map_state(instance.get("State", {}).get("Name")),
        public_ip=instance.get("PublicIpAddress"),
        private_ip=instance.get("PrivateIpAddress"),
        strategy=strategy,
    )


class EC2Client:
    """EC2 calls used by the monitor. Regional clients are created lazily and cached."""

    def __init__(
        self,
        home_region: str = "us-east-1",
        regions: Optional[list[str]] = None,
        client_factory: Callable[[str, str], Any] = make_client,
    ):
        self.home_region = home_region
        self.regions = list(regions or [])
        self._client_factory = client_factory
        self._clients: dict[str, Any] = {}

    def _client(self, region: str) -> Any:
        client = self._clients.get(region)
        if client is None:
            client = self._client_factory("ec2", region)
            self._clients[region] = client
        return client

    def list_regions(self) -> list[str]:
        """Configured regions, or every region enabled for the account."""
        if self.regions:
            return list(self.regions)
        try:
            response = self._client(self.home_region).describe_regions(AllRegions=False)
        except AWS_ERRORS as e:
            raise translate(e, "describe_regions") from e
        return sorted(r["RegionName"] for r in response.get("Regions", []) if r.get("RegionName"))

    def list_spot_instances(self, region: str) -> list[TrackedInstance]:
        """Non-terminated spot instances in one region."""
        instances: list[TrackedInstance] = []
        try:
            paginator = self._client(region).get_paginator("describe_instances")
            for page in paginator.paginate(
                Filters=[{"Name": "instance-state-name", "Values": TRACKED_STATES}]
            ):
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        if instance.get("InstanceLifecycle") != "spot":
                            continue
                        if not instance.get("InstanceId"):
                            continue
                        instances.append(to_tracked(instance, region))
        except AWS_ERRORS as e:
            raise translate(e, f"describe_instances in {region}") from e
        return instances

    def _describe_one(self, region: str, instance_id: str) -> dict[str, Any]:
        try:
            response = self._client(region).describe_instances(InstanceIds=[instance_id])
        except AWS_ERRORS as e:
            raise translate(e, f"describe_instances {instance_id}") from e
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        raise NotFound(f"instance {instance_id} not found in {region}")

    def get_instance(self, region: str, instance_id: str) -> TrackedInstance:
        return to_tracked(self._describe_one(region, instance_id), region)

    def get_instance_status(self, region: str, instance_id: str) -> InstanceStatus:
        instance = self._describe_one(region, instance_id)
        return map_state(instance.get("State", {}).get("Name"))

    def start_instance(self, region: str, instance_id: str) -> None:
        try:
            self._client(region).start_instances(InstanceIds=[instance_id])
        except AWS_ERRORS as e:
            error = translate(e, f"start_instances {instance_id}")
            if isinstance(error, StateConflict):
                logger.info("Start of %s skipped: %s", instance_id, error)
                return
            raise error from e

    def stop_instance(
        self, region: str, instance_id: str, mode: StopMode = StopMode.COST_SAVING
    ) -> None:
        try:
            self._client(region).stop_instances(
                InstanceIds=[instance_id], Hibernate=mode is StopMode.HIBERNATE
            )
        except AWS_ERRORS as e:
            error = translate(e, f"stop_instances {instance_id}")
            if isinstance(error, StateConflict):
                logger.info("Stop of %s skipped: %s", instance_id, error)
                return
            raise error from e
