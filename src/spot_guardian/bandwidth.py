"""
Shared bandwidth pools for Elastic IPs.

Each Global Accelerator endpoint group acts as a pool in its region; an
Elastic IP joins the pool by becoming one of the group's endpoints.
"""

import logging
from typing import Any, Callable, Optional

from .aws import AWS_ERRORS, make_client, translate
from .errors import NotFound
from .models import BandwidthPackage, PublicAddress

logger = logging.getLogger(__name__)

# The Global Accelerator control plane only lives in us-west-2.
GLOBAL_ACCELERATOR_REGION = "us-west-2"


def short_id(arn: str) -> str:
    """Last path segment of an endpoint-group ARN; short enough for callback data."""
    return arn.rsplit("/", 1)[-1]


class BandwidthPackageClient:
    def __init__(self, client_factory: Callable[[str, str], Any] = make_client):
        self._client_factory = client_factory
        self._ga: Optional[Any] = None
        self._ec2: dict[str, Any] = {}

    def _accelerator(self) -> Any:
        if self._ga is None:
            self._ga = self._client_factory("globalaccelerator", GLOBAL_ACCELERATOR_REGION)
        return self._ga

    def _ec2_client(self, region: str) -> Any:
        if region not in self._ec2:
            self._ec2[region] = self._client_factory("ec2", region)
        return self._ec2[region]

    def _endpoint_groups(self, region: str) -> list[tuple[dict[str, Any], dict[str, Any]]]:
        """(accelerator, endpoint group) pairs whose endpoint group serves ``region``."""
        ga = self._accelerator()
        found = []
        try:
            for acc_page in ga.get_paginator("list_accelerators").paginate():
                for accelerator in acc_page.get("Accelerators", []):
                    for lst_page in ga.get_paginator("list_listeners").paginate(
                        AcceleratorArn=accelerator["AcceleratorArn"]
                    ):
                        for listener in lst_page.get("Listeners", []):
                            for grp_page in ga.get_paginator("list_endpoint_groups").paginate(
                                ListenerArn=listener["ListenerArn"]
                            ):
                                for group in grp_page.get("EndpointGroups", []):
                                    if group.get("EndpointGroupRegion") == region:
                                        found.append((accelerator, group))
        except AWS_ERRORS as e:
            raise translate(e, f"list endpoint groups in {region}") from e
        return found

    def list_packages(self, region: str) -> list[BandwidthPackage]:
        packages = []
        for accelerator, group in self._endpoint_groups(region):
            arn = group["EndpointGroupArn"]
            dial = group.get("TrafficDialPercentage")
            packages.append(
                BandwidthPackage(
                    package_id=short_id(arn),
                    name=accelerator.get("Name", ""),
                    region=region,
                    bandwidth=f"{dial:g}%" if dial is not None else "",
                    arn=arn,
                )
            )
        return packages

    def list_addresses(self, region: str, instance_id: str) -> list[PublicAddress]:
        """Elastic IPs of an instance, each tagged with the pool it currently sits in."""
        try:
            response = self._ec2_client(region).describe_addresses(
                Filters=[{"Name": "instance-id", "Values": [instance_id]}]
            )
        except AWS_ERRORS as e:
            raise translate(e, f"describe_addresses {instance_id}") from e

        addresses = [
            PublicAddress(
                allocation_id=addr["AllocationId"],
                ip_address=addr.get("PublicIp", ""),
                instance_id=instance_id,
                region=region,
            )
            for addr in response.get("Addresses", [])
            if addr.get("AllocationId")
        ]
        if not addresses:
            return addresses

        membership: dict[str, str] = {}
        for _, group in self._endpoint_groups(region):
            for endpoint in group.get("EndpointDescriptions", []):
                membership.setdefault(endpoint.get("EndpointId", ""), short_id(group["EndpointGroupArn"]))
        for address in addresses:
            address.package_id = membership.get(address.allocation_id)
        return addresses

    def _resolve_arn(self, region: str, package_id: str) -> str:
        for _, group in self._endpoint_groups(region):
            if short_id(group["EndpointGroupArn"]) == package_id:
                return group["EndpointGroupArn"]
        raise NotFound(f"bandwidth package {package_id} not found in {region}")

    def add_address(self, region: str, package_id: str, allocation_id: str) -> None:
        arn = self._resolve_arn(region, package_id)
        try:
            self._accelerator().add_endpoints(
                EndpointGroupArn=arn,
                EndpointConfigurations=[{"EndpointId": allocation_id}],
            )
        except AWS_ERRORS as e:
            raise translate(e, f"add_endpoints {allocation_id}") from e
        logger.info("Added %s to bandwidth package %s", allocation_id, package_id)

    def remove_address(self, region: str, package_id: str, allocation_id: str) -> None:
        arn = self._resolve_arn(region, package_id)
        try:
            self._accelerator().remove_endpoints(
                EndpointGroupArn=arn,
                EndpointIdentifiers=[{"EndpointId": allocation_id}],
            )
        except AWS_ERRORS as e:
            raise translate(e, f"remove_endpoints {allocation_id}") from e
        logger.info("Removed %s from bandwidth package %s", allocation_id, package_id)
