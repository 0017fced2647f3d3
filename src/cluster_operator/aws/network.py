"""Network provisioning on EC2.

Every primitive follows the same discover-before-create shape: look the
resource up by its deterministic name and the managed-by tag, create it
(tagged atomically) only when nothing matched. Repeated calls with the same
inputs therefore make no further mutating API calls.

``VPCClient.ensure`` sequences the primitives into a full network with
public and private subnets in each availability zone. ``VPCClient.delete``
tears it down in reverse dependency order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError
from tenacity import (
    RetryError,
    retry,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_fixed,
)

from ..config import DEFAULT_NAT_VISIBILITY_TIMEOUT_SECONDS, NAT_VISIBILITY_POLL_SECONDS
from ..errors import FatalConfigurationError, PassCancelledError, is_not_found
from .cidr import plan_subnets
from .tags import TEAM_TAG_KEY, is_managed, is_owned, name_filters, single, tag_specifications

logger = logging.getLogger(__name__)

DEFAULT_ROUTE_CIDR = "0.0.0.0/0"

# Availability zones used per network unless the Network asks for fewer
AZ_LIMIT = 3

SECURITY_GROUP_DESCRIPTION = "eks required group for allowing communication with master nodes"

NAT_STATE_PENDING = "pending"
NAT_STATE_AVAILABLE = "available"
NAT_STATE_DELETING = "deleting"
NAT_STATE_FAILED = "failed"


class NatGatewayNotVisibleError(Exception):
    """Raised when a created NAT gateway never shows up in describe calls."""

    pass


# =============================================================================
# Names
# =============================================================================


def public_subnet_name(vpc_name: str, zone: str) -> str:
    return f"{vpc_name}-public-{zone}"


def private_subnet_name(vpc_name: str, zone: str) -> str:
    return f"{vpc_name}-private-{zone}"


def nat_gateway_name(vpc_name: str, zone: str) -> str:
    return f"{vpc_name}-nat-{zone}"


def address_name(vpc_name: str, zone: str) -> str:
    return f"{vpc_name}-eip-{zone}"


def public_route_table_name(vpc_name: str) -> str:
    return f"{vpc_name}-public"


def private_route_table_name(vpc_name: str, zone: str) -> str:
    return f"{vpc_name}-private-{zone}"


def security_group_name(vpc_name: str) -> str:
    return f"{vpc_name}-eks-cluster"


def subnet_tags(vpc_name: str, public: bool, extra: dict[str, str]) -> dict[str, str]:
    """Tags that let load balancer controllers discover the subnets."""
    tags = dict(extra)
    tags[f"kubernetes.io/cluster/{vpc_name}"] = "shared"
    if public:
        tags["kubernetes.io/role/elb"] = "1"
        tags["Network"] = "Public"
    else:
        tags["kubernetes.io/role/internal-elb"] = "1"
        tags["Network"] = "Private"
    return tags


def _skip_unmanaged(item: dict[str, Any], what: str, name: str) -> bool:
    if is_managed(item.get("Tags")):
        return False
    logger.warning("Refusing to delete unmanaged resource", extra={"type": what, "resource": name})
    return True


# =============================================================================
# VPC
# =============================================================================


def find_vpc(ec2: Any, name: str, cidr: str) -> dict[str, Any] | None:
    response = ec2.describe_vpcs(Filters=name_filters(name, cidr=cidr))
    return single(response.get("Vpcs", []), "vpc", name)


def ensure_vpc(ec2: Any, name: str, cidr: str, tags: dict[str, str]) -> dict[str, Any]:
    vpc = find_vpc(ec2, name, cidr)
    if vpc is not None:
        return vpc

    logger.info("Creating VPC", extra={"vpc": name, "cidr": cidr})
    response = ec2.create_vpc(
        CidrBlock=cidr,
        TagSpecifications=tag_specifications("vpc", name, tags),
    )
    return response["Vpc"]


def enable_dns(ec2: Any, vpc_id: str) -> None:
    """Turn on DNS support and hostnames where they are off.

    EC2 accepts only one attribute per modify call.
    """
    for attribute, key in (
        ("enableDnsSupport", "EnableDnsSupport"),
        ("enableDnsHostnames", "EnableDnsHostnames"),
    ):
        current = ec2.describe_vpc_attribute(VpcId=vpc_id, Attribute=attribute)
        if current.get(key, {}).get("Value"):
            continue
        ec2.modify_vpc_attribute(VpcId=vpc_id, **{key: {"Value": True}})


def delete_vpc(ec2: Any, name: str, cidr: str) -> None:
    vpc = find_vpc(ec2, name, cidr)
    if vpc is None or _skip_unmanaged(vpc, "vpc", name):
        return
    logger.info("Deleting VPC", extra={"vpc": name, "vpc_id": vpc["VpcId"]})
    try:
        ec2.delete_vpc(VpcId=vpc["VpcId"])
    except ClientError as e:
        if not is_not_found(e):
            raise


# =============================================================================
# Internet Gateway
# =============================================================================


def find_internet_gateway(ec2: Any, name: str) -> dict[str, Any] | None:
    response = ec2.describe_internet_gateways(Filters=name_filters(name))
    return single(response.get("InternetGateways", []), "internet gateway", name)


def ensure_internet_gateway(
    ec2: Any, vpc_id: str, name: str, tags: dict[str, str]
) -> dict[str, Any]:
    """Discover or create the gateway and make sure it is attached to the VPC.

    Raises:
        FatalConfigurationError: If the gateway is attached to another VPC.
    """
    gateway = find_internet_gateway(ec2, name)
    if gateway is None:
        logger.info("Creating internet gateway", extra={"gateway": name})
        response = ec2.create_internet_gateway(
            TagSpecifications=tag_specifications("internet-gateway", name, tags),
        )
        gateway = response["InternetGateway"]

    attachments = gateway.get("Attachments", [])
    foreign = [a for a in attachments if a.get("VpcId") != vpc_id]
    if foreign:
        raise FatalConfigurationError(
            f"internet gateway {name} is attached to another vpc {foreign[0].get('VpcId')}"
        )
    if not attachments:
        ec2.attach_internet_gateway(InternetGatewayId=gateway["InternetGatewayId"], VpcId=vpc_id)
        gateway["Attachments"] = [{"VpcId": vpc_id, "State": "available"}]
    return gateway


def delete_internet_gateway(ec2: Any, vpc_id: str | None, name: str) -> None:
    gateway = find_internet_gateway(ec2, name)
    if gateway is None or _skip_unmanaged(gateway, "internet gateway", name):
        return
    gateway_id = gateway["InternetGatewayId"]
    for attachment in gateway.get("Attachments", []):
        if vpc_id is None or attachment.get("VpcId") == vpc_id:
            ec2.detach_internet_gateway(InternetGatewayId=gateway_id, VpcId=attachment["VpcId"])
    logger.info("Deleting internet gateway", extra={"gateway": name})
    ec2.delete_internet_gateway(InternetGatewayId=gateway_id)


# =============================================================================
# Route Tables
# =============================================================================


def find_route_table(ec2: Any, vpc_id: str, name: str) -> dict[str, Any] | None:
    response = ec2.describe_route_tables(Filters=name_filters(name, vpc_id=vpc_id))
    return single(response.get("RouteTables", []), "route table", name)


def ensure_route_table(
    ec2: Any, vpc_id: str, name: str, tags: dict[str, str]
) -> dict[str, Any]:
    table = find_route_table(ec2, vpc_id, name)
    if table is not None:
        return table

    logger.info("Creating route table", extra={"route_table": name})
    response = ec2.create_route_table(
        VpcId=vpc_id,
        TagSpecifications=tag_specifications("route-table", name, tags),
    )
    return response["RouteTable"]


def ensure_default_route(
    ec2: Any,
    table: dict[str, Any],
    gateway_id: str | None = None,
    nat_gateway_id: str | None = None,
) -> None:
    """Point 0.0.0.0/0 at an internet or NAT gateway, replacing a stale target."""
    target: dict[str, str] = (
        {"GatewayId": gateway_id} if gateway_id else {"NatGatewayId": nat_gateway_id or ""}
    )
    table_id = table["RouteTableId"]

    for route in table.get("Routes", []):
        if route.get("DestinationCidrBlock") != DEFAULT_ROUTE_CIDR:
            continue
        if all(route.get(key) == value for key, value in target.items()):
            return
        logger.info("Replacing stale default route", extra={"route_table_id": table_id})
        ec2.replace_route(RouteTableId=table_id, DestinationCidrBlock=DEFAULT_ROUTE_CIDR, **target)
        return

    ec2.create_route(RouteTableId=table_id, DestinationCidrBlock=DEFAULT_ROUTE_CIDR, **target)


def ensure_route_table_association(ec2: Any, table: dict[str, Any], subnet_id: str) -> None:
    for association in table.get("Associations", []):
        if association.get("SubnetId") == subnet_id:
            return
    response = ec2.associate_route_table(RouteTableId=table["RouteTableId"], SubnetId=subnet_id)
    table.setdefault("Associations", []).append(
        {"RouteTableAssociationId": response.get("AssociationId"), "SubnetId": subnet_id}
    )


def delete_route_table(ec2: Any, vpc_id: str, name: str) -> None:
    table = find_route_table(ec2, vpc_id, name)
    if table is None or _skip_unmanaged(table, "route table", name):
        return
    for association in table.get("Associations", []):
        if association.get("Main"):
            continue
        ec2.disassociate_route_table(AssociationId=association["RouteTableAssociationId"])
    logger.info("Deleting route table", extra={"route_table": name})
    ec2.delete_route_table(RouteTableId=table["RouteTableId"])


# =============================================================================
# Availability Zones and Subnets
# =============================================================================


def list_availability_zones(
    ec2: Any, limit: int | None = AZ_LIMIT, available_only: bool = True
) -> list[str]:
    """Zone IDs, sorted, capped at ``limit``.

    Teardown passes ``available_only=False`` so resources in a zone that
    became impaired after provisioning are still found.
    """
    filters = [{"Name": "state", "Values": ["available"]}] if available_only else []
    response = ec2.describe_availability_zones(Filters=filters)
    zone_ids = sorted(zone["ZoneId"] for zone in response.get("AvailabilityZones", []))
    return zone_ids[:limit]


def find_subnet(ec2: Any, vpc_id: str, name: str) -> dict[str, Any] | None:
    response = ec2.describe_subnets(Filters=name_filters(name, vpc_id=vpc_id))
    return single(response.get("Subnets", []), "subnet", name)


def ensure_subnet(
    ec2: Any,
    vpc_id: str,
    name: str,
    cidr: str,
    zone_id: str,
    tags: dict[str, str],
) -> dict[str, Any]:
    """Discover or create a subnet.

    Raises:
        FatalConfigurationError: If an existing subnet has a different CIDR,
            which would break sequential allocation.
    """
    subnet = find_subnet(ec2, vpc_id, name)
    if subnet is not None:
        if subnet.get("CidrBlock") != cidr:
            raise FatalConfigurationError(
                f"subnet {name} has cidr {subnet.get('CidrBlock')}, expected {cidr}"
            )
        return subnet

    logger.info("Creating subnet", extra={"subnet": name, "cidr": cidr, "zone_id": zone_id})
    response = ec2.create_subnet(
        VpcId=vpc_id,
        CidrBlock=cidr,
        AvailabilityZoneId=zone_id,
        TagSpecifications=tag_specifications("subnet", name, tags),
    )
    return response["Subnet"]


def delete_subnet(ec2: Any, vpc_id: str, name: str) -> None:
    subnet = find_subnet(ec2, vpc_id, name)
    if subnet is None or _skip_unmanaged(subnet, "subnet", name):
        return
    logger.info("Deleting subnet", extra={"subnet": name})
    try:
        ec2.delete_subnet(SubnetId=subnet["SubnetId"])
    except ClientError as e:
        if not is_not_found(e):
            raise


# =============================================================================
# Elastic IPs and NAT Gateways
# =============================================================================


def find_address(ec2: Any, name: str) -> dict[str, Any] | None:
    response = ec2.describe_addresses(Filters=name_filters(name, domain="vpc"))
    return single(response.get("Addresses", []), "elastic ip", name)


def ensure_address(ec2: Any, name: str, tags: dict[str, str]) -> dict[str, Any]:
    address = find_address(ec2, name)
    if address is not None:
        return address

    logger.info("Allocating elastic ip", extra={"address": name})
    response = ec2.allocate_address(
        Domain="vpc",
        TagSpecifications=tag_specifications("elastic-ip", name, tags),
    )
    return {"AllocationId": response["AllocationId"], "PublicIp": response.get("PublicIp", "")}


def release_address(ec2: Any, name: str) -> bool:
    """Release an elastic IP once nothing uses it.

    Returns:
        False while the address is still associated.
    """
    address = find_address(ec2, name)
    if address is None or _skip_unmanaged(address, "elastic ip", name):
        return True
    if address.get("AssociationId"):
        return False
    logger.info("Releasing elastic ip", extra={"address": name})
    ec2.release_address(AllocationId=address["AllocationId"])
    return True


def find_nat_gateway(
    ec2: Any, vpc_id: str, name: str, states: tuple[str, ...]
) -> dict[str, Any] | None:
    filters = name_filters(name, vpc_id=vpc_id)
    filters.append({"Name": "state", "Values": list(states)})
    response = ec2.describe_nat_gateways(Filter=filters)
    return single(response.get("NatGateways", []), "nat gateway", name)


def wait_for_nat_gateway_visible(
    ec2: Any,
    nat_gateway_id: str,
    timeout: float,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Poll until a freshly created NAT gateway shows up in describe calls.

    Creation is eventually consistent; this only bridges that window and
    never waits for the gateway to become available.

    Raises:
        PassCancelledError: If the pass is cancelled while waiting.
        NatGatewayNotVisibleError: If the gateway does not show up in time.
    """
    stop = stop_after_delay(timeout)
    if cancel_event is not None:
        stop = stop | stop_when_event_set(cancel_event)

    @retry(
        stop=stop,
        wait=wait_fixed(NAT_VISIBILITY_POLL_SECONDS),
        retry=retry_if_result(lambda gateway: gateway is None),
    )
    def _describe() -> dict[str, Any] | None:
        try:
            response = ec2.describe_nat_gateways(NatGatewayIds=[nat_gateway_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        gateways = response.get("NatGateways", [])
        return gateways[0] if gateways else None

    try:
        return _describe()  # type: ignore[no-any-return]
    except RetryError as e:
        if cancel_event is not None and cancel_event.is_set():
            raise PassCancelledError("cancelled while waiting for nat gateway") from e
        raise NatGatewayNotVisibleError(
            f"nat gateway {nat_gateway_id} not visible after {timeout}s"
        ) from e


def ensure_nat_gateway(
    ec2: Any,
    vpc_id: str,
    name: str,
    subnet_id: str,
    allocation_id: str,
    tags: dict[str, str],
    visibility_timeout: float = DEFAULT_NAT_VISIBILITY_TIMEOUT_SECONDS,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Discover or create a NAT gateway. Failed gateways are replaced."""
    gateway = find_nat_gateway(ec2, vpc_id, name, (NAT_STATE_PENDING, NAT_STATE_AVAILABLE))
    if gateway is not None:
        return gateway

    logger.info("Creating nat gateway", extra={"nat_gateway": name, "subnet_id": subnet_id})
    response = ec2.create_nat_gateway(
        SubnetId=subnet_id,
        AllocationId=allocation_id,
        TagSpecifications=tag_specifications("natgateway", name, tags),
    )
    created = response["NatGateway"]
    return wait_for_nat_gateway_visible(
        ec2, created["NatGatewayId"], visibility_timeout, cancel_event
    )


def delete_nat_gateway(ec2: Any, vpc_id: str, name: str, eip_name: str) -> bool:
    """Delete a NAT gateway and then its elastic IP.

    Returns:
        True once both are gone, False while deletion is in progress.
    """
    gateway = find_nat_gateway(
        ec2,
        vpc_id,
        name,
        (NAT_STATE_PENDING, NAT_STATE_AVAILABLE, NAT_STATE_DELETING, NAT_STATE_FAILED),
    )
    if gateway is None:
        return release_address(ec2, eip_name)
    if _skip_unmanaged(gateway, "nat gateway", name):
        return True

    if gateway.get("State") == NAT_STATE_DELETING:
        return False

    logger.info("Deleting nat gateway", extra={"nat_gateway": name})
    try:
        ec2.delete_nat_gateway(NatGatewayId=gateway["NatGatewayId"])
    except ClientError as e:
        if not is_not_found(e):
            raise
    return False


# =============================================================================
# Security Groups
# =============================================================================


def find_security_group(ec2: Any, vpc_id: str, name: str) -> dict[str, Any] | None:
    response = ec2.describe_security_groups(Filters=name_filters(name, vpc_id=vpc_id))
    return single(response.get("SecurityGroups", []), "security group", name)


def ensure_security_group(
    ec2: Any, vpc_id: str, name: str, tags: dict[str, str]
) -> dict[str, Any]:
    group = find_security_group(ec2, vpc_id, name)
    if group is not None:
        return group

    logger.info("Creating security group", extra={"security_group": name})
    response = ec2.create_security_group(
        GroupName=name,
        Description=SECURITY_GROUP_DESCRIPTION,
        VpcId=vpc_id,
        TagSpecifications=tag_specifications("security-group", name, tags),
    )
    return {"GroupId": response["GroupId"], "GroupName": name}


def delete_security_group(ec2: Any, vpc_id: str, name: str) -> None:
    group = find_security_group(ec2, vpc_id, name)
    if group is None or _skip_unmanaged(group, "security group", name):
        return
    logger.info("Deleting security group", extra={"security_group": name})
    ec2.delete_security_group(GroupId=group["GroupId"])


# =============================================================================
# VPC Orchestration
# =============================================================================


@dataclass(frozen=True)
class VPCSpec:
    """Desired network: a name, a CIDR block and how many zones to span.

    ``team`` is written as a tag on everything created and checked before a
    discovered VPC is reused or deleted.
    """

    name: str
    cidr: str
    zones: int = AZ_LIMIT
    tags: dict[str, str] = field(default_factory=dict)
    team: str = ""

    def cloud_tags(self) -> dict[str, str]:
        tags = dict(self.tags)
        if self.team:
            tags[TEAM_TAG_KEY] = self.team
        return tags


@dataclass
class VPCResult:
    vpc_id: str = ""
    public_subnet_ids: list[str] = field(default_factory=list)
    private_subnet_ids: list[str] = field(default_factory=list)
    public_ips: list[str] = field(default_factory=list)
    security_group_ids: list[str] = field(default_factory=list)


class VPCClient:
    """Ensures or deletes one network.

    Holds no discovered cloud state between calls; each ``ensure`` or
    ``delete`` works from what it discovers itself.
    """

    def __init__(
        self,
        ec2: Any,
        spec: VPCSpec,
        *,
        visibility_timeout: float = DEFAULT_NAT_VISIBILITY_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._ec2 = ec2
        self._spec = spec
        self._visibility_timeout = visibility_timeout
        self._cancel_event = cancel_event

    @property
    def spec(self) -> VPCSpec:
        return self._spec

    def exists(self) -> bool:
        return find_vpc(self._ec2, self._spec.name, self._spec.cidr) is not None

    def ensure(self) -> tuple[bool, VPCResult]:
        """Bring the network to its desired state.

        Returns:
            (ready, result). ready is False while a NAT gateway is still
            coming up; the result then holds what exists so far.

        Raises:
            FatalConfigurationError: For an invalid CIDR, duplicate resources or
                a VPC with this name owned by another team.
        """
        ec2, spec = self._ec2, self._spec
        plan = plan_subnets(spec.cidr, spec.zones)
        tags = spec.cloud_tags()

        vpc = ensure_vpc(ec2, spec.name, spec.cidr, tags)
        if not is_owned(vpc.get("Tags"), spec.team):
            raise FatalConfigurationError(f"vpc {spec.name} belongs to another team")
        vpc_id = vpc["VpcId"]
        result = VPCResult(vpc_id=vpc_id)
        enable_dns(ec2, vpc_id)

        gateway = ensure_internet_gateway(ec2, vpc_id, spec.name, tags)
        public_table = ensure_route_table(
            ec2, vpc_id, public_route_table_name(spec.name), tags
        )
        ensure_default_route(ec2, public_table, gateway_id=gateway["InternetGatewayId"])

        zones = list_availability_zones(ec2, spec.zones)
        if len(zones) < spec.zones:
            logger.warning(
                "Fewer availability zones than requested",
                extra={"vpc": spec.name, "requested": spec.zones, "available": len(zones)},
            )

        public_subnets: dict[str, str] = {}
        for zone, cidr in zip(zones, plan.public, strict=False):
            subnet = ensure_subnet(
                ec2,
                vpc_id,
                public_subnet_name(spec.name, zone),
                str(cidr),
                zone,
                subnet_tags(spec.name, True, tags),
            )
            ensure_route_table_association(ec2, public_table, subnet["SubnetId"])
            public_subnets[zone] = subnet["SubnetId"]
            result.public_subnet_ids.append(subnet["SubnetId"])

        ready = True
        for zone, cidr in zip(zones, plan.private, strict=False):
            address = ensure_address(ec2, address_name(spec.name, zone), tags)
            nat = ensure_nat_gateway(
                ec2,
                vpc_id,
                nat_gateway_name(spec.name, zone),
                public_subnets[zone],
                address["AllocationId"],
                tags,
                visibility_timeout=self._visibility_timeout,
                cancel_event=self._cancel_event,
            )
            if address.get("PublicIp"):
                result.public_ips.append(address["PublicIp"])

            if nat.get("State") != NAT_STATE_AVAILABLE:
                logger.info(
                    "NAT gateway not available yet",
                    extra={"vpc": spec.name, "zone_id": zone, "state": nat.get("State")},
                )
                ready = False
                continue

            subnet = ensure_subnet(
                ec2,
                vpc_id,
                private_subnet_name(spec.name, zone),
                str(cidr),
                zone,
                subnet_tags(spec.name, False, tags),
            )
            table = ensure_route_table(
                ec2, vpc_id, private_route_table_name(spec.name, zone), tags
            )
            ensure_default_route(ec2, table, nat_gateway_id=nat["NatGatewayId"])
            ensure_route_table_association(ec2, table, subnet["SubnetId"])
            result.private_subnet_ids.append(subnet["SubnetId"])

        if not ready:
            return False, result

        group = ensure_security_group(ec2, vpc_id, security_group_name(spec.name), tags)
        result.security_group_ids.append(group["GroupId"])
        return True, result

    def delete(self) -> bool:
        """Tear the network down in reverse dependency order.

        Returns:
            True once everything is gone, False while NAT gateways are
            still being deleted.
        """
        ec2, spec = self._ec2, self._spec
        zones = list_availability_zones(ec2, None, available_only=False)
        vpc = find_vpc(ec2, spec.name, spec.cidr)

        if vpc is None:
            # Elastic IPs live outside the VPC and can outlive it
            return all([release_address(ec2, address_name(spec.name, z)) for z in zones])
        if not is_owned(vpc.get("Tags"), spec.team):
            logger.warning(
                "Refusing to delete vpc owned by another team",
                extra={"vpc": spec.name, "team": spec.team},
            )
            return True

        vpc_id = vpc["VpcId"]
        ready = True
        for zone in zones:
            if not delete_nat_gateway(
                ec2, vpc_id, nat_gateway_name(spec.name, zone), address_name(spec.name, zone)
            ):
                ready = False
                continue
            delete_subnet(ec2, vpc_id, private_subnet_name(spec.name, zone))
            delete_route_table(ec2, vpc_id, private_route_table_name(spec.name, zone))

        if not ready:
            return False

        for zone in zones:
            delete_subnet(ec2, vpc_id, public_subnet_name(spec.name, zone))
        delete_route_table(ec2, vpc_id, public_route_table_name(spec.name))
        delete_internet_gateway(ec2, vpc_id, spec.name)
        delete_security_group(ec2, vpc_id, security_group_name(spec.name))
        delete_vpc(ec2, spec.name, spec.cidr)
        return True
