"""CIDR sub-allocation for VPC subnets.

Subnets are carved sequentially: each subnet starts at the first address
after the previous subnet's range, aligned to its own mask. Private subnets
continue after the last public subnet.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Network

from ..errors import FatalConfigurationError

PUBLIC_SUBNET_PREFIX = 19
PRIVATE_SUBNET_PREFIX = 19

# AWS limits for a VPC's primary CIDR block
MIN_VPC_PREFIX = 16
MAX_VPC_PREFIX = 28


def first_subnet(start: IPv4Address | str, prefix: int) -> IPv4Network:
    """The network of the given size containing ``start``."""
    return ipaddress.ip_network((IPv4Address(start), prefix), strict=False)


def next_subnet(previous: IPv4Network, prefix: int) -> IPv4Network:
    """The first network of the given size starting after ``previous``.

    Raises:
        FatalConfigurationError: If the address space is exhausted.
    """
    try:
        start = previous.broadcast_address + 1
        candidate = ipaddress.ip_network((start, prefix), strict=False)
        if candidate.network_address < start:
            # A larger mask can realign backwards over ``previous``
            candidate = ipaddress.ip_network(
                (candidate.broadcast_address + 1, prefix), strict=False
            )
    except ipaddress.AddressValueError as e:
        raise FatalConfigurationError(f"no address space left after {previous}") from e
    return candidate


@dataclass(frozen=True)
class SubnetPlan:
    """Public and private subnets, one of each per availability zone."""

    vpc: IPv4Network
    public: list[IPv4Network] = field(default_factory=list)
    private: list[IPv4Network] = field(default_factory=list)


def parse_vpc_cidr(cidr: str) -> IPv4Network:
    """Validate a VPC CIDR block.

    Raises:
        FatalConfigurationError: If the block is not a valid IPv4 network
            within AWS's size limits.
    """
    try:
        network = ipaddress.ip_network(cidr, strict=True)
    except ValueError as e:
        raise FatalConfigurationError(f"invalid vpc cidr {cidr}: {e}") from e
    if not isinstance(network, IPv4Network):
        raise FatalConfigurationError(f"vpc cidr must be IPv4: {cidr}")
    if not (MIN_VPC_PREFIX <= network.prefixlen <= MAX_VPC_PREFIX):
        raise FatalConfigurationError(
            f"vpc cidr prefix must be between /{MIN_VPC_PREFIX} and /{MAX_VPC_PREFIX}: {cidr}"
        )
    return network


def plan_subnets(
    cidr: str,
    zones: int,
    public_prefix: int = PUBLIC_SUBNET_PREFIX,
    private_prefix: int = PRIVATE_SUBNET_PREFIX,
) -> SubnetPlan:
    """Allocate one public and one private subnet per zone.

    Raises:
        FatalConfigurationError: If the VPC cannot hold every subnet.
    """
    if zones < 1:
        raise FatalConfigurationError("at least one availability zone is required")

    vpc = parse_vpc_cidr(cidr)
    if vpc.prefixlen > min(public_prefix, private_prefix):
        raise FatalConfigurationError(f"vpc cidr too small: {cidr}")

    public = [first_subnet(vpc.network_address, public_prefix)]
    while len(public) < zones:
        public.append(next_subnet(public[-1], public_prefix))

    private = [next_subnet(public[-1], private_prefix)]
    while len(private) < zones:
        private.append(next_subnet(private[-1], private_prefix))

    for subnet in (*public, *private):
        if not subnet.subnet_of(vpc):
            raise FatalConfigurationError(
                f"vpc cidr {cidr} is too small for {zones} zones: {subnet} falls outside it"
            )

    return SubnetPlan(vpc=vpc, public=public, private=private)
