"""Tests for subnet CIDR allocation."""

from ipaddress import ip_network

import pytest

from cluster_operator.aws.cidr import first_subnet, next_subnet, parse_vpc_cidr, plan_subnets
from cluster_operator.errors import FatalConfigurationError


class TestPlanSubnets:
    """Tests for the public/private subnet plan."""

    def test_three_zones_in_slash_16(self) -> None:
        plan = plan_subnets("10.0.0.0/16", 3)

        assert [str(s) for s in plan.public] == ["10.0.0.0/19", "10.0.32.0/19", "10.0.64.0/19"]
        assert [str(s) for s in plan.private] == ["10.0.96.0/19", "10.0.128.0/19", "10.0.160.0/19"]

    def test_single_zone(self) -> None:
        plan = plan_subnets("172.16.0.0/16", 1)
        assert [str(s) for s in plan.public] == ["172.16.0.0/19"]
        assert [str(s) for s in plan.private] == ["172.16.32.0/19"]

    def test_mixed_prefixes_realign(self) -> None:
        """A larger private block starts on its own boundary after the public ones."""
        plan = plan_subnets("10.0.0.0/16", 1, public_prefix=24, private_prefix=20)
        assert str(plan.public[0]) == "10.0.0.0/24"
        assert str(plan.private[0]) == "10.0.16.0/20"

    def test_subnets_do_not_overlap(self) -> None:
        plan = plan_subnets("10.0.0.0/16", 3)
        subnets = [*plan.public, *plan.private]
        for i, a in enumerate(subnets):
            for b in subnets[i + 1:]:
                assert not a.overlaps(b)

    def test_too_small_for_zones(self) -> None:
        with pytest.raises(FatalConfigurationError) as exc_info:
            plan_subnets("10.0.0.0/18", 3)
        assert "too small" in str(exc_info.value)

    def test_prefix_smaller_than_subnets(self) -> None:
        with pytest.raises(FatalConfigurationError):
            plan_subnets("10.0.0.0/20", 1)

    def test_zero_zones(self) -> None:
        with pytest.raises(FatalConfigurationError):
            plan_subnets("10.0.0.0/16", 0)


class TestParseVpcCidr:
    """Tests for VPC CIDR validation."""

    @pytest.mark.parametrize("cidr", ["10.0.0.0/8", "10.0.0.0/29", "10.0.0.1/16", "fd00::/56", "bogus"])
    def test_rejected(self, cidr: str) -> None:
        with pytest.raises(FatalConfigurationError):
            parse_vpc_cidr(cidr)

    def test_accepted(self) -> None:
        assert parse_vpc_cidr("10.0.0.0/16") == ip_network("10.0.0.0/16")


class TestSubnetArithmetic:
    """Tests for sequential allocation helpers."""

    def test_first_subnet_aligns(self) -> None:
        assert str(first_subnet("10.0.5.7", 24)) == "10.0.5.0/24"

    def test_next_subnet(self) -> None:
        assert str(next_subnet(ip_network("10.0.0.0/19"), 19)) == "10.0.32.0/19"

    def test_address_space_exhausted(self) -> None:
        with pytest.raises(FatalConfigurationError):
            next_subnet(ip_network("255.255.255.0/24"), 24)
