"""Ensure and deletion steps for Network resources."""

from __future__ import annotations

import logging
from typing import cast

from ..aws.network import VPCClient, VPCResult, VPCSpec
from ..config import DEPENDENTS_POLL_SECONDS, NETWORK_DELETE_POLL_SECONDS, NETWORK_POLL_SECONDS
from ..engine import (
    MARK_DELETING,
    KindHandler,
    ReconcileContext,
    ReconcileResult,
    Step,
    refers_to,
)
from ..models import Cluster, Network, NetworkInfra, Status

logger = logging.getLogger(__name__)

FINALIZER = "network.cluster-operator.io"

COMPONENT_VPC = "Cluster VPC Creator"
COMPONENT_DELETION = "Cluster VPC Deletion"


def _network(ctx: ReconcileContext) -> Network:
    return cast(Network, ctx.resource)


def vpc_name(network: Network) -> str:
    """Cloud name of a network, unique across teams sharing an account."""
    return f"{network.namespace}-{network.name}"


def vpc_client(ctx: ReconcileContext) -> VPCClient:
    """Build a client for this pass, bounding the NAT wait by the pass deadline."""
    network = _network(ctx)
    timeout: float = ctx.config.nat_visibility_timeout_seconds
    remaining = ctx.remaining_seconds()
    if remaining is not None:
        timeout = min(timeout, remaining)

    spec = VPCSpec(
        name=vpc_name(network),
        cidr=network.spec.private_ipv4_cidr,
        zones=network.spec.availability_zones,
        tags=dict(network.spec.tags),
        team=network.namespace,
    )
    return VPCClient(
        ctx.aws().ec2,
        spec,
        visibility_timeout=timeout,
        cancel_event=ctx.cancel_event,
    )


def _infra(result: VPCResult) -> NetworkInfra:
    return NetworkInfra(
        vpc_id=result.vpc_id,
        security_group_ids=list(result.security_group_ids),
        public_subnet_ids=list(result.public_subnet_ids),
        private_subnet_ids=list(result.private_subnet_ids),
        ipv4_egress_addresses=list(result.public_ips),
    )


def ensure_vpc(ctx: ReconcileContext) -> ReconcileResult:
    network = _network(ctx)
    client = vpc_client(ctx)

    if ctx.component_status() is None and not client.exists():
        ctx.set_component(Status.PENDING, "Provisioning the VPC in AWS")
        network.set_state(Status.PENDING, "Provisioning the network")
        return ReconcileResult.requeue_now()

    ready, result = client.ensure()
    network.status.infra = _infra(result)

    if not ready:
        ctx.set_component(Status.PENDING, "Waiting for the NAT gateways to become available")
        return ReconcileResult.requeue_in(NETWORK_POLL_SECONDS)

    ctx.set_component(Status.SUCCESS, "VPC has been provisioned")
    return ReconcileResult.done()


def ensure_clusters_deleted(ctx: ReconcileContext) -> ReconcileResult:
    """Hold the teardown while any Cluster still uses this network."""
    network = _network(ctx)
    dependents = [
        c.key for c in ctx.store.list("Cluster")
        if isinstance(c, Cluster) and refers_to(c.spec.network, network)
    ]
    if dependents:
        logger.info(
            "Network still referenced by clusters",
            extra={**ctx.log_fields, "clusters": [str(k) for k in dependents]},
        )
        ctx.set_component(Status.PENDING, "Waiting for clusters using this network to be deleted")
        return ReconcileResult.requeue_in(DEPENDENTS_POLL_SECONDS)
    return ReconcileResult.done()


def ensure_vpc_deleted(ctx: ReconcileContext) -> ReconcileResult:
    network = _network(ctx)
    if not vpc_client(ctx).delete():
        ctx.set_component(Status.PENDING, "Waiting for the NAT gateways to be deleted")
        return ReconcileResult.requeue_in(NETWORK_DELETE_POLL_SECONDS)

    network.status.infra = NetworkInfra()
    ctx.set_component(Status.SUCCESS, "VPC has been deleted")
    return ReconcileResult.done()


HANDLER = KindHandler(
    kind="Network",
    finalizer=FINALIZER,
    ensure_steps=(Step("ensure-vpc", ensure_vpc, COMPONENT_VPC),),
    delete_steps=(
        MARK_DELETING,
        Step("ensure-clusters-deleted", ensure_clusters_deleted, COMPONENT_DELETION),
        Step("ensure-vpc-deleted", ensure_vpc_deleted, COMPONENT_DELETION),
    ),
    credentials_ref=lambda r: r.spec.credentials if isinstance(r, Network) else None,
)
