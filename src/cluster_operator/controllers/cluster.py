"""Ensure and deletion steps for Cluster resources.

The cluster pipeline waits for its network, ensures the IAM role the
control plane runs as, creates the control plane, keeps it in sync with
the resource and finally publishes the endpoint and CA as a derived secret.
"""

from __future__ import annotations

import logging
from typing import cast

from botocore.exceptions import ClientError

from ..aws.eks import (
    ClusterConfig,
    ClusterState,
    EKSClient,
    check_owned,
    cluster_drift,
    decode_certificate,
)
from ..aws.iam import IAMClient, cluster_role_name
from ..config import CLUSTER_POLL_SECONDS, DEPENDENTS_POLL_SECONDS, ROLE_PROPAGATION_REQUEUE_SECONDS
from ..engine import (
    MARK_DELETING,
    KindHandler,
    ReconcileContext,
    ReconcileResult,
    Step,
    refers_to,
)
from ..errors import FatalConfigurationError, PermissionDeniedError, TransientError, is_role_not_assumable
from ..models import Cluster, Network, NodeGroup, ObjectMeta, ResourceKey, Secret, SecretSpec, Status

logger = logging.getLogger(__name__)

FINALIZER = "cluster.cluster-operator.io"

COMPONENT_NETWORK = "Cluster Network"
COMPONENT_ROLES = "Cluster Roles"
COMPONENT_CREATOR = "Cluster Creator"
COMPONENT_UPDATER = "Cluster Updater"
COMPONENT_BOOTSTRAP = "Cluster Initialize Access"
COMPONENT_DELETION = "Cluster Deletion"

CLUSTER_LABEL = "cluster-operator.io/cluster"
CREDENTIALS_SECRET_TYPE = "kubernetes"


def credentials_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-cluster-credentials"


def _cluster(ctx: ReconcileContext) -> Cluster:
    return cast(Cluster, ctx.resource)


def cluster_config(cluster: Cluster) -> ClusterConfig:
    return ClusterConfig(
        name=cluster.name,
        role_arn=cluster.status.role_arn,
        subnet_ids=list(cluster.status.subnet_ids),
        security_group_ids=list(cluster.status.security_group_ids),
        version=cluster.spec.version,
        public_access_cidrs=list(cluster.spec.authorized_master_networks),
        endpoint_public_access=cluster.spec.endpoint_public_access,
        endpoint_private_access=cluster.spec.endpoint_private_access,
        team=cluster.namespace,
        tags=dict(cluster.spec.tags),
    )


# =============================================================================
# Ensure
# =============================================================================


def ensure_network_ready(ctx: ReconcileContext) -> ReconcileResult:
    """Work out the subnets and security groups the control plane goes into."""
    cluster = _cluster(ctx)
    spec = cluster.spec

    if spec.network is None:
        cluster.status.subnet_ids = list(spec.subnet_ids)
        cluster.status.node_subnet_ids = list(spec.subnet_ids)
        cluster.status.security_group_ids = list(spec.security_group_ids)
        return ReconcileResult.done()

    if not ctx.resolver.is_permitted(cluster.namespace, spec.network):
        raise PermissionDeniedError(f"you do not have permissions to the network {spec.network.key}")

    network = ctx.store.find(spec.network.key)
    if not isinstance(network, Network) or network.status.status != Status.SUCCESS:
        ctx.set_component(Status.PENDING, f"Waiting for network {spec.network.name} to be provisioned")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)

    infra = network.status.infra
    cluster.status.subnet_ids = list(spec.subnet_ids) or [
        *infra.public_subnet_ids,
        *infra.private_subnet_ids,
    ]
    cluster.status.node_subnet_ids = list(infra.private_subnet_ids) or list(spec.subnet_ids)
    cluster.status.security_group_ids = list(spec.security_group_ids) or list(infra.security_group_ids)
    ctx.set_component(Status.SUCCESS, "Network is ready")
    return ReconcileResult.done()


def ensure_cluster_roles(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    iam = IAMClient(ctx.aws().iam)
    role = iam.ensure_cluster_role(cluster.namespace, cluster.name, cluster.spec.tags)
    cluster.status.role_arn = role["Arn"]
    return ReconcileResult.done()


def ensure_cluster_exists(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    eks = EKSClient(ctx.aws().eks)

    observed = eks.describe_cluster(cluster.name)
    if observed is None:
        # Show Pending before the first create call is made
        if ctx.component_status() != Status.PENDING:
            ctx.set_component(Status.PENDING, "Provisioning the EKS cluster in AWS")
            cluster.set_state(Status.PENDING, "Provisioning the cluster")
            return ReconcileResult.requeue_now()

        try:
            eks.create_cluster(cluster_config(cluster))
        except ClientError as e:
            if not is_role_not_assumable(e):
                raise
            logger.info("Cluster role not assumable yet", extra=ctx.log_fields)
            ctx.set_component(Status.PENDING, "Waiting for the cluster role to propagate", str(e))
            return ReconcileResult.requeue_in(ROLE_PROPAGATION_REQUEUE_SECONDS)

        ctx.set_component(Status.PENDING, "Provisioning the EKS cluster in AWS")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)

    check_owned(observed, "cluster", cluster.name, cluster.namespace)
    state = observed.get("status")
    if state == ClusterState.FAILED:
        raise FatalConfigurationError(f"cluster {cluster.name} has failed to provision")
    if state in (ClusterState.CREATING, ClusterState.PENDING):
        ctx.set_component(Status.PENDING, "Cluster is being provisioned")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)
    if state == ClusterState.DELETING:
        ctx.set_component(Status.PENDING, "Cluster is being deleted in AWS")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)

    ctx.set_component(Status.SUCCESS, "Cluster has been provisioned")
    return ReconcileResult.done()


def ensure_cluster_in_sync(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    eks = EKSClient(ctx.aws().eks)

    observed = eks.describe_cluster(cluster.name)
    if observed is None:
        raise TransientError(f"cluster {cluster.name} disappeared while syncing")

    if observed.get("status") == ClusterState.UPDATING:
        ctx.set_component(Status.PENDING, "Cluster update in progress")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)

    drift = cluster_drift(cluster_config(cluster), observed)
    if drift.drifted:
        eks.update_cluster(cluster.name, drift)
        ctx.set_component(Status.PENDING, "Applying changes to the cluster")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)

    cluster.status.endpoint = observed.get("endpoint", "")
    cluster.status.ca_certificate = decode_certificate(observed)
    ctx.set_component(Status.SUCCESS, "Cluster is in sync")
    return ReconcileResult.done()


def ensure_cluster_bootstrap(ctx: ReconcileContext) -> ReconcileResult:
    """Publish the endpoint and CA as a secret in the team's namespace."""
    cluster = _cluster(ctx)
    key = ResourceKey("Secret", cluster.namespace, credentials_secret_name(cluster.name))
    spec = SecretSpec.from_plain(
        {"endpoint": cluster.status.endpoint, "ca.crt": cluster.status.ca_certificate},
        CREDENTIALS_SECRET_TYPE,
    )

    existing = ctx.store.find(key)
    if isinstance(existing, Secret) and existing.spec == spec:
        return ReconcileResult.done()

    ctx.store.apply(
        Secret(
            metadata=ObjectMeta(
                name=key.name,
                namespace=key.namespace,
                labels={CLUSTER_LABEL: cluster.name},
            ),
            spec=spec,
        )
    )
    ctx.set_component(Status.SUCCESS, "Cluster access has been initialized")
    return ReconcileResult.done()


# =============================================================================
# Delete
# =============================================================================


def ensure_nodegroups_deleted(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    dependents = [
        ng.key for ng in ctx.store.list("NodeGroup")
        if isinstance(ng, NodeGroup) and refers_to(ng.spec.cluster, cluster)
    ]
    if dependents:
        logger.info(
            "Cluster still has nodegroups",
            extra={**ctx.log_fields, "nodegroups": [str(k) for k in dependents]},
        )
        ctx.set_component(Status.PENDING, "Waiting for the nodegroups to be deleted")
        return ReconcileResult.requeue_in(DEPENDENTS_POLL_SECONDS)
    return ReconcileResult.done()


def ensure_cluster_deleted(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    if not EKSClient(ctx.aws().eks).delete_cluster(cluster.name, cluster.namespace):
        ctx.set_component(Status.PENDING, "Deleting the EKS cluster")
        return ReconcileResult.requeue_in(CLUSTER_POLL_SECONDS)
    return ReconcileResult.done()


def ensure_cluster_role_deleted(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    IAMClient(ctx.aws().iam).delete_role(
        cluster_role_name(cluster.namespace, cluster.name), cluster.namespace
    )
    cluster.status.role_arn = ""
    return ReconcileResult.done()


def ensure_secret_deleted(ctx: ReconcileContext) -> ReconcileResult:
    cluster = _cluster(ctx)
    ctx.store.request_deletion(
        ResourceKey("Secret", cluster.namespace, credentials_secret_name(cluster.name))
    )
    return ReconcileResult.done()


HANDLER = KindHandler(
    kind="Cluster",
    finalizer=FINALIZER,
    ensure_steps=(
        Step("ensure-network-ready", ensure_network_ready, COMPONENT_NETWORK),
        Step("ensure-cluster-roles", ensure_cluster_roles, COMPONENT_ROLES),
        Step("ensure-cluster-exists", ensure_cluster_exists, COMPONENT_CREATOR),
        Step("ensure-cluster-in-sync", ensure_cluster_in_sync, COMPONENT_UPDATER),
        Step("ensure-cluster-bootstrap", ensure_cluster_bootstrap, COMPONENT_BOOTSTRAP),
    ),
    delete_steps=(
        MARK_DELETING,
        Step("ensure-nodegroups-deleted", ensure_nodegroups_deleted, COMPONENT_DELETION),
        Step("ensure-cluster-deleted", ensure_cluster_deleted, COMPONENT_DELETION),
        Step("ensure-cluster-role-deleted", ensure_cluster_role_deleted, COMPONENT_DELETION),
        Step("ensure-secret-deleted", ensure_secret_deleted, COMPONENT_DELETION),
    ),
    credentials_ref=lambda r: r.spec.credentials if isinstance(r, Cluster) else None,
)
