"""Ensure and deletion steps for NodeGroup resources."""

from __future__ import annotations

import logging
from typing import cast

from botocore.exceptions import ClientError

from ..aws.eks import EKSClient, NodeGroupConfig, NodeGroupState, check_owned, nodegroup_drift
from ..aws.iam import IAMClient, node_role_name
from ..config import NODEGROUP_POLL_SECONDS, PARENT_CLUSTER_POLL_SECONDS, ROLE_PROPAGATION_REQUEUE_SECONDS
from ..engine import MARK_DELETING, KindHandler, ReconcileContext, ReconcileResult, Step
from ..errors import FatalConfigurationError, NotReadyError, PermissionDeniedError, is_role_not_assumable
from ..models import Cluster, NodeGroup, Status
from .cluster import COMPONENT_CREATOR as CLUSTER_CREATOR

logger = logging.getLogger(__name__)

FINALIZER = "nodegroup.cluster-operator.io"

COMPONENT_CLUSTER_READY = "Cluster Ready"
COMPONENT_ROLE = "Nodegroup Role"
COMPONENT_CREATOR = "Cluster Nodegroup Creator"
COMPONENT_DELETION = "Nodegroup Deletion"


def _nodegroup(ctx: ReconcileContext) -> NodeGroup:
    return cast(NodeGroup, ctx.resource)


def _parent(ctx: ReconcileContext) -> Cluster | None:
    parent = ctx.store.find(_nodegroup(ctx).spec.cluster.key)
    return parent if isinstance(parent, Cluster) else None


def nodegroup_config(nodegroup: NodeGroup, parent: Cluster) -> NodeGroupConfig:
    """Desired node group; empty subnets fall back to the cluster's node subnets.

    Raises:
        FatalConfigurationError: If no subnets can be determined.
    """
    spec = nodegroup.spec
    subnets = list(spec.subnets) or list(parent.status.node_subnet_ids)
    if not subnets:
        raise FatalConfigurationError(f"no subnets available for nodegroup {nodegroup.name}")

    return NodeGroupConfig(
        cluster_name=parent.name,
        name=nodegroup.name,
        node_role=nodegroup.status.node_iam_role,
        subnets=subnets,
        ami_type=spec.ami_type,
        instance_type=spec.instance_type,
        disk_size=spec.disk_size,
        min_size=spec.min_size,
        max_size=spec.max_size,
        desired_size=spec.desired_size,
        version=spec.version,
        release_version=spec.release_version,
        ec2_ssh_key=spec.ec2_ssh_key,
        ssh_source_security_groups=list(spec.ssh_source_security_groups),
        labels=dict(spec.labels),
        tags=dict(spec.tags),
        team=nodegroup.namespace,
    )


def ensure_cluster_ready(ctx: ReconcileContext) -> ReconcileResult:
    nodegroup = _nodegroup(ctx)
    ref = nodegroup.spec.cluster

    if not ctx.resolver.is_permitted(nodegroup.namespace, ref):
        raise PermissionDeniedError(f"you do not have permissions to the cluster {ref.key}")

    parent = _parent(ctx)
    if parent is None or parent.status.condition_status(CLUSTER_CREATOR) != Status.SUCCESS:
        ctx.set_component(Status.PENDING, f"Waiting for cluster {ref.name} to be provisioned")
        return ReconcileResult.requeue_in(PARENT_CLUSTER_POLL_SECONDS)

    ctx.set_component(Status.SUCCESS, "Cluster is ready")
    return ReconcileResult.done()


def ensure_node_role(ctx: ReconcileContext) -> ReconcileResult:
    nodegroup = _nodegroup(ctx)
    role = IAMClient(ctx.aws().iam).ensure_node_role(
        nodegroup.namespace, nodegroup.spec.cluster.name, nodegroup.name, nodegroup.spec.tags
    )
    nodegroup.status.node_iam_role = role["Arn"]
    return ReconcileResult.done()


def ensure_nodegroup(ctx: ReconcileContext) -> ReconcileResult:
    nodegroup = _nodegroup(ctx)
    parent = _parent(ctx)
    if parent is None:
        raise NotReadyError(f"cluster {nodegroup.spec.cluster.key} not found")

    config = nodegroup_config(nodegroup, parent)
    eks = EKSClient(ctx.aws().eks)

    observed = eks.describe_nodegroup(config.cluster_name, config.name)
    if observed is None:
        try:
            eks.create_nodegroup(config)
        except ClientError as e:
            if not is_role_not_assumable(e):
                raise
            ctx.set_component(Status.PENDING, "Waiting for the node role to propagate", str(e))
            return ReconcileResult.requeue_in(ROLE_PROPAGATION_REQUEUE_SECONDS)
        ctx.set_component(Status.PENDING, "Provisioning the nodegroup")
        return ReconcileResult.requeue_in(NODEGROUP_POLL_SECONDS)

    check_owned(observed, "nodegroup", config.name, nodegroup.namespace)
    state = observed.get("status")
    if state in (NodeGroupState.CREATE_FAILED, NodeGroupState.DELETE_FAILED):
        issues = observed.get("health", {}).get("issues", [])
        message = f"nodegroup {config.name} is {state}"
        if issues:
            message += ": " + "; ".join(i.get("message", "") for i in issues)
        raise FatalConfigurationError(message)
    if state in (NodeGroupState.CREATING, NodeGroupState.UPDATING, NodeGroupState.DELETING):
        ctx.set_component(Status.PENDING, f"Nodegroup is {str(state).lower()}")
        return ReconcileResult.requeue_in(NODEGROUP_POLL_SECONDS)

    drift = nodegroup_drift(config, observed)
    if drift.drifted:
        eks.update_nodegroup(config.cluster_name, config.name, drift)
        ctx.set_component(Status.PENDING, "Applying changes to the nodegroup")
        return ReconcileResult.requeue_in(NODEGROUP_POLL_SECONDS)

    if state == NodeGroupState.DEGRADED:
        ctx.set_component(Status.SUCCESS, "Nodegroup is provisioned but degraded")
    else:
        ctx.set_component(Status.SUCCESS, "Nodegroup has been provisioned")
    return ReconcileResult.done()


def ensure_nodegroup_deleted(ctx: ReconcileContext) -> ReconcileResult:
    nodegroup = _nodegroup(ctx)
    eks = EKSClient(ctx.aws().eks)
    if not eks.delete_nodegroup(nodegroup.spec.cluster.name, nodegroup.name, nodegroup.namespace):
        ctx.set_component(Status.PENDING, "Deleting the nodegroup")
        return ReconcileResult.requeue_in(NODEGROUP_POLL_SECONDS)
    return ReconcileResult.done()


def ensure_node_role_deleted(ctx: ReconcileContext) -> ReconcileResult:
    nodegroup = _nodegroup(ctx)
    IAMClient(ctx.aws().iam).delete_role(
        node_role_name(nodegroup.namespace, nodegroup.spec.cluster.name, nodegroup.name),
        nodegroup.namespace,
    )
    nodegroup.status.node_iam_role = ""
    return ReconcileResult.done()


HANDLER = KindHandler(
    kind="NodeGroup",
    finalizer=FINALIZER,
    ensure_steps=(
        Step("ensure-cluster-ready", ensure_cluster_ready, COMPONENT_CLUSTER_READY),
        Step("ensure-node-role", ensure_node_role, COMPONENT_ROLE),
        Step("ensure-nodegroup", ensure_nodegroup, COMPONENT_CREATOR),
    ),
    delete_steps=(
        MARK_DELETING,
        Step("ensure-nodegroup-deleted", ensure_nodegroup_deleted, COMPONENT_DELETION),
        Step("ensure-node-role-deleted", ensure_node_role_deleted, COMPONENT_DELETION),
    ),
    credentials_ref=lambda r: r.spec.credentials if isinstance(r, NodeGroup) else None,
)
