"""Managed cluster and node-group lifecycle on EKS.

Operations here never wait: each call inspects the current cloud state,
issues at most one mutating call, and reports back so the caller can
requeue. Waiting happens between reconciliation passes, not inside them.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

from ..errors import FatalConfigurationError, is_not_found
from .tags import MANAGED_TAG_KEY, MANAGED_TAG_VALUE, TEAM_TAG_KEY, is_owned

logger = logging.getLogger(__name__)


class ClusterState(str, Enum):
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    DELETING = "DELETING"
    FAILED = "FAILED"
    UPDATING = "UPDATING"
    PENDING = "PENDING"


class NodeGroupState(str, Enum):
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    UPDATING = "UPDATING"
    DELETING = "DELETING"
    CREATE_FAILED = "CREATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    DEGRADED = "DEGRADED"


# =============================================================================
# Desired State
# =============================================================================


@dataclass(frozen=True)
class ClusterConfig:
    """Everything needed to create or compare a control plane."""

    name: str
    role_arn: str
    subnet_ids: list[str]
    security_group_ids: list[str] = field(default_factory=list)
    version: str | None = None
    public_access_cidrs: list[str] = field(default_factory=lambda: ["0.0.0.0/0"])
    endpoint_public_access: bool = True
    endpoint_private_access: bool = True
    team: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    def cloud_tags(self) -> dict[str, str]:
        tags = dict(self.tags)
        tags[MANAGED_TAG_KEY] = MANAGED_TAG_VALUE
        if self.team:
            tags[TEAM_TAG_KEY] = self.team
        return tags

    def vpc_access(self) -> dict[str, Any]:
        return {
            "endpointPublicAccess": self.endpoint_public_access,
            "endpointPrivateAccess": self.endpoint_private_access,
            "publicAccessCidrs": sorted(self.public_access_cidrs),
        }


@dataclass(frozen=True)
class NodeGroupConfig:
    """Everything needed to create or compare a managed node group."""

    cluster_name: str
    name: str
    node_role: str
    subnets: list[str]
    ami_type: str = "AL2_x86_64"
    instance_type: str = "t3.medium"
    disk_size: int = 20
    min_size: int = 1
    max_size: int = 3
    desired_size: int = 1
    version: str | None = None
    release_version: str | None = None
    ec2_ssh_key: str | None = None
    ssh_source_security_groups: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    team: str = ""

    def cloud_tags(self) -> dict[str, str]:
        tags = dict(self.tags)
        tags[MANAGED_TAG_KEY] = MANAGED_TAG_VALUE
        if self.team:
            tags[TEAM_TAG_KEY] = self.team
        return tags

    def scaling(self) -> dict[str, int]:
        return {"minSize": self.min_size, "maxSize": self.max_size, "desiredSize": self.desired_size}


# =============================================================================
# Drift
# =============================================================================


def parse_version(version: str) -> tuple[int, ...]:
    """Split "1.29" into (1, 29).

    Raises:
        FatalConfigurationError: If the version is not dotted integers.
    """
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError as e:
        raise FatalConfigurationError(f"invalid kubernetes version {version}") from e


@dataclass
class ClusterDrift:
    version: str | None = None
    vpc_config: dict[str, Any] | None = None

    @property
    def drifted(self) -> bool:
        return self.version is not None or self.vpc_config is not None


def cluster_drift(desired: ClusterConfig, observed: dict[str, Any]) -> ClusterDrift:
    """Compare a described cluster against its desired configuration.

    Raises:
        FatalConfigurationError: If the desired version is older than the
            running one; EKS cannot downgrade a control plane.
    """
    drift = ClusterDrift()

    current = observed.get("version")
    if desired.version and current and desired.version != current:
        if parse_version(desired.version) < parse_version(current):
            raise FatalConfigurationError(
                f"cannot downgrade cluster {desired.name} from {current} to {desired.version}"
            )
        drift.version = desired.version

    vpc = observed.get("resourcesVpcConfig", {})
    actual = {
        "endpointPublicAccess": vpc.get("endpointPublicAccess"),
        "endpointPrivateAccess": vpc.get("endpointPrivateAccess"),
        "publicAccessCidrs": sorted(vpc.get("publicAccessCidrs", [])),
    }
    wanted = desired.vpc_access()
    if actual != wanted:
        drift.vpc_config = wanted

    return drift


@dataclass
class NodeGroupDrift:
    scaling: dict[str, int] | None = None
    labels: dict[str, Any] | None = None
    version: dict[str, str] | None = None

    @property
    def drifted(self) -> bool:
        return any(x is not None for x in (self.scaling, self.labels, self.version))


def nodegroup_drift(desired: NodeGroupConfig, observed: dict[str, Any]) -> NodeGroupDrift:
    drift = NodeGroupDrift()

    if observed.get("scalingConfig", {}) != desired.scaling():
        drift.scaling = desired.scaling()

    current_labels: dict[str, str] = observed.get("labels") or {}
    add = {k: v for k, v in desired.labels.items() if current_labels.get(k) != v}
    remove = sorted(k for k in current_labels if k not in desired.labels)
    if add or remove:
        drift.labels = {}
        if add:
            drift.labels["addOrUpdateLabels"] = add
        if remove:
            drift.labels["removeLabels"] = remove

    version: dict[str, str] = {}
    if desired.version and desired.version != observed.get("version"):
        version["version"] = desired.version
    if desired.release_version and desired.release_version != observed.get("releaseVersion"):
        version["releaseVersion"] = desired.release_version
    if version:
        drift.version = version

    return drift


def check_owned(observed: dict[str, Any], what: str, name: str, team: str) -> None:
    """Refuse to adopt a cluster or node group created outside this team.

    Raises:
        FatalConfigurationError: If the managed-by or team tag does not match.
    """
    if not is_owned(observed.get("tags"), team):
        raise FatalConfigurationError(
            f"{what} {name} already exists and is not managed by this operator for {team}"
        )


def decode_certificate(cluster: dict[str, Any]) -> str:
    """PEM certificate authority of a described cluster, or an empty string."""
    data = cluster.get("certificateAuthority", {}).get("data")
    if not data:
        return ""
    try:
        return base64.b64decode(data).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise FatalConfigurationError(f"cluster {cluster.get('name')} returned an invalid CA") from e


# =============================================================================
# Client
# =============================================================================


class EKSClient:
    """Non-blocking operations over a boto3 EKS client."""

    def __init__(self, eks: Any) -> None:
        self._eks = eks

    # -- clusters -------------------------------------------------------------

    def describe_cluster(self, name: str) -> dict[str, Any] | None:
        try:
            return self._eks.describe_cluster(name=name)["cluster"]  # type: ignore[no-any-return]
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

    def exists(self, name: str) -> bool:
        return self.describe_cluster(name) is not None

    def create_cluster(self, config: ClusterConfig) -> dict[str, Any]:
        logger.info("Creating EKS cluster", extra={"cluster": config.name, "version": config.version})
        kwargs: dict[str, Any] = {
            "name": config.name,
            "roleArn": config.role_arn,
            "resourcesVpcConfig": {
                "subnetIds": list(config.subnet_ids),
                "securityGroupIds": list(config.security_group_ids),
                **config.vpc_access(),
            },
            "tags": config.cloud_tags(),
        }
        if config.version:
            kwargs["version"] = config.version
        return self._eks.create_cluster(**kwargs)["cluster"]  # type: ignore[no-any-return]

    def update_cluster(self, name: str, drift: ClusterDrift) -> None:
        """Apply one drift correction. Version upgrades go first."""
        if drift.version is not None:
            logger.info("Upgrading EKS cluster", extra={"cluster": name, "version": drift.version})
            self._eks.update_cluster_version(name=name, version=drift.version)
        elif drift.vpc_config is not None:
            logger.info("Updating EKS cluster endpoint access", extra={"cluster": name})
            self._eks.update_cluster_config(name=name, resourcesVpcConfig=drift.vpc_config)

    def delete_cluster(self, name: str, team: str = "") -> bool:
        """Start or observe deletion of a cluster.

        A cluster not owned by ``team`` is left in place and reported gone.

        Returns:
            True once the cluster no longer exists.
        """
        cluster = self.describe_cluster(name)
        if cluster is None:
            return True
        if not is_owned(cluster.get("tags"), team):
            logger.warning("Refusing to delete unmanaged EKS cluster", extra={"cluster": name, "team": team})
            return True

        state = cluster.get("status")
        if state in (ClusterState.ACTIVE, ClusterState.FAILED):
            logger.info("Deleting EKS cluster", extra={"cluster": name})
            try:
                self._eks.delete_cluster(name=name)
            except ClientError as e:
                if is_not_found(e):
                    return True
                raise
        else:
            logger.debug("EKS cluster busy, waiting", extra={"cluster": name, "state": state})
        return False

    # -- node groups ----------------------------------------------------------

    def describe_nodegroup(self, cluster_name: str, name: str) -> dict[str, Any] | None:
        try:
            response = self._eks.describe_nodegroup(clusterName=cluster_name, nodegroupName=name)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return response["nodegroup"]  # type: ignore[no-any-return]

    def create_nodegroup(self, config: NodeGroupConfig) -> dict[str, Any]:
        logger.info(
            "Creating EKS nodegroup",
            extra={"cluster": config.cluster_name, "nodegroup": config.name},
        )
        kwargs: dict[str, Any] = {
            "clusterName": config.cluster_name,
            "nodegroupName": config.name,
            "nodeRole": config.node_role,
            "subnets": list(config.subnets),
            "amiType": config.ami_type,
            "instanceTypes": [config.instance_type],
            "diskSize": config.disk_size,
            "scalingConfig": config.scaling(),
            "tags": config.cloud_tags(),
        }
        if config.labels:
            kwargs["labels"] = dict(config.labels)
        if config.version:
            kwargs["version"] = config.version
        if config.release_version:
            kwargs["releaseVersion"] = config.release_version
        if config.ec2_ssh_key:
            kwargs["remoteAccess"] = {
                "ec2SshKey": config.ec2_ssh_key,
                "sourceSecurityGroups": list(config.ssh_source_security_groups),
            }
        return self._eks.create_nodegroup(**kwargs)["nodegroup"]  # type: ignore[no-any-return]

    def update_nodegroup(self, cluster_name: str, name: str, drift: NodeGroupDrift) -> None:
        """Apply one drift correction: configuration first, then version."""
        if drift.scaling is not None or drift.labels is not None:
            kwargs: dict[str, Any] = {"clusterName": cluster_name, "nodegroupName": name}
            if drift.scaling is not None:
                kwargs["scalingConfig"] = drift.scaling
            if drift.labels is not None:
                kwargs["labels"] = drift.labels
            logger.info("Updating EKS nodegroup config", extra={"nodegroup": name})
            self._eks.update_nodegroup_config(**kwargs)
        elif drift.version is not None:
            logger.info("Updating EKS nodegroup version", extra={"nodegroup": name, **drift.version})
            self._eks.update_nodegroup_version(
                clusterName=cluster_name, nodegroupName=name, **drift.version
            )

    def delete_nodegroup(self, cluster_name: str, name: str, team: str = "") -> bool:
        """Start or observe deletion of a node group.

        A node group not owned by ``team`` is left in place and reported gone.

        Returns:
            True once the node group no longer exists.

        Raises:
            FatalConfigurationError: If AWS reports the deletion failed.
        """
        nodegroup = self.describe_nodegroup(cluster_name, name)
        if nodegroup is None:
            return True
        if not is_owned(nodegroup.get("tags"), team):
            logger.warning(
                "Refusing to delete unmanaged EKS nodegroup",
                extra={"cluster": cluster_name, "nodegroup": name, "team": team},
            )
            return True

        state = nodegroup.get("status")
        if state == NodeGroupState.DELETE_FAILED:
            raise FatalConfigurationError(f"nodegroup {name} failed to delete, check the console")

        if state in (NodeGroupState.ACTIVE, NodeGroupState.CREATE_FAILED, NodeGroupState.DEGRADED):
            logger.info("Deleting EKS nodegroup", extra={"cluster": cluster_name, "nodegroup": name})
            try:
                self._eks.delete_nodegroup(clusterName=cluster_name, nodegroupName=name)
            except ClientError as e:
                if is_not_found(e):
                    return True
                raise
        return False
