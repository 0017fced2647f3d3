"""IAM roles for managed clusters and node groups.

Roles are looked up by a deterministic name scoped to the owning team, so
two teams never share a role. Required managed policies are attached when
missing; policies attached by someone else are left alone.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from botocore.exceptions import ClientError

from ..errors import FatalConfigurationError, is_not_found
from .tags import MANAGED_TAG_KEY, TEAM_TAG_KEY, is_owned, scoped_name, tags_to_dict, to_tag_list

logger = logging.getLogger(__name__)

CLUSTER_ROLE_POLICIES = (
    "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",
    "arn:aws:iam::aws:policy/AmazonEKSServicePolicy",
)

NODE_ROLE_POLICIES = (
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
)

CLUSTER_SERVICE_PRINCIPAL = "eks.amazonaws.com"
NODE_SERVICE_PRINCIPAL = "ec2.amazonaws.com"

ROLE_NAME_LIMIT = 64


def trust_policy(service: str) -> str:
    """Assume-role policy document letting an AWS service use the role."""
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


def cluster_role_name(namespace: str, cluster_name: str) -> str:
    return scoped_name(namespace, cluster_name, "eks-cluster", limit=ROLE_NAME_LIMIT)


def node_role_name(namespace: str, cluster_name: str, nodegroup_name: str) -> str:
    return scoped_name(namespace, cluster_name, nodegroup_name, "eks-nodepool", limit=ROLE_NAME_LIMIT)


def _role_tags(role: dict[str, Any]) -> dict[str, str]:
    return tags_to_dict(role.get("Tags"))


class IAMClient:
    """Idempotent role operations over a boto3 IAM client."""

    def __init__(self, iam: Any) -> None:
        self._iam = iam

    def get_role(self, name: str) -> dict[str, Any] | None:
        try:
            return self._iam.get_role(RoleName=name)["Role"]  # type: ignore[no-any-return]
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

    def attached_policies(self, name: str) -> list[str]:
        arns: list[str] = []
        kwargs: dict[str, Any] = {"RoleName": name}
        while True:
            response = self._iam.list_attached_role_policies(**kwargs)
            arns.extend(p["PolicyArn"] for p in response.get("AttachedPolicies", []))
            if not response.get("IsTruncated"):
                return arns
            kwargs["Marker"] = response["Marker"]

    def ensure_role(
        self,
        name: str,
        service: str,
        policies: tuple[str, ...],
        tags: dict[str, str] | None = None,
        team: str = "",
    ) -> dict[str, Any]:
        """Create the role if absent and attach any missing policies.

        A role tagged with the managed-by key set to anything but "true"
        was adopted from outside and is returned untouched.

        Returns:
            The role as returned by IAM.

        Raises:
            FatalConfigurationError: If a managed role with this name belongs
                to another team.
        """
        role = self.get_role(name)
        if role is None:
            role_tags = dict(tags or {})
            role_tags[MANAGED_TAG_KEY] = "true"
            if team:
                role_tags[TEAM_TAG_KEY] = team
            logger.info("Creating IAM role", extra={"role": name, "service": service})
            role = self._iam.create_role(
                RoleName=name,
                Path="/",
                AssumeRolePolicyDocument=trust_policy(service),
                Tags=to_tag_list(role_tags),
            )["Role"]
        else:
            managed = _role_tags(role).get(MANAGED_TAG_KEY)
            if managed is not None and managed != "true":
                logger.debug("IAM role not managed, leaving as is", extra={"role": name})
                return role
            if managed == "true" and not is_owned(role.get("Tags"), team):
                raise FatalConfigurationError(f"iam role {name} belongs to another team")

        attached = set(self.attached_policies(name))
        for arn in policies:
            if arn in attached:
                continue
            logger.info("Attaching policy to IAM role", extra={"role": name, "policy": arn})
            self._iam.attach_role_policy(RoleName=name, PolicyArn=arn)
        return role

    def ensure_cluster_role(
        self, namespace: str, cluster_name: str, tags: dict[str, str] | None = None
    ) -> dict[str, Any]:
        return self.ensure_role(
            cluster_role_name(namespace, cluster_name),
            CLUSTER_SERVICE_PRINCIPAL,
            CLUSTER_ROLE_POLICIES,
            tags,
            team=namespace,
        )

    def ensure_node_role(
        self,
        namespace: str,
        cluster_name: str,
        nodegroup_name: str,
        tags: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return self.ensure_role(
            node_role_name(namespace, cluster_name, nodegroup_name),
            NODE_SERVICE_PRINCIPAL,
            NODE_ROLE_POLICIES,
            tags,
            team=namespace,
        )

    def delete_role(self, name: str, team: str = "") -> None:
        """Detach every policy and delete the role.

        Only roles this operator created for ``team`` are deleted.
        """
        role = self.get_role(name)
        if role is None:
            return
        if not is_owned(role.get("Tags"), team):
            logger.warning("Refusing to delete unmanaged IAM role", extra={"role": name, "team": team})
            return

        for arn in self.attached_policies(name):
            self._iam.detach_role_policy(RoleName=name, PolicyArn=arn)

        logger.info("Deleting IAM role", extra={"role": name})
        try:
            self._iam.delete_role(RoleName=name)
        except ClientError as e:
            if not is_not_found(e):
                raise
