"""In-memory EKS fake.

Clusters and node groups move through the same states EKS reports, but
only when a test calls ``advance``, so each reconciliation pass sees a
stable snapshot.
"""

from __future__ import annotations

import base64
import copy
from collections import Counter
from typing import Any

from .errors import client_error

FAKE_CA = "-----BEGIN CERTIFICATE-----\nMIIfake\n-----END CERTIFICATE-----\n"
DEFAULT_VERSION = "1.29"


class MockEKSClient:
    """Stateful EKS fake.

    Attributes:
        create_cluster_errors: Errors raised, one per call, by the next
            create_cluster calls before creation succeeds.
        create_nodegroup_errors: Same for create_nodegroup.
    """

    def __init__(self) -> None:
        self.clusters: dict[str, dict[str, Any]] = {}
        self.nodegroups: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: Counter[str] = Counter()
        self.create_cluster_errors: list[Exception] = []
        self.create_nodegroup_errors: list[Exception] = []
        self.updates: list[tuple[str, dict[str, Any]]] = []

    def _call(self, name: str) -> None:
        self.calls[name] += 1

    def _cluster(self, name: str) -> dict[str, Any]:
        if name not in self.clusters:
            raise client_error("ResourceNotFoundException", f"No cluster found for name: {name}.")
        return self.clusters[name]

    def _nodegroup(self, cluster_name: str, name: str) -> dict[str, Any]:
        key = (cluster_name, name)
        if key not in self.nodegroups:
            raise client_error("ResourceNotFoundException", f"No node group found for name: {name}.")
        return self.nodegroups[key]

    # -- test helpers ---------------------------------------------------------

    def advance(self) -> None:
        """Finish every in-flight operation."""
        for name in list(self.clusters):
            cluster = self.clusters[name]
            if cluster["status"] in ("CREATING", "UPDATING"):
                cluster["status"] = "ACTIVE"
                cluster["endpoint"] = f"https://{name}.gr7.eu-west-2.eks.amazonaws.com"
                cluster["certificateAuthority"] = {
                    "data": base64.b64encode(FAKE_CA.encode("utf-8")).decode("ascii")
                }
            elif cluster["status"] == "DELETING":
                del self.clusters[name]

        for key in list(self.nodegroups):
            nodegroup = self.nodegroups[key]
            if nodegroup["status"] in ("CREATING", "UPDATING"):
                nodegroup["status"] = "ACTIVE"
            elif nodegroup["status"] == "DELETING":
                del self.nodegroups[key]

    def add_cluster(self, name: str, tags: dict[str, str] | None = None, status: str = "ACTIVE") -> None:
        """Insert a cluster as if it had been created outside the operator."""
        self.clusters[name] = {
            "name": name,
            "arn": f"arn:aws:eks:eu-west-2:123456789012:cluster/{name}",
            "roleArn": f"arn:aws:iam::123456789012:role/{name}-external",
            "version": DEFAULT_VERSION,
            "status": status,
            "endpoint": f"https://{name}.gr7.eu-west-2.eks.amazonaws.com",
            "resourcesVpcConfig": {
                "subnetIds": ["subnet-external"],
                "endpointPublicAccess": True,
                "endpointPrivateAccess": True,
                "publicAccessCidrs": ["0.0.0.0/0"],
            },
            "tags": dict(tags or {}),
        }

    def set_cluster_status(self, name: str, status: str) -> None:
        self.clusters[name]["status"] = status

    def set_nodegroup_status(self, cluster_name: str, name: str, status: str, issues: list[str] | None = None) -> None:
        nodegroup = self.nodegroups[(cluster_name, name)]
        nodegroup["status"] = status
        nodegroup["health"] = {"issues": [{"code": "Mock", "message": m} for m in issues or []]}

    # -- clusters -------------------------------------------------------------

    def describe_cluster(self, name: str) -> dict[str, Any]:
        self._call("describe_cluster")
        return {"cluster": copy.deepcopy(self._cluster(name))}

    def create_cluster(
        self,
        name: str,
        roleArn: str,
        resourcesVpcConfig: dict[str, Any],
        tags: dict[str, str] | None = None,
        version: str | None = None,
    ) -> dict[str, Any]:
        self._call("create_cluster")
        if self.create_cluster_errors:
            raise self.create_cluster_errors.pop(0)
        if name in self.clusters:
            raise client_error("ResourceInUseException", f"Cluster already exists with name: {name}")
        self.clusters[name] = {
            "name": name,
            "arn": f"arn:aws:eks:eu-west-2:123456789012:cluster/{name}",
            "roleArn": roleArn,
            "version": version or DEFAULT_VERSION,
            "status": "CREATING",
            "resourcesVpcConfig": copy.deepcopy(resourcesVpcConfig),
            "tags": dict(tags or {}),
        }
        return {"cluster": copy.deepcopy(self.clusters[name])}

    def update_cluster_version(self, name: str, version: str) -> dict[str, Any]:
        self._call("update_cluster_version")
        cluster = self._cluster(name)
        cluster["version"] = version
        cluster["status"] = "UPDATING"
        self.updates.append((name, {"version": version}))
        return {"update": {"type": "VersionUpdate", "status": "InProgress"}}

    def update_cluster_config(self, name: str, resourcesVpcConfig: dict[str, Any]) -> dict[str, Any]:
        self._call("update_cluster_config")
        cluster = self._cluster(name)
        cluster["resourcesVpcConfig"].update(copy.deepcopy(resourcesVpcConfig))
        cluster["status"] = "UPDATING"
        self.updates.append((name, {"resourcesVpcConfig": resourcesVpcConfig}))
        return {"update": {"type": "EndpointAccessUpdate", "status": "InProgress"}}

    def delete_cluster(self, name: str) -> dict[str, Any]:
        self._call("delete_cluster")
        cluster = self._cluster(name)
        if any(key[0] == name for key in self.nodegroups):
            raise client_error("ResourceInUseException", f"Cluster has nodegroups attached: {name}")
        cluster["status"] = "DELETING"
        return {"cluster": copy.deepcopy(cluster)}

    # -- node groups ----------------------------------------------------------

    def describe_nodegroup(self, clusterName: str, nodegroupName: str) -> dict[str, Any]:
        self._call("describe_nodegroup")
        return {"nodegroup": copy.deepcopy(self._nodegroup(clusterName, nodegroupName))}

    def create_nodegroup(self, clusterName: str, nodegroupName: str, **kwargs: Any) -> dict[str, Any]:
        self._call("create_nodegroup")
        if self.create_nodegroup_errors:
            raise self.create_nodegroup_errors.pop(0)
        cluster = self._cluster(clusterName)
        key = (clusterName, nodegroupName)
        if key in self.nodegroups:
            raise client_error("ResourceInUseException", f"NodeGroup already exists: {nodegroupName}")
        self.nodegroups[key] = {
            "clusterName": clusterName,
            "nodegroupName": nodegroupName,
            "status": "CREATING",
            "version": kwargs.get("version") or cluster["version"],
            "releaseVersion": kwargs.get("releaseVersion") or f"{cluster['version']}.0-20240101",
            "labels": dict(kwargs.get("labels") or {}),
            "health": {"issues": []},
            **copy.deepcopy({k: v for k, v in kwargs.items() if k not in ("labels", "version", "releaseVersion")}),
        }
        return {"nodegroup": copy.deepcopy(self.nodegroups[key])}

    def update_nodegroup_config(
        self,
        clusterName: str,
        nodegroupName: str,
        scalingConfig: dict[str, int] | None = None,
        labels: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._call("update_nodegroup_config")
        nodegroup = self._nodegroup(clusterName, nodegroupName)
        if scalingConfig is not None:
            nodegroup["scalingConfig"] = dict(scalingConfig)
        if labels is not None:
            current = nodegroup.setdefault("labels", {})
            current.update(labels.get("addOrUpdateLabels", {}))
            for key in labels.get("removeLabels", []):
                current.pop(key, None)
        nodegroup["status"] = "UPDATING"
        return {"update": {"type": "ConfigUpdate", "status": "InProgress"}}

    def update_nodegroup_version(
        self,
        clusterName: str,
        nodegroupName: str,
        version: str | None = None,
        releaseVersion: str | None = None,
    ) -> dict[str, Any]:
        self._call("update_nodegroup_version")
        nodegroup = self._nodegroup(clusterName, nodegroupName)
        if version is not None:
            nodegroup["version"] = version
        if releaseVersion is not None:
            nodegroup["releaseVersion"] = releaseVersion
        nodegroup["status"] = "UPDATING"
        return {"update": {"type": "VersionUpdate", "status": "InProgress"}}

    def delete_nodegroup(self, clusterName: str, nodegroupName: str) -> dict[str, Any]:
        self._call("delete_nodegroup")
        nodegroup = self._nodegroup(clusterName, nodegroupName)
        nodegroup["status"] = "DELETING"
        return {"nodegroup": copy.deepcopy(nodegroup)}
