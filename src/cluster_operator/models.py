"""Pydantic models for managed resources with validation.

These models provide:
1. Type-safe YAML parsing of resource manifests
2. Validation at the boundary (fail fast, fail loudly)
3. The status/condition schema exposed to anything reading the store
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
from enum import Enum
from typing import Annotated, ClassVar, Literal, NamedTuple

from pydantic import BaseModel, Field, field_validator, model_validator

API_VERSION = "cluster-operator.io/v1"

AWS_GROUP = "aws.compute.io"
ACCOUNTS_GROUP = "accounts.compute.io"
CONFIG_GROUP = "config.compute.io"
CORE_GROUP = ""

# Grants an allocation to every team
ALL_TEAMS = "*"

NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class Status(str, Enum):
    """Overall and per-component reconciliation state."""

    PENDING = "Pending"
    SUCCESS = "Success"
    FAILURE = "Failure"
    DELETING = "Deleting"


class ResourceKey(NamedTuple):
    """Identifies a resource in the store."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceKey:
        """Parse a "Kind/namespace/name" string.

        Raises:
            ValueError: If the string does not have three non-empty parts.
        """
        parts = value.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"resource key must look like Kind/namespace/name: {value}")
        return cls(*parts)


# =============================================================================
# Shared Models
# =============================================================================


class Ownership(BaseModel):
    """A typed, non-owning pointer to another resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    group: str = ""
    version: str = ""
    kind: Annotated[str, Field(min_length=1)]
    namespace: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)

    def matches(self, other: Ownership) -> bool:
        """Check if two references point at the same object, ignoring version."""
        return (
            self.group == other.group
            and self.kind == other.kind
            and self.namespace == other.namespace
            and self.name == other.name
        )


class SecretReference(BaseModel):
    """Points at a Secret holding raw credential material."""

    model_config = {"extra": "ignore"}

    namespace: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]


class Component(BaseModel):
    """A named sub-status owned by exactly one ensure-step."""

    model_config = {"extra": "ignore"}

    name: str
    status: Status = Status.PENDING
    message: str = ""
    detail: str = ""


class ResourceStatus(BaseModel):
    """Observed state of a resource, mutated only by the reconciler."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    status: Status | None = None
    message: str = ""
    conditions: list[Component] = Field(default_factory=list)

    def get_condition(self, name: str) -> Component | None:
        for component in self.conditions:
            if component.name == name:
                return component
        return None

    def condition_status(self, name: str) -> Status | None:
        component = self.get_condition(name)
        return component.status if component else None

    def set_condition(
        self,
        name: str,
        status: Status,
        message: str = "",
        detail: str = "",
    ) -> Component:
        """Create or update a condition, keeping insertion order stable."""
        component = self.get_condition(name)
        if component is None:
            component = Component(name=name)
            self.conditions.append(component)
        component.status = status
        component.message = message
        component.detail = detail
        return component


class ObjectMeta(BaseModel):
    """Identity and lifecycle markers of a resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=NAME_PATTERN)]
    namespace: Annotated[str, Field(min_length=1, max_length=63, pattern=NAME_PATTERN)]
    finalizers: list[str] = Field(default_factory=list)
    deletion_requested: bool = Field(False, alias="deletionRequested")
    labels: dict[str, str] = Field(default_factory=dict)


class ManagedResource(BaseModel):
    """A named, namespaced declarative object with spec and status.

    The namespace is the owning team. Subclasses narrow ``kind``,
    ``spec`` and ``status``.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    GROUP: ClassVar[str] = AWS_GROUP

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str
    metadata: ObjectMeta
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.metadata.namespace, self.metadata.name)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_requested

    def ownership(self) -> Ownership:
        """Return a reference other resources can use to point here."""
        return Ownership(
            group=self.GROUP,
            version="v1",
            kind=self.kind,
            namespace=self.metadata.namespace,
            name=self.metadata.name,
        )

    def set_state(self, state: Status, message: str = "") -> None:
        """Set the overall state.

        While a deletion is requested the overall state stays Deleting;
        only the message changes.
        """
        if self.metadata.deletion_requested and state != Status.DELETING:
            self.status.status = Status.DELETING
        else:
            self.status.status = state
        self.status.message = message


# =============================================================================
# Credentials
# =============================================================================


class SecretSpec(BaseModel):
    """Raw key/value material, values base64 encoded."""

    model_config = {"extra": "ignore"}

    type: str = "generic"
    data: dict[str, str] = Field(default_factory=dict)

    def decoded(self, key: str) -> str:
        """Return a decoded value.

        Raises:
            KeyError: If the key is missing.
            ValueError: If the value is not valid base64 text.
        """
        try:
            return base64.b64decode(self.data[key], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"secret key {key} is not valid base64 text") from e

    @classmethod
    def from_plain(cls, values: dict[str, str], secret_type: str = "generic") -> SecretSpec:
        return cls(
            type=secret_type,
            data={k: base64.b64encode(v.encode("utf-8")).decode("ascii") for k, v in values.items()},
        )


class Secret(ManagedResource):
    """Secret material referenced by credential resources."""

    GROUP: ClassVar[str] = CORE_GROUP

    kind: Literal["Secret"] = "Secret"
    spec: SecretSpec = Field(default_factory=SecretSpec)


class AccountCredentialsSpec(BaseModel):
    """Reusable static AWS credentials for one account."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    account_id: Annotated[str, Field(alias="accountID", pattern=r"^\d{12}$")]
    access_key_id: str | None = Field(None, alias="accessKeyID")
    secret_access_key: str | None = Field(None, alias="secretAccessKey")
    secret_ref: SecretReference | None = Field(None, alias="secretRef")

    @model_validator(mode="after")
    def validate_source(self) -> AccountCredentialsSpec:
        inline = self.access_key_id is not None or self.secret_access_key is not None
        if inline and not (self.access_key_id and self.secret_access_key):
            raise ValueError("accessKeyID and secretAccessKey must be set together")
        if not inline and self.secret_ref is None:
            raise ValueError("either inline keys or secretRef must be set")
        return self


class AccountCredentialsStatus(ResourceStatus):
    verified: bool = False
    caller_arn: str = Field("", alias="callerArn")


class AccountCredentials(ManagedResource):
    """Static credentials object, verified periodically."""

    kind: Literal["AccountCredentials"] = "AccountCredentials"
    spec: AccountCredentialsSpec
    status: AccountCredentialsStatus = Field(default_factory=AccountCredentialsStatus)


class AccountClaimSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    account_name: str = Field("", alias="accountName")


class AccountClaimStatus(ResourceStatus):
    credential_ref: SecretReference | None = Field(None, alias="credentialRef")
    account_id: str = Field("", alias="accountID")


class AccountClaim(ManagedResource):
    """A claimed account whose credentials exist once the account is provisioned.

    Status is written by the account factory, never by this operator.
    """

    GROUP: ClassVar[str] = ACCOUNTS_GROUP

    kind: Literal["AccountClaim"] = "AccountClaim"
    spec: AccountClaimSpec = Field(default_factory=AccountClaimSpec)
    status: AccountClaimStatus = Field(default_factory=AccountClaimStatus)


class AllocationSpec(BaseModel):
    """Grants teams access to a resource in another namespace."""

    model_config = {"extra": "ignore"}

    resource: Ownership
    teams: Annotated[list[str], Field(min_length=1)]
    summary: str = ""


class Allocation(ManagedResource):
    GROUP: ClassVar[str] = CONFIG_GROUP

    kind: Literal["Allocation"] = "Allocation"
    spec: AllocationSpec

    def permits(self, team: str) -> bool:
        return ALL_TEAMS in self.spec.teams or team in self.spec.teams


# =============================================================================
# Network
# =============================================================================


def _validate_cidr(value: str) -> str:
    try:
        network = ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR {value}: {e}") from e
    if network.version != 4:
        raise ValueError(f"only IPv4 CIDRs are supported: {value}")
    return value


class NetworkSpec(BaseModel):
    """Desired virtual network for a cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    region: str | None = None
    private_ipv4_cidr: str = Field(alias="privateIPV4Cidr")
    credentials: Ownership
    availability_zones: Annotated[int, Field(ge=1, le=6, alias="availabilityZones")] = 3
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("private_ipv4_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class NetworkInfra(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    vpc_id: str = Field("", alias="vpcID")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIDs")
    public_subnet_ids: list[str] = Field(default_factory=list, alias="publicSubnetIDs")
    private_subnet_ids: list[str] = Field(default_factory=list, alias="privateSubnetIDs")
    ipv4_egress_addresses: list[str] = Field(default_factory=list, alias="ipv4EgressAddresses")


class NetworkStatus(ResourceStatus):
    infra: NetworkInfra = Field(default_factory=NetworkInfra)


class Network(ManagedResource):
    kind: Literal["Network"] = "Network"
    spec: NetworkSpec
    status: NetworkStatus = Field(default_factory=NetworkStatus)


# =============================================================================
# Cluster
# =============================================================================


class ClusterSpec(BaseModel):
    """Desired managed Kubernetes control plane."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    region: str | None = None
    version: str | None = None
    credentials: Ownership
    network: Ownership | None = None
    subnet_ids: list[str] = Field(default_factory=list, alias="subnetIDs")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIDs")
    authorized_master_networks: list[str] = Field(
        default_factory=lambda: ["0.0.0.0/0"], alias="authorizedMasterNetworks"
    )
    endpoint_public_access: bool = Field(True, alias="endpointPublicAccess")
    endpoint_private_access: bool = Field(True, alias="endpointPrivateAccess")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str | None) -> str | None:
        if v is not None and not v.replace(".", "").isdigit():
            raise ValueError(f"version must look like 1.29: {v}")
        return v

    @field_validator("authorized_master_networks")
    @classmethod
    def validate_networks(cls, v: list[str]) -> list[str]:
        return [_validate_cidr(cidr) for cidr in v]

    @model_validator(mode="after")
    def validate_placement(self) -> ClusterSpec:
        if self.network is None and not self.subnet_ids:
            raise ValueError("either network or subnetIDs must be set")
        if not (self.endpoint_public_access or self.endpoint_private_access):
            raise ValueError("at least one of endpointPublicAccess/endpointPrivateAccess")
        return self


class ClusterStatus(ResourceStatus):
    role_arn: str = Field("", alias="roleARN")
    endpoint: str = ""
    ca_certificate: str = Field("", alias="caCertificate")
    subnet_ids: list[str] = Field(default_factory=list, alias="subnetIDs")
    node_subnet_ids: list[str] = Field(default_factory=list, alias="nodeSubnetIDs")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIDs")


class Cluster(ManagedResource):
    kind: Literal["Cluster"] = "Cluster"
    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)


# =============================================================================
# Node Group
# =============================================================================


class NodeGroupSpec(BaseModel):
    """Desired managed worker pool for a cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    cluster: Ownership
    credentials: Ownership
    region: str | None = None
    ami_type: str = Field("AL2_x86_64", alias="amiType")
    instance_type: str = Field("t3.medium", alias="instanceType")
    disk_size: Annotated[int, Field(ge=10, le=16384, alias="diskSize")] = 20
    min_size: Annotated[int, Field(ge=0, alias="minSize")] = 1
    max_size: Annotated[int, Field(ge=1, alias="maxSize")] = 3
    desired_size: Annotated[int, Field(ge=0, alias="desiredSize")] = 1
    version: str | None = None
    release_version: str | None = Field(None, alias="releaseVersion")
    subnets: list[str] = Field(default_factory=list)
    ec2_ssh_key: str | None = Field(None, alias="eC2SSHKey")
    ssh_source_security_groups: list[str] = Field(
        default_factory=list, alias="sshSourceSecurityGroups"
    )
    labels: dict[str, str] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("ami_type")
    @classmethod
    def validate_ami_type(cls, v: str) -> str:
        valid = {"AL2_x86_64", "AL2_x86_64_GPU", "AL2_ARM_64", "AL2023_x86_64_STANDARD",
                 "AL2023_ARM_64_STANDARD", "BOTTLEROCKET_x86_64", "BOTTLEROCKET_ARM_64"}
        if v not in valid:
            raise ValueError(f"amiType must be one of {sorted(valid)}")
        return v

    @model_validator(mode="after")
    def validate_scaling(self) -> NodeGroupSpec:
        if not (self.min_size <= self.desired_size <= self.max_size):
            raise ValueError("scaling must satisfy minSize <= desiredSize <= maxSize")
        if self.ssh_source_security_groups and not self.ec2_ssh_key:
            raise ValueError("sshSourceSecurityGroups requires eC2SSHKey")
        return self


class NodeGroupStatus(ResourceStatus):
    node_iam_role: str = Field("", alias="nodeIAMRole")


class NodeGroup(ManagedResource):
    kind: Literal["NodeGroup"] = "NodeGroup"
    spec: NodeGroupSpec
    status: NodeGroupStatus = Field(default_factory=NodeGroupStatus)


# =============================================================================
# Kind Registry
# =============================================================================

RESOURCE_KINDS: dict[str, type[ManagedResource]] = {
    "AccountClaim": AccountClaim,
    "AccountCredentials": AccountCredentials,
    "Allocation": Allocation,
    "Cluster": Cluster,
    "Network": Network,
    "NodeGroup": NodeGroup,
    "Secret": Secret,
}


def get_resource_class(kind: str) -> type[ManagedResource]:
    """Get the model class for a resource kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    resource_class = RESOURCE_KINDS.get(kind)
    if resource_class is None:
        valid_kinds = sorted(RESOURCE_KINDS.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return resource_class
