"""Credential resolution.

A resource names the cloud credentials it wants through an ownership
reference. Resolution first checks that the caller's team may use the
referenced object, then dispatches on the reference's (group, kind) to a
lookup function for that credential-shaped kind. Each lookup returns
``Credentials``, ``None`` when the credentials are not ready yet, or
raises.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import cast

from .errors import FatalConfigurationError, PermissionDeniedError
from .models import (
    ACCOUNTS_GROUP,
    AWS_GROUP,
    RESOURCE_KINDS,
    AccountClaim,
    AccountCredentials,
    Allocation,
    ManagedResource,
    Ownership,
    ResourceKey,
    Secret,
    SecretReference,
    Status,
)
from .store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

# Keys expected inside a credentials secret
ACCESS_KEY_ID_KEY = "access_key_id"
SECRET_ACCESS_KEY_KEY = "access_secret_key"

PERMISSION_DENIED_MESSAGE = "you do not have permissions to the aws credentials"


@dataclass(frozen=True)
class Credentials:
    """Resolved cloud credentials. Never persisted, never logged."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    account_id: str = ""


LookupFunc = Callable[[ResourceStore, Ownership], Credentials | None]


def qualified(ref: Ownership) -> Ownership:
    """Fill in the group of a reference that omits it."""
    if ref.group or ref.kind not in RESOURCE_KINDS:
        return ref
    return ref.model_copy(update={"group": RESOURCE_KINDS[ref.kind].GROUP})


def read_secret(store: ResourceStore, ref: SecretReference) -> Credentials:
    """Decode access keys from a Secret.

    Raises:
        FatalConfigurationError: If the secret is missing or malformed.
    """
    key = ResourceKey("Secret", ref.namespace, ref.name)
    try:
        secret = cast(Secret, store.get(key))
    except NotFoundError as e:
        raise FatalConfigurationError(f"credentials secret {key} not found") from e

    try:
        return Credentials(
            access_key_id=secret.spec.decoded(ACCESS_KEY_ID_KEY),
            secret_access_key=secret.spec.decoded(SECRET_ACCESS_KEY_KEY),
        )
    except (KeyError, ValueError) as e:
        raise FatalConfigurationError(f"credentials secret {key} is malformed: {e}") from e


def _get(store: ResourceStore, ref: Ownership) -> ManagedResource:
    try:
        return store.get(ref.key)
    except NotFoundError as e:
        raise FatalConfigurationError(f"credentials {ref.key} not found") from e


def lookup_account_credentials(store: ResourceStore, ref: Ownership) -> Credentials | None:
    """Static credentials: inline keys win over the referenced secret."""
    resource = cast(AccountCredentials, _get(store, ref))
    spec = resource.spec

    if spec.access_key_id and spec.secret_access_key:
        return Credentials(
            access_key_id=spec.access_key_id,
            secret_access_key=spec.secret_access_key,
            account_id=spec.account_id,
        )

    if spec.secret_ref is None:
        raise FatalConfigurationError(f"credentials {ref.key} have neither inline keys nor a secret")
    creds = read_secret(store, spec.secret_ref)
    return Credentials(creds.access_key_id, creds.secret_access_key, spec.account_id)


def lookup_account_claim(store: ResourceStore, ref: Ownership) -> Credentials | None:
    """Claimed account: credentials only exist once the account is provisioned."""
    resource = cast(AccountClaim, _get(store, ref))
    status = resource.status

    match status.status:
        case Status.FAILURE:
            raise FatalConfigurationError(
                f"account claim {ref.key} failed provisioning: {status.message}"
            )
        case Status.SUCCESS:
            pass
        case _:
            logger.debug("Account claim not provisioned yet", extra={"claim": str(ref.key)})
            return None

    if status.credential_ref is None:
        raise FatalConfigurationError(f"account claim {ref.key} has no credential reference")

    creds = read_secret(store, status.credential_ref)
    return Credentials(creds.access_key_id, creds.secret_access_key, status.account_id)


CREDENTIAL_LOOKUPS: dict[tuple[str, str], LookupFunc] = {
    (AWS_GROUP, "AccountCredentials"): lookup_account_credentials,
    (ACCOUNTS_GROUP, "AccountClaim"): lookup_account_claim,
}


class CredentialResolver:
    """Resolves ownership references to credentials for a team."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def is_permitted(self, team: str, ref: Ownership) -> bool:
        """Check that a team may use a resource.

        A team always owns the resources in its own namespace. Anything
        else needs an Allocation in the resource's namespace naming the
        resource and listing the team (or all teams).
        """
        ref = qualified(ref)
        if team == ref.namespace:
            return True

        allocations = cast(list[Allocation], self._store.list("Allocation", namespace=ref.namespace))
        for allocation in allocations:
            if qualified(allocation.spec.resource).matches(ref) and allocation.permits(team):
                return True
        return False

    def resolve(self, team: str, ref: Ownership) -> Credentials | None:
        """Resolve credentials for a team.

        Returns:
            Credentials, or None when they are not ready yet.

        Raises:
            PermissionDeniedError: If the team is not allocated the credentials.
            FatalConfigurationError: For unknown kinds and broken references.
        """
        ref = qualified(ref)
        if not self.is_permitted(team, ref):
            logger.warning(
                "Credentials not allocated to team",
                extra={"team": team, "credentials": str(ref.key)},
            )
            raise PermissionDeniedError(PERMISSION_DENIED_MESSAGE)

        lookup = CREDENTIAL_LOOKUPS.get((ref.group, ref.kind))
        if lookup is None:
            raise FatalConfigurationError(
                f"unsupported credentials kind {ref.group}/{ref.kind}"
            )
        return lookup(self._store, ref)
