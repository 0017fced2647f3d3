"""Tests for credential resolution and team permissions."""

import pytest

from builders import ACCOUNT_ID, account_claim, account_credentials, allocation, ref, secret
from cluster_operator.credentials import (
    PERMISSION_DENIED_MESSAGE,
    CredentialResolver,
    Credentials,
    qualified,
)
from cluster_operator.errors import FatalConfigurationError, PermissionDeniedError
from cluster_operator.models import (
    AccountCredentials,
    AccountCredentialsSpec,
    ObjectMeta,
    Ownership,
    SecretReference,
    Status,
)
from cluster_operator.store import MemoryStore

KEYS = {"access_key_id": "AKIASECRET", "access_secret_key": "from-secret"}


class TestQualified:
    """Tests for filling in reference groups."""

    def test_fills_group(self) -> None:
        assert qualified(ref("AccountClaim", "sandbox")).group == "accounts.compute.io"

    def test_keeps_explicit_group(self) -> None:
        explicit = Ownership(group="x.io", kind="AccountClaim", namespace="t", name="n")
        assert qualified(explicit).group == "x.io"

    def test_unknown_kind_unchanged(self) -> None:
        assert qualified(ref("Widget", "w")).group == ""


class TestPermissions:
    """Tests for team allocation checks."""

    def test_own_namespace_permitted(self, store: MemoryStore) -> None:
        resolver = CredentialResolver(store)
        assert resolver.is_permitted("team-a", ref("AccountCredentials", "aws"))

    def test_other_team_without_allocation_denied(self, store: MemoryStore) -> None:
        resolver = CredentialResolver(store)
        assert not resolver.is_permitted("team-b", ref("AccountCredentials", "aws"))

    def test_allocation_grants_team(self, store: MemoryStore) -> None:
        store.apply(allocation(account_credentials().ownership(), ["team-b"]))
        resolver = CredentialResolver(store)

        assert resolver.is_permitted("team-b", ref("AccountCredentials", "aws"))
        assert not resolver.is_permitted("team-c", ref("AccountCredentials", "aws"))

    def test_wildcard_allocation(self, store: MemoryStore) -> None:
        store.apply(allocation(ref("AccountCredentials", "aws"), ["*"]))
        assert CredentialResolver(store).is_permitted("anyone", ref("AccountCredentials", "aws"))

    def test_allocation_for_other_resource_ignored(self, store: MemoryStore) -> None:
        store.apply(allocation(ref("AccountCredentials", "other"), ["team-b"]))
        assert not CredentialResolver(store).is_permitted("team-b", ref("AccountCredentials", "aws"))


class TestResolve:
    """Tests for resolving references to credentials."""

    def test_denied_without_allocation(self, store: MemoryStore) -> None:
        """A team without an allocation gets an authorization error."""
        store.apply(account_credentials())
        with pytest.raises(PermissionDeniedError) as exc_info:
            CredentialResolver(store).resolve("team-b", ref("AccountCredentials", "aws"))
        assert str(exc_info.value) == PERMISSION_DENIED_MESSAGE

    def test_inline_keys(self, store: MemoryStore) -> None:
        store.apply(account_credentials())
        creds = CredentialResolver(store).resolve("team-a", ref("AccountCredentials", "aws"))
        assert creds == Credentials("AKIAEXAMPLE", "secret", ACCOUNT_ID)

    def test_secret_keys(self, store: MemoryStore) -> None:
        store.apply(secret("keys", KEYS))
        store.apply(
            AccountCredentials(
                metadata=ObjectMeta(name="aws", namespace="team-a"),
                spec=AccountCredentialsSpec(
                    account_id=ACCOUNT_ID,
                    secret_ref=SecretReference(namespace="team-a", name="keys"),
                ),
            )
        )
        creds = CredentialResolver(store).resolve("team-a", ref("AccountCredentials", "aws"))
        assert creds is not None
        assert creds.access_key_id == "AKIASECRET"
        assert creds.secret_access_key == "from-secret"

    def test_no_key_source(self, store: MemoryStore) -> None:
        """Objects built without validation still fail cleanly."""
        store.apply(
            AccountCredentials(
                metadata=ObjectMeta(name="aws", namespace="team-a"),
                spec=AccountCredentialsSpec.model_construct(account_id=ACCOUNT_ID),
            )
        )
        with pytest.raises(FatalConfigurationError) as exc_info:
            CredentialResolver(store).resolve("team-a", ref("AccountCredentials", "aws"))
        assert "neither inline keys nor a secret" in str(exc_info.value)

    def test_secret_not_in_repr(self) -> None:
        assert "secret" not in repr(Credentials("AKIA", "secret"))

    def test_missing_credentials_resource(self, store: MemoryStore) -> None:
        with pytest.raises(FatalConfigurationError) as exc_info:
            CredentialResolver(store).resolve("team-a", ref("AccountCredentials", "aws"))
        assert "not found" in str(exc_info.value)

    def test_unsupported_kind(self, store: MemoryStore) -> None:
        with pytest.raises(FatalConfigurationError) as exc_info:
            CredentialResolver(store).resolve("team-a", ref("Network", "prod"))
        assert "unsupported credentials kind" in str(exc_info.value)

    def test_claim_not_ready(self, store: MemoryStore) -> None:
        store.apply(account_claim(status=Status.PENDING))
        assert CredentialResolver(store).resolve("team-a", ref("AccountClaim", "sandbox")) is None

    def test_claim_failed(self, store: MemoryStore) -> None:
        store.apply(account_claim(status=Status.FAILURE))
        with pytest.raises(FatalConfigurationError):
            CredentialResolver(store).resolve("team-a", ref("AccountClaim", "sandbox"))

    def test_claim_ready(self, store: MemoryStore) -> None:
        store.apply(secret("sandbox-keys", KEYS))
        store.apply(
            account_claim(
                status=Status.SUCCESS,
                credential_ref=SecretReference(namespace="team-a", name="sandbox-keys"),
            )
        )
        creds = CredentialResolver(store).resolve("team-a", ref("AccountClaim", "sandbox"))
        assert creds == Credentials("AKIASECRET", "from-secret", ACCOUNT_ID)

    def test_claim_ready_without_reference(self, store: MemoryStore) -> None:
        store.apply(account_claim(status=Status.SUCCESS))
        with pytest.raises(FatalConfigurationError) as exc_info:
            CredentialResolver(store).resolve("team-a", ref("AccountClaim", "sandbox"))
        assert "no credential reference" in str(exc_info.value)

    def test_malformed_secret(self, store: MemoryStore) -> None:
        store.apply(secret("sandbox-keys", {"access_key_id": "only"}))
        store.apply(
            account_claim(
                status=Status.SUCCESS,
                credential_ref=SecretReference(namespace="team-a", name="sandbox-keys"),
            )
        )
        with pytest.raises(FatalConfigurationError) as exc_info:
            CredentialResolver(store).resolve("team-a", ref("AccountClaim", "sandbox"))
        assert "malformed" in str(exc_info.value)
