"""boto3 clients scoped to one reconciliation pass.

Credentials may rotate and several resources reconcile concurrently, so a
session is built from explicitly passed credentials every pass and never
shared between passes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config as BotoConfig

if TYPE_CHECKING:
    from ..credentials import Credentials

# Standard retry mode already backs off on throttling inside a single call
BOTO_CONFIG = BotoConfig(
    retries={"max_attempts": 5, "mode": "standard"},
    connect_timeout=10,
    read_timeout=60,
)


class AWSClients:
    """Lazily created service clients sharing one session."""

    def __init__(self, credentials: Credentials, region: str) -> None:
        self.region = region
        self.account_id = credentials.account_id
        self._session = boto3.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            region_name=region,
        )
        self._clients: dict[str, Any] = {}

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self._session.client(
                service, region_name=self.region, config=BOTO_CONFIG
            )
        return self._clients[service]

    @property
    def ec2(self) -> Any:
        return self.client("ec2")

    @property
    def eks(self) -> Any:
        return self.client("eks")

    @property
    def iam(self) -> Any:
        return self.client("iam")

    @property
    def sts(self) -> Any:
        return self.client("sts")
