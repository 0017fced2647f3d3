"""Configuration management with validation.

Invalid settings are rejected when the configuration is built so the
operator never starts half-configured.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REGION = "eu-west-2"

DEFAULT_RESYNC_PERIOD_SECONDS = 600
MIN_RESYNC_PERIOD_SECONDS = 60
MAX_RESYNC_PERIOD_SECONDS = 86400

# Credential-type resources change rarely, resync on an hours scale
DEFAULT_CREDENTIALS_RESYNC_PERIOD_SECONDS = 6 * 3600

DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 64

DEFAULT_PASS_TIMEOUT_SECONDS = 300
DEFAULT_NAT_VISIBILITY_TIMEOUT_SECONDS = 300
NAT_VISIBILITY_POLL_SECONDS = 5

# Requeue intervals used by the ensure-steps
TRANSIENT_REQUEUE_SECONDS = 15
CREDENTIALS_NOT_READY_REQUEUE_SECONDS = 30
ROLE_PROPAGATION_REQUEUE_SECONDS = 10
NETWORK_POLL_SECONDS = 10
NETWORK_DELETE_POLL_SECONDS = 15
CLUSTER_POLL_SECONDS = 30
NODEGROUP_POLL_SECONDS = 30
DEPENDENTS_POLL_SECONDS = 30
PARENT_CLUSTER_POLL_SECONDS = 60

# Consecutive failures for one key before the dispatcher escalates logging
MAX_CONSECUTIVE_FAILURES = 5

# Security constraints - enforced limits on manifest input
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_MANIFEST_FILES = 1000

VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    manifests_dir: Path | None = None

    # Cloud defaults
    default_region: str = DEFAULT_REGION

    # Timing
    resync_period_seconds: int = DEFAULT_RESYNC_PERIOD_SECONDS
    credentials_resync_period_seconds: int = DEFAULT_CREDENTIALS_RESYNC_PERIOD_SECONDS
    pass_timeout_seconds: int = DEFAULT_PASS_TIMEOUT_SECONDS
    nat_visibility_timeout_seconds: int = DEFAULT_NAT_VISIBILITY_TIMEOUT_SECONDS

    # Concurrency
    max_workers: int = DEFAULT_MAX_WORKERS

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not re.match(VALID_REGION_PATTERN, self.default_region):
            errors.append(
                f"AWS_DEFAULT_REGION must be a valid AWS region: {self.default_region}"
            )

        if not (
            MIN_RESYNC_PERIOD_SECONDS <= self.resync_period_seconds <= MAX_RESYNC_PERIOD_SECONDS
        ):
            errors.append(
                f"RESYNC_PERIOD must be between {MIN_RESYNC_PERIOD_SECONDS} "
                f"and {MAX_RESYNC_PERIOD_SECONDS} seconds"
            )

        if self.credentials_resync_period_seconds < self.resync_period_seconds:
            errors.append("CREDENTIALS_RESYNC_PERIOD cannot be shorter than RESYNC_PERIOD")

        if not (1 <= self.max_workers <= MAX_WORKERS_LIMIT):
            errors.append(f"MAX_WORKERS must be between 1 and {MAX_WORKERS_LIMIT}")

        if self.pass_timeout_seconds < 1:
            errors.append("PASS_TIMEOUT must be at least 1 second")

        if self.nat_visibility_timeout_seconds < NAT_VISIBILITY_POLL_SECONDS:
            errors.append(
                f"NAT_VISIBILITY_TIMEOUT must be at least {NAT_VISIBILITY_POLL_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if self.manifests_dir is not None and not self.manifests_dir.is_dir():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def resync_period_for(self, kind: str) -> int:
        """Return the resync period for a resource kind."""
        if kind == "AccountCredentials":
            return self.credentials_resync_period_seconds
        return self.resync_period_seconds

    @classmethod
    def from_env(cls, manifests_dir: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Args:
            manifests_dir: Overrides MANIFESTS_DIR when given.

        Environment Variables:
            MANIFESTS_DIR: Directory of YAML manifests to load (default: /manifests)
            AWS_DEFAULT_REGION: Region used when a resource omits one (default: eu-west-2)
            RESYNC_PERIOD: Seconds between periodic re-reconciles (default: 600)
            CREDENTIALS_RESYNC_PERIOD: Resync period for credential resources (default: 21600)
            PASS_TIMEOUT: Deadline for a single reconciliation pass (default: 300)
            NAT_VISIBILITY_TIMEOUT: Bound on waiting for a new NAT gateway (default: 300)
            MAX_WORKERS: Resources reconciled concurrently (default: 4)
            LOG_LEVEL: Root log level (default: INFO)
            JSON_LOGS: If "false", log human readable lines (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            manifests_dir=manifests_dir or Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            default_region=os.environ.get("AWS_DEFAULT_REGION", DEFAULT_REGION),
            resync_period_seconds=get_int("RESYNC_PERIOD", DEFAULT_RESYNC_PERIOD_SECONDS),
            credentials_resync_period_seconds=get_int(
                "CREDENTIALS_RESYNC_PERIOD", DEFAULT_CREDENTIALS_RESYNC_PERIOD_SECONDS
            ),
            pass_timeout_seconds=get_int("PASS_TIMEOUT", DEFAULT_PASS_TIMEOUT_SECONDS),
            nat_visibility_timeout_seconds=get_int(
                "NAT_VISIBILITY_TIMEOUT", DEFAULT_NAT_VISIBILITY_TIMEOUT_SECONDS
            ),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            json_logs=get_bool("JSON_LOGS", True),
        )
