"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock and builders imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockAWSContext  # noqa: E402
from cluster_operator.config import Config  # noqa: E402
from cluster_operator.store import MemoryStore  # noqa: E402


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def aws():
    """Patched boto3 sessions backed by one in-memory account."""
    with MockAWSContext() as ctx:
        yield ctx


@pytest.fixture
def fast_nat_polling(monkeypatch: pytest.MonkeyPatch) -> None:
    """Poll for new NAT gateways without sleeping."""
    monkeypatch.setattr("cluster_operator.aws.network.NAT_VISIBILITY_POLL_SECONDS", 0)
