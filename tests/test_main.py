"""Tests for logging setup and the operator entry point."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from pathlib import Path
from unittest import mock

import pytest
import yaml

from cluster_operator.config import Config
from cluster_operator.main import JsonFormatter, main, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg: str = "hello %s", args: tuple = ("world",), **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("cluster_operator.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_base_fields(self) -> None:
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["logger"] == "cluster_operator.test"
        assert data["timestamp"].endswith("Z")

    def test_extras_included(self) -> None:
        record = make_record(key="Network/team-a/prod", requeue_after=10)
        data = json.loads(JsonFormatter().format(record))

        assert data["key"] == "Network/team-a/prod"
        assert data["requeue_after"] == 10

    def test_reserved_attributes_excluded(self) -> None:
        data = json.loads(JsonFormatter().format(make_record()))
        for attr in ("msg", "args", "levelno", "pathname", "exc_info"):
            assert attr not in data

    def test_unserializable_values_stringified(self) -> None:
        data = json.loads(JsonFormatter().format(make_record(path=Path("/manifests"))))
        assert data["path"] == "/manifests"

    def test_exception(self) -> None:
        try:
            raise ValueError("bad cidr")
        except ValueError:
            record = logging.LogRecord(
                "cluster_operator.test", logging.ERROR, __file__, 10, "failed", (), sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad cidr" in data["exception"]


class TestSetupLogging:
    """Tests for root logger configuration."""

    def test_json_handler(self) -> None:
        setup_logging("DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[-1].formatter, JsonFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_plain_handler(self) -> None:
        setup_logging("INFO", json_logs=False)
        assert not isinstance(logging.getLogger().handlers[-1].formatter, JsonFormatter)


class TestMain:
    """Tests for the async entry point."""

    @pytest.mark.asyncio
    async def test_invalid_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESYNC_PERIOD", "often")
        assert await main() == 1

    @pytest.mark.asyncio
    async def test_invalid_manifests(self, tmp_path: Path) -> None:
        (tmp_path / "bad.yaml").write_text("kind: Network\nmetadata: {name: prod, namespace: team-a}\n")
        assert await main(Config(manifests_dir=tmp_path)) == 1

    @pytest.mark.asyncio
    async def test_runs_manager(self, tmp_path: Path) -> None:
        manifest = {
            "kind": "AccountCredentials",
            "metadata": {"name": "aws", "namespace": "team-a"},
            "spec": {"accountID": "123456789012", "accessKeyID": "AKIA", "secretAccessKey": "s"},
        }
        (tmp_path / "creds.yaml").write_text(yaml.safe_dump(manifest))

        with mock.patch("cluster_operator.main.Manager.run", new=mock.AsyncMock()) as run:
            assert await main(Config(manifests_dir=tmp_path)) == 0

        run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_manager_crash(self) -> None:
        run = mock.AsyncMock(side_effect=RuntimeError("loop died"))
        with mock.patch("cluster_operator.main.Manager.run", new=run):
            assert await main(Config()) == 1
