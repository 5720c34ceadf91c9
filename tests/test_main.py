"""Tests for the handler entry point and structured logging."""

from __future__ import annotations

import io
import json
import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from azure_mock import MockAzureContext, vm_resource_id
from conftest import MAINTENANCE_ID, SUB1, SUPPRESSION_RESOURCE_GROUP

from suppressor.main import JsonFormatter, main
from suppressor.router import SUBSCRIPTION_VALIDATION_EVENT

ENV = {"SUPPRESSION_RESOURCE_GROUP": SUPPRESSION_RESOURCE_GROUP}


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    with patch("suppressor.main.setup_logging"):
        yield


def _write(tmp_path: Path, payload: object) -> str:
    path = tmp_path / "delivery.json"
    path.write_text(json.dumps(payload))
    return str(path)


def _start_event() -> dict[str, object]:
    return {
        "eventType": "MaintenanceStarting",
        "maintenanceId": MAINTENANCE_ID,
        "subscriptionScope": [SUB1],
    }


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "suppressor.handler", logging.INFO, __file__, 1, "Handling %s", ("event",), None
        )
        record.maintenance_id = "m1"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Handling event"
        assert data["level"] == "INFO"
        assert data["logger"] == "suppressor.handler"
        assert data["maintenance_id"] == "m1"
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data

    def test_serializes_exceptions(self) -> None:
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord(
                "suppressor", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad" in data["exception"]


class TestMain:
    """Tests for main()."""

    @pytest.mark.asyncio
    async def test_successful_delivery(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _write(tmp_path, [_start_event()])

        with patch.dict(os.environ, ENV, clear=True), MockAzureContext() as ctx:
            ctx.graph.assign(vm_resource_id("vm-a"), MAINTENANCE_ID)
            exit_code = await main([path])

            assert ctx.alerts.rule_names() == ["apr-maint-vm-a"]

        assert exit_code == 0
        outcomes = json.loads(capsys.readouterr().out)
        assert outcomes[0]["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_failed_delivery(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = _write(tmp_path, [_start_event()])

        with patch.dict(os.environ, ENV, clear=True), MockAzureContext() as ctx:
            ctx.graph.fail_subscription(SUB1)
            exit_code = await main([path])

        assert exit_code == 1
        outcomes = json.loads(capsys.readouterr().out)
        assert outcomes[0]["scope_errors"][0]["scope"] == SUB1

    @pytest.mark.asyncio
    async def test_subscription_validation(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _write(
            tmp_path,
            [{"eventType": SUBSCRIPTION_VALIDATION_EVENT, "data": {"validationCode": "code-1"}}],
        )

        with patch.dict(os.environ, ENV, clear=True):
            exit_code = await main([path])

        assert exit_code == 0
        assert json.loads(capsys.readouterr().out) == {"validationResponse": "code-1"}

    @pytest.mark.asyncio
    async def test_security_violation(self, tmp_path: Path) -> None:
        path = _write(tmp_path, [_start_event()])
        env = {**ENV, "AZURE_CLIENT_SECRET": "hunter2"}

        with patch.dict(os.environ, env, clear=True):
            assert await main([path]) == 2

    @pytest.mark.asyncio
    async def test_configuration_error(self, tmp_path: Path) -> None:
        path = _write(tmp_path, [_start_event()])

        with patch.dict(os.environ, {}, clear=True):
            assert await main([path]) == 1

    @pytest.mark.asyncio
    async def test_unreadable_delivery(self, tmp_path: Path) -> None:
        with patch.dict(os.environ, ENV, clear=True):
            assert await main([str(tmp_path / "missing.json")]) == 1

    @pytest.mark.asyncio
    async def test_malformed_event(self, tmp_path: Path) -> None:
        path = _write(tmp_path, [{"eventType": "MaintenanceStarting"}])

        with patch.dict(os.environ, ENV, clear=True), MockAzureContext():
            assert await main([path]) == 1

    @pytest.mark.asyncio
    async def test_invalid_utf8_delivery(self, tmp_path: Path) -> None:
        path = tmp_path / "delivery.json"
        path.write_bytes(b'[{"eventType": "MaintenanceStarting", "maintenanceId": "m\xff"}]')

        with patch.dict(os.environ, ENV, clear=True):
            assert await main([str(path)]) == 1

    @pytest.mark.asyncio
    async def test_invalid_utf8_on_stdin(self) -> None:
        stdin = io.TextIOWrapper(io.BytesIO(b'[{"maintenanceId": "m\xff"}]'), encoding="utf-8")

        with patch.dict(os.environ, ENV, clear=True), patch("sys.stdin", stdin):
            assert await main([]) == 1
