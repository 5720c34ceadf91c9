"""Tests for event payload loading."""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import patch

import pytest

from suppressor.errors import EventLoadError
from suppressor.event_loader import load_payload, load_stream, parse_payload


class TestParsePayload:
    """Tests for parse_payload."""

    def test_json_array(self) -> None:
        payload = parse_payload('[{"eventType": "MaintenanceStarting", "maintenanceId": "m1"}]')

        assert payload == [{"eventType": "MaintenanceStarting", "maintenanceId": "m1"}]

    def test_yaml_object(self) -> None:
        payload = parse_payload(
            "eventType: MaintenanceCompleted\n"
            "maintenanceId: m1\n"
            "subscriptionScope:\n"
            "  - 00000000-0000-0000-0000-000000000001\n"
        )

        assert payload["eventType"] == "MaintenanceCompleted"
        assert payload["subscriptionScope"] == ["00000000-0000-0000-0000-000000000001"]

    def test_scalar_rejected(self) -> None:
        with pytest.raises(EventLoadError) as exc_info:
            parse_payload("just a string", "stdin")

        assert "object or a list" in str(exc_info.value)

    def test_empty_rejected(self) -> None:
        with pytest.raises(EventLoadError):
            parse_payload("")

    def test_malformed_rejected(self) -> None:
        with pytest.raises(EventLoadError) as exc_info:
            parse_payload('{"eventType": [unclosed')

        assert "Invalid JSON/YAML" in str(exc_info.value)

    def test_oversized_rejected(self) -> None:
        with patch("suppressor.event_loader.MAX_EVENT_FILE_SIZE_BYTES", 10):
            with pytest.raises(EventLoadError) as exc_info:
                parse_payload('{"eventType": "MaintenanceStarting"}')

        assert "exceeds maximum size" in str(exc_info.value)


class TestLoadPayload:
    """Tests for load_payload."""

    def test_load_file(self, tmp_path: Path) -> None:
        path = tmp_path / "event.json"
        path.write_text('{"eventType": "MaintenanceStarting", "maintenanceId": "m1"}')

        assert load_payload(path)["maintenanceId"] == "m1"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(EventLoadError) as exc_info:
            load_payload(tmp_path / "missing.json")

        assert "not found" in str(exc_info.value)

    def test_oversized_file_not_read(self, tmp_path: Path) -> None:
        path = tmp_path / "big.json"
        path.write_text("[" + ",".join(["{}"] * 100) + "]")

        with patch("suppressor.event_loader.MAX_EVENT_FILE_SIZE_BYTES", 50):
            with pytest.raises(EventLoadError) as exc_info:
                load_payload(path)

        assert "exceeds maximum size" in str(exc_info.value)

    def test_invalid_utf8_file(self, tmp_path: Path) -> None:
        path = tmp_path / "latin1.json"
        path.write_bytes(b'[{"maintenanceId": "m\xff"}]')

        with pytest.raises(EventLoadError) as exc_info:
            load_payload(path)

        assert "not valid UTF-8" in str(exc_info.value)


class TestLoadStream:
    """Tests for load_stream."""

    def test_load_stream(self) -> None:
        stream = io.StringIO('{"eventType": "MaintenanceStarting", "maintenanceId": "m1"}')

        assert load_stream(stream)["maintenanceId"] == "m1"

    def test_invalid_utf8_stream(self) -> None:
        stream = io.TextIOWrapper(io.BytesIO(b'{"maintenanceId": "m\xff"}'), encoding="utf-8")

        with pytest.raises(EventLoadError) as exc_info:
            load_stream(stream)

        assert "<stdin>" in str(exc_info.value)
