"""Tests for per-event provenance records."""

from __future__ import annotations

from datetime import UTC
from unittest.mock import patch

import pytest
from conftest import MAINTENANCE_ID, SUB1

from suppressor.models import (
    EventOutcome,
    MaintenanceEvent,
    MaintenanceEventKind,
    OutcomeStatus,
    ResourceOutcome,
    ScopeFailure,
    TargetResource,
)
from suppressor.provenance import (
    HANDLER_VERSION,
    EventProvenance,
    OutcomeSummary,
    ProvenanceLogger,
    get_provenance_logger,
)

VM = f"/subscriptions/{SUB1}/resourceGroups/rg-web/providers/Microsoft.Compute/virtualMachines/vm"


def _outcome(*statuses: OutcomeStatus) -> EventOutcome:
    event = MaintenanceEvent(
        kind=MaintenanceEventKind.STARTING,
        maintenance_id=MAINTENANCE_ID,
        subscription_scope=(SUB1,),
        id="evt-1",
        correlationId="corr-1",
    )
    return EventOutcome(
        event=event,
        resources=[
            ResourceOutcome(TargetResource.from_resource_id(f"{VM}-{i}"), f"apr-maint-vm-{i}", s)
            for i, s in enumerate(statuses)
        ],
        duration_seconds=1.23456,
    )


class TestOutcomeSummary:
    """Tests for OutcomeSummary."""

    def test_empty(self) -> None:
        assert OutcomeSummary().total_changes == 0

    def test_counts_every_status(self) -> None:
        summary = OutcomeSummary.from_outcome(
            _outcome(
                OutcomeStatus.CREATED,
                OutcomeStatus.CREATED,
                OutcomeStatus.ALREADY_ACTIVE,
                OutcomeStatus.FAILED,
                OutcomeStatus.SKIPPED,
            )
        )

        assert summary.created_count == 2
        assert summary.already_active_count == 1
        assert summary.failed_count == 1
        assert summary.skipped_count == 1
        assert summary.total_changes == 2

    def test_noop_results_are_not_changes(self) -> None:
        summary = OutcomeSummary(already_active_count=4, already_absent_count=3, removed_count=1)
        assert summary.total_changes == 1


class TestEventProvenance:
    """Tests for EventProvenance."""

    def test_default_values(self) -> None:
        provenance = EventProvenance()

        assert provenance.handler_version == HANDLER_VERSION
        assert provenance.dry_run is False
        assert provenance.error is None

    def test_timestamp_is_utc(self) -> None:
        assert EventProvenance().timestamp.tzinfo is UTC

    def test_to_dict(self) -> None:
        result = EventProvenance(kind="MaintenanceStarting", maintenance_id="m1").to_dict()

        assert result["kind"] == "MaintenanceStarting"
        assert isinstance(result["timestamp"], str)
        assert result["summary"]["created_count"] == 0


class TestProvenanceLogger:
    """Tests for ProvenanceLogger."""

    def test_from_outcome(self) -> None:
        outcome = _outcome(OutcomeStatus.CREATED, OutcomeStatus.FAILED)
        outcome.scope_errors.append(ScopeFailure(scope=SUB1, error="throttled"))

        record = ProvenanceLogger().from_outcome(outcome, dry_run=True)

        assert record.kind == "MaintenanceStarting"
        assert record.maintenance_id == MAINTENANCE_ID
        assert record.event_id == "evt-1"
        assert record.correlation_id == "corr-1"
        assert record.subscription_scope == [SUB1]
        assert record.status == "partial"
        assert record.resources_total == 2
        assert record.scopes_failed == 1
        assert record.dry_run is True
        assert record.duration_seconds == 1.235

    def test_instance_id_from_environment(self) -> None:
        with patch.dict("os.environ", {"WEBSITE_INSTANCE_ID": "instance-001"}):
            record = ProvenanceLogger().from_outcome(_outcome())

        assert record.instance_id == "instance-001"

    @pytest.mark.parametrize(
        ("status", "error", "level"),
        [
            ("succeeded", None, "INFO"),
            ("partial", None, "WARNING"),
            ("failed", None, "ERROR"),
            ("succeeded", "boom", "ERROR"),
        ],
    )
    def test_log_level_follows_status(
        self, status: str, error: str | None, level: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        provenance = EventProvenance(status=status, error=error)

        with caplog.at_level("INFO", logger="suppressor.provenance"):
            ProvenanceLogger().log_provenance(provenance)

        assert caplog.records[-1].levelname == level
        assert caplog.records[-1].getMessage() == "Maintenance event provenance"

    def test_flattened_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = ProvenanceLogger()
        record = logger.from_outcome(_outcome(OutcomeStatus.CREATED, OutcomeStatus.FAILED))

        with caplog.at_level("INFO", logger="suppressor.provenance"):
            logger.log_provenance(record)

        logged = caplog.records[-1]
        assert logged.maintenance_id == MAINTENANCE_ID
        assert logged.rules_changed == 1
        assert logged.rules_failed == 1
        assert logged.provenance["summary"]["created_count"] == 1

    def test_log_rule_change(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = ProvenanceLogger()
        record = logger.from_outcome(_outcome())

        with caplog.at_level("INFO", logger="suppressor.provenance"):
            logger.log_rule_change(record, VM, "apr-maint-vm", "created")

        logged = caplog.records[-1]
        assert logged.getMessage() == "Suppression rule change"
        assert logged.rule_name == "apr-maint-vm"
        assert logged.correlation_id == "corr-1"


class TestGetProvenanceLogger:
    """Tests for get_provenance_logger singleton function."""

    def test_returns_logger(self) -> None:
        assert isinstance(get_provenance_logger(), ProvenanceLogger)

    def test_singleton_pattern(self) -> None:
        assert get_provenance_logger() is get_provenance_logger()
