"""Per-event provenance records for audit.

Every handled event is stamped with a record answering:
- "Which resources were silenced for this maintenance window, and when?"
- "Which rule operations failed and were they retryable?"
- "Which build of the handler did it?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .models import EventOutcome, OutcomeStatus

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
HANDLER_VERSION = os.environ.get("HANDLER_VERSION", "dev")


@dataclass
class OutcomeSummary:
    """Counts of rule operation results for one event."""

    created_count: int = 0
    already_active_count: int = 0
    removed_count: int = 0
    already_absent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    @property
    def total_changes(self) -> int:
        """Rules actually created or removed."""
        return self.created_count + self.removed_count

    @classmethod
    def from_outcome(cls, outcome: EventOutcome) -> OutcomeSummary:
        summary = cls()
        for result in outcome.resources:
            match result.status:
                case OutcomeStatus.CREATED:
                    summary.created_count += 1
                case OutcomeStatus.ALREADY_ACTIVE:
                    summary.already_active_count += 1
                case OutcomeStatus.REMOVED:
                    summary.removed_count += 1
                case OutcomeStatus.ALREADY_ABSENT:
                    summary.already_absent_count += 1
                case OutcomeStatus.FAILED:
                    summary.failed_count += 1
                case OutcomeStatus.SKIPPED:
                    summary.skipped_count += 1
        return summary


@dataclass
class EventProvenance:
    """Provenance record for one handled event."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    handler_version: str = HANDLER_VERSION
    instance_id: str = ""

    # Event
    kind: str = ""
    maintenance_id: str = ""
    event_id: str = ""
    correlation_id: str = ""
    subscription_scope: list[str] = field(default_factory=list)

    # Outcome
    status: str = ""
    resources_total: int = 0
    scopes_failed: int = 0
    summary: OutcomeSummary = field(default_factory=OutcomeSummary)
    dry_run: bool = False

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger (Application Insights)."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("WEBSITE_INSTANCE_ID", "")

    def from_outcome(self, outcome: EventOutcome, dry_run: bool = False) -> EventProvenance:
        """Build a provenance record from a finished event outcome."""
        event = outcome.event
        return EventProvenance(
            instance_id=self._instance_id,
            kind=event.kind.value,
            maintenance_id=event.maintenance_id,
            event_id=event.event_id or "",
            correlation_id=event.correlation_id or "",
            subscription_scope=list(event.subscription_scope),
            status=outcome.status.value,
            resources_total=len(outcome.resources),
            scopes_failed=len(outcome.scope_errors),
            summary=OutcomeSummary.from_outcome(outcome),
            dry_run=dry_run,
            duration_seconds=round(outcome.duration_seconds, 3),
        )

    def log_provenance(self, provenance: EventProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.INFO
        if provenance.error or provenance.status == "failed":
            log_level = logging.ERROR
        elif provenance.status == "partial":
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Maintenance event provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "kind": provenance.kind,
                "maintenance_id": provenance.maintenance_id,
                "status": provenance.status,
                "rules_changed": provenance.summary.total_changes,
                "rules_failed": provenance.summary.failed_count,
                "handler_version": provenance.handler_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_rule_change(self, provenance: EventProvenance, resource_id: str, rule_name: str, status: str) -> None:
        """Log one rule change for fine-grained audit."""
        logger.info(
            "Suppression rule change",
            extra={
                "maintenance_id": provenance.maintenance_id,
                "correlation_id": provenance.correlation_id,
                "resource_id": resource_id,
                "rule_name": rule_name,
                "status": status,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
