"""Data model for maintenance events, target resources and outcomes.

These models provide:
1. Validation of inbound events at the boundary (fail fast, fail loudly)
2. Normalisation of the Event Grid and native envelope shapes
3. Per-resource and per-event outcome records
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from .config import VALID_SUBSCRIPTION_ID_PATTERN

# =============================================================================
# Events
# =============================================================================


class MaintenanceEventKind(str, Enum):
    """Lifecycle notifications emitted for a maintenance window."""

    STARTING = "MaintenanceStarting"
    COMPLETED = "MaintenanceCompleted"


# Event Grid system topic event types for Microsoft.Maintenance
EVENT_GRID_EVENT_TYPES: dict[str, MaintenanceEventKind] = {
    "Microsoft.Maintenance.PreMaintenanceEvent": MaintenanceEventKind.STARTING,
    "Microsoft.Maintenance.PostMaintenanceEvent": MaintenanceEventKind.COMPLETED,
}

MAX_MAINTENANCE_ID_LENGTH = 1024

# Characters that would break out of a KQL string literal
FORBIDDEN_ID_CHARACTERS = ("'", '"', "\\", "\n", "\r", "\t")

MAINTENANCE_CONFIGURATION_ID_PATTERN = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)/resourcegroups/[^/]+"
    r"/providers/microsoft\.maintenance/maintenanceconfigurations/(?P<name>[^/]+)$",
    re.IGNORECASE,
)


def validate_maintenance_id(value: str) -> str:
    """Normalise a maintenance configuration ID for use in a KQL literal.

    Raises:
        ValueError: If the ID is blank, too long or contains quote, backslash
            or control characters.
    """
    value = value.strip()
    if not value:
        raise ValueError("maintenanceId cannot be blank")
    if len(value) > MAX_MAINTENANCE_ID_LENGTH:
        raise ValueError(f"maintenanceId exceeds {MAX_MAINTENANCE_ID_LENGTH} characters")
    if any(c in value for c in FORBIDDEN_ID_CHARACTERS):
        raise ValueError("maintenanceId contains forbidden characters")
    return value


class MaintenanceEvent(BaseModel):
    """One maintenance lifecycle notification.

    Accepts the native shape ``{eventType, maintenanceId, subscriptionScope}``
    directly; Event Grid envelopes go through ``from_envelope``.
    """

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    kind: MaintenanceEventKind = Field(alias="eventType")
    maintenance_id: str = Field(alias="maintenanceId", min_length=1)
    subscription_scope: tuple[str, ...] = Field(
        default=(), alias="subscriptionScope", validate_default=True
    )
    event_id: str | None = Field(None, alias="id")
    correlation_id: str | None = Field(None, alias="correlationId")

    @field_validator("maintenance_id")
    @classmethod
    def normalize_maintenance_id(cls, v: str) -> str:
        return validate_maintenance_id(v)

    @field_validator("subscription_scope", mode="before")
    @classmethod
    def validate_subscription_scope(cls, v: Any, info: ValidationInfo) -> tuple[str, ...]:
        if v is None:
            v = []
        if isinstance(v, str):
            v = [v]

        scopes: list[str] = []
        for raw in v:
            if not isinstance(raw, str):
                raise ValueError(f"subscription id must be a string: {raw!r}")
            sub = raw.strip().lower()
            if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, sub):
                raise ValueError(f"subscription id must be a valid GUID: {raw}")
            if sub not in scopes:
                scopes.append(sub)

        # Fall back to the subscription that owns the maintenance configuration
        if not scopes:
            maintenance_id = info.data.get("maintenance_id")
            owner = subscription_from_maintenance_id(maintenance_id) if maintenance_id else None
            if owner is None:
                raise ValueError("subscriptionScope is empty and cannot be derived")
            scopes.append(owner)

        return tuple(scopes)

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> MaintenanceEvent:
        """Build an event from either supported envelope shape.

        Raises:
            pydantic.ValidationError: If the envelope is malformed.
        """
        event_type = envelope.get("eventType")
        kind = EVENT_GRID_EVENT_TYPES.get(event_type) if isinstance(event_type, str) else None
        if kind is None:
            return cls.model_validate(envelope)

        data = envelope.get("data") or {}
        return cls.model_validate(
            {
                "eventType": kind,
                "maintenanceId": data.get("MaintenanceConfigurationId", ""),
                "subscriptionScope": data.get("ResourceSubscriptionIds") or [],
                "id": envelope.get("id"),
                "correlationId": data.get("CorrelationId"),
            }
        )

    @property
    def maintenance_name(self) -> str:
        """Short name of the maintenance configuration."""
        return maintenance_name_from_id(self.maintenance_id)

    @property
    def dedupe_key(self) -> tuple[str, MaintenanceEventKind, str]:
        """Identity used to recognise redelivered events."""
        return (self.maintenance_id.lower(), self.kind, self.correlation_id or "")


def maintenance_name_from_id(maintenance_id: str) -> str:
    """Last segment of a maintenance configuration ID (or the ID itself)."""
    match = MAINTENANCE_CONFIGURATION_ID_PATTERN.match(maintenance_id.strip())
    if match:
        return match.group("name")
    return maintenance_id.rstrip("/").rsplit("/", 1)[-1]


def subscription_from_maintenance_id(maintenance_id: str) -> str | None:
    """Extract the owning subscription from a maintenance configuration ID."""
    match = MAINTENANCE_CONFIGURATION_ID_PATTERN.match(maintenance_id.strip())
    if not match:
        return None
    sub = match.group("subscription").lower()
    if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, sub):
        return None
    return sub


# =============================================================================
# Target resources
# =============================================================================


@dataclass(frozen=True, eq=False)
class TargetResource:
    """A resource bound to a maintenance configuration.

    Equality and hashing use the lower-cased resource ID because ARM IDs
    come back from different APIs with inconsistent casing.

    Attributes:
        resource_id: Full ARM resource ID
        name: Resource name (last ID segment)
        resource_group: Resource group name
        subscription_id: Subscription the resource was discovered under
    """

    resource_id: str
    name: str
    resource_group: str
    subscription_id: str

    @classmethod
    def from_resource_id(cls, resource_id: str, subscription_id: str | None = None) -> TargetResource:
        """Derive name, resource group and subscription from an ARM ID.

        Raises:
            ValueError: If the ID is not a resource-group scoped ARM ID.
        """
        segments = [s for s in resource_id.strip().split("/") if s]
        lowered = [s.lower() for s in segments]

        try:
            sub_index = lowered.index("subscriptions")
            rg_index = lowered.index("resourcegroups")
        except ValueError as e:
            raise ValueError(f"Not a resource-group scoped resource ID: {resource_id}") from e

        if rg_index + 1 >= len(segments) or "providers" not in lowered[rg_index:]:
            raise ValueError(f"Not a resource-group scoped resource ID: {resource_id}")

        return cls(
            resource_id=resource_id.strip(),
            name=segments[-1],
            resource_group=segments[rg_index + 1],
            subscription_id=(subscription_id or segments[sub_index + 1]).lower(),
        )

    @property
    def key(self) -> str:
        return self.resource_id.lower()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TargetResource):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


# =============================================================================
# Suppression rules
# =============================================================================


class RuleState(str, Enum):
    """Lifecycle state of a suppression rule."""

    ABSENT = "absent"
    ACTIVE = "active"
    # Present but disabled or scoped to something else
    INACTIVE = "inactive"


@dataclass
class SuppressionRule:
    """An alert processing rule silencing one resource."""

    name: str
    scope: str
    state: RuleState = RuleState.ABSENT
    maintenance_id: str | None = None


# =============================================================================
# Outcomes
# =============================================================================


class OutcomeStatus(str, Enum):
    """Result of one rule operation."""

    CREATED = "created"
    ALREADY_ACTIVE = "already_active"
    REMOVED = "removed"
    ALREADY_ABSENT = "already_absent"
    FAILED = "failed"
    SKIPPED = "skipped"


SUCCESS_STATUSES = frozenset(
    {
        OutcomeStatus.CREATED,
        OutcomeStatus.ALREADY_ACTIVE,
        OutcomeStatus.REMOVED,
        OutcomeStatus.ALREADY_ABSENT,
    }
)


class EventStatus(str, Enum):
    """Overall result of handling one event."""

    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass
class ResourceOutcome:
    """Outcome of ensuring the suppression state of one resource."""

    resource: TargetResource
    rule_name: str
    status: OutcomeStatus
    error: str | None = None
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource.resource_id,
            "rule_name": self.rule_name,
            "status": self.status.value,
            "error": self.error,
            "retryable": self.retryable,
        }


@dataclass
class ScopeFailure:
    """A subscription scope that could not be resolved."""

    scope: str
    error: str
    retryable: bool = True


@dataclass
class EventOutcome:
    """Accumulated outcome of one event.

    A partial outcome (some resources or scopes failed) is distinguishable
    from total failure and from success.
    """

    event: MaintenanceEvent
    resources: list[ResourceOutcome] = field(default_factory=list)
    scope_errors: list[ScopeFailure] = field(default_factory=list)
    duration_seconds: float = 0.0
    duplicate: bool = False

    @property
    def failed_resources(self) -> list[ResourceOutcome]:
        return [r for r in self.resources if r.status == OutcomeStatus.FAILED]

    @property
    def succeeded_resources(self) -> list[ResourceOutcome]:
        return [r for r in self.resources if r.succeeded]

    @property
    def skipped_resources(self) -> list[ResourceOutcome]:
        return [r for r in self.resources if r.status == OutcomeStatus.SKIPPED]

    @property
    def status(self) -> EventStatus:
        if self.duplicate:
            return EventStatus.DUPLICATE
        failed = len(self.failed_resources)
        if self.resources and failed == len(self.resources):
            return EventStatus.FAILED
        if failed or self.skipped_resources or self.scope_errors:
            return EventStatus.PARTIAL
        return EventStatus.SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.status in (EventStatus.SUCCEEDED, EventStatus.DUPLICATE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.event.kind.value,
            "maintenance_id": self.event.maintenance_id,
            "status": self.status.value,
            "resources": [r.to_dict() for r in self.resources],
            "scope_errors": [
                {"scope": s.scope, "error": s.error, "retryable": s.retryable}
                for s in self.scope_errors
            ],
            "duration_seconds": round(self.duration_seconds, 3),
        }
