"""Configuration management with validation.

All settings are read from environment variables (Function App settings)
and validated at load time so a misconfigured handler fails on startup
rather than halfway through a maintenance window.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100

DEFAULT_MAX_CONCURRENT_BATCHES = 4
MAX_CONCURRENT_BATCHES = 32

DEFAULT_MAX_PARALLEL_OPERATIONS = 8
MAX_PARALLEL_OPERATIONS = 64

DEFAULT_OPERATION_TIMEOUT_SECONDS = 30
MAX_OPERATION_TIMEOUT_SECONDS = 300

DEFAULT_DEDUPE_TTL_SECONDS = 3600
MAX_DEDUPE_LEDGER_ENTRIES = 10000

# Resource Graph bounds
MAX_GRAPH_QUERY_RESULTS = 1000

# Event payload limits
MAX_EVENT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max event payload
MAX_EVENTS_PER_DELIVERY = 5000

# Alert processing rule limits
MAX_RULE_NAME_LENGTH = 260
MAX_RULE_DESCRIPTION_LENGTH = 2048

DEFAULT_RULE_DESCRIPTION = (
    "Suppresses alert notifications for {resource_name} while maintenance "
    "configuration {maintenance_name} is running."
)

# Input validation patterns
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w\._\(\)]{1,90}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    SECURITY: All flags are enforced at runtime:
    - max_resources_per_event: Enforced in MaintenanceHandler.handle()
    - enable_audit_logging: Enforced in SuppressionRuleManager
    """

    # Upper bound on resources touched by one event. A maintenance
    # configuration resolving to more than this is treated as a mistake.
    max_resources_per_event: int = 500

    # Emit a security audit event for every rule created or deleted
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Handler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Resource group (in each affected subscription) holding the rules
    suppression_resource_group: str

    # Identity
    managed_identity_client_id: str | None = None

    # Delivery
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES
    max_parallel_operations: int = DEFAULT_MAX_PARALLEL_OPERATIONS
    dedupe_ttl_seconds: int = DEFAULT_DEDUPE_TTL_SECONDS

    # Timing
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Rule content
    rule_description_template: str = DEFAULT_RULE_DESCRIPTION

    # Behavior
    dry_run: bool = False

    # Security configuration
    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.suppression_resource_group:
            errors.append("SUPPRESSION_RESOURCE_GROUP is required")
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.suppression_resource_group):
            errors.append(
                "SUPPRESSION_RESOURCE_GROUP is not a valid resource group name: "
                f"{self.suppression_resource_group}"
            )

        if not (1 <= self.batch_size <= MAX_BATCH_SIZE):
            errors.append(f"EVENT_BATCH_SIZE must be between 1 and {MAX_BATCH_SIZE}")

        if not (1 <= self.max_concurrent_batches <= MAX_CONCURRENT_BATCHES):
            errors.append(
                f"MAX_CONCURRENT_BATCHES must be between 1 and {MAX_CONCURRENT_BATCHES}"
            )

        if not (1 <= self.max_parallel_operations <= MAX_PARALLEL_OPERATIONS):
            errors.append(
                f"MAX_PARALLEL_OPERATIONS must be between 1 and {MAX_PARALLEL_OPERATIONS}"
            )

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"OPERATION_TIMEOUT must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if self.dedupe_ttl_seconds < 0:
            errors.append("DEDUPE_TTL cannot be negative")

        if not self.rule_description_template:
            errors.append("RULE_DESCRIPTION cannot be empty")
        elif len(self.rule_description_template) > MAX_RULE_DESCRIPTION_LENGTH:
            errors.append(
                f"RULE_DESCRIPTION exceeds maximum length of {MAX_RULE_DESCRIPTION_LENGTH}"
            )
        else:
            try:
                self.rule_description_template.format(
                    resource_name="x", maintenance_name="x", maintenance_id="x"
                )
            except (KeyError, IndexError, ValueError) as e:
                errors.append(f"RULE_DESCRIPTION has an invalid placeholder: {e}")

        if self.security.max_resources_per_event < 1:
            errors.append("max_resources_per_event must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SUPPRESSION_RESOURCE_GROUP: Resource group that holds the rules
            AZURE_CLIENT_ID: Client ID of the user-assigned managed identity
            EVENT_BATCH_SIZE: Events per handler batch (default: 1)
            MAX_CONCURRENT_BATCHES: Batches dispatched in parallel (default: 4)
            MAX_PARALLEL_OPERATIONS: Rule operations in flight per event (default: 8)
            OPERATION_TIMEOUT: Timeout per Azure call in seconds (default: 30)
            DEDUPE_TTL: Seconds a converged event is remembered (default: 3600)
            RULE_DESCRIPTION: Description template for created rules
            DRY_RUN: If "true", log intended rule changes without applying

        Security Variables:
            MAX_RESOURCES_PER_EVENT: Max resources per event (default: 500)
            ENABLE_AUDIT_LOGGING: Enable rule change audit events (default: true)
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
            suppression_resource_group=os.environ.get("SUPPRESSION_RESOURCE_GROUP", ""),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            batch_size=get_int("EVENT_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            max_concurrent_batches=get_int(
                "MAX_CONCURRENT_BATCHES", DEFAULT_MAX_CONCURRENT_BATCHES
            ),
            max_parallel_operations=get_int(
                "MAX_PARALLEL_OPERATIONS", DEFAULT_MAX_PARALLEL_OPERATIONS
            ),
            dedupe_ttl_seconds=get_int("DEDUPE_TTL", DEFAULT_DEDUPE_TTL_SECONDS),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            rule_description_template=os.environ.get(
                "RULE_DESCRIPTION", DEFAULT_RULE_DESCRIPTION
            ),
            dry_run=get_bool("DRY_RUN", False),
            security=SecurityConfig(
                max_resources_per_event=get_int("MAX_RESOURCES_PER_EVENT", 500),
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
