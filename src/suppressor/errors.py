"""Error taxonomy for the suppression workflow.

Scope- and resource-level errors are recorded on the event outcome and
logged. Only event-level and delivery-level errors are raised to the
caller so that Event Grid can redeliver.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from azure.core.exceptions import AzureError, ClientAuthenticationError, HttpResponseError

if TYPE_CHECKING:
    from .models import EventOutcome

# HTTP status codes worth a redelivery
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


def is_retryable(error: BaseException) -> bool:
    """Classify an Azure SDK (or timeout) error as transient or permanent."""
    if isinstance(error, TimeoutError):
        return True
    if isinstance(error, ClientAuthenticationError):
        return False
    if isinstance(error, HttpResponseError):
        status = error.status_code
        return status is None or status in RETRYABLE_STATUS_CODES
    return isinstance(error, AzureError)


class SuppressorError(Exception):
    """Base class for all handler errors."""

    pass


class ResolveError(SuppressorError):
    """A single subscription scope could not be queried.

    Attributes:
        scope: Subscription ID that failed.
        retryable: Whether a redelivery could succeed (timeouts, throttling).
    """

    def __init__(self, scope: str, message: str, *, retryable: bool = True) -> None:
        super().__init__(f"Resolve failed for scope {scope}: {message}")
        self.scope = scope
        self.message = message
        self.retryable = retryable


class SuppressionError(SuppressorError):
    """Creating or deleting a single alert processing rule failed."""

    def __init__(self, rule_name: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(f"Rule {rule_name}: {message}")
        self.rule_name = rule_name
        self.message = message
        self.retryable = retryable


class HandlerError(SuppressorError):
    """An event could not be processed at all and should be redelivered.

    Attributes:
        outcome: The event outcome accumulated before giving up, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        maintenance_id: str | None = None,
        outcome: EventOutcome | None = None,
    ) -> None:
        super().__init__(message)
        self.maintenance_id = maintenance_id
        self.outcome = outcome


class DeliveryError(SuppressorError):
    """One or more events in a delivery failed.

    Raised after every event in the delivery has been attempted.
    """

    def __init__(
        self,
        failures: list[tuple[str, str]],
        outcomes: list[EventOutcome] | None = None,
    ) -> None:
        summary = "; ".join(f"{key}: {error}" for key, error in failures)
        super().__init__(f"{len(failures)} event(s) failed: {summary}")
        self.failures = failures
        self.outcomes = outcomes or []


class EventParseError(SuppressorError):
    """An inbound envelope is malformed or of an unknown type."""

    pass


class EventLoadError(SuppressorError):
    """An event payload file could not be read."""

    pass
