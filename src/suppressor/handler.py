"""Orchestration of one maintenance event.

Starting:  resolve affected resources -> ensure_suppressed per resource
Completed: resolve affected resources, union with the resources whose
           rules are tagged with the maintenance ID -> ensure_unsuppressed

Resources are processed concurrently and independently. The event is only
raised as failed (for redelivery) when resolution failed in every scope or
every resource operation failed; anything in between is a partial outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time

from .config import Config
from .errors import HandlerError, SuppressionError
from .models import (
    EventOutcome,
    EventStatus,
    MaintenanceEvent,
    MaintenanceEventKind,
    OutcomeStatus,
    ResourceOutcome,
    ScopeFailure,
    TargetResource,
)
from .provenance import ProvenanceLogger, get_provenance_logger
from .resolver import AffectedResourceResolver
from .suppression import SuppressionRuleManager, rule_name

logger = logging.getLogger(__name__)


class MaintenanceHandler:
    """Resolve-then-act handler for maintenance lifecycle events."""

    def __init__(
        self,
        resolver: AffectedResourceResolver,
        manager: SuppressionRuleManager,
        config: Config,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        self._resolver = resolver
        self._manager = manager
        self._config = config
        self._provenance = provenance_logger or get_provenance_logger()
        self._shutdown_requested = False

    def shutdown(self) -> None:
        """Stop starting new rule operations. In-flight calls complete."""
        logger.info("Shutdown requested")
        self._shutdown_requested = True

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_requested

    async def handle(self, event: MaintenanceEvent) -> EventOutcome:
        """Handle one event.

        Raises:
            HandlerError: If the event failed as a whole and should be redelivered.
        """
        start_time = time.monotonic()
        outcome = EventOutcome(event=event)

        logger.info(
            "Handling maintenance event",
            extra={
                "kind": event.kind.value,
                "maintenance_id": event.maintenance_id,
                "subscription_scope": list(event.subscription_scope),
                "correlation_id": event.correlation_id,
            },
        )

        resolved = await self._resolver.resolve(event.maintenance_id, event.subscription_scope)
        outcome.scope_errors.extend(
            ScopeFailure(scope=e.scope, error=e.message, retryable=e.retryable)
            for e in resolved.scope_errors
        )

        if resolved.all_scopes_failed:
            outcome.duration_seconds = time.monotonic() - start_time
            self._log_provenance(outcome, error="resolution failed in every scope")
            raise HandlerError(
                f"Resolution failed in all {resolved.scopes_queried} scope(s)",
                maintenance_id=event.maintenance_id,
                outcome=outcome,
            )

        targets = list(resolved.resources)

        if event.kind == MaintenanceEventKind.STARTING:
            limit = self._config.security.max_resources_per_event
            if len(targets) > limit:
                outcome.duration_seconds = time.monotonic() - start_time
                self._log_provenance(outcome, error="resource limit exceeded")
                raise HandlerError(
                    f"Maintenance resolves to {len(targets)} resources, "
                    f"exceeding the limit of {limit}",
                    maintenance_id=event.maintenance_id,
                    outcome=outcome,
                )
        else:
            targets = await self._include_managed_rules(event, targets, outcome)

        outcome.resources = await self._apply(event, targets)
        outcome.duration_seconds = time.monotonic() - start_time

        if outcome.status == EventStatus.FAILED:
            self._log_provenance(outcome, error="every resource operation failed")
            raise HandlerError(
                f"All {len(outcome.resources)} rule operation(s) failed",
                maintenance_id=event.maintenance_id,
                outcome=outcome,
            )

        self._log_provenance(outcome)
        return outcome

    async def _include_managed_rules(
        self,
        event: MaintenanceEvent,
        targets: list[TargetResource],
        outcome: EventOutcome,
    ) -> list[TargetResource]:
        """Add resources whose rules were created for this maintenance.

        The assignment may already be gone when the completion event fires,
        so the rules themselves are consulted as well.
        """
        seen = set(targets)
        merged = list(targets)

        for subscription_id in event.subscription_scope:
            try:
                managed = await self._manager.managed_rules(event.maintenance_id, subscription_id)
            except SuppressionError as e:
                logger.warning(
                    "Could not list suppression rules",
                    extra={"subscription_id": subscription_id, "error": e.message},
                )
                outcome.scope_errors.append(
                    ScopeFailure(scope=subscription_id, error=e.message, retryable=e.retryable)
                )
                continue

            for resource in managed:
                if resource not in seen:
                    seen.add(resource)
                    merged.append(resource)

        return merged

    async def _apply(
        self, event: MaintenanceEvent, targets: list[TargetResource]
    ) -> list[ResourceOutcome]:
        semaphore = asyncio.Semaphore(self._config.max_parallel_operations)

        async def run_one(resource: TargetResource) -> ResourceOutcome:
            async with semaphore:
                if self._shutdown_requested:
                    return ResourceOutcome(
                        resource,
                        rule_name(resource.name),
                        OutcomeStatus.SKIPPED,
                        error="shutdown requested",
                        retryable=True,
                    )
                try:
                    if event.kind == MaintenanceEventKind.STARTING:
                        return await self._manager.ensure_suppressed(resource, event.maintenance_id)
                    return await self._manager.ensure_unsuppressed(resource, event.maintenance_id)
                except Exception as e:
                    logger.exception(
                        "Unexpected error handling resource",
                        extra={"resource_id": resource.resource_id, "error": str(e)},
                    )
                    return ResourceOutcome(
                        resource, rule_name(resource.name), OutcomeStatus.FAILED, error=str(e)
                    )

        return list(await asyncio.gather(*(run_one(r) for r in targets)))

    def _log_provenance(self, outcome: EventOutcome, error: str | None = None) -> None:
        record = self._provenance.from_outcome(outcome, dry_run=self._config.dry_run)
        if error:
            record.error = error
            record.error_type = HandlerError.__name__
        for result in outcome.resources:
            if result.status in (OutcomeStatus.CREATED, OutcomeStatus.REMOVED, OutcomeStatus.FAILED):
                self._provenance.log_rule_change(
                    record, result.resource.resource_id, result.rule_name, result.status.value
                )
        self._provenance.log_provenance(record)
