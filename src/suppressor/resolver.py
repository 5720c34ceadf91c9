"""Affected-resource resolution via Azure Resource Graph.

Given a maintenance configuration ID, find the resources currently
assigned to it. Assignments live in the ``maintenanceresources`` table as
``microsoft.maintenance/configurationassignments`` rows.

ARCHITECTURE:
- One query per subscription scope, each with its own ScopeContext.
  There is no ambient "current subscription": a failing or slow scope
  cannot leak into another scope's results.
- A failing scope is recorded and skipped; remaining scopes continue.
- Membership changes between windows, so nothing is cached.

SECURITY:
- Queries run under the handler's managed identity
- Query results are bounded by MAX_GRAPH_QUERY_RESULTS
- Every query has a timeout
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import MAX_GRAPH_QUERY_RESULTS, Config
from .errors import ResolveError, is_retryable
from .models import TargetResource, validate_maintenance_id

logger = logging.getLogger(__name__)

CONFIGURATION_ASSIGNMENT_TYPE = "microsoft.maintenance/configurationassignments"


@dataclass(frozen=True)
class ScopeContext:
    """Query context for a single subscription scope.

    Attributes:
        subscription_id: Subscription the query is restricted to
        client: Resource Graph client used for the query
        timeout_seconds: Upper bound for one query call
    """

    subscription_id: str
    client: ResourceGraphClient
    timeout_seconds: float

    def request(self, query: str, skip_token: str | None = None) -> QueryRequest:
        return QueryRequest(
            subscriptions=[self.subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
                skip_token=skip_token,
            ),
        )


@dataclass
class ResolveResult:
    """Resources bound to a maintenance configuration.

    Attributes:
        resources: Affected resources, deduplicated by resource ID
        scope_errors: Scopes that could not be queried
        scopes_queried: Number of scopes attempted
        query_time_seconds: Time taken for all queries
    """

    resources: list[TargetResource] = field(default_factory=list)
    scope_errors: list[ResolveError] = field(default_factory=list)
    scopes_queried: int = 0
    query_time_seconds: float = 0.0

    @property
    def all_scopes_failed(self) -> bool:
        return self.scopes_queried > 0 and len(self.scope_errors) == self.scopes_queried


def build_assignment_query(maintenance_id: str) -> str:
    """Build the KQL selecting assignments for a maintenance configuration.

    The comparison is case-insensitive (``=~``); ARM returns the same
    configuration ID with different casing depending on the API used.

    Raises:
        ValueError: If the ID could break out of the string literal.
    """
    maintenance_id = validate_maintenance_id(maintenance_id)
    return f"""
    maintenanceresources
    | where type =~ '{CONFIGURATION_ASSIGNMENT_TYPE}'
    | extend
        maintenanceConfigurationId = tostring(properties.maintenanceConfigurationId),
        resourceId = tostring(properties.resourceId)
    | where maintenanceConfigurationId =~ '{maintenance_id}'
    | project resourceId, maintenanceConfigurationId, subscriptionId
    | limit {MAX_GRAPH_QUERY_RESULTS}
    """.strip()


class AffectedResourceResolver:
    """Resolve the resources bound to a maintenance configuration."""

    def __init__(self, credential: TokenCredential, config: Config) -> None:
        """Initialize Resource Graph client.

        Args:
            credential: Azure credential (must be Managed Identity)
            config: Handler configuration
        """
        self._config = config
        self._client = ResourceGraphClient(credential=credential)

    def scope_context(self, subscription_id: str) -> ScopeContext:
        return ScopeContext(
            subscription_id=subscription_id,
            client=self._client,
            timeout_seconds=self._config.operation_timeout_seconds,
        )

    async def resolve(
        self,
        maintenance_id: str,
        subscription_scope: tuple[str, ...] | list[str],
    ) -> ResolveResult:
        """Return the resources currently bound to ``maintenance_id``.

        An empty result is valid. A scope that fails is reported in
        ``scope_errors`` and the remaining scopes are still queried.

        Raises:
            ValueError: If ``maintenance_id`` is not a usable configuration ID.
        """
        maintenance_id = validate_maintenance_id(maintenance_id)
        start_time = time.monotonic()
        result = ResolveResult()
        seen: set[TargetResource] = set()

        for subscription_id in subscription_scope:
            result.scopes_queried += 1
            scope = self.scope_context(subscription_id)
            try:
                found = await self._query_scope(scope, maintenance_id)
            except ResolveError as e:
                logger.warning(
                    "Skipping scope that failed to resolve",
                    extra={
                        "maintenance_id": maintenance_id,
                        "subscription_id": subscription_id,
                        "error": e.message,
                        "retryable": e.retryable,
                    },
                )
                result.scope_errors.append(e)
                continue

            for resource in found:
                if resource not in seen:
                    seen.add(resource)
                    result.resources.append(resource)

        result.query_time_seconds = time.monotonic() - start_time

        logger.info(
            "Affected resources resolved",
            extra={
                "maintenance_id": maintenance_id,
                "scopes_queried": result.scopes_queried,
                "scopes_failed": len(result.scope_errors),
                "resources_found": len(result.resources),
                "query_time_seconds": round(result.query_time_seconds, 2),
            },
        )
        return result

    async def _query_scope(self, scope: ScopeContext, maintenance_id: str) -> list[TargetResource]:
        """Query one subscription for resources assigned to ``maintenance_id``.

        Raises:
            ResolveError: If the query fails or times out.
        """
        rows = await self._execute_query(scope, build_assignment_query(maintenance_id))
        wanted = maintenance_id.lower()

        resources: list[TargetResource] = []
        for row in rows:
            if str(row.get("maintenanceConfigurationId", "")).lower() != wanted:
                continue
            resource_id = row.get("resourceId") or ""
            try:
                resources.append(
                    TargetResource.from_resource_id(resource_id, subscription_id=scope.subscription_id)
                )
            except ValueError:
                logger.warning(
                    "Ignoring assignment with unsupported resource ID",
                    extra={"resource_id": resource_id, "subscription_id": scope.subscription_id},
                )
        return resources

    async def _execute_query(self, scope: ScopeContext, query: str) -> list[dict[str, Any]]:
        """Execute a Resource Graph query, following skip tokens.

        Raises:
            ResolveError: If the query fails or times out.
        """
        rows: list[dict[str, Any]] = []
        skip_token: str | None = None
        loop = asyncio.get_event_loop()

        while True:
            request = scope.request(query, skip_token)
            try:
                # Resource Graph client is synchronous, wrap in executor
                response = await asyncio.wait_for(
                    loop.run_in_executor(None, lambda r=request: scope.client.resources(r)),
                    timeout=scope.timeout_seconds,
                )
            except TimeoutError as e:
                raise ResolveError(
                    scope.subscription_id,
                    f"query timed out after {scope.timeout_seconds}s",
                    retryable=True,
                ) from e
            except AzureError as e:
                raise ResolveError(scope.subscription_id, str(e), retryable=is_retryable(e)) from e

            if isinstance(response.data, list):
                rows.extend(response.data)

            skip_token = response.skip_token
            if not skip_token or len(rows) >= MAX_GRAPH_QUERY_RESULTS:
                break

        return rows[:MAX_GRAPH_QUERY_RESULTS]
