"""Per-resource alert suppression via Azure Monitor alert processing rules.

Each affected resource gets its own rule, named deterministically from the
resource name. The rule identity can therefore be recomputed on the
completion event without a mapping store, and one resource's failure never
blocks suppression or cleanup of its siblings.

Rules are created in ``SUPPRESSION_RESOURCE_GROUP`` of the resource's own
subscription with a single "remove all action groups" action, and are tagged
with the maintenance configuration that created them.

IDEMPOTENCY:
- ensure_suppressed on an active rule is a no-op success; a disabled or
  mis-scoped rule with the same name is rewritten
- ensure_unsuppressed on a missing rule is a no-op success
- Concurrent duplicate creates converge because create_or_update is a PUT
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.alertsmanagement import AlertsManagementClient
from azure.mgmt.alertsmanagement.models import (
    AlertProcessingRule,
    AlertProcessingRuleProperties,
    RemoveAllActionGroups,
)

from .config import MAX_RULE_DESCRIPTION_LENGTH, MAX_RULE_NAME_LENGTH, Config
from .errors import SuppressionError, is_retryable
from .models import (
    OutcomeStatus,
    ResourceOutcome,
    RuleState,
    SuppressionRule,
    TargetResource,
    maintenance_name_from_id,
)
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

RULE_NAME_PREFIX = "apr-maint-"

# Alert processing rules are global resources
RULE_LOCATION = "Global"

MANAGED_BY_TAG = "managed-by"
MANAGED_BY_VALUE = "maintenance-suppressor"
MAINTENANCE_ID_TAG = "maintenance-id"
MAX_TAG_VALUE_LENGTH = 256


def rule_name(resource_name: str) -> str:
    """Deterministic suppression rule name for a resource.

    Used identically on create and delete.
    """
    return f"{RULE_NAME_PREFIX}{resource_name}"[:MAX_RULE_NAME_LENGTH]


def maintenance_tag_value(maintenance_id: str) -> str:
    """Tag value recording which maintenance configuration owns a rule.

    Tag values are limited to 256 characters; longer IDs are hashed.
    """
    normalized = maintenance_id.strip().lower()
    if len(normalized) <= MAX_TAG_VALUE_LENGTH:
        return normalized
    return "sha256:" + hashlib.sha256(normalized.encode()).hexdigest()


class SuppressionService(Protocol):
    """Operations the manager needs from the alerting platform."""

    def create(self, name: str, scope: str, description: str, maintenance_id: str) -> SuppressionRule: ...

    def delete(self, name: str) -> None: ...

    def state(self, name: str, scope: str) -> RuleState: ...

    def list_for_maintenance(self, maintenance_id: str) -> list[SuppressionRule]: ...


class AlertProcessingRuleService:
    """SuppressionService backed by Azure Monitor alert processing rules.

    One instance per subscription. The client is bound to that subscription
    at construction; nothing is switched at call time.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        resource_group: str,
    ) -> None:
        self._subscription_id = subscription_id
        self._resource_group = resource_group
        self._client = AlertsManagementClient(credential=credential, subscription_id=subscription_id)

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    def create(self, name: str, scope: str, description: str, maintenance_id: str) -> SuppressionRule:
        rule = AlertProcessingRule(
            location=RULE_LOCATION,
            tags={
                MANAGED_BY_TAG: MANAGED_BY_VALUE,
                MAINTENANCE_ID_TAG: maintenance_tag_value(maintenance_id),
            },
            properties=AlertProcessingRuleProperties(
                scopes=[scope],
                actions=[RemoveAllActionGroups()],
                description=description[:MAX_RULE_DESCRIPTION_LENGTH],
                enabled=True,
            ),
        )
        self._client.alert_processing_rules.create_or_update(
            resource_group_name=self._resource_group,
            alert_processing_rule_name=name,
            alert_processing_rule=rule,
        )
        return SuppressionRule(
            name=name, scope=scope, state=RuleState.ACTIVE, maintenance_id=maintenance_id
        )

    def delete(self, name: str) -> None:
        try:
            self._client.alert_processing_rules.delete(
                resource_group_name=self._resource_group,
                alert_processing_rule_name=name,
            )
        except ResourceNotFoundError:
            # Already converged
            pass

    def state(self, name: str, scope: str) -> RuleState:
        """State of rule ``name`` as a suppression of ``scope``.

        ACTIVE only when the rule is enabled and scoped to exactly ``scope``.
        """
        try:
            rule = self._client.alert_processing_rules.get_by_name(
                resource_group_name=self._resource_group,
                alert_processing_rule_name=name,
            )
        except ResourceNotFoundError:
            return RuleState.ABSENT

        properties = rule.properties
        if properties is None or not properties.enabled:
            return RuleState.INACTIVE
        scopes = [s.lower() for s in properties.scopes or []]
        if scopes != [scope.lower()]:
            return RuleState.INACTIVE
        return RuleState.ACTIVE

    def list_for_maintenance(self, maintenance_id: str) -> list[SuppressionRule]:
        wanted = maintenance_tag_value(maintenance_id)
        rules: list[SuppressionRule] = []
        for rule in self._client.alert_processing_rules.list_by_resource_group(
            resource_group_name=self._resource_group
        ):
            tags = rule.tags or {}
            if tags.get(MANAGED_BY_TAG) != MANAGED_BY_VALUE:
                continue
            if tags.get(MAINTENANCE_ID_TAG, "").lower() != wanted:
                continue
            scopes = rule.properties.scopes if rule.properties else []
            if not scopes:
                continue
            rules.append(
                SuppressionRule(
                    name=rule.name,
                    scope=scopes[0],
                    state=RuleState.ACTIVE,
                    maintenance_id=maintenance_id,
                )
            )
        return rules


class SuppressionRuleManager:
    """Create and remove per-resource suppression rules.

    Every remote call runs in an executor under ``operation_timeout_seconds``.
    Failures are returned as FAILED outcomes, never raised, so sibling
    resources are unaffected.
    """

    def __init__(
        self,
        credential: TokenCredential,
        config: Config,
        service_factory: Callable[[str], SuppressionService] | None = None,
    ) -> None:
        self._credential = credential
        self._config = config
        self._service_factory = service_factory or self._default_service
        self._services: dict[str, SuppressionService] = {}

    def _default_service(self, subscription_id: str) -> SuppressionService:
        return AlertProcessingRuleService(
            self._credential,
            subscription_id,
            self._config.suppression_resource_group,
        )

    def service_for(self, subscription_id: str) -> SuppressionService:
        """Get the rule service bound to ``subscription_id``."""
        service = self._services.get(subscription_id)
        if service is None:
            service = self._service_factory(subscription_id)
            self._services[subscription_id] = service
        return service

    def describe(self, resource: TargetResource, maintenance_id: str) -> str:
        return self._config.rule_description_template.format(
            resource_name=resource.name,
            maintenance_name=maintenance_name_from_id(maintenance_id),
            maintenance_id=maintenance_id,
        )

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, lambda: func(*args)),
            timeout=self._config.operation_timeout_seconds,
        )

    async def ensure_suppressed(self, resource: TargetResource, maintenance_id: str) -> ResourceOutcome:
        """Make sure an active suppression rule exists for ``resource``."""
        name = rule_name(resource.name)
        service = self.service_for(resource.subscription_id)

        try:
            state = await self._call(service.state, name, resource.resource_id)
            if state == RuleState.ACTIVE:
                logger.info(
                    "Suppression rule already active",
                    extra={"rule_name": name, "resource_id": resource.resource_id},
                )
                self._audit("create", resource, maintenance_id, "noop")
                return ResourceOutcome(resource, name, OutcomeStatus.ALREADY_ACTIVE)

            if state == RuleState.INACTIVE:
                logger.warning(
                    "Suppression rule exists but is not active, rewriting",
                    extra={"rule_name": name, "resource_id": resource.resource_id},
                )

            if self._config.dry_run:
                logger.info(
                    "Dry run: would create suppression rule",
                    extra={"rule_name": name, "resource_id": resource.resource_id},
                )
                return ResourceOutcome(resource, name, OutcomeStatus.CREATED)

            await self._call(
                service.create,
                name,
                resource.resource_id,
                self.describe(resource, maintenance_id),
                maintenance_id,
            )
        except (AzureError, TimeoutError) as e:
            return self._failure("create", resource, name, maintenance_id, e)

        logger.info(
            "Suppression rule created",
            extra={"rule_name": name, "resource_id": resource.resource_id},
        )
        self._audit("create", resource, maintenance_id, "success")
        return ResourceOutcome(resource, name, OutcomeStatus.CREATED)

    async def ensure_unsuppressed(
        self, resource: TargetResource, maintenance_id: str | None = None
    ) -> ResourceOutcome:
        """Make sure no suppression rule exists for ``resource``.

        Removing an absent rule is success.
        """
        name = rule_name(resource.name)
        service = self.service_for(resource.subscription_id)

        try:
            if await self._call(service.state, name, resource.resource_id) == RuleState.ABSENT:
                logger.info(
                    "Suppression rule already absent",
                    extra={"rule_name": name, "resource_id": resource.resource_id},
                )
                return ResourceOutcome(resource, name, OutcomeStatus.ALREADY_ABSENT)

            if self._config.dry_run:
                logger.info(
                    "Dry run: would delete suppression rule",
                    extra={"rule_name": name, "resource_id": resource.resource_id},
                )
                return ResourceOutcome(resource, name, OutcomeStatus.REMOVED)

            await self._call(service.delete, name)
        except (AzureError, TimeoutError) as e:
            return self._failure("delete", resource, name, maintenance_id, e)

        logger.info(
            "Suppression rule removed",
            extra={"rule_name": name, "resource_id": resource.resource_id},
        )
        self._audit("delete", resource, maintenance_id, "success")
        return ResourceOutcome(resource, name, OutcomeStatus.REMOVED)

    async def managed_rules(self, maintenance_id: str, subscription_id: str) -> list[TargetResource]:
        """Targets of the rules tagged with ``maintenance_id`` in a subscription.

        Raises:
            SuppressionError: If the rules cannot be listed.
        """
        service = self.service_for(subscription_id)
        try:
            rules = await self._call(service.list_for_maintenance, maintenance_id)
        except (AzureError, TimeoutError) as e:
            raise SuppressionError(
                f"{RULE_NAME_PREFIX}*", f"listing rules failed: {e}", retryable=is_retryable(e)
            ) from e

        targets: list[TargetResource] = []
        for rule in rules:
            try:
                targets.append(TargetResource.from_resource_id(rule.scope, subscription_id))
            except ValueError:
                logger.warning(
                    "Ignoring suppression rule with unexpected scope",
                    extra={"rule_name": rule.name, "scope": rule.scope},
                )
        return targets

    def _failure(
        self,
        action: str,
        resource: TargetResource,
        name: str,
        maintenance_id: str | None,
        error: BaseException,
    ) -> ResourceOutcome:
        message = (
            f"timed out after {self._config.operation_timeout_seconds}s"
            if isinstance(error, TimeoutError)
            else str(error)
        )
        failure = SuppressionError(name, f"{action} failed: {message}", retryable=is_retryable(error))
        logger.error(
            "Suppression rule operation failed",
            extra={
                "rule_name": name,
                "resource_id": resource.resource_id,
                "action": action,
                "error": failure.message,
                "retryable": failure.retryable,
            },
        )
        self._audit(action, resource, maintenance_id, "failure")
        return ResourceOutcome(
            resource, name, OutcomeStatus.FAILED, error=str(failure), retryable=failure.retryable
        )

    def _audit(
        self, action: str, resource: TargetResource, maintenance_id: str | None, result: str
    ) -> None:
        if self._config.security.enable_audit_logging:
            log_security_audit_event(
                event_type="suppression_rule",
                target_resource=resource.resource_id,
                action=action,
                result=result,
                maintenance_id=maintenance_id,
            )
