"""Azure API Mock for Integration Testing.

In-memory stand-ins for the Azure services the suppressor talks to, so the
whole workflow can be tested without Azure connectivity.

Key Features:
- Resource Graph simulation of maintenance configuration assignments
- Alert processing rule storage with per-rule failure injection
- Per-subscription failure injection and slow-query simulation
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext, vm_resource_id

    with MockAzureContext() as ctx:
        ctx.graph.assign(vm_resource_id("vm-a"), MAINTENANCE_ID)
        outcome = await handler.handle(event)
        assert ctx.alerts.rule_names() == ["apr-maint-vm-a"]
"""

from .alerts import MockAlertsManagementClient, MockAlertsState, MockStoredRule
from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .graph import (
    DEFAULT_SUBSCRIPTION_ID,
    MockAssignment,
    MockResourceGraphClient,
    create_mock_graph_client,
    vm_resource_id,
)

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "MockAlertsManagementClient",
    "MockAlertsState",
    "MockAssignment",
    "MockAzureContext",
    "MockManagedIdentityCredential",
    "MockResourceGraphClient",
    "MockStoredRule",
    "create_mock_credential",
    "create_mock_graph_client",
    "vm_resource_id",
]
