"""Azure Mock Context for integration testing.

Patches the Azure SDK classes used by the handler with in-memory mocks.
"""

from __future__ import annotations

from typing import Any
from unittest import mock

from .alerts import MockAlertsManagementClient, MockAlertsState
from .credential import MockManagedIdentityCredential, create_mock_credential
from .graph import MockResourceGraphClient, create_mock_graph_client


class MockAzureContext:
    """Context manager for Azure API mocking in integration tests.

    Patches:
    - suppressor.security.ManagedIdentityCredential -> MockManagedIdentityCredential
    - suppressor.resolver.ResourceGraphClient -> MockResourceGraphClient
    - suppressor.suppression.AlertsManagementClient -> MockAlertsManagementClient

    Usage:
        with MockAzureContext() as ctx:
            ctx.graph.assign(vm_resource_id("vm-a"), MAINTENANCE_ID)
            router = build_router(config)
            await router.dispatch(payload)
            assert ctx.alerts.rule_names() == ["apr-maint-vm-a"]
    """

    def __init__(self, *, client_id: str | None = None) -> None:
        self._client_id = client_id
        self._graph: MockResourceGraphClient | None = None
        self._alerts: MockAlertsState | None = None
        self._credential: MockManagedIdentityCredential | None = None
        self._patches: list[Any] = []

    @property
    def graph(self) -> MockResourceGraphClient:
        """Get the mock Resource Graph client.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._graph is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._graph

    @property
    def alerts(self) -> MockAlertsState:
        """Get the mock alert processing rule state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._alerts is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._alerts

    @property
    def credential(self) -> MockManagedIdentityCredential:
        """Get the mock credential.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._credential is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._credential

    def __enter__(self) -> MockAzureContext:
        """Enter the mock context, applying patches."""
        self._graph = create_mock_graph_client()
        self._alerts = MockAlertsState()
        self._credential = create_mock_credential(client_id=self._client_id)
        alerts_state = self._alerts

        def create_alerts_client(credential: Any, subscription_id: str) -> MockAlertsManagementClient:
            return MockAlertsManagementClient(alerts_state, credential, subscription_id)

        self._patches = [
            mock.patch(
                "suppressor.security.ManagedIdentityCredential",
                return_value=self._credential,
            ),
            mock.patch(
                "suppressor.resolver.ResourceGraphClient",
                return_value=self._graph,
            ),
            mock.patch(
                "suppressor.suppression.AlertsManagementClient",
                side_effect=create_alerts_client,
            ),
        ]
        for patch in self._patches:
            patch.start()

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the mock context, removing patches."""
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()
