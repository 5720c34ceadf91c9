"""Security enforcement for secretless architecture.

The handler authenticates as a single managed identity with a fixed role
assignment (Reader on the subscriptions it resolves in, Monitoring
Contributor on the suppression resource group). No per-call credential
negotiation takes place.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET must never be present in the environment
2. ManagedIdentityCredential is the ONLY allowed credential type
3. All authentication flows through Entra ID
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION DETECTED

The maintenance suppressor authenticates with a managed identity only.

Detected: {env_var}

This environment variable indicates service principal or password-based
authentication, which is NOT ALLOWED.

RESOLUTION:
  1. Remove all credential settings from the Function App configuration
  2. Assign a managed identity to the Function App
  3. Grant it Reader on the maintained subscriptions and Monitoring
     Contributor on the suppression resource group
"""


class SecretlessViolationError(Exception):
    """Raised when secretless architecture is violated.

    This is a fatal error: the handler must not start.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
    maintenance_id: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of event (e.g. suppression_rule).
        target_resource: Resource whose alerting is affected.
        action: create or delete.
        result: success, failure, or noop.
        maintenance_id: Maintenance configuration that triggered the action.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
            "maintenance_id": maintenance_id,
        },
    )
