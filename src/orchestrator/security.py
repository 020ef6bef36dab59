"""Credential handling for the ARM provider binding.

Only a Managed Identity may be used to reach Azure Resource Manager. Any
client secret, certificate or password in the environment stops the run
before a provider is built, and every mutating ARM call leaves an audit
record in the log stream.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from enum import Enum

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Variables that would let azure-identity fall back to a stored secret
CREDENTIAL_SECRET_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """A credential secret was found while building ARM providers."""

    def __init__(self, variables: list[str]) -> None:
        self.variables = variables
        super().__init__(
            f"Credential secrets found in the environment: {', '.join(variables)}. "
            "ARM providers authenticate with a Managed Identity only; unset these "
            "variables and grant the identity access to the resource group."
        )


class AuditOutcome(str, Enum):
    """Result of a mutating provider call."""

    SUCCESS = "success"
    ACCEPTED = "accepted"
    FAILURE = "failure"


def find_credential_secrets(environ: Mapping[str, str] | None = None) -> list[str]:
    """Names of credential variables set to a non-empty value."""
    environ = os.environ if environ is None else environ
    return [name for name in CREDENTIAL_SECRET_ENV_VARS if environ.get(name)]


def enforce_secretless_architecture(environ: Mapping[str, str] | None = None) -> None:
    """Refuse to build ARM providers while a credential secret is configured.

    Raises:
        SecretlessViolationError: Naming every offending variable.
    """
    found = find_credential_secrets(environ)
    if found:
        logger.critical(
            "Credential secrets in environment",
            extra={"security_event": "credential_detected", "env_vars": found},
        )
        raise SecretlessViolationError(found)


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Managed identity credential, system-assigned unless ``client_id`` is given.

    Raises:
        SecretlessViolationError: If a credential secret is configured.
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


def audit_provider_call(
    operation: str,
    resource_id: str,
    arm_type: str,
    outcome: AuditOutcome,
) -> None:
    """Record a create, update or delete against ARM."""
    level = logging.WARNING if outcome == AuditOutcome.FAILURE else logging.INFO
    logger.log(
        level,
        "Provider call audit",
        extra={
            "security_audit": True,
            "operation": operation,
            "resource_id": resource_id,
            "arm_type": arm_type,
            "outcome": outcome.value,
        },
    )
