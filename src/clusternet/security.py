"""Credential acquisition for the Azure management clients.

The engine authenticates with a managed identity only. Service principal
secrets, certificates and user passwords in the environment are treated
as a fatal misconfiguration:

1. None of FORBIDDEN_CREDENTIAL_ENV_VARS may be set
2. ManagedIdentityCredential is the only credential type handed out
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable {env_var} is set. clusternet authenticates "
    "with a managed identity only: remove the variable and assign a managed "
    "identity with network contributor rights on the cluster resource group."
)


class SecretlessViolationError(Exception):
    """A credential secret was found in the environment."""

    pass


def enforce_secretless() -> None:
    """Refuse to continue when credential secrets are present.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential secret detected in environment",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a managed identity credential after checking the environment.

    Args:
        client_id: Client ID of a user-assigned identity. System-assigned
            identity is used when None.

    Raises:
        SecretlessViolationError: If credential secrets are present.
    """
    enforce_secretless()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
