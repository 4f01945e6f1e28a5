"""Credentials for the Azure Blob state backend.

The backend never accepts secrets. Authentication uses a managed identity
(or, on a workstation, the developer's Azure CLI / IDE login through
DefaultAzureCredential with the environment credential disabled).

SECURITY INVARIANTS:
1. Service principal secrets and passwords must never be present in the
   environment when the blob backend is used
2. EnvironmentCredential is never part of the credential chain
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment."""

    pass


def enforce_secretless() -> None:
    """Refuse to run with credential secrets in the environment.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secret credential found in environment",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise SecretlessViolationError(
                f"{env_var} is set. The Azure Blob state backend only authenticates with a "
                "managed identity or an interactive Azure login; remove the variable."
            )


def get_storage_credential(client_id: str | None = None) -> TokenCredential:
    """Get the credential used for state and lock blobs.

    Args:
        client_id: Client ID of a user-assigned managed identity. When None,
            the default chain (without environment secrets) is used.

    Raises:
        SecretlessViolationError: If credential secrets are in the environment.
    """
    enforce_secretless()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential(exclude_environment_credential=True)
