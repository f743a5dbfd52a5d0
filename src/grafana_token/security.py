"""Precondition checks and credential handling.

SECURITY INVARIANTS:
1. No mutation happens before the Azure CLI is present and logged in
2. Key Vault access uses Entra ID credentials (CLI login or managed identity)
3. Token values never reach the logs, only their length
"""

from __future__ import annotations

import logging
import shutil
import subprocess

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

AZ_ACCOUNT_SHOW_TIMEOUT_SECONDS = 30


class PreconditionError(Exception):
    """Raised when the environment cannot support a run.

    This is fatal and raised before any backend mutation.
    """

    pass


def require_azure_cli() -> str:
    """Return the path of the az executable.

    Raises:
        PreconditionError: If the Azure CLI is not installed.
    """
    az_path = shutil.which("az")
    if not az_path:
        raise PreconditionError(
            "Azure CLI (az) required. Install from https://aka.ms/installazurecli"
        )
    return az_path


def verify_azure_login() -> None:
    """Verify the Azure CLI holds a login (service principal in pipelines).

    Raises:
        PreconditionError: If ``az account show`` fails.
    """
    try:
        result = subprocess.run(
            ["az", "account", "show", "-o", "none"],
            capture_output=True,
            text=True,
            timeout=AZ_ACCOUNT_SHOW_TIMEOUT_SECONDS,
            check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise PreconditionError(f"Unable to query Azure CLI login: {e}") from e

    if result.returncode != 0:
        raise PreconditionError("Azure CLI login required (use a service principal or 'az login')")

    logger.info("Azure CLI login verified", extra={"security_event": "login_verified"})


def get_keyvault_credential(client_id: str | None = None) -> TokenCredential:
    """Get the credential used for Key Vault access.

    Args:
        client_id: Optional client ID of a user-assigned managed identity.
            If None, the Azure CLI login of the pipeline task is reused.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using Azure CLI credential")
    return AzureCliCredential()


def mask_secret(value: str | None) -> str:
    """Describe a secret without revealing it."""
    if not value:
        return "<empty>"
    return f"<redacted:{len(value)} chars>"


def log_security_audit_event(
    event_type: str,
    service_account: str,
    target: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of event (token, service_account, secret).
        service_account: Grafana service account concerned.
        target: Token or secret name being acted on.
        action: Action being performed (create, delete, write).
        result: Result of the action (success, failure, skipped).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "service_account": service_account,
            "target": target,
            "action": action,
            "result": result,
        },
    )
