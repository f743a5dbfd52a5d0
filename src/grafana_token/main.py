"""Entry points for the Grafana service account token manager.

Runs one reconciliation (or cleanup) of a Grafana service account token,
configured through environment variables as set by a pipeline task:

- OUTPUT_MODE=keyvault: the credential is persisted in Key Vault
- OUTPUT_MODE=secretVariable: the credential is emitted as a secret
  pipeline variable on stdout

Logs are JSON on stderr so stdout carries nothing but the variable directive.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

from .config import Config, ConfigurationError
from .grafana_api import AzureCliGrafanaClient, GrafanaAccountAPI, GrafanaApiError
from .models import ReconcileResult
from .provenance import get_provenance_logger
from .reconciler import TokenReconcileError, TokenReconciler
from .secret_store import CredentialStore, KeyVaultSecretStore, SecretStoreError
from .security import (
    PreconditionError,
    get_keyvault_credential,
    mask_secret,
    require_azure_cli,
    verify_azure_login,
)

EXIT_OK = 0
EXIT_FAILURE = 1

_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(debug: bool = False) -> None:
    """Configure structured JSON logging on stderr."""
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def secret_variable_directive(variable_name: str, value: str) -> str:
    """Azure DevOps logging command that sets a secret pipeline variable."""
    return f"##vso[task.setvariable variable={variable_name};isSecret=true]{value}"


def build_credential_store(config: Config) -> CredentialStore | None:
    """Key Vault backed credential store, or None outside keyvault mode."""
    if not config.uses_keyvault or not config.keyvault_url:
        return None
    store = KeyVaultSecretStore(
        vault_url=config.keyvault_url,
        credential=get_keyvault_credential(config.managed_identity_client_id),
    )
    return CredentialStore(store, config.token_secret_name, config.token_name_secret_name)


def build_reconciler(
    config: Config,
    api: GrafanaAccountAPI,
    credential_store: CredentialStore | None,
) -> TokenReconciler:
    return TokenReconciler(
        api,
        config.service_account_name,
        role=config.service_account_role,
        token_ttl=config.token_ttl,
        credential_store=credential_store,
        options=config.reconcile_options(),
        post_create_sleep=config.post_create_sleep_seconds,
        prune_max_attempts=config.prune_max_attempts,
    )


def emit_result(config: Config, result: ReconcileResult, stream: TextIO) -> None:
    """Deliver the credential through the configured output mode."""
    logger = logging.getLogger(__name__)
    if config.uses_keyvault:
        extra = {"keyvault": config.keyvault_name, "token_name": result.token_name}
        if result.created and config.dry_run:
            logger.info("DRY_RUN: would store new token and name in Key Vault", extra=extra)
        elif result.created:
            logger.info("Stored new token and name in Key Vault", extra=extra)
        else:
            logger.info(
                "Reusing token; Key Vault left as is",
                extra={"keyvault": config.keyvault_name, "value": mask_secret(result.value)},
            )
        return

    stream.write(secret_variable_directive(config.secret_variable_name, result.value) + "\n")
    stream.flush()
    logger.info("Set secret variable", extra={"variable": config.secret_variable_name})


def run_reconcile(
    config: Config,
    api: GrafanaAccountAPI,
    credential_store: CredentialStore | None,
    stream: TextIO | None = None,
) -> int:
    """Reconcile the token and emit the credential.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)
    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(
        instance_name=config.instance_name,
        service_account=config.service_account_name,
        output_mode=config.output_mode.value,
        command="reconcile",
        dry_run=config.dry_run,
    )

    reconciler = build_reconciler(config, api, credential_store)
    try:
        result = reconciler.reconcile()
    except (TokenReconcileError, GrafanaApiError, SecretStoreError) as e:
        logger.error(
            "Failed to get or create token",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        provenance.record_error(e)
        provenance_logger.log_provenance(provenance)
        return EXIT_FAILURE

    if not result.value:
        # Unreachable by contract; never emit an empty credential
        logger.error("No token value obtained")
        provenance.record_error(RuntimeError("No token value obtained"))
        provenance_logger.log_provenance(provenance)
        return EXIT_FAILURE

    provenance.record_result(result)
    emit_result(config, result, stream or sys.stdout)
    provenance_logger.log_provenance(provenance)
    logger.info("Completed", extra={"status": result.status.value})
    return EXIT_OK


def run_cleanup(config: Config, api: GrafanaAccountAPI) -> int:
    """Sweep expired tokens and prune to one. Emits no credential."""
    logger = logging.getLogger(__name__)
    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(
        instance_name=config.instance_name,
        service_account=config.service_account_name,
        output_mode=config.output_mode.value,
        command="cleanup",
        dry_run=config.dry_run,
    )

    reconciler = build_reconciler(config, api, credential_store=None)
    logger.info("CLEANUP_ONLY: pruning tokens", extra={"keep_name": config.keep_token_name})
    try:
        prune = reconciler.cleanup(config.keep_token_name)
    except GrafanaApiError as e:
        logger.error("Cleanup failed", extra={"error": str(e)})
        provenance.record_error(e)
        provenance_logger.log_provenance(provenance)
        return EXIT_FAILURE

    provenance.status = "cleaned"
    if prune is not None:
        provenance.record_prune(prune)
        provenance.token_name = prune.keep_name
    provenance_logger.log_provenance(provenance)
    logger.info("Cleanup complete")
    return EXIT_OK


def main() -> int:
    """Run from environment configuration.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    setup_logging(debug=config.debug)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting Grafana token manager",
        extra={
            "instance_name": config.instance_name,
            "service_account": config.service_account_name,
            "output_mode": config.output_mode.value,
            "dry_run": config.dry_run,
        },
    )

    try:
        require_azure_cli()
        verify_azure_login()
    except PreconditionError as e:
        logger.error("Precondition failed", extra={"error": str(e)})
        return EXIT_FAILURE

    api = AzureCliGrafanaClient(config.instance_name, config.resource_group)
    if config.cleanup_only:
        return run_cleanup(config, api)

    try:
        credential_store = build_credential_store(config)
    except Exception as e:
        logger.error(
            "Failed to initialize Key Vault access",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILURE
    try:
        return run_reconcile(config, api, credential_store)
    finally:
        if credential_store is not None:
            credential_store.close()


def run() -> None:
    """Entry point for ``python -m grafana_token.main``."""
    sys.exit(main())


if __name__ == "__main__":
    run()
