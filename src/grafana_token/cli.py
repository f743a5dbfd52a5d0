"""Grafana token manager CLI (grafana-token).

Usage:
    grafana-token reconcile -i my-grafana --output-mode keyvault --keyvault kv-ops
    grafana-token reconcile -i my-grafana --rotate
    grafana-token cleanup -i my-grafana --keep-token-name grafana-tf-admin-20240101000000
    grafana-token validate -i my-grafana --keyvault kv-ops --admin-check

Every option can also be supplied through the environment variable shown in
its help text, which is how pipeline tasks drive it. Boolean variables take
true/false, 1/0, yes/no, on/off, t/f or y/n; any other value is rejected.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from typing import Any

import click

from .config import (
    DEFAULT_POST_CREATE_SLEEP_SECONDS,
    DEFAULT_PRUNE_MAX_ATTEMPTS,
    DEFAULT_SECRET_VARIABLE_NAME,
    DEFAULT_SERVICE_ACCOUNT_NAME,
    DEFAULT_SERVICE_ACCOUNT_ROLE,
    DEFAULT_TOKEN_NAME_SECRET_NAME,
    DEFAULT_TOKEN_SECRET_NAME,
    DEFAULT_TOKEN_TTL,
    VALID_ROLES,
    Config,
    ConfigurationError,
    OutputMode,
)
from .grafana_api import AzureCliGrafanaClient, GrafanaApiError
from .main import build_credential_store, run_cleanup, run_reconcile, setup_logging
from .secret_store import SecretStoreError
from .security import PreconditionError, require_azure_cli, verify_azure_login
from .validation import TokenValidator, ValidationFailed

VERSION = "0.1.0"


def instance_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command."""
    decorators = [
        click.option(
            "--instance",
            "-i",
            "instance_name",
            envvar="GRAFANA_INSTANCE_NAME",
            required=True,
            help="Azure Managed Grafana instance name [GRAFANA_INSTANCE_NAME]",
        ),
        click.option(
            "--resource-group",
            "-g",
            envvar="GRAFANA_RESOURCE_GROUP",
            default=None,
            help="Resource group of the instance [GRAFANA_RESOURCE_GROUP]",
        ),
        click.option(
            "--service-account",
            "-s",
            envvar="SERVICE_ACCOUNT_NAME",
            default=DEFAULT_SERVICE_ACCOUNT_NAME,
            show_default=True,
            help="Grafana service account [SERVICE_ACCOUNT_NAME]",
        ),
        click.option(
            "--debug/--no-debug", envvar="DEBUG", default=False, help="Debug logging [DEBUG]"
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


dry_run_option = click.option(
    "--dry-run/--no-dry-run",
    envvar="DRY_RUN",
    default=False,
    help="Log intended mutations without performing them [DRY_RUN]",
)


def keyvault_options(func: Callable[..., Any]) -> Callable[..., Any]:
    decorators = [
        click.option(
            "--keyvault",
            "keyvault_name",
            envvar="KEYVAULT_NAME",
            default=None,
            help="Key Vault holding the token secrets [KEYVAULT_NAME]",
        ),
        click.option(
            "--token-secret-name",
            envvar="TOKEN_SECRET_NAME",
            default=DEFAULT_TOKEN_SECRET_NAME,
            show_default=True,
            help="Secret holding the token value [TOKEN_SECRET_NAME]",
        ),
        click.option(
            "--token-name-secret-name",
            envvar="TOKEN_NAME_SECRET_NAME",
            default=DEFAULT_TOKEN_NAME_SECRET_NAME,
            show_default=True,
            help="Secret holding the token name [TOKEN_NAME_SECRET_NAME]",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def check_azure_cli() -> None:
    """Fail fast unless the Azure CLI is installed and logged in."""
    try:
        require_azure_cli()
        verify_azure_login()
    except PreconditionError as e:
        raise click.ClickException(str(e)) from e


def build_config(**kwargs: Any) -> Config:
    try:
        return Config(**kwargs)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="grafana-token")
def cli() -> None:
    """Grafana service account token manager.

    \b
    Quick Start:
        grafana-token reconcile -i <instance> --rotate     # seed a token
        grafana-token reconcile -i <instance>              # reuse it
        grafana-token validate -i <instance> --keyvault <kv>

    \b
    Boolean environment variables (ROTATE, DRY_RUN, ...) take true/false,
    1/0, yes/no, on/off, t/f or y/n. Any other value is an error.
    """
    pass


@cli.command()
@instance_options
@dry_run_option
@keyvault_options
@click.option(
    "--role",
    "service_account_role",
    envvar="SERVICE_ACCOUNT_ROLE",
    type=click.Choice(VALID_ROLES),
    default=DEFAULT_SERVICE_ACCOUNT_ROLE,
    show_default=True,
    help="Service account role [SERVICE_ACCOUNT_ROLE]",
)
@click.option(
    "--ttl",
    "token_ttl",
    envvar="TOKEN_TTL",
    default=DEFAULT_TOKEN_TTL,
    show_default=True,
    help="Lifetime of new tokens, e.g. 90d or 12h [TOKEN_TTL]",
)
@click.option(
    "--output-mode",
    envvar="OUTPUT_MODE",
    type=click.Choice([m.value for m in OutputMode]),
    default=OutputMode.SECRET_VARIABLE.value,
    show_default=True,
    help="Deliver the token as a pipeline variable or store it in Key Vault [OUTPUT_MODE]",
)
@click.option(
    "--variable-name",
    "secret_variable_name",
    envvar="SECRET_VARIABLE_NAME",
    default=DEFAULT_SECRET_VARIABLE_NAME,
    show_default=True,
    help="Secret pipeline variable name [SECRET_VARIABLE_NAME]",
)
@click.option(
    "--rotate/--no-rotate", envvar="ROTATE", default=False, help="Force a new token [ROTATE]"
)
@click.option(
    "--reuse-only/--no-reuse-only",
    envvar="REUSE_ONLY",
    default=True,
    help="Never create while an active token exists [REUSE_ONLY]",
)
@click.option(
    "--allow-multiple-active/--single-active",
    envvar="ALLOW_MULTIPLE_ACTIVE_TOKENS",
    default=False,
    help="Allow more than one active token [ALLOW_MULTIPLE_ACTIVE_TOKENS]",
)
@click.option(
    "--cleanup-all-others/--no-cleanup-all-others",
    envvar="CLEANUP_ALL_OTHERS",
    default=True,
    help="Delete extra active tokens when reusing [CLEANUP_ALL_OTHERS]",
)
@click.option(
    "--fix-name-mismatch/--no-fix-name-mismatch",
    envvar="FIX_NAME_MISMATCH",
    default=True,
    help="Repoint a stored name that is no longer active [FIX_NAME_MISMATCH]",
)
@click.option(
    "--stale-recreate/--no-stale-recreate",
    envvar="STALE_TOKEN_RECREATE",
    default=True,
    help="Create a token when the stored value has no active token [STALE_TOKEN_RECREATE]",
)
@click.option(
    "--always-write-on-reuse/--no-always-write-on-reuse",
    envvar="ALWAYS_WRITE_ON_REUSE",
    default=False,
    help="Rewrite the stored value even when reusing [ALWAYS_WRITE_ON_REUSE]",
)
@click.option(
    "--post-create-sleep",
    "post_create_sleep_seconds",
    envvar="POST_CREATE_SLEEP",
    type=int,
    default=DEFAULT_POST_CREATE_SLEEP_SECONDS,
    show_default=True,
    help="Seconds to wait before pruning after creation [POST_CREATE_SLEEP]",
)
@click.option(
    "--prune-max-attempts",
    envvar="PRUNE_MAX_ATTEMPTS",
    type=int,
    default=DEFAULT_PRUNE_MAX_ATTEMPTS,
    show_default=True,
    help="Prune convergence passes [PRUNE_MAX_ATTEMPTS]",
)
@click.option(
    "--client-id",
    "managed_identity_client_id",
    envvar="AZURE_CLIENT_ID",
    default=None,
    help="User-assigned managed identity for Key Vault [AZURE_CLIENT_ID]",
)
def reconcile(**kwargs: Any) -> None:
    """Reuse, create or repair the service account token.

    \b
    Examples:
        grafana-token reconcile -i my-grafana --rotate
        grafana-token reconcile -i my-grafana --output-mode keyvault --keyvault kv-ops
    """
    kwargs["service_account_name"] = kwargs.pop("service_account")
    kwargs["output_mode"] = OutputMode(kwargs["output_mode"])
    config = build_config(**kwargs)
    setup_logging(debug=config.debug)
    check_azure_cli()

    api = AzureCliGrafanaClient(config.instance_name, config.resource_group)
    try:
        credential_store = build_credential_store(config)
    except Exception as e:
        raise click.ClickException(f"Failed to initialize Key Vault access: {e}") from e

    try:
        exit_code = run_reconcile(config, api, credential_store)
    finally:
        if credential_store is not None:
            credential_store.close()
    if exit_code:
        sys.exit(exit_code)


@cli.command()
@instance_options
@dry_run_option
@click.option(
    "--keep-token-name",
    envvar="KEEP_TOKEN_NAME",
    default=None,
    help="Token to keep; defaults to the newest active token [KEEP_TOKEN_NAME]",
)
@click.option(
    "--allow-multiple-active/--single-active",
    envvar="ALLOW_MULTIPLE_ACTIVE_TOKENS",
    default=False,
    help="Only sweep expired tokens, keep every active one [ALLOW_MULTIPLE_ACTIVE_TOKENS]",
)
def cleanup(
    instance_name: str,
    resource_group: str | None,
    service_account: str,
    dry_run: bool,
    debug: bool,
    keep_token_name: str | None,
    allow_multiple_active: bool,
) -> None:
    """Delete expired tokens and prune active ones down to one."""
    config = build_config(
        instance_name=instance_name,
        resource_group=resource_group,
        service_account_name=service_account,
        dry_run=dry_run,
        debug=debug,
        cleanup_only=True,
        keep_token_name=keep_token_name,
        allow_multiple_active=allow_multiple_active,
    )
    setup_logging(debug=config.debug)
    check_azure_cli()

    api = AzureCliGrafanaClient(config.instance_name, config.resource_group)
    exit_code = run_cleanup(config, api)
    if exit_code:
        sys.exit(exit_code)


@cli.command()
@instance_options
@keyvault_options
@click.option(
    "--token-value",
    envvar="TOKEN_VALUE",
    default=None,
    help="Token to validate; overrides Key Vault [TOKEN_VALUE]",
)
@click.option(
    "--admin-check/--no-admin-check",
    envvar="ADMIN_CHECK",
    default=False,
    help="Also check access to /api/serviceaccounts [ADMIN_CHECK]",
)
@click.option(
    "--client-id",
    "managed_identity_client_id",
    envvar="AZURE_CLIENT_ID",
    default=None,
    help="User-assigned managed identity for Key Vault [AZURE_CLIENT_ID]",
)
def validate(
    instance_name: str,
    resource_group: str | None,
    service_account: str,
    debug: bool,
    keyvault_name: str | None,
    token_secret_name: str,
    token_name_secret_name: str,
    token_value: str | None,
    admin_check: bool,
    managed_identity_client_id: str | None,
) -> None:
    """Check that the stored token reaches and authenticates against Grafana.

    \b
    Exit codes:
        0 success, 1 missing prerequisite, 2 endpoint, 3 auth, 4 admin scope
    """
    setup_logging(debug=debug)
    check_azure_cli()

    api = AzureCliGrafanaClient(instance_name, resource_group)
    try:
        endpoint = api.get_endpoint()
    except GrafanaApiError as e:
        raise click.ClickException(f"Failed to resolve Grafana endpoint: {e}") from e

    token_name: str | None = None
    if not token_value:
        if not keyvault_name:
            raise click.ClickException("TOKEN_VALUE not provided and KEYVAULT_NAME unset")
        config = build_config(
            instance_name=instance_name,
            resource_group=resource_group,
            service_account_name=service_account,
            output_mode=OutputMode.KEYVAULT,
            keyvault_name=keyvault_name,
            token_secret_name=token_secret_name,
            token_name_secret_name=token_name_secret_name,
            managed_identity_client_id=managed_identity_client_id,
        )
        credential_store = build_credential_store(config)
        if credential_store is None:
            raise click.ClickException("Key Vault access is not configured")
        try:
            stored = credential_store.load()
        except SecretStoreError as e:
            raise click.ClickException(str(e)) from e
        finally:
            credential_store.close()
        if not stored.value:
            raise click.ClickException(
                f"Token secret '{token_secret_name}' missing in Key Vault '{keyvault_name}'"
            )
        token_value = stored.value
        token_name = stored.name

    label = f"token {token_name!r}" if token_name else "token"
    click.echo(f"Validating {label} against {endpoint}", err=True)
    try:
        TokenValidator(endpoint, token_value).validate(admin_check=admin_check)
    except ValidationFailed as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(int(e.exit_code))

    click.secho("✓ Validation successful", fg="green", err=True)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
