"""Configuration management with validation.

All configuration is read from environment variables (the way pipeline tasks
hand it over) and validated at construction time so that a bad setting fails
the run before any Grafana or Key Vault call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum


class OutputMode(str, Enum):
    """Where the resulting credential is delivered."""

    SECRET_VARIABLE = "secretVariable"
    KEYVAULT = "keyvault"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Defaults
DEFAULT_SERVICE_ACCOUNT_NAME = "grafana-tf-admin"
DEFAULT_SERVICE_ACCOUNT_ROLE = "Admin"
DEFAULT_TOKEN_TTL = "90d"
DEFAULT_TOKEN_SECRET_NAME = "grafana-auth"
DEFAULT_TOKEN_NAME_SECRET_NAME = "grafana-auth-name"
DEFAULT_SECRET_VARIABLE_NAME = "GRAFANA_AUTH"

# Accepted boolean spellings, the same set click accepts
TRUE_VALUES = frozenset(("1", "true", "t", "yes", "y", "on"))
FALSE_VALUES = frozenset(("0", "false", "f", "no", "n", "off"))

# Prune convergence bounds
DEFAULT_POST_CREATE_SLEEP_SECONDS = 2
MAX_POST_CREATE_SLEEP_SECONDS = 60
DEFAULT_PRUNE_MAX_ATTEMPTS = 5
MAX_PRUNE_MAX_ATTEMPTS = 20
PRUNE_RETRY_BACKOFF_SECONDS = 1.0

# Timeouts for external calls
AZ_CLI_TIMEOUT_SECONDS = 120
HTTP_TIMEOUT_SECONDS = 15

# Input validation patterns
VALID_SECRET_NAME_PATTERN = r"^[A-Za-z0-9-]+$"
VALID_INSTANCE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9-]{0,61}[A-Za-z0-9]$"
VALID_SERVICE_ACCOUNT_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,189}$"
VALID_TTL_PATTERN = r"^([1-9][0-9]*)([smhdw])$"
VALID_ROLES = ("Admin", "Editor", "Viewer")

_TTL_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_ttl(value: str) -> timedelta:
    """Parse a duration string such as ``90d`` or ``12h``.

    Raises:
        ConfigurationError: If the string is not ``<positive int><unit>``.
    """
    match = re.match(VALID_TTL_PATTERN, value or "")
    if not match:
        raise ConfigurationError(
            f"TOKEN_TTL must match {VALID_TTL_PATTERN} (e.g. 90d, 12h): {value!r}"
        )
    return int(match.group(1)) * _TTL_UNITS[match.group(2)]


@dataclass(frozen=True)
class ReconcileOptions:
    """Switches that steer the token decision procedure.

    Defaults mirror the pipeline defaults: reuse what exists, keep a single
    active token, and repair metadata drift in the secret store.
    """

    rotate: bool = False
    reuse_only: bool = True
    allow_multiple_active: bool = False
    cleanup_all_others: bool = True
    fix_name_mismatch: bool = True
    stale_recreate: bool = True
    always_write_on_reuse: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class Config:
    """Run configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required
    instance_name: str

    # Grafana identity
    service_account_name: str = DEFAULT_SERVICE_ACCOUNT_NAME
    service_account_role: str = DEFAULT_SERVICE_ACCOUNT_ROLE
    resource_group: str | None = None
    token_ttl: str = DEFAULT_TOKEN_TTL

    # Output
    output_mode: OutputMode = OutputMode.SECRET_VARIABLE
    keyvault_name: str | None = None
    token_secret_name: str = DEFAULT_TOKEN_SECRET_NAME
    token_name_secret_name: str = DEFAULT_TOKEN_NAME_SECRET_NAME
    secret_variable_name: str = DEFAULT_SECRET_VARIABLE_NAME
    managed_identity_client_id: str | None = None

    # Behavior
    rotate: bool = False
    reuse_only: bool = True
    allow_multiple_active: bool = False
    cleanup_all_others: bool = True
    fix_name_mismatch: bool = True
    stale_recreate: bool = True
    always_write_on_reuse: bool = False
    dry_run: bool = False
    cleanup_only: bool = False
    keep_token_name: str | None = None
    debug: bool = False

    # Timing
    post_create_sleep_seconds: int = DEFAULT_POST_CREATE_SLEEP_SECONDS
    prune_max_attempts: int = DEFAULT_PRUNE_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.instance_name:
            errors.append("GRAFANA_INSTANCE_NAME is required")
        elif not re.match(VALID_INSTANCE_NAME_PATTERN, self.instance_name):
            errors.append(f"GRAFANA_INSTANCE_NAME is not a valid name: {self.instance_name}")

        if not self.service_account_name:
            errors.append("SERVICE_ACCOUNT_NAME must not be empty")
        elif not re.match(VALID_SERVICE_ACCOUNT_NAME_PATTERN, self.service_account_name):
            errors.append(
                f"SERVICE_ACCOUNT_NAME is not a valid name: {self.service_account_name}"
            )

        if self.service_account_role not in VALID_ROLES:
            errors.append(
                f"SERVICE_ACCOUNT_ROLE must be one of {list(VALID_ROLES)}: "
                f"{self.service_account_role}"
            )

        try:
            parse_ttl(self.token_ttl)
        except ConfigurationError as e:
            errors.append(str(e))

        if self.output_mode == OutputMode.KEYVAULT:
            if not self.keyvault_name:
                errors.append("KEYVAULT_NAME is required when OUTPUT_MODE is keyvault")
            for secret_name in (self.token_secret_name, self.token_name_secret_name):
                if not re.match(VALID_SECRET_NAME_PATTERN, secret_name or ""):
                    errors.append(
                        f"Invalid secret name {secret_name!r} (alphanumerics and '-' only)"
                    )
            if self.token_secret_name == self.token_name_secret_name:
                errors.append("TOKEN_SECRET_NAME and TOKEN_NAME_SECRET_NAME must differ")

        if not self.secret_variable_name:
            errors.append("SECRET_VARIABLE_NAME must not be empty")

        if not (0 <= self.post_create_sleep_seconds <= MAX_POST_CREATE_SLEEP_SECONDS):
            errors.append(
                f"POST_CREATE_SLEEP must be between 0 and {MAX_POST_CREATE_SLEEP_SECONDS} seconds"
            )

        if not (1 <= self.prune_max_attempts <= MAX_PRUNE_MAX_ATTEMPTS):
            errors.append(f"PRUNE_MAX_ATTEMPTS must be between 1 and {MAX_PRUNE_MAX_ATTEMPTS}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def uses_keyvault(self) -> bool:
        """Whether credentials are persisted in Key Vault."""
        return self.output_mode == OutputMode.KEYVAULT

    @property
    def keyvault_url(self) -> str | None:
        """Vault URL derived from the vault name."""
        if not self.keyvault_name:
            return None
        return f"https://{self.keyvault_name}.vault.azure.net"

    @property
    def token_ttl_delta(self) -> timedelta:
        """Token TTL as a timedelta."""
        return parse_ttl(self.token_ttl)

    def reconcile_options(self) -> ReconcileOptions:
        """Build the immutable decision options for this run."""
        return ReconcileOptions(
            rotate=self.rotate,
            reuse_only=self.reuse_only,
            allow_multiple_active=self.allow_multiple_active,
            cleanup_all_others=self.cleanup_all_others,
            fix_name_mismatch=self.fix_name_mismatch,
            stale_recreate=self.stale_recreate,
            always_write_on_reuse=self.always_write_on_reuse,
            dry_run=self.dry_run,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GRAFANA_INSTANCE_NAME: Azure Managed Grafana instance (required)
            GRAFANA_RESOURCE_GROUP: Resource group of the instance (optional)
            SERVICE_ACCOUNT_NAME: Grafana service account (default: grafana-tf-admin)
            SERVICE_ACCOUNT_ROLE: Admin, Editor or Viewer (default: Admin)
            TOKEN_TTL: Token lifetime such as 90d or 12h (default: 90d)
            OUTPUT_MODE: secretVariable or keyvault (default: secretVariable)
            KEYVAULT_NAME: Required if OUTPUT_MODE is keyvault
            TOKEN_SECRET_NAME: Secret holding the token value (default: grafana-auth)
            TOKEN_NAME_SECRET_NAME: Secret holding the token name (default: grafana-auth-name)
            SECRET_VARIABLE_NAME: Pipeline variable name (default: GRAFANA_AUTH)
            AZURE_CLIENT_ID: User-assigned managed identity for Key Vault access

        Behavior Variables:
            ROTATE, REUSE_ONLY, ALLOW_MULTIPLE_ACTIVE_TOKENS, CLEANUP_ALL_OTHERS,
            FIX_NAME_MISMATCH, STALE_TOKEN_RECREATE, ALWAYS_WRITE_ON_REUSE,
            DRY_RUN, CLEANUP_ONLY, DEBUG: booleans (true/false, 1/0, yes/no,
                on/off, t/f, y/n; anything else is a configuration error)
            KEEP_TOKEN_NAME: Token to keep in cleanup-only mode
            POST_CREATE_SLEEP: Seconds to wait before pruning (default: 2)
            PRUNE_MAX_ATTEMPTS: Prune convergence passes (default: 5)
        """

        def get_str(key: str, default: str) -> str:
            return os.environ.get(key) or default

        def get_optional(key: str) -> str | None:
            return os.environ.get(key) or None

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").strip().lower()
            if not value:
                return default
            if value in TRUE_VALUES:
                return True
            if value in FALSE_VALUES:
                return False
            raise ConfigurationError(f"{key} must be a boolean: {value}")

        def get_output_mode(value: str | None) -> OutputMode:
            if not value:
                return OutputMode.SECRET_VARIABLE
            try:
                return OutputMode(value)
            except ValueError as e:
                valid = [m.value for m in OutputMode]
                raise ConfigurationError(f"OUTPUT_MODE must be one of {valid}: {value}") from e

        return cls(
            instance_name=os.environ.get("GRAFANA_INSTANCE_NAME", ""),
            service_account_name=get_str("SERVICE_ACCOUNT_NAME", DEFAULT_SERVICE_ACCOUNT_NAME),
            service_account_role=get_str("SERVICE_ACCOUNT_ROLE", DEFAULT_SERVICE_ACCOUNT_ROLE),
            resource_group=get_optional("GRAFANA_RESOURCE_GROUP"),
            token_ttl=get_str("TOKEN_TTL", DEFAULT_TOKEN_TTL),
            output_mode=get_output_mode(os.environ.get("OUTPUT_MODE")),
            keyvault_name=get_optional("KEYVAULT_NAME"),
            token_secret_name=get_str("TOKEN_SECRET_NAME", DEFAULT_TOKEN_SECRET_NAME),
            token_name_secret_name=get_str(
                "TOKEN_NAME_SECRET_NAME", DEFAULT_TOKEN_NAME_SECRET_NAME
            ),
            secret_variable_name=get_str("SECRET_VARIABLE_NAME", DEFAULT_SECRET_VARIABLE_NAME),
            managed_identity_client_id=get_optional("AZURE_CLIENT_ID"),
            rotate=get_bool("ROTATE", False),
            reuse_only=get_bool("REUSE_ONLY", True),
            allow_multiple_active=get_bool("ALLOW_MULTIPLE_ACTIVE_TOKENS", False),
            cleanup_all_others=get_bool("CLEANUP_ALL_OTHERS", True),
            fix_name_mismatch=get_bool("FIX_NAME_MISMATCH", True),
            stale_recreate=get_bool("STALE_TOKEN_RECREATE", True),
            always_write_on_reuse=get_bool("ALWAYS_WRITE_ON_REUSE", False),
            dry_run=get_bool("DRY_RUN", False),
            cleanup_only=get_bool("CLEANUP_ONLY", False),
            keep_token_name=get_optional("KEEP_TOKEN_NAME"),
            debug=get_bool("DEBUG", False),
            post_create_sleep_seconds=get_int(
                "POST_CREATE_SLEEP", DEFAULT_POST_CREATE_SLEEP_SECONDS
            ),
            prune_max_attempts=get_int("PRUNE_MAX_ATTEMPTS", DEFAULT_PRUNE_MAX_ATTEMPTS),
        )
