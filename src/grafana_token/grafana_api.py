"""Grafana service account API over the Azure CLI.

Azure Managed Grafana exposes service account management through the
``az grafana`` CLI extension. This module wraps those commands behind the
GrafanaAccountAPI protocol and normalizes their JSON output into the models
in models.py, so the decision logic never sees raw CLI output.

SECURITY:
- Token secrets are only read from the create response and never logged
- Every CLI call has a timeout
- Arguments are passed as a list (no shell interpolation)
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from typing import Any, Protocol

from pydantic import ValidationError

from .config import AZ_CLI_TIMEOUT_SECONDS
from .models import CreatedToken, GrafanaToken, ServiceAccount

logger = logging.getLogger(__name__)

# Grabs the JSON document out of CLI output that may carry warnings around it
_JSON_DOCUMENT_PATTERN = re.compile(r"[\[{].*[\]}]", re.DOTALL)


class GrafanaApiError(Exception):
    """Raised when a Grafana backend call fails."""

    def __init__(self, message: str, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command or []


class GrafanaAccountAPI(Protocol):
    """Operations the reconciler needs from Grafana."""

    def get_service_account(self, name: str) -> ServiceAccount | None: ...

    def create_service_account(self, name: str, role: str) -> None: ...

    def update_service_account_role(self, name: str, role: str) -> None: ...

    def list_tokens(self, service_account: str) -> list[GrafanaToken]: ...

    def create_token(self, service_account: str, name: str, ttl: str) -> CreatedToken: ...

    def delete_token(self, service_account: str, name: str) -> None: ...


def parse_cli_json(output: str) -> Any:
    """Parse JSON from az CLI output, tolerating surrounding noise.

    Raises:
        ValueError: If no JSON document can be found.
    """
    text = output.strip()
    if not text:
        raise ValueError("empty output")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_DOCUMENT_PATTERN.search(text)
        if not match:
            raise ValueError("no JSON document in output") from None
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"malformed JSON in output: {e.msg}") from e


def parse_tokens(payload: Any) -> list[GrafanaToken]:
    """Normalize a token list payload.

    Entries that are not objects are skipped; entries without a name are
    kept so callers can decide, but they are never selected for deletion.
    """
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise ValueError(f"expected a JSON list of tokens, got {type(payload).__name__}")
    tokens: list[GrafanaToken] = []
    for item in payload:
        if not isinstance(item, dict):
            logger.debug(
                "Skipping non-object token entry", extra={"entry_type": type(item).__name__}
            )
            continue
        tokens.append(GrafanaToken.model_validate(item))
    return tokens


class AzureCliGrafanaClient:
    """GrafanaAccountAPI implementation backed by ``az grafana``.

    Args:
        instance_name: Azure Managed Grafana instance name.
        resource_group: Optional resource group; narrows instance lookup.
        timeout: Timeout for each CLI call in seconds.
    """

    def __init__(
        self,
        instance_name: str,
        resource_group: str | None = None,
        timeout: int = AZ_CLI_TIMEOUT_SECONDS,
    ) -> None:
        self._instance_name = instance_name
        self._resource_group = resource_group
        self._timeout = timeout

    @property
    def instance_name(self) -> str:
        return self._instance_name

    def _instance_args(self) -> list[str]:
        args = ["-n", self._instance_name]
        if self._resource_group:
            args.extend(["-g", self._resource_group])
        return args

    def _run(self, args: list[str]) -> str:
        """Run an az command and return stdout.

        Raises:
            GrafanaApiError: On non-zero exit, timeout, or missing CLI.
        """
        cmd = ["az", *args]
        # Only the command shape is logged; values may include token names
        logger.debug("Running Azure CLI command", extra={"az_command": " ".join(args[:4])})
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise GrafanaApiError(
                f"Azure CLI timed out after {self._timeout}s: az {' '.join(args[:4])}", cmd
            ) from e
        except FileNotFoundError as e:
            raise GrafanaApiError("Azure CLI (az) not found", cmd) from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise GrafanaApiError(
                f"az {' '.join(args[:4])} failed (exit {result.returncode}): {stderr}", cmd
            )
        return result.stdout

    def _run_json(self, args: list[str]) -> Any:
        output = self._run([*args, "-o", "json"])
        try:
            return parse_cli_json(output)
        except ValueError as e:
            raise GrafanaApiError(f"Unparseable output from az {' '.join(args[:4])}: {e}") from e

    # -------------------------------------------------------------------------
    # Service accounts
    # -------------------------------------------------------------------------

    def list_service_accounts(self) -> list[ServiceAccount]:
        payload = self._run_json(["grafana", "service-account", "list", *self._instance_args()])
        if not isinstance(payload, list):
            raise GrafanaApiError("Expected a JSON list of service accounts")
        try:
            return [
                ServiceAccount.model_validate(item) for item in payload if isinstance(item, dict)
            ]
        except ValidationError as e:
            raise GrafanaApiError(f"Invalid service account payload: {e}") from e

    def get_service_account(self, name: str) -> ServiceAccount | None:
        for account in self.list_service_accounts():
            if account.name == name:
                return account
        return None

    def create_service_account(self, name: str, role: str) -> None:
        self._run(
            [
                "grafana",
                "service-account",
                "create",
                *self._instance_args(),
                "--service-account",
                name,
                "--role",
                role,
            ]
        )

    def update_service_account_role(self, name: str, role: str) -> None:
        self._run(
            [
                "grafana",
                "service-account",
                "update",
                *self._instance_args(),
                "--service-account",
                name,
                "--role",
                role,
            ]
        )

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def list_tokens(self, service_account: str) -> list[GrafanaToken]:
        payload = self._run_json(
            [
                "grafana",
                "service-account",
                "token",
                "list",
                *self._instance_args(),
                "--service-account",
                service_account,
            ]
        )
        try:
            return parse_tokens(payload)
        except (ValueError, ValidationError) as e:
            raise GrafanaApiError(f"Invalid token list payload: {e}") from e

    def create_token(self, service_account: str, name: str, ttl: str) -> CreatedToken:
        """Create a token and return its one-time secret.

        Raises:
            GrafanaApiError: If the call fails or no secret can be extracted.
        """
        args = [
            "grafana",
            "service-account",
            "token",
            "create",
            *self._instance_args(),
            "--service-account",
            service_account,
            "--token",
            name,
            "--time-to-live",
            ttl,
            "-o",
            "json",
        ]
        output = self._run(args)
        try:
            payload = parse_cli_json(output)
        except ValueError as e:
            raise GrafanaApiError(f"Failed to extract key for token '{name}': {e}") from e
        if not isinstance(payload, dict):
            raise GrafanaApiError(f"Failed to extract key for token '{name}'")

        try:
            created = CreatedToken.model_validate({**payload, "name": payload.get("name") or name})
        except ValidationError as e:
            # Never include the payload: it may hold a partial secret
            raise GrafanaApiError(
                f"Create response for token '{name}' carries no key "
                f"(fields: {sorted(payload)})"
            ) from e
        logger.debug(
            "Extracted token key", extra={"token_name": name, "key_length": len(created.key)}
        )
        return created

    def delete_token(self, service_account: str, name: str) -> None:
        self._run(
            [
                "grafana",
                "service-account",
                "token",
                "delete",
                *self._instance_args(),
                "--service-account",
                service_account,
                "--token",
                name,
            ]
        )

    # -------------------------------------------------------------------------
    # Instance
    # -------------------------------------------------------------------------

    def get_endpoint(self) -> str:
        """Resolve the instance's HTTPS endpoint without a trailing slash."""
        output = self._run(
            [
                "grafana",
                "show",
                *self._instance_args(),
                "--query",
                "properties.endpoint",
                "-o",
                "tsv",
            ]
        )
        endpoint = output.strip().rstrip("/")
        if not endpoint:
            raise GrafanaApiError(
                f"No endpoint reported for Grafana instance '{self._instance_name}'"
            )
        return endpoint
