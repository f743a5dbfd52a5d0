"""Validation of a stored Grafana token against the live instance.

Checks, in order:
1. Endpoint reachable (``/api/health``; unauthenticated first, then with auth)
2. Token authenticates (``/api/org``)
3. Optionally, token holds admin scope (``/api/serviceaccounts``)

Each failing check maps to its own exit code so pipelines can tell an
unreachable instance from a rejected token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum

import requests

from .config import HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class ValidationExitCode(IntEnum):
    """Process exit codes of the validate command."""

    OK = 0
    PREREQUISITE = 1
    ENDPOINT = 2
    AUTH = 3
    ADMIN_SCOPE = 4


class ValidationFailed(Exception):
    """Raised when a validation check fails."""

    def __init__(self, message: str, exit_code: ValidationExitCode, status_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.status_code = status_code


@dataclass
class ValidationReport:
    """Outcome of the checks that ran."""

    endpoint: str
    checks: dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(code == 200 for code in self.checks.values())


class TokenValidator:
    """Runs the validation checks against a Grafana endpoint.

    Args:
        endpoint: Grafana base URL, e.g. ``https://x.grafana.azure.com``.
        token: Bearer token to validate.
        session: Optional requests session (injected in tests).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        *,
        session: requests.Session | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._token = token
        self._session = session or requests.Session()
        self._timeout = timeout

    def _status(self, path: str, *, auth: bool) -> int:
        headers = {"Authorization": f"Bearer {self._token}"} if auth else {}
        try:
            response = self._session.get(
                f"{self._endpoint}{path}", headers=headers, timeout=self._timeout
            )
        except requests.RequestException as e:
            logger.debug("Request failed", extra={"path": path, "error": type(e).__name__})
            return 0
        return response.status_code

    def validate(self, *, admin_check: bool = False) -> ValidationReport:
        """Run the checks.

        Raises:
            ValidationFailed: At the first failing check.
        """
        report = ValidationReport(endpoint=self._endpoint)

        code = self._status("/api/health", auth=False)
        if code != 200:
            logger.debug(
                "Unauthenticated health check failed; retrying with auth",
                extra={"status_code": code},
            )
            code = self._status("/api/health", auth=True)
        report.checks["health"] = code
        if code != 200:
            raise ValidationFailed(
                f"Health check failed HTTP {code}", ValidationExitCode.ENDPOINT, code
            )
        logger.info("Health OK", extra={"status_code": code})

        code = self._status("/api/org", auth=True)
        report.checks["org"] = code
        if code != 200:
            raise ValidationFailed(
                f"Auth failed (/api/org) HTTP {code}", ValidationExitCode.AUTH, code
            )
        logger.info("Auth OK", extra={"status_code": code})

        if admin_check:
            code = self._status("/api/serviceaccounts", auth=True)
            report.checks["serviceaccounts"] = code
            if code != 200:
                raise ValidationFailed(
                    f"Admin scope test failed (/api/serviceaccounts) HTTP {code}",
                    ValidationExitCode.ADMIN_SCOPE,
                    code,
                )
            logger.info("Admin scope OK", extra={"status_code": code})

        return report
