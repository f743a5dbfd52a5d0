"""Token reconciliation for a Grafana service account.

One run inspects the live tokens of a service account and the credential
persisted in the secret store, then reuses, creates or repairs so that the
caller ends up with a usable token value:

1. Expire sweep: delete every token that is revoked or past its expiry
2. Stale detection: stored value but no active token -> force creation
3. Name inference: stored value without a name -> adopt newest active name
4. Multiplicity pruning: more than one active token -> keep one
5. Name-mismatch repair: stored name not active -> repoint to newest
6. Reuse-only: active tokens exist -> return the stored value (fail without one)
7. Creation: rotation requested or nothing active -> create a token
8. No-op: return the stored value untouched

Steps 3 to 5 repair state and let evaluation continue; from steps 2, 6, 7 and
8 the first that applies decides the outcome.

The value of a token is only visible in the response of its create call, so
it is persisted immediately after creation. A stored value can never be
verified against Grafana, only the name next to it.

CONCURRENCY: one run per service account at a time. Runs are not locked
against each other; callers serialize them (pipeline concurrency control).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime

from .config import (
    DEFAULT_POST_CREATE_SLEEP_SECONDS,
    DEFAULT_PRUNE_MAX_ATTEMPTS,
    DEFAULT_SERVICE_ACCOUNT_ROLE,
    DEFAULT_TOKEN_TTL,
    PRUNE_RETRY_BACKOFF_SECONDS,
    ReconcileOptions,
)
from .grafana_api import GrafanaAccountAPI, GrafanaApiError
from .models import (
    GrafanaToken,
    PruneResult,
    ReconcileResult,
    ReconcileStatus,
    StoredCredential,
    token_name_for,
)
from .secret_store import CredentialStore, SecretStoreError
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

# Value handed out instead of a real token in dry-run mode
SIMULATED_TOKEN_VALUE = "SIMULATED_TOKEN"

_REUSE_ONLY_WITHOUT_VALUE = (
    "REUSE_ONLY is active but no stored token value is available. "
    "Run once with ROTATE=true to seed."
)


class TokenReconcileError(Exception):
    """Base class for fatal reconciliation outcomes."""

    pass


class NoCredentialAvailable(TokenReconcileError):
    """Raised when no credential value can be returned without creating one."""

    pass


class TokenCreationFailed(TokenReconcileError):
    """Raised when the backend yields no secret value for a new token."""

    pass


def newest_token_name(tokens: Iterable[GrafanaToken]) -> str | None:
    """Name of the most recently created token.

    Token names end in a fixed-width UTC timestamp, so the lexically greatest
    name is the newest one.
    """
    names = [t.name for t in tokens if t.name]
    return max(names) if names else None


class TokenReconciler:
    """Decides and applies the token action for one service account.

    Args:
        api: Grafana service account backend.
        service_account: Name of the service account to manage.
        role: Role the service account must hold.
        token_ttl: Lifetime passed to token creation (e.g. "90d").
        credential_store: Where the (value, name) pair lives. None means
            nothing is persisted and no stored credential exists.
        options: Decision switches.
        post_create_sleep: Seconds to wait before a post-create prune so the
            backend lists the new token.
        prune_max_attempts: Upper bound on prune passes.
        clock: Returns the current time (UTC-aware).
        sleep: Blocking sleep, injectable for tests.
    """

    def __init__(
        self,
        api: GrafanaAccountAPI,
        service_account: str,
        *,
        role: str = DEFAULT_SERVICE_ACCOUNT_ROLE,
        token_ttl: str = DEFAULT_TOKEN_TTL,
        credential_store: CredentialStore | None = None,
        options: ReconcileOptions | None = None,
        post_create_sleep: float = DEFAULT_POST_CREATE_SLEEP_SECONDS,
        prune_max_attempts: int = DEFAULT_PRUNE_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api = api
        self._service_account = service_account
        self._role = role
        self._token_ttl = token_ttl
        self._store = credential_store
        self._options = options or ReconcileOptions()
        self._post_create_sleep = post_create_sleep
        self._prune_max_attempts = max(1, prune_max_attempts)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep

    @property
    def options(self) -> ReconcileOptions:
        return self._options

    @property
    def _dry_run(self) -> bool:
        return self._options.dry_run

    # =========================================================================
    # Service account
    # =========================================================================

    def ensure_service_account(self) -> bool:
        """Create the service account if absent, align its role if not.

        Returns:
            True if the account was (or in dry-run would be) created.

        Raises:
            GrafanaApiError: If the account cannot be listed or created.
        """
        account = self._api.get_service_account(self._service_account)
        if account is None:
            logger.info(
                "Creating service account",
                extra={"service_account": self._service_account, "role": self._role},
            )
            if self._dry_run:
                logger.info("DRY_RUN: would create service account")
                return True
            self._api.create_service_account(self._service_account, self._role)
            log_security_audit_event(
                "service_account", self._service_account, action="create", result="success"
            )
            return True

        if account.role and account.role.lower() != self._role.lower():
            logger.info(
                "Updating service account role",
                extra={
                    "service_account": self._service_account,
                    "current_role": account.role,
                    "role": self._role,
                },
            )
            if self._dry_run:
                logger.info("DRY_RUN: would update service account role")
            else:
                self._api.update_service_account_role(self._service_account, self._role)
                log_security_audit_event(
                    "service_account", self._service_account, action="update_role", result="success"
                )
        else:
            logger.info("Service account exists", extra={"service_account": self._service_account})
        return False

    # =========================================================================
    # Token inspection and cleanup
    # =========================================================================

    def _list_tokens(self) -> list[GrafanaToken]:
        return self._api.list_tokens(self._service_account)

    def _has_active_token(self) -> bool:
        """Read-only check; a missing service account has no tokens."""
        if self._api.get_service_account(self._service_account) is None:
            return False
        return bool(self._active(self._list_tokens()))

    def _active(self, tokens: Iterable[GrafanaToken]) -> list[GrafanaToken]:
        now = self._clock()
        return [t for t in tokens if t.name and t.is_active(now)]

    def _delete_token(self, token: GrafanaToken, reason: str) -> bool:
        """Best-effort delete. Failures are logged, never raised."""
        if not token.name:
            return False
        if self._dry_run:
            logger.info(
                "DRY_RUN: would delete token",
                extra={"token_name": token.name, "token_id": token.id, "reason": reason},
            )
            return True
        try:
            self._api.delete_token(self._service_account, token.name)
        except GrafanaApiError as e:
            logger.warning(
                "Failed to delete token",
                extra={"token_name": token.name, "token_id": token.id, "error": str(e)},
            )
            log_security_audit_event(
                "token", self._service_account, target=token.name, action="delete", result="failure"
            )
            return False
        log_security_audit_event(
            "token", self._service_account, target=token.name, action="delete", result="success"
        )
        return True

    def sweep_expired(self, tokens: Iterable[GrafanaToken]) -> list[str]:
        """Delete every token that is no longer active.

        Returns:
            Names of deleted tokens.
        """
        now = self._clock()
        deleted: list[str] = []
        for token in tokens:
            if not token.name or token.is_active(now):
                continue
            logger.info(
                "Revoking expired token",
                extra={
                    "token_name": token.name,
                    "expires_at": token.expires_at.isoformat() if token.expires_at else None,
                    "revoked": token.revoked,
                },
            )
            if self._delete_token(token, reason="expired"):
                deleted.append(token.name)
        return deleted

    def prune(self, keep_name: str | None = None, *, settle: bool = True) -> PruneResult:
        """Delete active tokens other than ``keep_name`` until one remains.

        Runs bounded passes: list, delete the extras, re-list. Stops once at
        most one active token remains or a pass deletes nothing. Not
        converging is logged, not raised.

        Args:
            keep_name: Token to keep; defaults to the newest active token.
            settle: Wait ``post_create_sleep`` before the first listing.
        """
        if settle and self._post_create_sleep > 0:
            self._sleep(self._post_create_sleep)

        active = self._active(self._list_tokens())
        if not keep_name:
            keep_name = newest_token_name(active)
        result = PruneResult(keep_name=keep_name, remaining_active=len(active))

        if keep_name is None or len(active) <= 1:
            logger.debug(
                "Prune skipped", extra={"keep_name": keep_name, "active_count": len(active)}
            )
            return result

        logger.info("Pruning tokens", extra={"keep_name": keep_name, "active_count": len(active)})
        for attempt in range(1, self._prune_max_attempts + 1):
            result.attempts = attempt
            extras = [t for t in active if t.name != keep_name]
            if not extras:
                break

            deleted_this_pass = 0
            for token in extras:
                if self._delete_token(token, reason="prune"):
                    if token.name not in result.deleted:
                        result.deleted.append(token.name)
                    deleted_this_pass += 1
                elif token.name not in result.failed:
                    result.failed.append(token.name)

            if self._dry_run:
                active = [t for t in active if t.name == keep_name]
                break

            active = self._active(self._list_tokens())
            if len(active) <= 1 or deleted_this_pass == 0:
                break
            if attempt < self._prune_max_attempts:
                self._sleep(PRUNE_RETRY_BACKOFF_SECONDS * attempt)

        result.remaining_active = len(active)
        if not result.converged:
            logger.warning(
                "Could not prune to a single token",
                extra={
                    "keep_name": keep_name,
                    "remaining_active": result.remaining_active,
                    "attempts": result.attempts,
                    "failed": result.failed,
                },
            )
        return result

    def cleanup(self, keep_name: str | None = None) -> PruneResult | None:
        """Sweep expired tokens and prune to one, without touching secrets.

        Returns:
            The prune outcome, or None when multiple active tokens are allowed.
        """
        self.ensure_service_account()
        tokens = self._list_tokens()
        self.sweep_expired(tokens)

        if self._options.allow_multiple_active:
            logger.info("Multiple active tokens allowed; skipping prune")
            return None

        active_names = {t.name for t in self._active(tokens)}
        if keep_name and keep_name not in active_names:
            logger.warning(
                "Token to keep is not active; keeping the newest active token instead",
                extra={"keep_name": keep_name},
            )
            keep_name = None
        return self.prune(keep_name, settle=False)

    # =========================================================================
    # Secret persistence
    # =========================================================================

    def _persist_name(self, name: str) -> None:
        """Best-effort write of a repaired token name."""
        if self._store is None:
            return
        if self._dry_run:
            logger.info("DRY_RUN: would store token name", extra={"token_name": name})
            return
        try:
            self._store.save_name(name)
        except SecretStoreError as e:
            logger.warning(
                "Failed to store token name", extra={"token_name": name, "error": str(e)}
            )

    def _persist_created(self, value: str, name: str) -> None:
        """Persist a new credential; on failure delete the token it belongs to.

        Raises:
            SecretStoreError: If the credential cannot be stored.
        """
        if self._store is None:
            return
        if self._dry_run:
            logger.info("DRY_RUN: would store new token value and name", extra={"token_name": name})
            return
        try:
            self._store.save(value, name)
        except SecretStoreError:
            logger.error("Failed to store new token; rolling back", extra={"token_name": name})
            if not self._delete_token(GrafanaToken(name=name), reason="rollback"):
                logger.error("Rollback failed, orphaned token", extra={"token_name": name})
            raise
        log_security_audit_event(
            "secret", self._service_account, target=name, action="write", result="success"
        )

    def _persist_reused(self, value: str) -> None:
        if self._store is None or not self._options.always_write_on_reuse:
            return
        if self._dry_run:
            logger.info("DRY_RUN: would rewrite stored token value")
            return
        logger.info("Reusing token; rewriting stored value")
        self._store.save_value(value)

    # =========================================================================
    # Decision procedure
    # =========================================================================

    def _create_token(self) -> tuple[str, str]:
        """Create a token and return (value, name).

        Raises:
            TokenCreationFailed: If the backend yields no secret value.
        """
        name = token_name_for(self._service_account, self._clock())
        logger.info("Creating token", extra={"token_name": name, "ttl": self._token_ttl})
        if self._dry_run:
            return SIMULATED_TOKEN_VALUE, name
        try:
            created = self._api.create_token(self._service_account, name, self._token_ttl)
        except GrafanaApiError as e:
            log_security_audit_event(
                "token", self._service_account, target=name, action="create", result="failure"
            )
            raise TokenCreationFailed(f"Failed to create token or extract key: {e}") from e
        log_security_audit_event(
            "token", self._service_account, target=name, action="create", result="success"
        )
        return created.key, created.name or name

    def reconcile(self, stored: StoredCredential | None = None) -> ReconcileResult:
        """Run one reconciliation.

        Args:
            stored: Previously persisted credential. Loaded from the
                credential store when omitted.

        Returns:
            Result with a non-empty credential value.

        Raises:
            NoCredentialAvailable: No value can be returned without creating.
            TokenCreationFailed: Token creation yielded no value.
            GrafanaApiError: Listing tokens or managing the account failed.
            SecretStoreError: The stored credential could not be read or a
                new credential could not be written.
        """
        opts = self._options
        start_time = self._clock()
        if stored is None:
            stored = self._store.load() if self._store is not None else StoredCredential()

        logger.debug(
            "Decision inputs",
            extra={
                "has_stored_value": stored.has_value,
                "stored_name": stored.name,
                "rotate": opts.rotate,
                "reuse_only": opts.reuse_only,
                "allow_multiple_active": opts.allow_multiple_active,
                "cleanup_all_others": opts.cleanup_all_others,
                "fix_name_mismatch": opts.fix_name_mismatch,
                "stale_recreate": opts.stale_recreate,
            },
        )

        # Reuse-only without a stored value fails. With nothing active it fails
        # here, before any mutation; otherwise after the sweep, at the reuse
        # decision.
        value_missing = opts.reuse_only and not opts.rotate and not stored.has_value
        if value_missing and not self._has_active_token():
            raise NoCredentialAvailable(_REUSE_ONLY_WITHOUT_VALUE)

        self.ensure_service_account()

        tokens = self._list_tokens()
        expired_deleted = self.sweep_expired(tokens)
        active = self._active(tokens)
        logger.info("Active tokens", extra={"active_count": len(active)})

        # Stale secret
        force_create = False
        if stored.has_value and not active and opts.stale_recreate:
            logger.warning("Stored token value has no active token in Grafana; forcing creation")
            force_create = True

        # Name inference
        name_repaired = False
        if stored.has_value and not stored.has_name and active:
            inferred = newest_token_name(active)
            logger.info("Inferred missing token name", extra={"token_name": inferred})
            self._persist_name(inferred)
            stored = replace(stored, name=inferred)
            name_repaired = True

        # Multiplicity pruning
        prune_result: PruneResult | None = None
        if len(active) > 1 and not opts.allow_multiple_active and opts.cleanup_all_others:
            active_names = {t.name for t in active}
            keep_name = stored.name if stored.name in active_names else newest_token_name(active)
            prune_result = self.prune(keep_name, settle=False)
            if self._dry_run:
                active = [t for t in active if t.name == keep_name]
            else:
                active = self._active(self._list_tokens())

        # Name-mismatch repair
        active_names = {t.name for t in active}
        if (
            opts.fix_name_mismatch
            and stored.has_value
            and stored.has_name
            and active
            and stored.name not in active_names
        ):
            current = newest_token_name(active)
            logger.warning(
                "Stored token name is not active; repointing",
                extra={"stored_name": stored.name, "token_name": current},
            )
            self._persist_name(current)
            stored = replace(stored, name=current)
            name_repaired = True

        def finish(value: str, status: ReconcileStatus, token_name: str | None) -> ReconcileResult:
            result = ReconcileResult(
                value=value,
                status=status,
                token_name=token_name,
                expired_deleted=expired_deleted,
                name_repaired=name_repaired,
                stale_detected=force_create,
                prune=prune_result,
                start_time=start_time,
                end_time=self._clock(),
            )
            logger.info(
                "Reconciliation decision",
                extra={"status": status.value, "token_name": token_name},
            )
            return result

        # Reuse-only
        if not force_create and opts.reuse_only and not opts.rotate and active:
            if not stored.has_value:
                raise NoCredentialAvailable(_REUSE_ONLY_WITHOUT_VALUE)
            if stored.name and stored.name in active_names:
                logger.info("Reusing stored token", extra={"token_name": stored.name})
            else:
                logger.info("Reusing stored value; token name not trackable")
            self._persist_reused(stored.value)
            return finish(stored.value, ReconcileStatus.REUSED, stored.name)

        # Creation
        if force_create or opts.rotate or not active:
            value, name = self._create_token()
            self._persist_created(value, name)
            if not opts.allow_multiple_active:
                prune_result = self.prune(name)
            return finish(value, ReconcileStatus.CREATED, name)

        # No-op
        if not stored.has_value:
            raise NoCredentialAvailable(
                "Active tokens exist but no stored token value is available to output"
            )
        logger.info("Skipping creation; nothing to change")
        self._persist_reused(stored.value)
        return finish(stored.value, ReconcileStatus.NO_OP, stored.name)
