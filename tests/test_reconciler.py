"""Tests for the token reconciliation decision procedure."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from grafana_mock import FakeClock, MockGrafanaAPI, MockSecretStore, RecordingSleep

from grafana_token.config import ReconcileOptions
from grafana_token.grafana_api import GrafanaApiError
from grafana_token.models import GrafanaToken, ReconcileStatus, StoredCredential
from grafana_token.reconciler import (
    SIMULATED_TOKEN_VALUE,
    NoCredentialAvailable,
    TokenCreationFailed,
    TokenReconciler,
    newest_token_name,
)
from grafana_token.secret_store import CredentialStore, SecretStoreError

SA = "grafana-tf-admin"
OLDEST = f"{SA}-20240101000000"
OLDER = f"{SA}-20240201000000"
NEWER = f"{SA}-20240301000000"
# Name a token created at the default fake clock time gets
CREATED_NAME = f"{SA}-20240601120000"

VALUE_SECRET = "grafana-auth"
NAME_SECRET = "grafana-auth-name"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def api(clock: FakeClock) -> MockGrafanaAPI:
    backend = MockGrafanaAPI(clock)
    backend.add_account(SA, "Admin")
    return backend


@pytest.fixture
def secrets() -> MockSecretStore:
    return MockSecretStore()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def make_reconciler(api, secrets, clock, sleep):
    """Factory building a reconciler wired to the fakes."""

    def factory(store: bool = True, **options) -> TokenReconciler:
        return TokenReconciler(
            api,
            SA,
            role="Admin",
            token_ttl="90d",
            credential_store=(
                CredentialStore(secrets, VALUE_SECRET, NAME_SECRET) if store else None
            ),
            options=ReconcileOptions(**options),
            post_create_sleep=2,
            prune_max_attempts=3,
            clock=clock,
            sleep=sleep,
        )

    return factory


def seed(secrets: MockSecretStore, value: str | None = None, name: str | None = None) -> None:
    if value is not None:
        secrets.secrets[VALUE_SECRET] = value
    if name is not None:
        secrets.secrets[NAME_SECRET] = name


class TestNewestTokenName:
    """Tests for newest_token_name."""

    def test_lexically_greatest(self) -> None:
        tokens = [GrafanaToken(name=OLDER), GrafanaToken(name=NEWER), GrafanaToken(name=OLDEST)]
        assert newest_token_name(tokens) == NEWER

    def test_ignores_unnamed(self) -> None:
        assert newest_token_name([GrafanaToken(name=""), GrafanaToken(name=OLDER)]) == OLDER

    def test_empty(self) -> None:
        assert newest_token_name([]) is None


class TestEnsureServiceAccount:
    """Tests for service account creation and role alignment."""

    def test_creates_missing_account(self, make_reconciler, api) -> None:
        api.accounts.clear()
        assert make_reconciler().ensure_service_account() is True
        assert api.calls_to("create_service_account") == [(SA, "Admin")]

    def test_updates_mismatched_role(self, make_reconciler, api) -> None:
        api.add_account(SA, "Viewer")
        assert make_reconciler().ensure_service_account() is False
        assert api.calls_to("update_service_account_role") == [(SA, "Admin")]
        assert api.accounts[SA].role == "Admin"

    def test_role_compare_is_case_insensitive(self, make_reconciler, api) -> None:
        api.add_account(SA, "admin")
        make_reconciler().ensure_service_account()
        assert api.mutations == []

    def test_dry_run_does_not_create(self, make_reconciler, api) -> None:
        api.accounts.clear()
        assert make_reconciler(dry_run=True).ensure_service_account() is True
        assert api.mutations == []


class TestReuse:
    """Tests for the reuse-only path."""

    def test_reuses_stored_value(self, make_reconciler, api, secrets) -> None:
        """Stored pair matching the only active token is returned untouched."""
        api.add_token(SA, OLDER)
        seed(secrets, "abc", OLDER)

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert result.value == "abc"
        assert result.token_name == OLDER
        assert api.mutations == []
        assert secrets.writes == []

    def test_expired_sibling_is_deleted(self, make_reconciler, api, secrets) -> None:
        """Default options: the expired token goes, the stored one is reused."""
        api.add_token(SA, f"{SA}-20240101000000")
        api.add_token(SA, f"{SA}-20231201000000", expired=True)
        seed(secrets, "abc", f"{SA}-20240101000000")

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert result.value == "abc"
        assert result.expired_deleted == [f"{SA}-20231201000000"]
        assert api.token_names(SA) == [f"{SA}-20240101000000"]
        assert api.calls_to("create_token") == []

    def test_explicit_stored_credential(self, make_reconciler, api, secrets) -> None:
        """A credential passed in wins over the store."""
        api.add_token(SA, OLDER)

        result = make_reconciler().reconcile(StoredCredential(value="abc", name=OLDER))

        assert result.value == "abc"
        assert result.status == ReconcileStatus.REUSED

    def test_always_write_on_reuse(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc", OLDER)

        make_reconciler(always_write_on_reuse=True).reconcile()

        assert secrets.writes == [(VALUE_SECRET, "abc")]

    def test_reuse_only_without_value_and_nothing_active(self, make_reconciler, api) -> None:
        """Nothing to reuse and nothing active: fail without touching the backend."""
        api.add_token(SA, OLDEST, expired=True)

        with pytest.raises(NoCredentialAvailable, match="ROTATE=true"):
            make_reconciler().reconcile()

        assert api.mutations == []
        assert api.token_names(SA) == [OLDEST]

    def test_reuse_only_without_value_sweeps_before_failing(self, make_reconciler, api) -> None:
        """The expire sweep runs before the reuse decision fails."""
        api.add_token(SA, f"{SA}-20240101000000")
        api.add_token(SA, f"{SA}-20231201000000", expired=True)
        api.add_token(SA, f"{SA}-20231101000000", expired=True)

        with pytest.raises(NoCredentialAvailable):
            make_reconciler().reconcile()

        assert api.token_names(SA) == [f"{SA}-20240101000000"]
        assert api.calls_to("create_token") == []

    def test_reuse_only_without_value_and_missing_account(self, make_reconciler, api) -> None:
        """Even the service account is left alone."""
        api.accounts.clear()

        with pytest.raises(NoCredentialAvailable):
            make_reconciler().reconcile()

        assert api.mutations == []

    def test_reuse_only_with_rotate_seeds(self, make_reconciler, api, secrets) -> None:
        result = make_reconciler(rotate=True).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert secrets.secrets[VALUE_SECRET] == result.value


class TestCreation:
    """Tests for token creation and rotation."""

    def test_creates_when_nothing_exists(self, make_reconciler, api, secrets) -> None:
        api.accounts.clear()

        result = make_reconciler(reuse_only=False).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.created is True
        assert result.token_name == CREATED_NAME
        assert api.calls_to("create_service_account") == [(SA, "Admin")]
        assert api.calls_to("create_token") == [(SA, CREATED_NAME, "90d")]
        assert secrets.writes == [(VALUE_SECRET, result.value), (NAME_SECRET, CREATED_NAME)]

    def test_second_run_is_idempotent(self, make_reconciler, api, secrets) -> None:
        reconciler = make_reconciler(reuse_only=False)
        first = reconciler.reconcile()
        mutations_after_first = len(api.mutations)
        writes_after_first = len(secrets.writes)

        second = reconciler.reconcile()

        assert second.status == ReconcileStatus.NO_OP
        assert second.value == first.value
        assert second.token_name == first.token_name
        assert len(api.mutations) == mutations_after_first
        assert len(secrets.writes) == writes_after_first

    def test_rotation_replaces_old_token(self, make_reconciler, api, secrets, sleep) -> None:
        api.add_token(SA, OLDER, key="old-key")
        seed(secrets, "old-key", OLDER)

        result = make_reconciler(rotate=True).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.value != "old-key"
        assert api.active_names(SA) == [CREATED_NAME]
        assert secrets.secrets == {VALUE_SECRET: result.value, NAME_SECRET: CREATED_NAME}
        assert result.prune is not None
        assert result.prune.deleted == [OLDER]
        # Settles before listing the new token
        assert sleep.calls[0] == 2

    def test_allow_multiple_active_skips_prune(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc", OLDER)

        result = make_reconciler(rotate=True, allow_multiple_active=True).reconcile()

        assert result.prune is None
        assert sorted(api.active_names(SA)) == [OLDER, CREATED_NAME]

    def test_without_store(self, make_reconciler, api) -> None:
        result = make_reconciler(store=False, reuse_only=False).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.value

    def test_creation_failure(self, make_reconciler, api, secrets) -> None:
        api.fail_create = True

        with pytest.raises(TokenCreationFailed):
            make_reconciler(reuse_only=False).reconcile()

        assert secrets.writes == []

    def test_store_failure_rolls_back_new_token(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc", OLDER)
        secrets.fail_writes = True

        with pytest.raises(SecretStoreError):
            make_reconciler(rotate=True).reconcile()

        assert api.deleted_names == [CREATED_NAME]
        assert api.token_names(SA) == [OLDER]
        assert secrets.secrets == {VALUE_SECRET: "abc", NAME_SECRET: OLDER}

    def test_list_failure_is_fatal(self, make_reconciler, api, secrets) -> None:
        seed(secrets, "abc", OLDER)
        api.fail_list = True

        with pytest.raises(GrafanaApiError):
            make_reconciler().reconcile()

        assert api.calls_to("create_token") == []


class TestStaleSecret:
    """Tests for stored values whose token is gone."""

    def test_stale_value_forces_creation(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDEST, expired=True)
        seed(secrets, "abc", OLDEST)

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.stale_detected is True
        assert result.expired_deleted == [OLDEST]
        assert result.value != "abc"
        assert api.active_names(SA) == [CREATED_NAME]

    def test_zero_active_creates_even_without_stale_recreate(
        self, make_reconciler, api, secrets
    ) -> None:
        seed(secrets, "abc", OLDEST)

        result = make_reconciler(stale_recreate=False).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.stale_detected is False


class TestRepair:
    """Tests for name inference, mismatch repair and pruning."""

    def test_infers_missing_name(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc")

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert result.name_repaired is True
        assert result.token_name == OLDER
        assert secrets.writes == [(NAME_SECRET, OLDER)]

    def test_infers_newest_and_prunes_the_rest(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        api.add_token(SA, NEWER)
        seed(secrets, "abc")

        result = make_reconciler().reconcile()

        assert result.token_name == NEWER
        assert api.active_names(SA) == [NEWER]
        assert secrets.secrets[NAME_SECRET] == NEWER

    def test_name_write_failure_is_not_fatal(self, make_reconciler, api, secrets, caplog) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc")
        secrets.fail_writes = True

        with caplog.at_level(logging.WARNING, logger="grafana_token.reconciler"):
            result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert "Failed to store token name" in caplog.text

    def test_repoints_mismatched_name(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, NEWER)
        seed(secrets, "abc", OLDEST)

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert result.value == "abc"
        assert result.token_name == NEWER
        assert result.name_repaired is True
        assert secrets.secrets[NAME_SECRET] == NEWER

    def test_mismatch_left_alone_when_disabled(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, NEWER)
        seed(secrets, "abc", OLDEST)

        result = make_reconciler(fix_name_mismatch=False).reconcile()

        assert result.token_name == OLDEST
        assert result.name_repaired is False
        assert secrets.writes == []

    def test_prunes_to_stored_token(self, make_reconciler, api, secrets) -> None:
        """At most one active token remains, and it is the stored one."""
        for name in (OLDEST, OLDER, NEWER):
            api.add_token(SA, name)
        seed(secrets, "abc", OLDER)

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert api.active_names(SA) == [OLDER]
        assert result.prune is not None
        assert sorted(result.prune.deleted) == [OLDEST, NEWER]
        assert result.prune.converged is True

    def test_prune_skipped_without_cleanup_all_others(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        api.add_token(SA, NEWER)
        seed(secrets, "abc", OLDER)

        result = make_reconciler(cleanup_all_others=False).reconcile()

        assert result.prune is None
        assert len(api.active_names(SA)) == 2

    def test_expired_and_revoked_are_swept(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDEST, expired=True)
        api.add_token(SA, OLDER, revoked=True)
        api.add_token(SA, NEWER, expires_in=None)
        seed(secrets, "abc", NEWER)

        result = make_reconciler().reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert sorted(result.expired_deleted) == [OLDEST, OLDER]
        assert api.token_names(SA) == [NEWER]


class TestPruneConvergence:
    """Tests for bounded prune passes against misbehaving backends."""

    def test_deletes_that_do_not_stick(self, make_reconciler, api, secrets, sleep, caplog) -> None:
        api.add_token(SA, OLDER)
        api.sticky_tokens.add(OLDER)
        seed(secrets, "abc", OLDER)

        with caplog.at_level(logging.WARNING, logger="grafana_token.reconciler"):
            result = make_reconciler(rotate=True).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.prune is not None
        assert result.prune.converged is False
        assert result.prune.attempts == 3
        assert result.prune.remaining_active == 2
        assert result.prune.deleted == [OLDER]
        assert sleep.calls == [2, 1.0, 2.0]
        assert "Could not prune to a single token" in caplog.text

    def test_failing_delete_stops_after_one_pass(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        api.fail_deletes.add(OLDER)
        seed(secrets, "abc", OLDER)

        result = make_reconciler(rotate=True).reconcile()

        assert result.prune is not None
        assert result.prune.failed == [OLDER]
        assert result.prune.attempts == 1
        assert result.prune.converged is False


class TestDryRun:
    """Tests that dry run never mutates anything."""

    def test_rotation(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc", OLDER)

        result = make_reconciler(rotate=True, dry_run=True).reconcile()

        assert result.status == ReconcileStatus.CREATED
        assert result.value == SIMULATED_TOKEN_VALUE
        assert api.mutations == []
        assert secrets.writes == []

    def test_prune_is_simulated(self, make_reconciler, api, secrets) -> None:
        api.add_token(SA, OLDER)
        api.add_token(SA, NEWER)
        api.add_token(SA, OLDEST, expired=True)
        seed(secrets, "abc", OLDER)

        result = make_reconciler(dry_run=True).reconcile()

        assert result.status == ReconcileStatus.REUSED
        assert result.expired_deleted == [OLDEST]
        assert result.prune is not None
        assert result.prune.deleted == [NEWER]
        assert api.mutations == []
        assert len(api.token_names(SA)) == 3


class TestNoOp:
    """Tests for the no-op outcome."""

    def test_no_value_to_return(self, make_reconciler, api) -> None:
        api.add_token(SA, OLDER)

        with pytest.raises(NoCredentialAvailable):
            make_reconciler(reuse_only=False).reconcile()

        assert api.calls_to("create_token") == []

    def test_duration(self, make_reconciler, api, secrets, clock) -> None:
        api.add_token(SA, OLDER)
        seed(secrets, "abc", OLDER)

        result = make_reconciler(reuse_only=False).reconcile()

        assert result.status == ReconcileStatus.NO_OP
        assert result.duration_seconds == 0.0


class TestCleanup:
    """Tests for cleanup-only runs."""

    def test_keeps_named_token(self, make_reconciler, api, secrets) -> None:
        for name in (OLDEST, OLDER, NEWER):
            api.add_token(SA, name)
        api.add_token(SA, f"{SA}-20231201000000", expired=True)

        result = make_reconciler().cleanup(OLDER)

        assert result is not None
        assert result.keep_name == OLDER
        assert api.token_names(SA) == [OLDER]
        assert secrets.writes == []

    def test_inactive_keep_name_falls_back_to_newest(self, make_reconciler, api) -> None:
        api.add_token(SA, OLDER)
        api.add_token(SA, NEWER)
        api.add_token(SA, OLDEST, expired=True)

        result = make_reconciler().cleanup(OLDEST)

        assert result is not None
        assert result.keep_name == NEWER
        assert api.token_names(SA) == [NEWER]

    def test_allow_multiple_only_sweeps(self, make_reconciler, api) -> None:
        api.add_token(SA, OLDER)
        api.add_token(SA, NEWER)
        api.add_token(SA, OLDEST, expires_in=timedelta(seconds=-1))

        assert make_reconciler(allow_multiple_active=True).cleanup() is None
        assert api.token_names(SA) == [OLDER, NEWER]
