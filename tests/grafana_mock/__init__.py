"""Grafana and Key Vault fakes for testing.

In-memory stand-ins for the Grafana service account backend and the secret
store, so reconciliation can be exercised without Azure connectivity.

Key Features:
- Token state with expiry evaluated against an injectable clock
- Call recording for asserting on (or the absence of) mutations
- Failure injection for deletes, creates and secret writes
- Misbehaving-backend simulation (deletes that do not stick)

Usage:
    from grafana_mock import FakeClock, MockGrafanaAPI, MockSecretStore

    clock = FakeClock()
    api = MockGrafanaAPI(clock)
    api.add_token("sa", "sa-20240101000000")
"""

from .backend import MockGrafanaAPI, MockToken
from .clock import FakeClock, RecordingSleep
from .store import MockSecretStore

__all__ = [
    "FakeClock",
    "MockGrafanaAPI",
    "MockSecretStore",
    "MockToken",
    "RecordingSleep",
]
