"""Secret persistence for the token value and token name.

Grafana never returns a token's value after creation, so the value has to be
persisted out-of-band the moment it is created. Key Vault holds two secrets:
the token value and the name of the token it belongs to.
"""

from __future__ import annotations

import logging
from typing import Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.keyvault.secrets import SecretClient

from .models import StoredCredential

logger = logging.getLogger(__name__)


class SecretStoreError(Exception):
    """Raised when the secret store cannot be read or written."""

    pass


class SecretStore(Protocol):
    """Named secret get/set."""

    def get_secret(self, name: str) -> str | None: ...

    def set_secret(self, name: str, value: str) -> None: ...

    def close(self) -> None: ...


class KeyVaultSecretStore:
    """SecretStore backed by Azure Key Vault.

    A missing secret reads as None; any other failure raises SecretStoreError.
    """

    def __init__(self, vault_url: str, credential: TokenCredential) -> None:
        self._vault_url = vault_url
        self._client = SecretClient(vault_url=vault_url, credential=credential)

    @property
    def vault_url(self) -> str:
        return self._vault_url

    def get_secret(self, name: str) -> str | None:
        try:
            secret = self._client.get_secret(name)
        except ResourceNotFoundError:
            logger.debug("Secret not found", extra={"secret_name": name})
            return None
        except AzureError as e:
            raise SecretStoreError(
                f"Failed to read secret '{name}' from {self._vault_url}: {e}"
            ) from e
        return secret.value or None

    def set_secret(self, name: str, value: str) -> None:
        try:
            self._client.set_secret(name, value)
        except AzureError as e:
            raise SecretStoreError(
                f"Failed to write secret '{name}' to {self._vault_url}: {e}"
            ) from e

    def close(self) -> None:
        self._client.close()


class CredentialStore:
    """Reads and writes the (value, name) pair as two named secrets."""

    def __init__(self, store: SecretStore, value_secret_name: str, name_secret_name: str) -> None:
        self._store = store
        self._value_secret_name = value_secret_name
        self._name_secret_name = name_secret_name

    def load(self) -> StoredCredential:
        credential = StoredCredential(
            value=self._store.get_secret(self._value_secret_name),
            name=self._store.get_secret(self._name_secret_name),
        )
        logger.debug(
            "Loaded stored credential",
            extra={"has_value": credential.has_value, "stored_name": credential.name},
        )
        return credential

    def save(self, value: str, name: str) -> None:
        """Write value first: a value without a name is a repairable state."""
        self._store.set_secret(self._value_secret_name, value)
        self._store.set_secret(self._name_secret_name, name)

    def save_value(self, value: str) -> None:
        self._store.set_secret(self._value_secret_name, value)

    def save_name(self, name: str) -> None:
        self._store.set_secret(self._name_secret_name, name)

    def close(self) -> None:
        self._store.close()
