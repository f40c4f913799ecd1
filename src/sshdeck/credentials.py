"""
Credential resolution backed by the platform credential vault.

Provides:
- SecretVault: the get/put/delete-by-id capability the core needs
- KeyringVault: SecretVault on top of the keyring library
- CredentialStore: resolves AuthMethods to secrets and migrates legacy
  inline secrets into opaque SecretRefs

Derived secret ids are deterministic in the server id and secret kind:
    server:<id>:password
    server:<id>:private_key
so repeated migrations of the same server overwrite the same vault entry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from sshdeck.errors import ErrorContext, SecretNotFound, SecretStoreError
from sshdeck.models import (
    AuthMethod,
    KeyAuth,
    PasswordAuth,
    SecretKind,
    SecretRef,
    ServerConnection,
    auth_kind,
)
from sshdeck.secure_string import SecureString

logger = logging.getLogger(__name__)


class SecretVault(Protocol):
    """Opaque-id secret storage."""

    def put(self, secret_id: str, secret: str) -> None: ...

    def get(self, secret_id: str) -> str: ...

    def delete(self, secret_id: str) -> None: ...


class KeyringVault:
    """
    SecretVault backed by keyring.

    Every secret is stored under (service, secret_id). With backend=None
    the process-wide keyring is used (macOS Keychain, Secret Service,
    Windows Credential Locker, ...).
    """

    def __init__(self, service: str, backend: Any | None = None) -> None:
        assert service, "Keyring service name must be specified"
        self._service = service
        self._backend = backend

    @property
    def service(self) -> str:
        return self._service

    def _keyring(self) -> Any:
        return self._backend if self._backend is not None else keyring.get_keyring()

    def put(self, secret_id: str, secret: str) -> None:
        try:
            self._keyring().set_password(self._service, secret_id, secret)
        except KeyringError as e:
            raise SecretStoreError(
                f"Failed to store secret {secret_id}: {e}",
                ErrorContext(secret_id=secret_id, original_error=str(e)),
            ) from e

    def get(self, secret_id: str) -> str:
        try:
            value = self._keyring().get_password(self._service, secret_id)
        except KeyringError as e:
            raise SecretStoreError(
                f"Failed to read secret {secret_id}: {e}",
                ErrorContext(secret_id=secret_id, original_error=str(e)),
            ) from e
        if value is None:
            raise SecretNotFound(secret_id)
        return value

    def delete(self, secret_id: str) -> None:
        try:
            self._keyring().delete_password(self._service, secret_id)
        except PasswordDeleteError as e:
            raise SecretNotFound(secret_id) from e
        except KeyringError as e:
            raise SecretStoreError(
                f"Failed to delete secret {secret_id}: {e}",
                ErrorContext(secret_id=secret_id, original_error=str(e)),
            ) from e


def secret_id_for(server_id: str, kind: SecretKind) -> str:
    """Return the vault id a server's secret of the given kind lives under."""
    assert server_id, "server_id must be non-empty"
    return f"server:{server_id}:{kind.slug}"


@dataclass
class ResolvedCredential:
    """Secret material ready for one authentication attempt."""
    kind: SecretKind
    secret: SecureString

    def eradicate(self) -> None:
        self.secret.eradicate()


class CredentialStore:
    """
    Maps stored authentication references to usable secrets.

    Usage:
        store = CredentialStore(KeyringVault("sshdeck"))
        store.migrate(server)          # legacy inline secret -> SecretRef
        cred = store.resolve(server.auth)
        try:
            use(cred.secret.reveal())
        finally:
            cred.eradicate()
    """

    def __init__(self, vault: SecretVault) -> None:
        self._vault = vault

    def put(self, secret_id: str, secret: str) -> None:
        assert secret_id, "secret_id must be non-empty"
        self._vault.put(secret_id, secret)

    def get(self, secret_id: str) -> SecureString:
        return SecureString(self._vault.get(secret_id))

    def delete(self, secret_id: str) -> None:
        self._vault.delete(secret_id)

    def migrate(self, server: ServerConnection) -> bool:
        """
        Move a legacy inline secret into the vault, rewriting server.auth.

        Idempotent: a server already carrying a SecretRef is left alone.

        Returns:
            True if the server was migrated (and should be re-persisted)

        Raises:
            SecretStoreError: If the vault refused the secret; server.auth
                is left unchanged in that case
        """
        auth = server.auth
        if isinstance(auth, SecretRef):
            return False

        kind = auth_kind(auth)
        secret_id = secret_id_for(server.id, kind)
        self.put(secret_id, _inline_secret(auth))
        server.auth = SecretRef(secret_id=secret_id, kind=kind)
        logger.info(f"Migrated inline {kind.slug} for server {server.id} to vault")
        return True

    def resolve(self, auth: AuthMethod) -> ResolvedCredential:
        """
        Resolve an auth method to secret material.

        Raises:
            SecretNotFound: If a SecretRef points at a missing entry
            SecretStoreError: If the vault is unavailable
        """
        if isinstance(auth, SecretRef):
            return ResolvedCredential(kind=auth.kind, secret=self.get(auth.secret_id))
        if isinstance(auth, (PasswordAuth, KeyAuth)):
            return ResolvedCredential(kind=auth_kind(auth), secret=SecureString(_inline_secret(auth)))
        raise TypeError(f"Unknown auth method: {type(auth).__name__}")

    def forget(self, server: ServerConnection) -> None:
        """
        Delete the server's vault entry, if it has one.

        Failures are logged, never raised: a broken vault must not block
        removing the server record.
        """
        if not isinstance(server.auth, SecretRef):
            return
        secret_id = server.auth.secret_id
        try:
            self.delete(secret_id)
        except SecretNotFound:
            logger.debug(f"Secret {secret_id} already absent")
        except SecretStoreError as e:
            logger.warning(f"Failed to delete secret {secret_id}: {e}")


def _inline_secret(auth: PasswordAuth | KeyAuth) -> str:
    if isinstance(auth, PasswordAuth):
        return auth.password
    return auth.private_key
