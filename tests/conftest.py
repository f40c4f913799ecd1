"""
Pytest fixtures for sshdeck tests.

Provides:
- In-memory keyring backends (working and failing) and vaults on top of them
- ClientConfig rooted in a temporary data directory
- Event capture fixtures for asserting event sequences
- MockSSHServer fixtures (password and public key), no Docker required
- TerminalService wired to all of the above
"""
from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, Awaitable, Callable

import asyncssh
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from sshdeck.config import ClientConfig
from sshdeck.credentials import KeyringVault
from sshdeck.events import EventCollector, EventEmitter
from sshdeck.known_hosts import KnownHostsStore, PresentedKey
from sshdeck.models import KnownHost, PasswordAuth, ServerConnection

if TYPE_CHECKING:
    from sshdeck.service import TerminalService
    from sshdeck.testing.mock_server import MockSSHServer


class MemoryKeyring(KeyringBackend):
    """Dict-backed keyring for tests."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError(f"{username} not found") from None


class BrokenKeyring(KeyringBackend):
    """Keyring whose every operation fails, like a locked or absent vault."""

    priority = 1  # type: ignore[assignment]

    def set_password(self, service: str, username: str, password: str) -> None:
        raise KeyringError("vault locked")

    def get_password(self, service: str, username: str) -> str | None:
        raise KeyringError("vault locked")

    def delete_password(self, service: str, username: str) -> None:
        raise KeyringError("vault locked")



class FailingKnownHostsBackend:
    """Known-hosts backend whose save always fails, like a full disk."""

    def __init__(self, entries: list[KnownHost] | None = None) -> None:
        self._entries = entries or []
        self.saves = 0

    def load(self) -> list[KnownHost]:
        return list(self._entries)

    def save(self, entries: list[KnownHost]) -> None:
        self.saves += 1
        raise OSError("disk full")


@pytest.fixture
def memory_keyring() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
def vault(memory_keyring: MemoryKeyring) -> KeyringVault:
    return KeyringVault("sshdeck-test", backend=memory_keyring)


@pytest.fixture
def broken_vault() -> KeyringVault:
    return KeyringVault("sshdeck-test", backend=BrokenKeyring())


@pytest.fixture
def client_config(tmp_path: Path) -> ClientConfig:
    return ClientConfig(
        data_dir=tmp_path / "data",
        connect_timeout=10.0,
        disconnect_timeout=2.0,
        shell_close_timeout=2.0,
    )


@pytest.fixture
def event_collector() -> EventCollector:
    """Fixture providing an EventCollector for capturing events."""
    return EventCollector()


@pytest.fixture
def emitter(event_collector: EventCollector) -> EventEmitter:
    return EventEmitter(collector=event_collector)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """
    Poll a predicate until it holds.

    Usage:
        await wait_until(lambda: len(collector.events) == 3)
    """

    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("Condition not met within timeout")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """MockSSHServer accepting test/test by password."""
    from sshdeck.testing.mock_server import MockServerConfig, MockSSHServer

    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
def client_key() -> asyncssh.SSHKey:
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture
async def key_ssh_server(client_key: asyncssh.SSHKey) -> AsyncGenerator["MockSSHServer", None]:
    """MockSSHServer accepting only client_key for user test."""
    from sshdeck.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(username="test", password=None, authorized_key=client_key)
    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
async def service(
    client_config: ClientConfig,
    vault: KeyringVault,
    event_collector: EventCollector,
) -> AsyncGenerator["TerminalService", None]:
    from sshdeck.service import TerminalService

    async with TerminalService(client_config, vault=vault, collector=event_collector) as svc:
        yield svc


def make_server(port: int, password: str = "test", server_id: str = "srv-1") -> ServerConnection:
    """A ServerConnection for the mock server with a legacy inline password."""
    return ServerConnection(
        id=server_id,
        host="127.0.0.1",
        port=port,
        user="test",
        auth=PasswordAuth(password),
        nickname="mock",
    )


def pre_trust(store: KnownHostsStore, server: "MockSSHServer") -> KnownHost:
    """Record the mock server's host key as trusted."""
    key = PresentedKey.from_ssh_key(server.host_key)
    return store.trust("127.0.0.1", server.port, key.key_type, key.fingerprint, key.public_key_base64)
