"""
The command surface exposed to the UI.

TerminalService owns both registries, the trust workflow, the credential
store and the file-backed collaborators. It is constructed once at
startup and torn down once at shutdown:

    async with TerminalService(ClientConfig()) as service:
        service.subscribe(forward_to_ui)
        shell_id = await service.connect(server)
        await service.send_input(shell_id, "ls -la\\n")
        ...
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from sshdeck.config import ClientConfig, PtyConfig
from sshdeck.credentials import CredentialStore, KeyringVault, SecretVault
from sshdeck.errors import CredentialError, SessionNotFound, ShellOpenError
from sshdeck.events import Event, EventCollector, EventEmitter
from sshdeck.host_key import HostKeyTrustWorkflow
from sshdeck.known_hosts import KnownHostsStore
from sshdeck.models import ConnectionState, ServerConnection, Snippet, is_legacy_auth
from sshdeck.session import SessionRegistry, describe_error
from sshdeck.shell import ShellRegistry, open_pty_shell
from sshdeck.storage import KnownHostsFile, ServerStore, SnippetStore

logger = logging.getLogger(__name__)


class TerminalService:
    """
    Connect, shell and trust operations plus saved-server bookkeeping.

    Args:
        config: Client configuration (paths, timeouts, PTY defaults)
        vault: Secret vault; defaults to the system keyring
        emitter: Event sink shared with the UI
        collector: In-memory collector used when no emitter is given
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        vault: SecretVault | None = None,
        emitter: EventEmitter | None = None,
        collector: EventCollector | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._owns_emitter = emitter is None
        self._emitter = emitter or EventEmitter(
            collector=collector, jsonl_path=self._config.event_log,
        )

        self.credentials = CredentialStore(vault or KeyringVault(self._config.keyring_service))
        self.servers = ServerStore(self._config.servers_path)
        self.snippets = SnippetStore(self._config.snippets_path, self._config.legacy_snippets_path)
        self.known_hosts = KnownHostsStore(KnownHostsFile(self._config.known_hosts_path))

        self.workflow = HostKeyTrustWorkflow(self.known_hosts, self._emitter)
        self.shells = ShellRegistry()
        self.sessions = SessionRegistry(
            self._emitter, self.workflow, self.credentials, self.shells, self._config,
        )

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    def subscribe(self, listener: Callable[[Event], None]) -> Callable[[], None]:
        return self._emitter.subscribe(listener)

    async def __aenter__(self) -> "TerminalService":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        """Drop pending prompts, close every shell and disconnect every session."""
        logger.debug("Shutting down terminal service")
        self.workflow.close()
        await self.shells.close_all(self._config.shell_close_timeout)
        await self.sessions.close_all()
        if self._owns_emitter:
            self._emitter.close()

    # -----------------------------------------------------------------------
    # Saved servers
    # -----------------------------------------------------------------------

    def get_servers(self) -> list[ServerConnection]:
        return self.servers.load()

    def get_server(self, server_id: str) -> ServerConnection:
        """Look up a saved server by id. Raises ServerNotFound."""
        return self.servers.get(server_id)

    def add_server(self, server: ServerConnection) -> list[ServerConnection]:
        """Save a new server. Inline secrets go to the vault first."""
        self.credentials.migrate(server)
        return self.servers.add(server)

    def update_server(self, server_id: str, server: ServerConnection) -> list[ServerConnection]:
        self.credentials.migrate(server)
        return self.servers.update(server_id, server)

    def delete_server(self, server_id: str) -> list[ServerConnection]:
        """Remove a server record; its vault secret is deleted best-effort."""
        removed, remaining = self.servers.remove(server_id)
        self.credentials.forget(removed)
        return remaining

    # -----------------------------------------------------------------------
    # Snippets
    # -----------------------------------------------------------------------

    def get_snippets(self) -> list[Snippet]:
        return self.snippets.load()

    def add_snippet(self, snippet: Snippet) -> list[Snippet]:
        return self.snippets.add(snippet)

    def update_snippet(self, snippet_id: str, snippet: Snippet) -> list[Snippet]:
        return self.snippets.update(snippet_id, snippet)

    def delete_snippet(self, snippet_id: str) -> list[Snippet]:
        return self.snippets.remove(snippet_id)

    # -----------------------------------------------------------------------
    # Sessions and shells
    # -----------------------------------------------------------------------

    async def connect(self, server: ServerConnection, pty: PtyConfig | None = None) -> str:
        """
        Connect to a server and open its first shell.

        Returns:
            The new shell id

        Raises:
            SSHError: Any connect, trust, credential or shell-open failure
        """
        if is_legacy_auth(server.auth):
            try:
                await asyncio.to_thread(self._migrate_for_connect, server)
            except CredentialError as e:
                self._emitter.emit_state(
                    ConnectionState.error(describe_error(e)), server_id=server.id,
                )
                raise

        session = await self.sessions.connect(server)
        try:
            shell = await open_pty_shell(
                session,
                pty or self._config.pty,
                server.id,
                self._emitter,
                self.shells,
                close_timeout=self._config.shell_close_timeout,
            )
        except ShellOpenError as e:
            self._emitter.emit_state(
                ConnectionState.error(f"Failed to open shell: {e}"), server_id=server.id,
            )
            try:
                await self.sessions.disconnect(server.id)
            except SessionNotFound:
                pass
            raise
        return shell.id

    def _migrate_for_connect(self, server: ServerConnection) -> None:
        if not self.credentials.migrate(server):
            return
        # Re-persist only the auth of a stored record, never unsaved edits
        servers = self.servers.load()
        for stored in servers:
            if stored.id == server.id:
                stored.auth = server.auth
                self.servers.save(servers)
                logger.debug(f"Re-persisted migrated server {server.id}")
                return

    async def open_shell(self, server_id: str, pty: PtyConfig | None = None) -> str:
        """Open an additional shell on a live session."""
        session = await self.sessions.get(server_id)
        try:
            shell = await open_pty_shell(
                session,
                pty or self._config.pty,
                server_id,
                self._emitter,
                self.shells,
                close_timeout=self._config.shell_close_timeout,
            )
        except ShellOpenError as e:
            self._emitter.emit_state(
                ConnectionState.error(f"Failed to open shell: {e}"), server_id=server_id,
            )
            raise
        return shell.id

    async def disconnect(self, server_id: str) -> None:
        await self.sessions.disconnect(server_id)

    async def send_input(self, shell_id: str, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        await self.shells.send_input(shell_id, data)

    async def resize(self, shell_id: str, width: int, height: int) -> None:
        await self.shells.resize(shell_id, width, height)

    async def close_shell(self, shell_id: str) -> None:
        await self.shells.close(shell_id)

    # -----------------------------------------------------------------------
    # Host keys and secrets
    # -----------------------------------------------------------------------

    def trust_host_key(self, host: str, port: int) -> None:
        self.workflow.trust_host_key(host, port)

    def reject_host_key(self, host: str, port: int) -> None:
        self.workflow.reject_host_key(host, port)

    def pending_host_keys(self) -> list[dict[str, object]]:
        return [prompt.to_dict() for prompt in self.workflow.pending()]

    def upsert_secret(self, secret_id: str, secret: str) -> None:
        self.credentials.put(secret_id, secret)

    def delete_secret(self, secret_id: str) -> None:
        self.credentials.delete(secret_id)
