"""
Live SSH sessions, at most one per server id.

Provides:
- SshSession: an authenticated asyncssh connection for one server
- SessionRegistry: connect / disconnect / lookup, with connection-state events

Connect sequence:
    Connecting -> TCP + key exchange -> host key trust -> credential
    resolution -> authentication -> Connected
Any failure emits Error with a cause-specific prefix and leaves nothing
registered. An unseen host key aborts the first handshake before any
authentication, waits for the trust decision, and reconnects once.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import asyncssh

from sshdeck.config import ClientConfig
from sshdeck.credentials import CredentialStore, ResolvedCredential
from sshdeck.errors import (
    AuthenticationError,
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    CredentialError,
    ErrorContext,
    HostKeyError,
    HostKeyRejected,
    HostUnreachable,
    KeyLoadError,
    SessionExists,
    SessionNotFound,
    SSHConnectionError,
    SSHError,
)
from sshdeck.events import EventEmitter
from sshdeck.host_key import HostKeyResult, HostKeyTrustWorkflow
from sshdeck.known_hosts import PresentedKey
from sshdeck.models import ConnectionState, SecretKind, ServerConnection, auth_kind
from sshdeck.shell import ShellRegistry

logger = logging.getLogger(__name__)

# Unseen key: one handshake to learn it, one after it is trusted
MAX_HANDSHAKES = 2


def describe_error(exc: SSHError) -> str:
    """Message for an Error state, prefixed by failure class."""
    if isinstance(exc, SSHConnectionError):
        return f"Failed to connect: {exc}"
    if isinstance(exc, HostKeyError):
        return f"Host key verification failed: {exc}"
    if isinstance(exc, (AuthenticationError, CredentialError)):
        return f"Authentication failed: {exc}"
    return str(exc)


class _SessionClient(asyncssh.SSHClient):
    """
    asyncssh client hooks for one handshake.

    Host keys are checked against the store without prompting; the
    presented key is kept so the registry can run the trust workflow
    after an unknown key aborts the handshake. The credential is resolved
    lazily on the first authentication request, after trust is settled.
    """

    def __init__(
        self,
        server: ServerConnection,
        workflow: HostKeyTrustWorkflow,
        credentials: CredentialStore,
        on_lost: Callable[["_SessionClient", Exception | None], None],
    ) -> None:
        self._server = server
        self._workflow = workflow
        self._credentials = credentials
        self._on_lost = on_lost
        self._credential: ResolvedCredential | None = None
        self._password_offered = False
        self._key_offered = False

        self.presented_key: PresentedKey | None = None
        self.host_key_result: HostKeyResult | None = None
        self.credential_error: SSHError | None = None
        self.authenticated = False
        self.closing = False

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey,
    ) -> bool:
        self.presented_key = PresentedKey.from_ssh_key(key)
        self.host_key_result = self._workflow.check(
            self._server.host, self._server.port, self.presented_key,
        )
        logger.debug(
            f"Host key for {self._server.host}:{self._server.port} is "
            f"{self.host_key_result.value}: {self.presented_key.fingerprint}"
        )
        return self.host_key_result == HostKeyResult.TRUSTED

    def auth_completed(self) -> None:
        self.authenticated = True
        logger.debug(f"Authentication successful for {self._server.label}")

    def connection_lost(self, exc: Exception | None) -> None:
        if self.authenticated:
            self._on_lost(self, exc)

    async def _resolve(self) -> ResolvedCredential | None:
        if self._credential is None and self.credential_error is None:
            try:
                self._credential = await asyncio.to_thread(
                    self._credentials.resolve, self._server.auth,
                )
            except CredentialError as e:
                logger.warning(f"Cannot resolve credential for {self._server.label}: {e}")
                self.credential_error = e
        return self._credential

    async def password_auth_requested(self) -> str | None:
        if self._password_offered:
            return None
        self._password_offered = True

        credential = await self._resolve()
        if credential is None or credential.kind != SecretKind.PASSWORD:
            return None
        logger.debug(f"Authenticating {self._server.label} with password")
        return credential.secret.reveal()

    async def public_key_auth_requested(self) -> asyncssh.SSHKey | None:
        if self._key_offered:
            return None
        self._key_offered = True

        credential = await self._resolve()
        if credential is None or credential.kind != SecretKind.PRIVATE_KEY:
            return None
        try:
            key = asyncssh.import_private_key(credential.secret.reveal())
        except (asyncssh.KeyImportError, ValueError) as e:
            self.credential_error = KeyLoadError(
                f"Failed to load private key for {self._server.label}",
                reason=str(e),
                context=ErrorContext(server_id=self._server.id),
            )
            return None
        logger.debug(f"Authenticating {self._server.label} with {key.get_algorithm()} key")
        return key

    def release_credential(self) -> None:
        if self._credential is not None:
            self._credential.eradicate()
            self._credential = None


@dataclass
class SshSession:
    """An authenticated connection. Owned by the SessionRegistry."""
    server_id: str
    host: str
    port: int
    user: str
    conn: Any
    client: _SessionClient
    connected_at: float = field(default_factory=time.time)


class SessionRegistry:
    """
    Owns zero or one live session per server id.

    Usage:
        registry = SessionRegistry(emitter, workflow, credentials, shells, config)
        session = await registry.connect(server)
        ...
        await registry.disconnect(server.id)

    connect() never replaces a live or in-flight session; callers
    disconnect first.
    """

    def __init__(
        self,
        emitter: EventEmitter,
        workflow: HostKeyTrustWorkflow,
        credentials: CredentialStore,
        shells: ShellRegistry,
        config: ClientConfig | None = None,
    ) -> None:
        self._emitter = emitter
        self._workflow = workflow
        self._credentials = credentials
        self._shells = shells
        self._config = config or ClientConfig()
        self._sessions: dict[str, SshSession] = {}
        self._connecting: set[str] = set()
        self._lock = asyncio.Lock()
        self._reapers: set[asyncio.Task[None]] = set()

    async def get(self, server_id: str) -> SshSession:
        async with self._lock:
            session = self._sessions.get(server_id)
        if session is None:
            raise SessionNotFound(server_id)
        return session

    async def server_ids(self) -> list[str]:
        async with self._lock:
            return list(self._sessions)

    async def connect(self, server: ServerConnection) -> SshSession:
        """
        Connect and authenticate, emitting Connecting then Connected or Error.

        Raises:
            SessionExists: A session for server.id is live or connecting
            SSHConnectionError: Transport failure
            HostKeyError: Mismatch, rejection or abandoned prompt
            AuthenticationError / CredentialError: Credential failures
        """
        async with self._lock:
            if server.id in self._sessions or server.id in self._connecting:
                raise SessionExists(server.id)
            self._connecting.add(server.id)

        try:
            self._emitter.emit_state(ConnectionState.connecting(), server_id=server.id)
            logger.debug(f"Starting connection to {server.label}")
            try:
                conn, client = await self._open(server)
            except SSHError as e:
                logger.info(f"Connection to {server.label} failed: {e}")
                self._emitter.emit_state(
                    ConnectionState.error(describe_error(e)), server_id=server.id,
                )
                raise
            except asyncio.CancelledError:
                self._emitter.emit_state(
                    ConnectionState.error("Failed to connect: connection attempt cancelled"),
                    server_id=server.id,
                )
                raise

            session = SshSession(
                server_id=server.id,
                host=server.host,
                port=server.port,
                user=server.user,
                conn=conn,
                client=client,
            )
            async with self._lock:
                self._sessions[server.id] = session
        finally:
            self._connecting.discard(server.id)

        logger.info(f"Connected to {server.label}")
        self._emitter.emit_state(ConnectionState.connected(), server_id=server.id)
        return session

    async def _open(self, server: ServerConnection) -> tuple[Any, _SessionClient]:
        ctx = ErrorContext(
            server_id=server.id, host=server.host, port=server.port, username=server.user,
        )
        preferred = "password" if auth_kind(server.auth) == SecretKind.PASSWORD else "publickey"

        for _ in range(MAX_HANDSHAKES):
            client = _SessionClient(server, self._workflow, self._credentials, self._on_lost)
            logger.debug(f"Establishing TCP connection to {server.host}:{server.port}")
            try:
                conn = await asyncssh.connect(
                    server.host,
                    server.port,
                    username=server.user,
                    client_factory=lambda: client,
                    known_hosts=([], [], []),
                    client_keys=[],
                    agent_path=None,
                    preferred_auth=preferred,
                    connect_timeout=self._config.connect_timeout,
                )
            except asyncssh.HostKeyNotVerifiable as e:
                if client.presented_key is None:
                    raise self._map_exception(e, ctx) from e
                # Suspends on a prompt for unseen keys; raises on mismatch or reject
                await self._workflow.verify(server.host, server.port, client.presented_key)
                continue
            except asyncssh.PermissionDenied as e:
                if client.credential_error is not None:
                    raise client.credential_error from e
                raise self._map_exception(e, ctx) from e
            except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                raise self._map_exception(e, ctx) from e
            finally:
                client.release_credential()

            return conn, client

        raise HostKeyRejected(
            f"Host key for {server.host}:{server.port} could not be verified", ctx,
        )

    def _map_exception(self, exc: Exception, ctx: ErrorContext) -> SSHError:
        """Map asyncssh and socket exceptions to the error taxonomy."""
        ctx.original_error = str(exc)

        if isinstance(exc, asyncssh.PermissionDenied):
            return AuthFailed(f"Server rejected the credential: {exc}", context=ctx)

        if isinstance(exc, asyncssh.HostKeyNotVerifiable):
            return HostKeyRejected(f"Host key not verifiable: {exc}", context=ctx)

        if isinstance(exc, asyncssh.ConnectionLost):
            return SSHConnectionError(f"Connection lost: {exc}", context=ctx)

        if isinstance(exc, ConnectionRefusedError):
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)

        if isinstance(exc, asyncio.TimeoutError):
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)

        if isinstance(exc, OSError):
            error_str = str(exc).lower()
            if "connection refused" in error_str:
                return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
            if "timed out" in error_str or "timeout" in error_str:
                return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
            if (
                "unreachable" in error_str
                or "no route" in error_str
                or "name or service not known" in error_str
                or "nodename nor servname" in error_str
            ):
                return HostUnreachable(f"Host unreachable: {exc}", context=ctx)
            return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

        if isinstance(exc, asyncssh.Error):
            return SSHConnectionError(f"SSH protocol error: {exc}", context=ctx)

        return SSHError(f"Unexpected error: {exc}", context=ctx)

    async def disconnect(self, server_id: str) -> None:
        """
        Close a session and all of its shells. Always emits Disconnected.

        Graceful shutdown is bounded by config.disconnect_timeout; a
        peer that does not answer is abandoned with a warning.

        Raises:
            SessionNotFound: No session for server_id
        """
        async with self._lock:
            session = self._sessions.pop(server_id, None)
        if session is None:
            raise SessionNotFound(server_id)

        session.client.closing = True
        logger.debug(f"Disconnecting server {server_id}")
        try:
            await self._shells.close_server(server_id, self._config.shell_close_timeout)
            session.conn.close()
            try:
                await asyncio.wait_for(
                    session.conn.wait_closed(), timeout=self._config.disconnect_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Graceful disconnect of {server_id} timed out after "
                    f"{self._config.disconnect_timeout}s"
                )
        finally:
            self._emitter.emit_state(ConnectionState.disconnected(), server_id=server_id)

    async def close_all(self) -> None:
        """Disconnect every session."""
        for server_id in await self.server_ids():
            try:
                await self.disconnect(server_id)
            except SessionNotFound:
                pass
        if self._reapers:
            await asyncio.gather(*self._reapers, return_exceptions=True)

    def _on_lost(self, client: _SessionClient, exc: Exception | None) -> None:
        if client.closing:
            return
        task = asyncio.get_running_loop().create_task(self._reap(client, exc))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, client: _SessionClient, exc: Exception | None) -> None:
        async with self._lock:
            session = next(
                (s for s in self._sessions.values() if s.client is client), None,
            )
            if session is None:
                return
            del self._sessions[session.server_id]

        if exc is not None:
            logger.info(f"Connection to {session.server_id} lost: {exc}")
            self._emitter.emit_state(
                ConnectionState.error(f"Connection lost: {exc}"), server_id=session.server_id,
            )
        else:
            logger.info(f"Connection to {session.server_id} closed by peer")
            self._emitter.emit_state(
                ConnectionState.disconnected(), server_id=session.server_id,
            )
