"""
Error taxonomy for sshdeck with structured context for event logging.

Every fallible core operation raises one of these, each carrying a
human-readable message plus an ErrorContext for the UI and the JSONL log.

Error hierarchy:
- SSHError (base)
  - SSHConnectionError (transport: DNS, TCP, handshake)
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
  - HostKeyError (trust)
    - HostKeyMismatch (stored fingerprint differs from the presented one)
    - HostKeyRejected (explicit reject, or the prompt was abandoned)
  - AuthenticationError
    - AuthFailed (server refused the credential)
    - KeyLoadError (stored private key cannot be parsed)
  - CredentialError (vault)
    - SecretNotFound
    - SecretStoreError
  - ResourceNotFound
    - SessionNotFound
    - ShellNotFound
      - ShellClosed
    - ServerNotFound
    - SnippetNotFound
    - HostKeyPromptNotFound
  - SessionExists
  - ShellOpenError
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class ErrorContext:
    """
    Structured context attached to every SSHError.

    Only populated fields are exported by to_dict(), so the same class
    serves transport, trust, vault and lookup failures.
    """
    server_id: str | None = None
    shell_id: str | None = None
    host: str | None = None
    port: int | None = None
    username: str | None = None
    secret_id: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Invariant: port must be in valid TCP range if specified
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """
    Base exception for all sshdeck errors.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        # Precondition: message must be non-empty
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Transport Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for transport-level failures."""
    pass


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(SSHConnectionError):
    """Connection attempt timed out."""
    pass


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (DNS or routing failure)."""
    pass


# ---------------------------------------------------------------------------
# Trust Errors
# ---------------------------------------------------------------------------

class HostKeyError(SSHError):
    """Base class for host key trust failures."""
    pass


class HostKeyMismatch(HostKeyError):
    """
    The server presented a key that differs from the trusted entry.

    Either the server was reconfigured or someone is intercepting the
    connection. Never downgraded to a prompt.
    """

    def __init__(
        self,
        host: str,
        port: int,
        key_type: str,
        fingerprint: str,
        stored_fingerprint: str,
        context: ErrorContext | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.stored_fingerprint = stored_fingerprint
        if context is None:
            context = ErrorContext(host=host, port=port)
        context.extra["fingerprint"] = fingerprint
        context.extra["stored_fingerprint"] = stored_fingerprint
        super().__init__(
            f"Host key for {host}:{port} has changed: server presented "
            f"{key_type} {fingerprint}, expected {stored_fingerprint}",
            context,
        )


class HostKeyRejected(HostKeyError):
    """The host key was rejected or its prompt was abandoned."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    """Base class for authentication-related errors."""
    pass


class AuthFailed(AuthenticationError):
    """
    Authentication failed due to invalid credentials.

    Raised when the server rejects the password or private key.
    """
    pass


class KeyLoadError(AuthenticationError):
    """Failed to parse the private key resolved from the vault."""

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Credential Errors
# ---------------------------------------------------------------------------

class CredentialError(SSHError):
    """Base class for secret vault failures."""
    pass


class SecretNotFound(CredentialError):
    """No secret is stored under the requested id."""

    def __init__(self, secret_id: str, context: ErrorContext | None = None) -> None:
        if context is None:
            context = ErrorContext()
        context.secret_id = secret_id
        self.secret_id = secret_id
        super().__init__(f"Secret {secret_id} not found", context)


class SecretStoreError(CredentialError):
    """The vault backend is unavailable or refused the operation."""
    pass


# ---------------------------------------------------------------------------
# Lookup Errors
# ---------------------------------------------------------------------------

class ResourceNotFound(SSHError):
    """Base class for unknown-id lookups."""
    pass


class SessionNotFound(ResourceNotFound):
    """No live session exists for the server id."""

    def __init__(self, server_id: str) -> None:
        self.server_id = server_id
        super().__init__(
            f"Session for server {server_id} not found",
            ErrorContext(server_id=server_id),
        )


class ShellNotFound(ResourceNotFound):
    """No shell is registered under the shell id."""

    def __init__(self, shell_id: str, message: str | None = None) -> None:
        self.shell_id = shell_id
        super().__init__(
            message or f"Shell with id {shell_id} not found",
            ErrorContext(shell_id=shell_id),
        )


class ShellClosed(ShellNotFound):
    """The shell was closed; it no longer accepts commands."""

    def __init__(self, shell_id: str) -> None:
        super().__init__(shell_id, f"Shell with id {shell_id} is closed")


class ServerNotFound(ResourceNotFound):
    """No stored server has the id."""

    def __init__(self, server_id: str) -> None:
        self.server_id = server_id
        super().__init__(
            f"Server with id {server_id} not found",
            ErrorContext(server_id=server_id),
        )


class SnippetNotFound(ResourceNotFound):
    """No stored snippet has the id."""

    def __init__(self, snippet_id: str) -> None:
        self.snippet_id = snippet_id
        super().__init__(f"Snippet with id {snippet_id} not found")


class HostKeyPromptNotFound(ResourceNotFound):
    """No host key decision is pending for the endpoint."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        super().__init__(
            f"No pending host key prompt for {host}:{port}",
            ErrorContext(host=host, port=port),
        )


# ---------------------------------------------------------------------------
# Lifecycle Errors
# ---------------------------------------------------------------------------

class SessionExists(SSHError):
    """A session for this server id is live or still connecting."""

    def __init__(self, server_id: str) -> None:
        self.server_id = server_id
        super().__init__(
            f"Server {server_id} is already connected; disconnect first",
            ErrorContext(server_id=server_id),
        )


class ShellOpenError(SSHError):
    """Opening the channel, PTY or shell failed."""
    pass
