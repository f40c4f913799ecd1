"""sshdeck: session, shell and host-key trust core for an interactive SSH client."""

__version__ = "0.1.0"

from sshdeck.config import ClientConfig, PtyConfig, get_app_data_dir
from sshdeck.credentials import (
    CredentialStore,
    KeyringVault,
    ResolvedCredential,
    SecretVault,
    secret_id_for,
)
from sshdeck.errors import (
    AuthenticationError,
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    CredentialError,
    ErrorContext,
    HostKeyError,
    HostKeyMismatch,
    HostKeyPromptNotFound,
    HostKeyRejected,
    HostUnreachable,
    KeyLoadError,
    ResourceNotFound,
    SecretNotFound,
    SecretStoreError,
    ServerNotFound,
    SessionExists,
    SessionNotFound,
    ShellClosed,
    ShellNotFound,
    ShellOpenError,
    SnippetNotFound,
    SSHConnectionError,
    SSHError,
)
from sshdeck.events import Event, EventCollector, EventEmitter, EventType
from sshdeck.host_key import HostKeyResult, HostKeyTrustWorkflow, PendingHostKeyPrompt
from sshdeck.known_hosts import KnownHostsStore, PresentedKey, get_key_fingerprint
from sshdeck.models import (
    AuthMethod,
    ConnectionState,
    KeyAuth,
    KnownHost,
    PasswordAuth,
    SecretKind,
    SecretRef,
    ServerConnection,
    Snippet,
    StateKind,
)
from sshdeck.secure_string import SecureString, SecureStringEradicated
from sshdeck.service import TerminalService
from sshdeck.session import SessionRegistry, SshSession
from sshdeck.shell import (
    Close,
    PtyShell,
    Resize,
    SendInput,
    ShellActor,
    ShellCommandSender,
    ShellRegistry,
    open_pty_shell,
)
from sshdeck.storage import KnownHostsFile, ServerStore, SnippetStore

__all__ = [
    # Configuration
    "ClientConfig",
    "PtyConfig",
    "get_app_data_dir",
    # Service
    "TerminalService",
    # Sessions and shells
    "SessionRegistry",
    "SshSession",
    "ShellRegistry",
    "ShellActor",
    "ShellCommandSender",
    "PtyShell",
    "SendInput",
    "Resize",
    "Close",
    "open_pty_shell",
    # Trust
    "HostKeyResult",
    "HostKeyTrustWorkflow",
    "PendingHostKeyPrompt",
    "KnownHostsStore",
    "PresentedKey",
    "get_key_fingerprint",
    # Credentials
    "CredentialStore",
    "KeyringVault",
    "ResolvedCredential",
    "SecretVault",
    "secret_id_for",
    "SecureString",
    "SecureStringEradicated",
    # Models
    "AuthMethod",
    "ConnectionState",
    "KeyAuth",
    "KnownHost",
    "PasswordAuth",
    "SecretKind",
    "SecretRef",
    "ServerConnection",
    "Snippet",
    "StateKind",
    # Storage
    "KnownHostsFile",
    "ServerStore",
    "SnippetStore",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Errors
    "SSHError",
    "ErrorContext",
    "SSHConnectionError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "HostUnreachable",
    "HostKeyError",
    "HostKeyMismatch",
    "HostKeyRejected",
    "AuthenticationError",
    "AuthFailed",
    "KeyLoadError",
    "CredentialError",
    "SecretNotFound",
    "SecretStoreError",
    "ResourceNotFound",
    "SessionNotFound",
    "ShellNotFound",
    "ShellClosed",
    "ServerNotFound",
    "SnippetNotFound",
    "HostKeyPromptNotFound",
    "SessionExists",
    "ShellOpenError",
]
