"""
Data model shared by the core and its persistence collaborators.

Provides:
- ServerConnection: a saved server, identified by a stable opaque id
- AuthMethod variants: SecretRef (current), PasswordAuth and KeyAuth (legacy)
- KnownHost: a trusted (host, port) -> key fingerprint entry
- Snippet: a saved command
- ConnectionState: the state carried by connection-state events

The dict forms match the on-disk JSON: auth methods are tagged with
a "type" key ("SecretRef", "Password", "Key").
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class SecretKind(str, Enum):
    """How a resolved secret is used during authentication."""
    PASSWORD = "Password"
    PRIVATE_KEY = "PrivateKey"

    @property
    def slug(self) -> str:
        """Short form used inside derived secret ids."""
        return "password" if self is SecretKind.PASSWORD else "private_key"


@dataclass
class SecretRef:
    """Opaque handle to a secret held by the vault."""
    secret_id: str
    kind: SecretKind

    def __post_init__(self) -> None:
        assert self.secret_id, "secret_id must be non-empty"
        self.kind = SecretKind(self.kind)


@dataclass(repr=False)
class PasswordAuth:
    """Legacy inline password. Only ever read, never written back."""
    password: str

    def __repr__(self) -> str:
        return "PasswordAuth(password=<hidden>)"


@dataclass(repr=False)
class KeyAuth:
    """Legacy inline private key. Only ever read, never written back."""
    private_key: str

    def __repr__(self) -> str:
        return "KeyAuth(private_key=<hidden>)"


AuthMethod = Union[SecretRef, PasswordAuth, KeyAuth]


def is_legacy_auth(auth: AuthMethod) -> bool:
    """Return True if the auth method still carries an inline secret."""
    return isinstance(auth, (PasswordAuth, KeyAuth))


def auth_kind(auth: AuthMethod) -> SecretKind:
    """Return the secret kind an auth method resolves to."""
    if isinstance(auth, SecretRef):
        return auth.kind
    if isinstance(auth, PasswordAuth):
        return SecretKind.PASSWORD
    if isinstance(auth, KeyAuth):
        return SecretKind.PRIVATE_KEY
    raise TypeError(f"Unknown auth method: {type(auth).__name__}")


def auth_to_dict(auth: AuthMethod) -> dict[str, Any]:
    if isinstance(auth, SecretRef):
        return {"type": "SecretRef", "secret_id": auth.secret_id, "kind": auth.kind.value}
    if isinstance(auth, PasswordAuth):
        return {"type": "Password", "password": auth.password}
    if isinstance(auth, KeyAuth):
        return {"type": "Key", "private_key": auth.private_key}
    raise TypeError(f"Unknown auth method: {type(auth).__name__}")


def auth_from_dict(data: dict[str, Any]) -> AuthMethod:
    tag = data.get("type")
    if tag == "SecretRef":
        return SecretRef(secret_id=data["secret_id"], kind=SecretKind(data["kind"]))
    if tag == "Password":
        return PasswordAuth(password=data["password"])
    if tag == "Key":
        return KeyAuth(private_key=data["private_key"])
    raise ValueError(f"Unknown auth type: {tag!r}")


@dataclass
class ServerConnection:
    """
    A saved server.

    The id is stable across edits of host/port; the core reads the
    record at connect time and never owns it.
    """
    id: str
    host: str
    port: int
    user: str
    auth: AuthMethod
    nickname: str | None = None

    def __post_init__(self) -> None:
        assert self.id, "Server id must be specified"
        assert self.host, "Host must be specified"
        assert isinstance(self.port, int) and 1 <= self.port <= 65535, \
            f"Port must be between 1 and 65535, got {self.port}"

    @property
    def label(self) -> str:
        """Human-readable name for log lines and messages."""
        return self.nickname or f"{self.user}@{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "auth": auth_to_dict(self.auth),
        }
        if self.nickname is not None:
            result["nickname"] = self.nickname
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerConnection":
        return cls(
            id=data["id"],
            host=data["host"],
            port=int(data["port"]),
            user=data["user"],
            auth=auth_from_dict(data["auth"]),
            nickname=data.get("nickname"),
        )


def host_key_id(host: str, port: int) -> str:
    """Endpoint identity used to key pending prompts: host:port."""
    return f"{host.lower()}:{port}"


@dataclass
class KnownHost:
    """A trusted host key, at most one per (host, port)."""
    host: str
    port: int
    key_type: str
    fingerprint: str
    public_key_base64: str
    added_at: int = field(default_factory=lambda: int(time.time()))

    def matches(self, host: str, port: int) -> bool:
        return self.host.lower() == host.lower() and self.port == port

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "key_type": self.key_type,
            "fingerprint": self.fingerprint,
            "public_key_base64": self.public_key_base64,
            "added_at": self.added_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KnownHost":
        return cls(
            host=data["host"],
            port=int(data["port"]),
            key_type=data["key_type"],
            fingerprint=data["fingerprint"],
            public_key_base64=data["public_key_base64"],
            added_at=int(data["added_at"]),
        )


@dataclass
class Snippet:
    """A saved command the UI can paste into a shell."""
    id: str
    name: str
    command: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.id, "name": self.name, "command": self.command}
        if self.description is not None:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snippet":
        return cls(
            id=data["id"],
            name=data["name"],
            command=data["command"],
            description=data.get("description"),
        )


class StateKind(str, Enum):
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    ERROR = "Error"


@dataclass(frozen=True)
class ConnectionState:
    """
    State reported in connection-state events.

    message is set only for ERROR.
    """
    kind: StateKind
    message: str | None = None

    def __post_init__(self) -> None:
        if self.kind is StateKind.ERROR:
            assert self.message, "Error state requires a message"
        else:
            assert self.message is None, f"{self.kind.value} state carries no message"

    @classmethod
    def connecting(cls) -> "ConnectionState":
        return cls(StateKind.CONNECTING)

    @classmethod
    def connected(cls) -> "ConnectionState":
        return cls(StateKind.CONNECTED)

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(StateKind.DISCONNECTED)

    @classmethod
    def error(cls, message: str) -> "ConnectionState":
        return cls(StateKind.ERROR, message)
