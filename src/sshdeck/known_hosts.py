"""
Known-hosts store: (host, port) -> trusted key fingerprint.

Provides:
- PresentedKey: key_type / fingerprint / base64 blob of a server key
- get_key_fingerprint: OpenSSH-style SHA256 fingerprint
- KnownHostsStore: lookup and replace-on-trust over a persisted list

There is at most one entry per (host, port). Entries are only ever
replaced through an explicit trust() call, never silently.
"""
from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Protocol

import asyncssh

from sshdeck.models import KnownHost

logger = logging.getLogger(__name__)


def get_key_fingerprint(public_data: bytes) -> str:
    """Return the OpenSSH-style SHA256 fingerprint of a wire-format public key."""
    digest = hashlib.sha256(public_data).digest()
    b64 = base64.b64encode(digest).decode('ascii').rstrip('=')
    return f"SHA256:{b64}"


@dataclass(frozen=True)
class PresentedKey:
    """The parts of a server host key that trust decisions look at."""
    key_type: str
    fingerprint: str
    public_key_base64: str

    @classmethod
    def from_ssh_key(cls, key: asyncssh.SSHKey) -> "PresentedKey":
        # asyncssh reports the algorithm as bytes
        key_type_raw = key.algorithm
        key_type = key_type_raw.decode('ascii') if isinstance(key_type_raw, bytes) else key_type_raw
        return cls(
            key_type=key_type,
            fingerprint=get_key_fingerprint(key.public_data),
            public_key_base64=base64.b64encode(key.public_data).decode('ascii'),
        )


class KnownHostsBackend(Protocol):
    """Load-all / save-all persistence for known hosts."""

    def load(self) -> list[KnownHost]: ...

    def save(self, entries: list[KnownHost]) -> None: ...


class KnownHostsStore:
    """
    In-memory known-hosts map, written through to an optional backend.

    Usage:
        store = KnownHostsStore(KnownHostsFile(path))
        entry = store.find("10.0.0.5", 22)
        if entry is None and user_accepts:
            store.trust("10.0.0.5", 22, key.key_type, key.fingerprint, key.public_key_base64)
    """

    def __init__(
        self,
        backend: KnownHostsBackend | None = None,
        entries: list[KnownHost] | None = None,
    ) -> None:
        self._backend = backend
        if entries is not None:
            self._entries = list(entries)
        elif backend is not None:
            self._entries = backend.load()
        else:
            self._entries = []

    @property
    def entries(self) -> list[KnownHost]:
        return list(self._entries)

    def find(self, host: str, port: int) -> KnownHost | None:
        """Return the trusted entry for (host, port), if any."""
        for entry in self._entries:
            if entry.matches(host, port):
                return entry
        return None

    def trust(
        self,
        host: str,
        port: int,
        key_type: str,
        fingerprint: str,
        public_key_base64: str,
    ) -> KnownHost:
        """
        Record a key as trusted for (host, port), replacing any prior entry.

        Only called after a human approved the key.
        """
        replaced = self.find(host, port)
        entry = KnownHost(
            host=host,
            port=port,
            key_type=key_type,
            fingerprint=fingerprint,
            public_key_base64=public_key_base64,
        )
        # Memory only changes once the backend accepted the new list
        self._commit([e for e in self._entries if not e.matches(host, port)] + [entry])

        if replaced is not None:
            logger.info(
                f"Replaced host key for {host}:{port}: "
                f"{replaced.fingerprint} -> {fingerprint}"
            )
        else:
            logger.info(f"Trusted new host key for {host}:{port}: {key_type} {fingerprint}")
        return entry

    def remove(self, host: str, port: int) -> bool:
        """Forget the entry for (host, port). Returns True if one existed."""
        remaining = [e for e in self._entries if not e.matches(host, port)]
        if len(remaining) == len(self._entries):
            return False
        self._commit(remaining)
        return True

    def _commit(self, entries: list[KnownHost]) -> None:
        if self._backend is not None:
            self._backend.save(list(entries))
        self._entries = entries
