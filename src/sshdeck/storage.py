"""
File-backed persistence for servers, known hosts and snippets.

Provides:
- ServerStore: servers.json, a JSON list of ServerConnection records
- KnownHostsFile: known_hosts.json, a JSON list of KnownHost records
- SnippetStore: snippets.toml (legacy snippets.json is read as fallback)

Every store loads the whole file, modifies it and writes the whole file
back. Writes go to a temporary file in the same directory followed by
os.replace, so a crash never leaves a half-written file. Mutating
operations return the resulting list.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import tomli_w

from sshdeck.errors import ServerNotFound, SnippetNotFound
from sshdeck.models import KnownHost, ServerConnection, Snippet

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace path with content, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json_list(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    content = path.read_text(encoding="utf-8")
    if not content.strip():
        return []
    data = json.loads(content)
    assert isinstance(data, list), f"{path} must contain a JSON list"
    return data


def _write_json_list(path: Path, items: list[dict[str, Any]]) -> None:
    atomic_write_text(path, json.dumps(items, indent=2) + "\n")


class ServerStore:
    """Saved servers in servers.json."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[ServerConnection]:
        return [ServerConnection.from_dict(d) for d in _read_json_list(self._path)]

    def save(self, servers: list[ServerConnection]) -> None:
        _write_json_list(self._path, [s.to_dict() for s in servers])

    def get(self, server_id: str) -> ServerConnection:
        for server in self.load():
            if server.id == server_id:
                return server
        raise ServerNotFound(server_id)

    def add(self, server: ServerConnection) -> list[ServerConnection]:
        servers = self.load()
        servers.append(server)
        self.save(servers)
        return servers

    def update(self, server_id: str, server: ServerConnection) -> list[ServerConnection]:
        servers = self.load()
        servers[self._index(servers, server_id)] = server
        self.save(servers)
        return servers

    def remove(self, server_id: str) -> tuple[ServerConnection, list[ServerConnection]]:
        """Remove a server. Returns the removed record and the remaining list."""
        servers = self.load()
        removed = servers.pop(self._index(servers, server_id))
        self.save(servers)
        return removed, servers

    @staticmethod
    def _index(servers: list[ServerConnection], server_id: str) -> int:
        for i, server in enumerate(servers):
            if server.id == server_id:
                return i
        raise ServerNotFound(server_id)


class KnownHostsFile:
    """Known hosts in known_hosts.json; the KnownHostsStore backend."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    def load(self) -> list[KnownHost]:
        return [KnownHost.from_dict(d) for d in _read_json_list(self._path)]

    def save(self, entries: list[KnownHost]) -> None:
        _write_json_list(self._path, [e.to_dict() for e in entries])


class SnippetStore:
    """
    Saved snippets.

    Reads snippets.toml when it exists, otherwise the legacy
    snippets.json. Always writes TOML, so the first write migrates a
    legacy file.
    """

    def __init__(self, path: Path | str, legacy_path: Path | str | None = None) -> None:
        self._path = Path(path)
        self._legacy_path = Path(legacy_path) if legacy_path is not None else None

    def load(self) -> list[Snippet]:
        if self._path.exists():
            with open(self._path, "rb") as f:
                data = tomllib.load(f)
            return [Snippet.from_dict(d) for d in data.get("snippets", [])]

        if self._legacy_path is not None and self._legacy_path.exists():
            logger.debug(f"Reading legacy snippets from {self._legacy_path}")
            return [Snippet.from_dict(d) for d in _read_json_list(self._legacy_path)]

        return []

    def save(self, snippets: list[Snippet]) -> None:
        atomic_write_text(self._path, tomli_w.dumps({"snippets": [s.to_dict() for s in snippets]}))

    def add(self, snippet: Snippet) -> list[Snippet]:
        snippets = self.load()
        snippets.append(snippet)
        self.save(snippets)
        return snippets

    def update(self, snippet_id: str, snippet: Snippet) -> list[Snippet]:
        snippets = self.load()
        snippets[self._index(snippets, snippet_id)] = snippet
        self.save(snippets)
        return snippets

    def remove(self, snippet_id: str) -> list[Snippet]:
        snippets = self.load()
        snippets.pop(self._index(snippets, snippet_id))
        self.save(snippets)
        return snippets

    @staticmethod
    def _index(snippets: list[Snippet], snippet_id: str) -> int:
        for i, snippet in enumerate(snippets):
            if snippet.id == snippet_id:
                return i
        raise SnippetNotFound(snippet_id)
