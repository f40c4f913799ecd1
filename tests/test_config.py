"""
Tests for client configuration.

Tests cover:
- Platform data directory resolution and the SSHDECK_DATA_DIR override
- ClientConfig derived file paths
- Validation of timeouts and PTY parameters
- Event log wiring into TerminalService
"""
from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from sshdeck.config import ClientConfig, PtyConfig, get_app_data_dir
from sshdeck.credentials import KeyringVault
from sshdeck.events import read_jsonl_events
from sshdeck.models import ConnectionState
from sshdeck.service import TerminalService


# ---------------------------------------------------------------------------
# Data directory
# ---------------------------------------------------------------------------

class TestAppDataDir:
    """Test get_app_data_dir resolution order."""

    def test_env_override_wins(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("SSHDECK_DATA_DIR", str(tmp_path / "custom"))
        assert get_app_data_dir() == tmp_path / "custom"

    def test_xdg_data_home(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("SSHDECK_DATA_DIR", raising=False)
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        with patch.object(sys, "platform", "linux"):
            assert get_app_data_dir() == tmp_path / "sshdeck"

    def test_linux_default(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("SSHDECK_DATA_DIR", raising=False)
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        with patch.object(sys, "platform", "linux"), \
                patch.object(Path, "home", return_value=tmp_path):
            assert get_app_data_dir() == tmp_path / ".local" / "share" / "sshdeck"

    def test_macos(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("SSHDECK_DATA_DIR", raising=False)
        with patch.object(sys, "platform", "darwin"), \
                patch.object(Path, "home", return_value=tmp_path):
            assert get_app_data_dir() == tmp_path / "Library" / "Application Support" / "sshdeck"

    def test_windows_appdata(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("SSHDECK_DATA_DIR", raising=False)
        monkeypatch.setenv("APPDATA", str(tmp_path))
        with patch.object(sys, "platform", "win32"):
            assert get_app_data_dir() == tmp_path / "sshdeck"


# ---------------------------------------------------------------------------
# ClientConfig
# ---------------------------------------------------------------------------

class TestClientConfig:

    def test_file_paths(self, tmp_path: Path) -> None:
        config = ClientConfig(data_dir=tmp_path)

        assert config.servers_path == tmp_path / "servers.json"
        assert config.known_hosts_path == tmp_path / "known_hosts.json"
        assert config.snippets_path == tmp_path / "snippets.toml"
        assert config.legacy_snippets_path == tmp_path / "snippets.json"

    def test_default_data_dir(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("SSHDECK_DATA_DIR", str(tmp_path))
        assert ClientConfig().data_dir == tmp_path

    def test_defaults(self, tmp_path: Path) -> None:
        config = ClientConfig(data_dir=tmp_path)

        assert config.pty == PtyConfig("xterm-256color", 80, 24)
        assert config.keyring_service == "sshdeck"
        assert config.event_log is None

    @pytest.mark.parametrize("field", ["connect_timeout", "disconnect_timeout", "shell_close_timeout"])
    def test_timeouts_must_be_positive(self, field: str, tmp_path: Path) -> None:
        with pytest.raises(AssertionError, match=field):
            ClientConfig(data_dir=tmp_path, **{field: 0})

    def test_pty_must_be_positive(self) -> None:
        with pytest.raises(AssertionError, match="width"):
            PtyConfig(width=0)
        with pytest.raises(AssertionError, match="term"):
            PtyConfig(term="")


class TestEventLog:
    """The configured event log records everything the service emits."""

    async def test_service_writes_event_log(self, tmp_path: Path, vault: KeyringVault) -> None:
        log_path = tmp_path / "logs" / "events.jsonl"
        config = ClientConfig(data_dir=tmp_path / "data", event_log=log_path)

        async with TerminalService(config, vault=vault) as service:
            service.emitter.emit_state(ConnectionState.connecting(), server_id="srv")

        [event] = read_jsonl_events(log_path)
        assert event.event_type == "connection-state"
        assert event.data["state"] == "Connecting"
