"""
Client configuration and platform data paths.

Provides:
- PtyConfig: terminal type and initial size requested for each shell
- ClientConfig: timeouts, vault service name and data directory
- get_app_data_dir: platform-appropriate directory for saved state
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

APP_NAME = "sshdeck"
DATA_DIR_ENV = "SSHDECK_DATA_DIR"

SERVERS_FILE = "servers.json"
KNOWN_HOSTS_FILE = "known_hosts.json"
SNIPPETS_FILE = "snippets.json"
SNIPPETS_TOML_FILE = "snippets.toml"


def get_app_data_dir() -> Path:
    """
    Get the platform-appropriate application data directory.

    Resolution order:
    - $SSHDECK_DATA_DIR if set
    - Windows: %APPDATA%\\sshdeck
    - macOS: ~/Library/Application Support/sshdeck
    - Others: $XDG_DATA_HOME/sshdeck or ~/.local/share/sshdeck
    """
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()

    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / APP_NAME
        return Path.home() / "AppData" / "Roaming" / APP_NAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME

    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


@dataclass
class PtyConfig:
    """
    PTY parameters sent with the pty-req.

    Attributes:
        term: TERM value for the remote shell
        width: Columns
        height: Rows
    """
    term: str = "xterm-256color"
    width: int = 80
    height: int = 24

    def __post_init__(self) -> None:
        assert self.term, "term must be non-empty"
        assert self.width > 0, f"width must be positive, got {self.width}"
        assert self.height > 0, f"height must be positive, got {self.height}"


@dataclass
class ClientConfig:
    """
    Configuration for the terminal service.

    Attributes:
        connect_timeout: Seconds allowed for TCP connect plus handshake
        disconnect_timeout: Cap on graceful SSH disconnect
        shell_close_timeout: Cap on waiting for shell actors to stop
        keyring_service: Service name under which secrets are stored
        data_dir: Directory for servers, known hosts and snippets
        pty: Default PTY parameters for new shells
        event_log: Optional JSONL file receiving every emitted event
    """
    connect_timeout: float = 30.0
    disconnect_timeout: float = 2.0
    shell_close_timeout: float = 2.0
    keyring_service: str = APP_NAME
    data_dir: Path | None = None
    pty: PtyConfig = field(default_factory=PtyConfig)
    event_log: Path | None = None

    def __post_init__(self) -> None:
        assert self.connect_timeout > 0, \
            f"connect_timeout must be positive, got {self.connect_timeout}"
        assert self.disconnect_timeout > 0, \
            f"disconnect_timeout must be positive, got {self.disconnect_timeout}"
        assert self.shell_close_timeout > 0, \
            f"shell_close_timeout must be positive, got {self.shell_close_timeout}"
        assert self.keyring_service, "keyring_service must be non-empty"

        if self.data_dir is None:
            self.data_dir = get_app_data_dir()
        else:
            self.data_dir = Path(self.data_dir).expanduser()
        if self.event_log is not None:
            self.event_log = Path(self.event_log).expanduser()

    @property
    def servers_path(self) -> Path:
        return self.data_dir / SERVERS_FILE

    @property
    def known_hosts_path(self) -> Path:
        return self.data_dir / KNOWN_HOSTS_FILE

    @property
    def snippets_path(self) -> Path:
        return self.data_dir / SNIPPETS_TOML_FILE

    @property
    def legacy_snippets_path(self) -> Path:
        return self.data_dir / SNIPPETS_FILE
