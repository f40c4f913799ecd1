"""
Testing utilities for sshdeck.

Provides MockSSHServer, a loopback SSH server with a PTY shell, for
integration tests that need a real handshake without Docker.
"""
from sshdeck.testing.mock_server import MockServerConfig, MockShellSession, MockSSHServer

__all__ = ["MockSSHServer", "MockServerConfig", "MockShellSession"]
