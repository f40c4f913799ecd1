"""
PTY shells: one actor task per channel, addressed by shell id.

Provides:
- SendInput, Resize, Close: commands accepted by a shell
- ShellCommandSender: the only way to reach a running shell
- PtyShell: {id, server_id, command_sender} handle kept in the registry
- ShellActor: task that exclusively owns one PTY channel
- ShellRegistry: shell id -> PtyShell, used to route commands
- open_pty_shell: request channel + PTY + shell and spawn the actor

The actor multiplexes two queues: messages from the channel (data, EOF,
exit status, close) and commands from the handle. When both are ready the
channel message is handled first and the command right after it in the same
turn; each queue is drained in FIFO order.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

import asyncssh

from sshdeck.config import PtyConfig
from sshdeck.errors import ErrorContext, ShellClosed, ShellNotFound, ShellOpenError
from sshdeck.events import EventEmitter, EventType
from sshdeck.models import ConnectionState

if TYPE_CHECKING:
    from sshdeck.session import SshSession

logger = logging.getLogger(__name__)

CLOSED_BANNER = "\r\n\r\nConnection closed (exit code: {status})\r\n"
SIGNAL_BANNER = "\r\n\r\nConnection closed (signal: {signal})\r\n"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SendInput:
    data: bytes

    def __post_init__(self) -> None:
        assert isinstance(self.data, bytes), \
            f"SendInput requires bytes, got {type(self.data).__name__}"


@dataclass(frozen=True)
class Resize:
    width: int
    height: int

    def __post_init__(self) -> None:
        assert self.width > 0 and self.height > 0, \
            f"Terminal size must be positive, got {self.width}x{self.height}"


@dataclass(frozen=True)
class Close:
    pass


ShellCommand = Union[SendInput, Resize, Close]


class ShellCommandSender:
    """
    Ordered, non-blocking command queue into one shell actor.

    Once Close has been sent (or the actor has stopped) every further
    send raises ShellClosed instead of queueing into the void.
    """

    def __init__(self, shell_id: str, queue: "asyncio.Queue[ShellCommand]") -> None:
        self._shell_id = shell_id
        self._queue = queue
        self._closed = False
        self._task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, command: ShellCommand) -> None:
        if self._closed:
            raise ShellClosed(self._shell_id)
        if isinstance(command, Close):
            self._closed = True
        self._queue.put_nowait(command)

    def attach(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    def mark_closed(self) -> None:
        self._closed = True

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def wait_stopped(self, timeout: float) -> bool:
        """Wait up to timeout seconds for the actor to stop. True if it did."""
        if self._task is None:
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    def abort(self) -> None:
        """Cancel the actor task outright."""
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


@dataclass
class PtyShell:
    """Registry handle for an open shell. Never touches the channel."""
    id: str
    server_id: str
    command_sender: ShellCommandSender


# ---------------------------------------------------------------------------
# Channel side
# ---------------------------------------------------------------------------

@dataclass
class _Data:
    data: bytes


@dataclass
class _Eof:
    pass


@dataclass
class _ExitStatus:
    status: int


@dataclass
class _ExitSignal:
    signal: str


@dataclass
class _ChannelClosed:
    exc: Exception | None


_Inbound = Union[_Data, _Eof, _ExitStatus, _ExitSignal, _ChannelClosed]


class _ShellChannelSession(asyncssh.SSHClientSession):
    """Turns asyncssh session callbacks into messages for the actor."""

    def __init__(self, inbox: "asyncio.Queue[_Inbound]") -> None:
        self._inbox = inbox

    def data_received(self, data: bytes, datatype: Any) -> None:
        self._inbox.put_nowait(_Data(data))

    def eof_received(self) -> bool:
        self._inbox.put_nowait(_Eof())
        # Keep the channel half-open; the shell may still send exit status
        return True

    def exit_status_received(self, status: int) -> None:
        self._inbox.put_nowait(_ExitStatus(status))

    def exit_signal_received(
        self, signal: str, core_dumped: bool, msg: str, lang: str,
    ) -> None:
        self._inbox.put_nowait(_ExitSignal(signal))

    def connection_lost(self, exc: Exception | None) -> None:
        self._inbox.put_nowait(_ChannelClosed(exc))


class ShellActor:
    """
    Owns one PTY channel for its whole lifetime.

    Terminates on exit status, exit signal, channel close or a Close
    command. On termination, whatever the reason, it closes the channel,
    deregisters from the ShellRegistry and emits Disconnected scoped to
    (server_id, shell_id).
    """

    def __init__(
        self,
        shell_id: str,
        server_id: str,
        channel: Any,
        inbox: "asyncio.Queue[_Inbound]",
        commands: "asyncio.Queue[ShellCommand]",
        sender: ShellCommandSender,
        emitter: EventEmitter,
        registry: "ShellRegistry",
        close_timeout: float = 2.0,
    ) -> None:
        self.shell_id = shell_id
        self.server_id = server_id
        self._channel = channel
        self._inbox = inbox
        self._commands = commands
        self._sender = sender
        self._emitter = emitter
        self._registry = registry
        self._close_timeout = close_timeout
        # Multi-byte characters may be split across packets; invalid bytes are dropped
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")

    async def run(self) -> None:
        logger.debug(f"Read loop started for shell {self.shell_id}")
        inbound: asyncio.Future[_Inbound] | None = None
        command: asyncio.Future[ShellCommand] | None = None
        try:
            while True:
                if inbound is None:
                    inbound = asyncio.ensure_future(self._inbox.get())
                if command is None:
                    command = asyncio.ensure_future(self._commands.get())

                done, _ = await asyncio.wait(
                    {inbound, command}, return_when=asyncio.FIRST_COMPLETED,
                )

                if inbound in done:
                    message = inbound.result()
                    inbound = None
                    if not self._on_inbound(message):
                        break

                # A ready command is applied in the same turn as the channel message
                if command in done:
                    cmd = command.result()
                    command = None
                    if not self._on_command(cmd):
                        break
        finally:
            for pending in (inbound, command):
                if pending is not None:
                    pending.cancel()
            await self._terminate()

    def _emit_output(self, text: str) -> None:
        self._emitter.emit(EventType.TERMINAL_OUTPUT, shell_id=self.shell_id, output=text)

    def _on_inbound(self, message: _Inbound) -> bool:
        """Handle a channel message. Returns False when the loop must stop."""
        if isinstance(message, _Data):
            text = self._decoder.decode(message.data)
            if text:
                self._emit_output(text)
            return True

        if isinstance(message, _Eof):
            logger.debug(f"Shell {self.shell_id} received EOF")
            return True

        if isinstance(message, _ExitStatus):
            logger.debug(f"Shell {self.shell_id} closed with exit status {message.status}")
            self._emit_output(CLOSED_BANNER.format(status=message.status))
            return False

        if isinstance(message, _ExitSignal):
            logger.debug(f"Shell {self.shell_id} terminated by signal {message.signal}")
            self._emit_output(SIGNAL_BANNER.format(signal=message.signal))
            return False

        if message.exc is not None:
            logger.info(f"Channel for shell {self.shell_id} lost: {message.exc}")
        else:
            logger.debug(f"Channel for shell {self.shell_id} closed")
        return False

    def _on_command(self, command: ShellCommand) -> bool:
        """Apply a command to the channel. Returns False when the loop must stop."""
        if isinstance(command, SendInput):
            logger.debug(f"Sending {len(command.data)} bytes to shell {self.shell_id}")
            try:
                self._channel.write(command.data)
            except (OSError, asyncssh.Error) as e:
                logger.warning(f"Failed to send input to shell {self.shell_id}: {e}")
                self._emit_output(f"\r\nFailed to send input: {e}\r\n")
            return True

        if isinstance(command, Resize):
            logger.debug(f"Resizing shell {self.shell_id} to {command.width}x{command.height}")
            try:
                self._channel.change_terminal_size(command.width, command.height)
            except (OSError, asyncssh.Error) as e:
                logger.warning(f"Failed to resize shell {self.shell_id}: {e}")
            return True

        logger.debug(f"Close requested for shell {self.shell_id}")
        return False

    async def _terminate(self) -> None:
        self._sender.mark_closed()
        try:
            self._channel.close()
            await asyncio.wait_for(self._channel.wait_closed(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out closing channel for shell {self.shell_id}")
        finally:
            await self._registry.remove(self.shell_id)
            logger.debug(f"Read loop stopped for shell {self.shell_id}")
            self._emitter.emit_state(
                ConnectionState.disconnected(),
                server_id=self.server_id,
                shell_id=self.shell_id,
            )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ShellRegistry:
    """
    Maps shell id -> PtyShell.

    The lock only covers the map; commands are queued on the shell's
    sender and applied by its actor, so no caller waits on channel I/O.
    """

    def __init__(self) -> None:
        self._shells: dict[str, PtyShell] = {}
        self._lock = asyncio.Lock()

    async def register(self, shell: PtyShell) -> None:
        async with self._lock:
            assert shell.id not in self._shells, f"Duplicate shell id {shell.id}"
            self._shells[shell.id] = shell

    async def get(self, shell_id: str) -> PtyShell:
        async with self._lock:
            shell = self._shells.get(shell_id)
        if shell is None:
            raise ShellNotFound(shell_id)
        return shell

    async def remove(self, shell_id: str) -> PtyShell | None:
        async with self._lock:
            return self._shells.pop(shell_id, None)

    async def ids(self) -> list[str]:
        async with self._lock:
            return list(self._shells)

    async def for_server(self, server_id: str) -> list[PtyShell]:
        async with self._lock:
            return [s for s in self._shells.values() if s.server_id == server_id]

    async def send_input(self, shell_id: str, data: bytes) -> None:
        shell = await self.get(shell_id)
        shell.command_sender.send(SendInput(data))

    async def resize(self, shell_id: str, width: int, height: int) -> None:
        shell = await self.get(shell_id)
        shell.command_sender.send(Resize(width, height))

    async def close(self, shell_id: str) -> None:
        shell = await self.get(shell_id)
        shell.command_sender.send(Close())

    async def close_server(self, server_id: str, timeout: float) -> None:
        """Close every shell of a server, waiting at most ~2x timeout."""
        await self._close_shells(await self.for_server(server_id), timeout)

    async def close_all(self, timeout: float) -> None:
        async with self._lock:
            shells = list(self._shells.values())
        await self._close_shells(shells, timeout)

    async def _close_shells(self, shells: list[PtyShell], timeout: float) -> None:
        if not shells:
            return

        for shell in shells:
            if not shell.command_sender.closed:
                shell.command_sender.send(Close())

        results = await asyncio.gather(
            *(s.command_sender.wait_stopped(timeout) for s in shells)
        )
        stuck = [s for s, stopped in zip(shells, results) if not stopped]

        for shell in stuck:
            logger.warning(f"Shell {shell.id} did not close within {timeout}s; cancelling")
            shell.command_sender.abort()
        if stuck:
            await asyncio.gather(*(s.command_sender.wait_stopped(timeout) for s in stuck))

        async with self._lock:
            for shell in shells:
                self._shells.pop(shell.id, None)


async def open_pty_shell(
    session: "SshSession",
    config: PtyConfig,
    server_id: str,
    emitter: EventEmitter,
    registry: ShellRegistry,
    close_timeout: float = 2.0,
) -> PtyShell:
    """
    Open a PTY shell on a live session and spawn its actor.

    Raises:
        ShellOpenError: If the channel, PTY or shell request fails
    """
    shell_id = str(uuid.uuid4())
    inbox: asyncio.Queue[_Inbound] = asyncio.Queue()

    logger.debug(
        f"Opening PTY channel on {server_id}: {config.term} {config.width}x{config.height}"
    )
    try:
        channel, _ = await session.conn.create_session(
            lambda: _ShellChannelSession(inbox),
            term_type=config.term,
            term_size=(config.width, config.height),
            encoding=None,
        )
    except (OSError, asyncssh.Error) as e:
        raise ShellOpenError(
            f"Failed to open shell on server {server_id}: {e}",
            ErrorContext(server_id=server_id, original_error=str(e)),
        ) from e

    commands: asyncio.Queue[ShellCommand] = asyncio.Queue()
    sender = ShellCommandSender(shell_id, commands)
    shell = PtyShell(id=shell_id, server_id=server_id, command_sender=sender)
    actor = ShellActor(
        shell_id=shell_id,
        server_id=server_id,
        channel=channel,
        inbox=inbox,
        commands=commands,
        sender=sender,
        emitter=emitter,
        registry=registry,
        close_timeout=close_timeout,
    )

    await registry.register(shell)
    sender.attach(asyncio.create_task(actor.run(), name=f"shell-{shell_id}"))
    logger.info(f"Opened shell {shell_id} on server {server_id}")
    emitter.emit_state(ConnectionState.connected(), server_id=server_id, shell_id=shell_id)
    return shell
