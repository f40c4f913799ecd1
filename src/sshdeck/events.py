"""
Outward signals for sshdeck.

The core never talks to a UI directly: everything the frontend needs to
render is emitted as an Event and fanned out to subscribers, an in-memory
collector (for tests), and optionally a JSONL log.

Event types:
- connection-state: Connecting / Connected / Disconnected / Error, scoped
  to an optional (server_id, shell_id) pair
- terminal-output: decoded shell output tagged with its shell id
- host-key-prompt: an unseen host key needs an accept/reject decision
- host-key-mismatch: a host presented a key that differs from the trusted one

All events include:
- timestamp: Unix timestamp in milliseconds
- event_type: One of the above types
- data: Event-specific structured data
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable

from sshdeck.models import ConnectionState

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Signal names consumed by the UI collaborator."""
    CONNECTION_STATE = "connection-state"
    TERMINAL_OUTPUT = "terminal-output"
    HOST_KEY_PROMPT = "host-key-prompt"
    HOST_KEY_MISMATCH = "host-key-mismatch"


@dataclass
class Event:
    """
    A single emitted signal.

    - event_type: The signal name
    - timestamp: When the event occurred (Unix ms)
    - data: Event-specific structured data
    """
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise event to JSON string."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise event from JSON string."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


EventListener = Callable[[Event], None]


class EventCollector:
    """Collects events in memory for testing and inspection."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        """Add an event to the collection."""
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return collected events (immutable view)."""
        return list(self._events)

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]

    def states(self, server_id: str | None = None) -> list[str]:
        """Return the connection-state sequence, optionally for one server."""
        return [
            e.data["state"]
            for e in self.get_by_type(EventType.CONNECTION_STATE)
            if server_id is None or e.data.get("server_id") == server_id
        ]


class JSONLEventWriter:
    """
    Append-only event log, one JSON object per line.

    The file is opened on the first event and flushed after every line so
    a crash loses at most the event being written.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event: Event) -> None:
        if self._file is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None


class EventEmitter:
    """
    Composite event emitter that dispatches to multiple sinks.

    Sinks:
    - In-memory collector (for testing)
    - JSONL file writer (for persistence)
    - Subscribed listeners (the UI bridge)

    A sink or listener that raises is logged and skipped; it never prevents
    delivery to the other sinks or breaks the emitting task.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None
        self._listeners: list[EventListener] = []

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """
        Register a listener for every emitted event.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create and emit an event.

        Args:
            event_type: The type of event
            **data: Event-specific data

        Returns:
            The created event
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)

        if self._collector:
            try:
                self._collector.emit(event)
            except Exception:
                logger.exception("Event collector failed for %s", event_type)

        if self._jsonl_writer:
            try:
                self._jsonl_writer.emit(event)
            except Exception:
                logger.exception("Event log write to %s failed for %s", self._jsonl_writer.path, event_type)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event_type)

        return event

    def emit_state(
        self,
        state: ConnectionState,
        server_id: str | None = None,
        shell_id: str | None = None,
    ) -> Event:
        """Emit a connection-state event scoped to (server_id, shell_id)."""
        return self.emit(
            EventType.CONNECTION_STATE,
            server_id=server_id,
            shell_id=shell_id,
            state=state.kind.value,
            message=state.message,
        )

    def close(self) -> None:
        """Close any open resources."""
        if self._jsonl_writer:
            self._jsonl_writer.close()
            self._jsonl_writer = None


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Load an event log written by JSONLEventWriter."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [Event.from_json(line) for line in lines if line.strip()]
