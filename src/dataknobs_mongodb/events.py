"""Structured events emitted by the MongoDB connectors.

Events complement logging: each one has a dotted name (for example
``mongodb.poll.polling``), a level, an optional value and the tags of the step
that produced it. Components receive an :class:`EventsLogger` or ``None``;
with ``None`` no event is built at all.

Example:
    ```python
    from dataknobs_mongodb.events import InMemoryEventsLogger

    events = InMemoryEventsLogger()
    events.info("mongodb.search.success", (0.12, 3), tags={"step": "search"})

    assert events.find("mongodb.search.*")[0].value == (0.12, 3)
    ```
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventLevel(Enum):
    """Severity of an event, ordered from the most verbose."""

    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4


_LOGGING_LEVELS = {
    EventLevel.TRACE: logging.DEBUG,
    EventLevel.DEBUG: logging.DEBUG,
    EventLevel.INFO: logging.INFO,
    EventLevel.WARN: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Event:
    """An immutable event.

    Attributes:
        name: Dotted name of the event (e.g. "mongodb.save.failed-records")
        level: Severity of the event
        value: Optional payload (a scalar, a tuple of values, an exception...)
        tags: Tags of the emitting step
        timestamp: When the event was created (defaults to now)
        event_id: Unique identifier for this event (auto-generated)
    """

    name: str
    level: EventLevel = EventLevel.INFO
    value: Any = None
    tags: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization.

        Returns:
            Dictionary representation with ISO timestamp and level name.
        """
        return {
            "name": self.name,
            "level": self.level.name,
            "value": self.value,
            "tags": dict(self.tags),
            "timestamp": self.timestamp.isoformat(),
            "event_id": self.event_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Create event from dictionary.

        Args:
            data: Dictionary with event data

        Returns:
            Event instance
        """
        return cls(
            name=data["name"],
            level=EventLevel[data.get("level", "INFO")],
            value=data.get("value"),
            tags=data.get("tags", {}),
            timestamp=(
                datetime.fromisoformat(data["timestamp"])
                if isinstance(data.get("timestamp"), str)
                else data.get("timestamp", datetime.now(timezone.utc))
            ),
            event_id=data.get("event_id", str(uuid.uuid4())),
        )


class EventsLogger:
    """Base class of the events sinks.

    Subclasses implement :meth:`publish`. Events below ``min_level`` are
    discarded before reaching the sink.
    """

    def __init__(self, min_level: EventLevel = EventLevel.TRACE) -> None:
        self.min_level = min_level

    def publish(self, event: Event) -> None:
        raise NotImplementedError

    def log(
        self,
        name: str,
        level: EventLevel,
        value: Any = None,
        tags: dict[str, str] | None = None,
    ) -> None:
        if level.value < self.min_level.value:
            return
        event = Event(name=name, level=level, value=value, tags=dict(tags or {}))
        try:
            self.publish(event)
        except Exception:
            logger.exception("Error while publishing the event %s", name)

    def trace(self, name: str, value: Any = None, tags: dict[str, str] | None = None) -> None:
        self.log(name, EventLevel.TRACE, value, tags)

    def debug(self, name: str, value: Any = None, tags: dict[str, str] | None = None) -> None:
        self.log(name, EventLevel.DEBUG, value, tags)

    def info(self, name: str, value: Any = None, tags: dict[str, str] | None = None) -> None:
        self.log(name, EventLevel.INFO, value, tags)

    def warn(self, name: str, value: Any = None, tags: dict[str, str] | None = None) -> None:
        self.log(name, EventLevel.WARN, value, tags)

    def error(self, name: str, value: Any = None, tags: dict[str, str] | None = None) -> None:
        self.log(name, EventLevel.ERROR, value, tags)


class InMemoryEventsLogger(EventsLogger):
    """Events sink keeping every event in memory.

    Suitable for tests and for embedding code that inspects the events after
    a run. Access is guarded by a lock since events can be published from
    driver callbacks.
    """

    def __init__(self, min_level: EventLevel = EventLevel.TRACE) -> None:
        super().__init__(min_level)
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def publish(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Snapshot of the published events, in order."""
        with self._lock:
            return list(self._events)

    def find(self, pattern: str) -> list[Event]:
        """Return the events whose name matches the wildcard pattern.

        Args:
            pattern: fnmatch pattern, e.g. "mongodb.poll.*"
        """
        return [e for e in self.events if fnmatch.fnmatch(e.name, pattern)]

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class LoggingEventsLogger(EventsLogger):
    """Events sink forwarding every event to a standard logger."""

    def __init__(
        self,
        min_level: EventLevel = EventLevel.DEBUG,
        logger_name: str = "dataknobs_mongodb.events",
    ) -> None:
        super().__init__(min_level)
        self._logger = logging.getLogger(logger_name)

    def publish(self, event: Event) -> None:
        self._logger.log(
            _LOGGING_LEVELS[event.level],
            "%s value=%r tags=%s",
            event.name,
            event.value,
            event.tags,
        )
