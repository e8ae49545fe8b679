"""Viral event stream: immutable events, a bounded log and a pub/sub bus."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from xfactor.config import settings
from xfactor.types import EventType

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
EventHandler = Callable[["ViralEvent"], Any]

ALL_EVENTS = "*"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidEventError(ValueError):
    """Raised when an event is constructed without mandatory attribution fields."""


@dataclass(frozen=True, slots=True)
class ViralEvent:
    """Single entry of the append-only event stream.

    ``cohort`` and ``referred`` are mandatory so every producer tags events
    consistently; analytics never has to guess the attribution of an event.
    """

    event_type: EventType
    user_id: str
    cohort: str
    referred: bool
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.event_type, EventType):
            object.__setattr__(self, "event_type", EventType(self.event_type))
        if not self.user_id:
            raise InvalidEventError("event user_id must not be empty")
        if not isinstance(self.cohort, str) or not self.cohort.strip():
            raise InvalidEventError("event cohort must be a non-empty string")
        if not isinstance(self.referred, bool):
            raise InvalidEventError("event referred flag must be a bool")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        object.__setattr__(self, "metadata", dict(self.metadata))

    @property
    def loop_id(self) -> Optional[str]:
        value = self.metadata.get("loop_id")
        return str(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": {**self.metadata, "cohort": self.cohort, "referred": self.referred},
        }


class EventLog:
    """Insertion-ordered ring buffer of events.

    Once ``capacity`` events are stored, appending evicts the oldest one.
    """

    def __init__(self, capacity: int | None = None) -> None:
        size = capacity if capacity is not None else settings.EVENT_LOG_CAPACITY
        if size < 1:
            raise ValueError("event log capacity must be positive")
        self._events: Deque[ViralEvent] = deque(maxlen=size)
        self._evicted = 0

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    @property
    def evicted(self) -> int:
        return self._evicted

    def append(self, event: ViralEvent) -> None:
        if len(self._events) == self._events.maxlen:
            self._evicted += 1
        self._events.append(event)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ViralEvent]:
        return iter(tuple(self._events))

    def snapshot(self) -> Tuple[ViralEvent, ...]:
        return tuple(self._events)

    def select(
        self,
        *,
        event_types: Iterable[EventType] | None = None,
        cohort: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> List[ViralEvent]:
        """Filter events; ``since``/``until`` bounds are inclusive."""

        wanted = set(event_types) if event_types is not None else None
        selected: List[ViralEvent] = []
        for event in self._events:
            if wanted is not None and event.event_type not in wanted:
                continue
            if cohort is not None and event.cohort != cohort:
                continue
            if since is not None and event.timestamp < since:
                continue
            if until is not None and event.timestamp > until:
                continue
            selected.append(event)
        return selected

    def clear(self) -> None:
        self._events.clear()


class EventBus:
    """Appends events to the log and fans them out to subscribers."""

    def __init__(self, log: EventLog | None = None, *, clock: Clock | None = None) -> None:
        self.log = log if log is not None else EventLog()
        self._clock = clock or utcnow
        self._subscribers: Dict[str, List[EventHandler]] = {}

    def now(self) -> datetime:
        return self._clock()

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Callable[[], None]:
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        self._subscribers.setdefault(key, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: ViralEvent) -> ViralEvent:
        self.log.append(event)
        handlers = [
            *self._subscribers.get(event.event_type.value, []),
            *self._subscribers.get(ALL_EVENTS, []),
        ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event subscriber failed: type=%s user=%s", event.event_type.value, event.user_id
                )
        return event

    def emit(
        self,
        event_type: EventType,
        user_id: str,
        *,
        cohort: str | None = None,
        referred: bool = False,
        metadata: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> ViralEvent:
        event = ViralEvent(
            event_type=event_type,
            user_id=user_id,
            cohort=cohort or settings.DEFAULT_COHORT,
            referred=referred,
            timestamp=timestamp or self._clock(),
            metadata=dict(metadata or {}),
        )
        return self.publish(event)


__all__ = [
    "ALL_EVENTS",
    "EventBus",
    "EventLog",
    "InvalidEventError",
    "ViralEvent",
    "utcnow",
]
