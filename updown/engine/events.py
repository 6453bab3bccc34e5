"""In-process publish/subscribe bus for engine events.

Subscribers are called synchronously on the publishing thread, outside the
lock; a failing subscriber is logged and never affects the engine. The last
``history`` events are kept so the dashboard can poll ``/api/events``.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable

from updown.observability.logger import get_logger

log = get_logger(__name__)


class EventTypes:
    STATUS = "status"
    MARKETS_UPDATED = "marketsUpdated"
    ANALYSIS_UPDATED = "analysisUpdated"
    TRADE_OPENED = "tradeOpened"
    TRADE_SETTLED = "tradeSettled"
    TRADE_SKIPPED = "tradeSkipped"
    STATS_UPDATED = "statsUpdated"
    RECORDS_CLEARED = "recordsCleared"
    MODE_CHANGED = "modeChanged"
    ERROR = "error"

    ALL = (
        STATUS, MARKETS_UPDATED, ANALYSIS_UPDATED, TRADE_OPENED, TRADE_SETTLED,
        TRADE_SKIPPED, STATS_UPDATED, RECORDS_CLEARED, MODE_CHANGED, ERROR,
    )


# "*" receives every event type
WILDCARD = "*"


@dataclass
class Event:
    event_type: str
    data: dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type, "data": self.data, "timestamp": self.timestamp}


Callback = Callable[[Event], None]


class EventBus:
    def __init__(self, history: int = 200) -> None:
        self._subscribers: dict[str, list[Callback]] = defaultdict(list)
        self._history: deque[Event] = deque(maxlen=history)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Callback) -> None:
        with self._lock:
            self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: str, callback: Callback) -> bool:
        with self._lock:
            try:
                self._subscribers[event_type].remove(callback)
                return True
            except ValueError:
                return False

    def publish(self, event_type: str, data: dict[str, Any] | None = None) -> Event:
        event = Event(event_type=event_type, data=data or {})
        with self._lock:
            self._history.append(event)
            subscribers = [
                *self._subscribers.get(event_type, ()),
                *self._subscribers.get(WILDCARD, ()),
            ]

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                log.error("events.subscriber_failed", event_type=event_type, error=str(e))
        return event

    def recent(self, limit: int = 50, event_type: str | None = None) -> list[Event]:
        with self._lock:
            events = list(self._history)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]
