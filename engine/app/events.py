"""Fan-out of engine events to live subscribers.

The console live-log view and every dashboard event stream hold their own
:class:`Subscription`. Publishing never waits on a subscriber: each one has a
bounded buffer, and when a reader falls behind its oldest events are dropped
and replaced by a single ``gap`` event carrying the number of lost events.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterator, Optional

from .schemas import Event

logger = logging.getLogger("backupd.events")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription:
    def __init__(self, broadcaster: "EventBroadcaster", buffer_size: int):
        self._broadcaster = broadcaster
        self._buffer: deque[Event] = deque()
        self._buffer_size = max(1, buffer_size)
        self._dropped = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: Event) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._buffer) >= self._buffer_size:
                self._buffer.popleft()
                self._dropped += 1
            self._buffer.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, or None on timeout or once closed and drained."""
        with self._cond:
            if not self._buffer and not self._dropped and not self._closed:
                self._cond.wait(timeout)
            if self._dropped:
                dropped, self._dropped = self._dropped, 0
                return Event(
                    timestamp=utcnow(),
                    level="WARN",
                    origin="events",
                    message=f"{dropped} event(s) dropped, subscriber fell behind",
                    kind="gap",
                    dropped=dropped,
                )
            if self._buffer:
                return self._buffer.popleft()
            return None

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event
            elif self._closed:
                return

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._broadcaster.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class EventBroadcaster:
    def __init__(self, buffer_size: int = 100, replay_size: int = 20, subscriber_buffer: int = 256):
        self._recent: deque[Event] = deque(maxlen=buffer_size)
        self._replay_size = replay_size
        self._subscriber_buffer = subscriber_buffer
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def publish(self, event: Event) -> None:
        # offers happen under the lock so every subscriber sees one publish order
        with self._lock:
            self._recent.append(event)
            for subscription in self._subscribers:
                subscription.offer(event)

    def emit(self, level: str, origin: str, message: str) -> Event:
        event = Event(timestamp=utcnow(), level=level, origin=origin, message=message)
        logger.log(_LEVELS.get(level, logging.INFO), "%s: %s", origin, message)
        self.publish(event)
        return event

    def info(self, origin: str, message: str) -> Event:
        return self.emit("INFO", origin, message)

    def warn(self, origin: str, message: str) -> Event:
        return self.emit("WARN", origin, message)

    def error(self, origin: str, message: str) -> Event:
        return self.emit("ERROR", origin, message)

    def subscribe(self, replay: bool = True) -> Subscription:
        subscription = Subscription(self, self._subscriber_buffer)
        with self._lock:
            if replay and self._replay_size > 0:
                for event in list(self._recent)[-self._replay_size:]:
                    subscription.offer(event)
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def recent(self, limit: Optional[int] = None) -> list[Event]:
        """Most recent events, newest first."""
        with self._lock:
            events = list(self._recent)
        events.reverse()
        return events[:limit] if limit is not None else events

    def close_all(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()

    def clear(self) -> None:
        """Forget the recent-events buffer; live subscribers are unaffected."""
        with self._lock:
            self._recent.clear()
