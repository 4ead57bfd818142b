"""Fixed-size history of connect and update events."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime

_HISTORY_SIZE = 10


class _EventLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: deque[datetime] = deque(maxlen=_HISTORY_SIZE)

    def add(self, t: datetime) -> None:
        with self._lock:
            self._events.appendleft(t)

    def last(self) -> datetime | None:
        with self._lock:
            return self._events[0] if self._events else None

    def as_list(self) -> list[datetime]:
        with self._lock:
            return list(self._events)


class Stat:
    """Keeps the most recent connect and update times, newest first."""

    def __init__(self) -> None:
        self._connect = _EventLog()
        self._update = _EventLog()

    def connect_last(self) -> datetime | None:
        return self._connect.last()

    def update_last(self) -> datetime | None:
        return self._update.last()

    def connect_list(self) -> list[datetime]:
        return self._connect.as_list()

    def update_list(self) -> list[datetime]:
        return self._update.as_list()

    def connect_event(self, t: datetime) -> None:
        self._connect.add(t)

    def update_event(self, t: datetime) -> None:
        self._update.add(t)