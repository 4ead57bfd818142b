"""Fan-out of tracker updates to subscribers."""

from __future__ import annotations

import json
import struct
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

LOCATION_TAG = 0x00
EVENT_TAG = 0x01

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_LOCATION_FORMAT = struct.Struct("<BHddfQQ")
_U64 = 0xFFFFFFFFFFFFFFFF


@runtime_checkable
class Subscriber(Protocol):
    """Receives pushed data; returns True when it is closed and should be dropped."""

    def push(self, tid: int, data: bytes) -> bool: ...


def _aware(t: datetime) -> datetime:
    return t.astimezone() if t.tzinfo is None else t


def _unix_millis(t: datetime) -> int:
    return (_aware(t) - _EPOCH) // timedelta(milliseconds=1)


def _unix_seconds(t: datetime) -> int:
    return (_aware(t) - _EPOCH) // timedelta(seconds=1)


def encode_event(tracker_id: int, topic: str, message: bytes, t: datetime) -> bytes:
    """Encode an event as a tag byte followed by a JSON object."""
    parts = [f'{{"tid":{tracker_id},"topic":{json.dumps(topic)}'.encode("utf-8")]
    if message:
        parts.append(b',"message":')
        parts.append(bytes(message))
    parts.append(f',"time":{_unix_seconds(t)}}}'.encode("ascii"))
    return bytes([EVENT_TAG]) + b"".join(parts)


def encode_location(
    tracker_id: int,
    lat: float,
    lon: float,
    speed: float,
    gps_time: datetime,
    server_time: datetime,
) -> bytes:
    """Encode a location as a 39-byte little-endian record."""
    return _LOCATION_FORMAT.pack(
        LOCATION_TAG,
        tracker_id & 0xFFFF,
        lat,
        lon,
        speed,
        _unix_millis(gps_time) & _U64,
        _unix_millis(server_time) & _U64,
    )


class Sublist:
    """Subscribers of one tracker, with the most recent location and event."""

    def __init__(self, key: int) -> None:
        self.key = key
        self.prune_dur = timedelta(seconds=20)
        self.data = bytes([LOCATION_TAG])
        self.event_data = bytes([EVENT_TAG])
        self._subscribers: dict[Subscriber, bool] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __contains__(self, sub: object) -> bool:
        with self._lock:
            return sub in self._subscribers

    def subscribe(self, sub: Subscriber) -> None:
        """Add a subscriber and send it the latest location and event."""
        with self._lock:
            self._subscribers[sub] = True
            sub.push(self.key, self.data)
            sub.push(self.key, self.event_data)

    def unsubscribe(self, sub: Subscriber) -> None:
        with self._lock:
            self._subscribers.pop(sub, None)

    def _push_all(self, sender: int, data: bytes) -> None:
        closed = [sub for sub in self._subscribers if sub.push(sender, data)]
        for sub in closed:
            del self._subscribers[sub]

    def send_location(
        self,
        lat: float,
        lon: float,
        speed: float,
        gps_time: datetime,
        server_time: datetime,
    ) -> None:
        with self._lock:
            self.data = encode_location(self.key, lat, lon, speed, gps_time, server_time)
            self._push_all(self.key, self.data)

    def send_event(self, topic: str, message: bytes, t: datetime) -> None:
        with self._lock:
            self.event_data = encode_event(self.key, topic, message, t)
            self._push_all(self.key, self.event_data)

    def send(self, sender: int, data: bytes) -> None:
        with self._lock:
            self._push_all(sender, data)


class SublistMap:
    """Sublists keyed by tracker id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lists: dict[int, Sublist] = {}

    def get_sublist(self, key: int, create: bool) -> Sublist | None:
        """Return the sublist for ``key``, creating it when asked; None if absent."""
        with self._lock:
            sublist = self._lists.get(key)
            if sublist is None and create:
                sublist = Sublist(key)
                self._lists[key] = sublist
            return sublist