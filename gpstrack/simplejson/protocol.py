"""Frames and JSON payloads of the simple JSON tracker protocol."""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Mapping

from gpstrack.conn import Conn

FRAME_START = 0x99
FRAME_END = 0x0A
MAX_FRAME_SIZE = 1000
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_FRACTION = re.compile(r"\.(\d+)")


class BadFrameError(ValueError):
    """A frame had a wrong header, trailer or length."""


class Protocol(enum.IntEnum):
    LOGIN = 0x01
    LOCATION_UPDATE = 0x02
    SAT_UPDATE = 0x03
    GPS_ERROR = 0x04
    GPS_INIT = 0x05
    STATUS = 0x06


@dataclass(frozen=True)
class FrameMessage:
    """One decoded frame."""

    protocol: int
    payload: bytes
    length: int


def _parse_time(value: Any, key: str) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a timestamp string")
    text = value
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"field {key!r} is not an RFC 3339 timestamp") from exc
    if parsed.tzinfo is None:
        raise ValueError(f"field {key!r} has no time zone")
    return parsed


def _convert(value: Any, kind: type, key: str) -> Any:
    if kind is datetime:
        return _parse_time(value, key)
    if kind is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"field {key!r} must be a number")
        return float(value)
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"field {key!r} must be an integer")
        return value
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} must be {kind.__name__}")
    return value


def _values(data: Mapping[str, Any], spec: Mapping[str, tuple[str, type]]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, (attr, kind) in spec.items():
        value = data.get(key)
        if value is not None:
            values[attr] = _convert(value, kind, key)
    return values


def _decode_object(payload: bytes | str) -> Mapping[str, Any]:
    data = json.loads(payload)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def _spec_from(cls: type, keys: Mapping[str, str], kinds: Mapping[str, type]) -> dict:
    names = {f.name for f in fields(cls)}
    return {key: (attr, kinds[attr]) for key, attr in keys.items() if attr in names}


@dataclass(frozen=True)
class LoginMessage:
    sn_type: str = ""
    serial: str = ""
    device_type: str = ""

    @classmethod
    def from_json(cls, payload: bytes | str) -> LoginMessage:
        return cls(**_values(_decode_object(payload), _LOGIN_SPEC))


_LOGIN_SPEC = {
    "sn_type": ("sn_type", str),
    "serial": ("serial", str),
    "device_type": ("device_type", str),
}


@dataclass(frozen=True)
class Sat:
    sprn: int = 0
    snr: int = 0
    used_in_fix: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Sat:
        if not isinstance(data, Mapping):
            raise ValueError("satellite entry must be a JSON object")
        return cls(**_values(data, _SAT_SPEC))


_SAT_SPEC = {
    "svprn": ("sprn", int),
    "snr": ("snr", int),
    "fix": ("used_in_fix", bool),
}


@dataclass(frozen=True)
class LocationMessage:
    gps_time: datetime = ZERO_TIME
    machine_time: datetime = ZERO_TIME
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0
    sat_inview: int = 0
    sat_tracked: int = 0
    sat_used: int = 0
    fix: bool = False
    fix_mode: str = ""
    speed: float = 0.0

    @classmethod
    def from_json(cls, payload: bytes | str) -> LocationMessage:
        return cls(**_values(_decode_object(payload), _LOCATION_SPEC))


_LOCATION_SPEC = {
    "gps_time": ("gps_time", datetime),
    "machine_time": ("machine_time", datetime),
    "latitude": ("latitude", float),
    "longitude": ("longitude", float),
    "altitude": ("altitude", float),
    "sat_inview": ("sat_inview", int),
    "sat_tracked": ("sat_tracked", int),
    "sat_used": ("sat_used", int),
    "fix": ("fix", bool),
    "fix_mode": ("fix_mode", str),
    "speed": ("speed", float),
}


@dataclass(frozen=True)
class StatusMessage:
    gps_status: bool = False
    last_longitude: float = 0.0
    last_latitude: float = 0.0
    last_fix: datetime = ZERO_TIME
    last_sat_tracked: int = 0
    last_sat_inview: int = 0
    last_sat_used: int = 0
    last_sat_update: datetime = ZERO_TIME

    @classmethod
    def from_json(cls, payload: bytes | str) -> StatusMessage:
        return cls(**_values(_decode_object(payload), _STATUS_SPEC))


_STATUS_SPEC = {
    "gps_status": ("gps_status", bool),
    "last_longitude": ("last_longitude", float),
    "last_latitude": ("last_latitude", float),
    "last_fix": ("last_fix", datetime),
    "last_sat_tracked": ("last_sat_tracked", int),
    "last_sat_inview": ("last_sat_inview", int),
    "last_sat_used": ("last_sat_used", int),
    "last_sat_update": ("last_sat_update", datetime),
}


async def read_message(conn: Conn) -> FrameMessage:
    """Read one frame from ``conn``; raises BadFrameError on a malformed frame."""
    header = await conn.read_exactly(4)
    if header[0] != FRAME_START:
        raise BadFrameError("incorrect header")
    length = int.from_bytes(header[2:4], "little") + 5
    if length > MAX_FRAME_SIZE:
        raise BadFrameError("frame too large")
    rest = await conn.read_exactly(length - 4)
    if rest[-1] != FRAME_END:
        raise BadFrameError("incorrect trailer")
    return FrameMessage(protocol=header[1], payload=bytes(rest[:-1]), length=length)