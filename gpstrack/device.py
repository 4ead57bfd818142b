"""Device serial numbers, locations and configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

DEVICE_GT06 = "gt06"
DEVICE_SIMPLEJSON = "simplejson"

_SN_MASK = 0x0FFFFFFFFFFFFFFF
_SN_TYPE_NAMES = {0: "imei", 1: "mac", 2: "aid", 3: "misc1", 4: "misc2"}


def combine_sn(sn_type: int, sn: int) -> int:
    """Pack a serial type (top 4 bits) and serial (low 60 bits) into one number."""
    return ((sn & _SN_MASK) | (sn_type << 60)) & 0xFFFFFFFFFFFFFFFF


def split_sn(nsn: int) -> tuple[int, int]:
    """Split a packed serial into (serial type, serial)."""
    return nsn >> 60, nsn & _SN_MASK


def sn_type_string(sn_type: int) -> str:
    """Return the name of a serial type."""
    return _SN_TYPE_NAMES.get(sn_type, "other")


def format_sn_pretty(sn_type: int, sn: int) -> str:
    """Format a serial: decimal for IMEI, hexadecimal otherwise."""
    return str(sn) if sn_type == 0 else format(sn, "x")


@dataclass(frozen=True)
class Serial:
    """A device serial number with its type."""

    sn_type: int
    sn: int

    @classmethod
    def from_nsn(cls, nsn: int) -> Serial:
        sn_type, sn = split_sn(nsn)
        return cls(sn_type, sn)

    @property
    def nsn(self) -> int:
        return combine_sn(self.sn_type, self.sn)

    @property
    def sn_type_name(self) -> str:
        return sn_type_string(self.sn_type)

    @property
    def sn_string(self) -> str:
        return format_sn_pretty(self.sn_type, self.sn)


@dataclass
class Location:
    """A reported position."""

    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0
    speed: float = 0.0
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.latitude,
            "lon": self.longitude,
            "alt": self.altitude,
            "speed": self.speed,
            "gps_time": self.timestamp.isoformat() if self.timestamp else None,
        }


_CONFIG_FIELDS = {
    "allow_connect": ("allow_connect", bool),
    "send_sublist": ("sublist_send", bool),
    "store": ("store", bool),
    "broadcast": ("broadcast", bool),
    "log_level": ("log_level", str),
    "read_deadline": ("read_deadline", int),
}


@dataclass
class DeviceConfig:
    """Per-device behaviour switches."""

    allow_connect: bool = False
    sublist_send: bool = False
    store: bool = False
    broadcast: bool = False
    log_level: str = ""
    read_deadline: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeviceConfig:
        """Build a config from its JSON form; unknown keys are ignored."""
        values: dict[str, Any] = {}
        for key, (attr, kind) in _CONFIG_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValueError(f"config field {key!r} must be an integer")
            if kind is not int and not isinstance(value, kind):
                raise ValueError(f"config field {key!r} must be {kind.__name__}")
            values[attr] = value
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, (attr, _) in _CONFIG_FIELDS.items()}


@dataclass
class DeviceConfigAttribute:
    """A device's configuration together with its stored attributes."""

    config: DeviceConfig | None = None
    attribute: dict[str, str] = field(default_factory=dict)