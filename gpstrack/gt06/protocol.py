"""GT06 binary frames: reading, building and payload parsing."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from gpstrack.conn import Conn
from gpstrack.crc16 import X25, checksum

LOGIN = 0x01
GT06_GPS = 0x12
STATUS_INFORMATION = 0x13
STRING_INFORMATION = 0x15
GT06_GPS_ALARM = 0x16
GPS_INFO = 0x1A
GK310_GPS = 0x22
GK310_GPS_ALARM = 0x26
SERVER_COMMAND = 0x80
SERVER_COMMAND_RESPONSE = 0x21
TIME_CHECK = 0x8A
INFORMATION_TX_PACKET = 0x94

MAX_FRAME_SIZE = 1000
_COORD_SCALE = 1800000


class BadFrameError(ValueError):
    """A frame had a wrong header, trailer or length."""


@dataclass
class Message:
    """One decoded frame."""

    protocol: int
    serial: int
    payload: bytes
    length: int
    extended: bool = False


@dataclass(frozen=True)
class DeviceSn:
    imei: str
    imsi: str
    iccid: str


@dataclass(frozen=True)
class CellInfo:
    mcc: int = 0
    mnc: int = 0
    lac: int = 0
    cell_id: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"mcc": self.mcc, "mnc": self.mnc, "lac": self.lac, "cell_id": self.cell_id}


@dataclass(frozen=True)
class GPSMessage:
    timestamp: datetime | None = None
    latitude: float = 0.0
    longitude: float = 0.0
    course: int = 0
    sat_count: int = 0
    speed: float = 0.0
    cell_info: CellInfo = field(default_factory=CellInfo)
    gps_differential: bool = False
    gps_positioned: bool = False


@dataclass(frozen=True)
class StatusInfo:
    armed: bool = False
    acc: bool = False
    engine_disc: bool = False
    charging: bool = False
    alarm_code: int = 0
    alt_alarm_code: int = 0
    language: int = 0
    gps: bool = False
    voltage: int = 0
    gsm_signal: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "armed": self.armed,
            "acc": self.acc,
            "engine_disconnected": self.engine_disc,
            "charging": self.charging,
            "alarm_code": self.alarm_code,
            "alt_alarm_code": self.alt_alarm_code,
            "language": self.language,
            "gps": self.gps,
            "voltage": self.voltage,
            "gsm_signal": self.gsm_signal,
        }


@dataclass(frozen=True)
class GK310GPSMessage:
    gps: GPSMessage
    has_acc: bool = False
    acc: bool = False
    has_data_upload_mode: bool = False
    data_upload_mode: int = 0
    has_gps_reupload: bool = False
    gps_is_reupload: bool = False


@dataclass(frozen=True)
class GPSAlarmMessage:
    gps: GPSMessage
    status: StatusInfo
    lbs_length: int


@dataclass(frozen=True)
class LoginMessage:
    sn: str
    time_offset: timedelta = timedelta(0)
    has_time_offset: bool = False
    type_id: bytes = b"\x00\x00"


@dataclass(frozen=True)
class CommandResponse:
    server_flag: int
    message: str


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def parse_device_sn(data: bytes) -> DeviceSn:
    return DeviceSn(
        imei=data[:8].hex(),
        imsi=data[8:16].hex(),
        iccid=data[16:26].hex()[:-1],
    )


def parse_gk310_command_response(data: bytes) -> CommandResponse:
    return CommandResponse(int.from_bytes(data[:4], "big"), _text(data[5:]))


def parse_gt06_command_response(data: bytes) -> CommandResponse:
    return CommandResponse(int.from_bytes(data[1:5], "big"), _text(data[5:-2]))


def parse_login_message(data: bytes) -> LoginMessage:
    """Parse a login payload: 8-byte BCD serial, optional type id and time offset."""
    sn = data[:8].hex()
    type_id = data[8:10].ljust(2, b"\x00") if len(data) > 8 else b"\x00\x00"
    if len(data) <= 10:
        return LoginMessage(sn=sn, type_id=type_id)
    raw = (data[10] << 4) + (data[11] >> 4)
    offset = timedelta(hours=raw // 100, minutes=raw % 100)
    if data[11] & 0b00001000:
        offset = -offset
    return LoginMessage(sn=sn, time_offset=offset, has_time_offset=True, type_id=type_id)


def parse_status_information(data: bytes) -> StatusInfo:
    flags = data[0]
    return StatusInfo(
        engine_disc=bool(flags & 0b10000000),
        gps=bool(flags & 0b01000000),
        alarm_code=(flags & 0b00111000) >> 3,
        charging=bool(flags & 0b00000100),
        acc=bool(flags & 0b00000010),
        armed=bool(flags & 0b00000001),
        voltage=data[1],
        gsm_signal=data[2],
        alt_alarm_code=data[3],
        language=data[4],
    )


def _parse_timestamp(data: bytes, tz: tzinfo | None) -> datetime:
    stamp = datetime(data[0] + 2000, data[1], data[2], data[3], data[4], data[5])
    return stamp.astimezone() if tz is None else stamp.replace(tzinfo=tz)


def _parse_cell_info(data: bytes) -> CellInfo:
    return CellInfo(
        mcc=int.from_bytes(data[0:2], "big"),
        mnc=data[2],
        lac=int.from_bytes(data[3:5], "big"),
        cell_id=int.from_bytes(data[5:8], "big"),
    )


def _parse_gps(data: bytes, tz: tzinfo | None, cell_data: bytes) -> GPSMessage:
    lat = int.from_bytes(data[7:11], "big") / _COORD_SCALE
    lon = int.from_bytes(data[11:15], "big") / _COORD_SCALE
    flags = data[16]
    is_north = bool(flags & 0b00000100)
    is_west = bool(flags & 0b00001000)
    return GPSMessage(
        timestamp=_parse_timestamp(data, tz),
        latitude=lat if is_north else -lat,
        longitude=-lon if is_west else lon,
        course=((flags & 0b00000011) << 8) | data[17],
        sat_count=data[6] & 0x0F,
        speed=data[15] * 1000 / 3600,
        cell_info=_parse_cell_info(cell_data),
        gps_differential=bool(flags & 0b00100000),
        gps_positioned=bool(flags & 0b00010000),
    )


def parse_gt06_gps_message(data: bytes) -> GPSMessage:
    """Parse a GT06 location payload; its timestamp is in local time."""
    return _parse_gps(data, None, data[18:])


def parse_gk310_gps_message(data: bytes) -> GK310GPSMessage:
    """Parse a GK310 location payload; its timestamp is in UTC."""
    gps = _parse_gps(data, timezone.utc, data[18:])
    extras: dict[str, Any] = {}
    if len(data) > 26:
        extras.update(has_acc=True, acc=data[26] != 0)
    if len(data) > 27:
        extras.update(has_data_upload_mode=True, data_upload_mode=data[27])
    if len(data) > 28:
        extras.update(has_gps_reupload=True, gps_is_reupload=data[28] != 0)
    return GK310GPSMessage(gps=gps, **extras)


def parse_gps_alarm(data: bytes, tz: tzinfo | None) -> GPSAlarmMessage:
    """Parse an alarm payload; ``tz`` None means local time."""
    return GPSAlarmMessage(
        gps=_parse_gps(data, tz, data[19:]),
        status=parse_status_information(data[27:]),
        lbs_length=data[18],
    )


def new_frame(protocol: int, payload: bytes, serial: int) -> bytes:
    """Build a standard frame with serial and X25 checksum."""
    body = bytes([(len(payload) + 5) & 0xFF, protocol]) + bytes(payload)
    body += struct.pack(">H", serial & 0xFFFF)
    crc = checksum(X25, body)
    return b"\x78\x78" + body + struct.pack(">H", crc) + b"\x0d\x0a"


def new_command(msg: str, server_flag: int, serial: int) -> bytes:
    """Build a server command frame carrying ``msg``."""
    text = msg.encode("utf-8")
    payload = bytes([len(text) & 0xFF]) + struct.pack(">I", server_flag & 0xFFFFFFFF) + text
    return new_frame(SERVER_COMMAND, payload, serial)


def time_response(t: datetime) -> bytes:
    return bytes([t.year % 100, t.month, t.day, t.hour, t.minute, t.second])


async def read_message(conn: Conn) -> Message:
    """Read one frame from ``conn``; raises BadFrameError on a malformed frame."""
    header = await conn.read_exactly(4)
    if header[0] == 0x78:
        length = header[2]
        body_start = 3
        frame_length = length + 5
        extended = False
    elif header[1] == 0x79:
        length = int.from_bytes(header[2:4], "big")
        body_start = 4
        frame_length = length + 6
        extended = True
    else:
        raise BadFrameError("incorrect header")
    if frame_length > MAX_FRAME_SIZE:
        raise BadFrameError("frame too large")
    if length < 5:
        raise BadFrameError("frame too short")

    frame = header + await conn.read_exactly(frame_length - 4)
    if frame[-2:] != b"\x0d\x0a":
        raise BadFrameError("incorrect trailer")

    body = frame[body_start:]
    return Message(
        protocol=body[0],
        serial=int.from_bytes(body[length - 4 : length - 2], "big"),
        payload=bytes(body[1 : length - 4]),
        length=frame_length,
        extended=extended,
    )


async def send_login_ok(conn: Conn, serial: int) -> None:
    await conn.write(new_frame(LOGIN, b"", serial))