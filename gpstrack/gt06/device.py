"""A GT06-family tracker session: reads frames, answers them, records and fans out."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from gpstrack.conn import Conn
from gpstrack.device import DeviceConfig, DeviceConfigAttribute, Location, Serial
from gpstrack.gt06.protocol import (
    GK310_GPS,
    GK310_GPS_ALARM,
    GT06_GPS,
    GT06_GPS_ALARM,
    INFORMATION_TX_PACKET,
    SERVER_COMMAND_RESPONSE,
    STATUS_INFORMATION,
    STRING_INFORMATION,
    TIME_CHECK,
    CommandResponse,
    GPSMessage,
    LoginMessage,
    Message,
    StatusInfo,
    new_command,
    new_frame,
    parse_device_sn,
    parse_gk310_command_response,
    parse_gk310_gps_message,
    parse_gps_alarm,
    parse_gt06_command_response,
    parse_gt06_gps_message,
    parse_status_information,
    read_message,
    time_response,
)
from gpstrack.store import LocationStore, MiscStore
from gpstrack.sublist import Sublist

logger = logging.getLogger(__name__)

CONNECTION_CLOSED = "connection_closed"
_PING_COMMAND = "STATUS#"
_ATTRIBUTE_COMMANDS = ("VERSION#", "PARAM#")


class _RunningState(enum.Enum):
    CREATED = enum.auto()
    RUNNING = enum.auto()
    PAUSED = enum.auto()


class _CommandStatus(enum.Enum):
    SUBMITTED = enum.auto()
    SENT = enum.auto()
    EMPTY = enum.auto()


@dataclass
class _CommandState:
    status: _CommandStatus = _CommandStatus.EMPTY
    sent_time: datetime | None = None
    server_flag_counter: int = 0
    serial_counter: int = 0
    current_msg: str = ""
    current_server_flag: int = 0


@dataclass
class GT06Param:
    """Collaborators a GT06 session reports to."""

    store: LocationStore
    misc_store: MiscStore
    sublist: Sublist
    logger: logging.Logger | None = None


def should_update_attribute(cmd: str) -> bool:
    """Whether the response to ``cmd`` is kept as a tracker attribute."""
    folded = cmd.casefold()
    return any(folded == known.casefold() for known in _ATTRIBUTE_COMMANDS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class GT06:
    """One tracker, served over a connection that may be replaced on re-login."""

    reconnect_delay = 10.0
    read_deadline_unit = 60.0

    def __init__(
        self,
        tid: int,
        serial: Serial,
        conn: Conn,
        login_msg: LoginMessage,
        param: GT06Param,
        conf_attr: DeviceConfigAttribute,
    ) -> None:
        self.tid = tid
        self.serial = serial
        self.offset = login_msg.time_offset
        self.conf = conf_attr.config or DeviceConfig()
        self.attr = dict(conf_attr.attribute)
        self._conn = conn
        self._next_conn: Conn | None = None
        self._stopped = False
        self._state = _RunningState.CREATED
        self._task: asyncio.Task[None] | None = None
        self._store = param.store
        self._misc = param.misc_store
        self._sublist = param.sublist
        self._log = logging.LoggerAdapter(
            param.logger or logger,
            {"tracker_id": tid, "serial": [serial.sn_type_name, serial.sn_string]},
        )
        self._error: BaseException | None = None
        self._error_time: datetime | None = None
        self._cmd = _CommandState()
        self._status = StatusInfo()
        self._status_time: datetime | None = None
        self._location = GPSMessage()
        self._location_time: datetime | None = None

    # lifecycle

    def run(self) -> asyncio.Task[None]:
        """Start serving in a task on the running loop and return that task."""
        self._state = _RunningState.RUNNING
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        return self._task

    def stop(self) -> None:
        """Stop serving: no replacement connection will be picked up."""
        self._stopped = True
        self._conn.close()

    def error(self) -> tuple[BaseException | None, datetime | None]:
        """Return the last error that closed a connection and when it happened."""
        return self._error, self._error_time

    def replace_conn(self, conn: Conn) -> asyncio.Task[None] | None:
        """Hand over to a new connection; returns a task if serving had to restart."""
        if self._state is _RunningState.RUNNING:
            self._next_conn = conn
            self._log.info("closing replaced connection", extra={"event": CONNECTION_CLOSED})
            self._conn.close()
            return None
        if self._state is _RunningState.PAUSED:
            self._conn = conn
            return self.run()
        return None

    def get_location(self) -> Location:
        loc = self._location
        return Location(
            latitude=loc.latitude,
            longitude=loc.longitude,
            altitude=0.0,
            speed=loc.speed,
            timestamp=loc.timestamp,
        )

    def current_conn_info(self) -> list[str]:
        return self._conn.conn_addr()

    async def send_command(self, msg: str, force: bool) -> bool:
        """Send a text command; returns True if one is still pending and ``force`` is off.

        Raises the connection's error if the command could not be written.
        """
        return await self._send_command(msg, force)

    async def _run_loop(self) -> None:
        self._state = _RunningState.RUNNING
        try:
            while True:
                await self._serve()
                if self._stopped or not self._use_next_conn():
                    break
                await asyncio.sleep(self.reconnect_delay)
        finally:
            self._state = _RunningState.PAUSED
            self._log.info("exit from run loop")

    def _use_next_conn(self) -> bool:
        if self._next_conn is None:
            return False
        self._conn = self._next_conn
        self._next_conn = None
        return True

    def _close_and_set_err(self, err: BaseException, t: datetime) -> None:
        self._error = err
        self._error_time = t
        self._log.error(
            "connection closed caused by error: %r", err, extra={"event": CONNECTION_CLOSED}
        )
        self._conn.close()

    def _fail_disconnected(self, err: BaseException) -> None:
        self._handle_disconnection(_now())
        self._close_and_set_err(err, _now())

    def _read_timeout(self) -> float | None:
        minutes = self.conf.read_deadline
        return minutes * self.read_deadline_unit if minutes > 0 else None

    # serving

    async def _serve(self) -> None:
        conn = self._conn
        self._event_started(_now())
        ping_sent = False
        try:
            while True:
                conn.read_timeout = self._read_timeout()
                try:
                    msg = await read_message(conn)
                except TimeoutError as exc:
                    if ping_sent:
                        self._fail_disconnected(exc)
                        return
                    ping_sent = True
                    try:
                        await self._send_command(_PING_COMMAND, True)
                    except OSError as write_exc:
                        self._fail_disconnected(write_exc)
                        return
                    continue
                except (OSError, EOFError, ValueError) as exc:
                    self._fail_disconnected(exc)
                    return
                try:
                    await self._dispatch(msg, _now())
                except (OSError, IndexError, ValueError) as exc:
                    self._close_and_set_err(exc, _now())
                    return
        finally:
            self._log.info("exit from read loop")

    async def _write_response(self, protocol: int, payload: bytes, serial: int) -> None:
        self._log.debug("writing response %x serial=%d payload=%s", protocol, serial, payload.hex())
        await self._conn.write(new_frame(protocol, payload, serial))

    async def _dispatch(self, msg: Message, t: datetime) -> None:
        protocol = msg.protocol
        payload = msg.payload
        self._log.debug("received %x serial=%d payload=%s", protocol, msg.serial, payload.hex())
        if protocol == TIME_CHECK:
            await self._write_response(TIME_CHECK, time_response(_now()), msg.serial)
        elif protocol == STATUS_INFORMATION:
            status = parse_status_information(payload)
            await self._write_response(STATUS_INFORMATION, b"", msg.serial)
            self._handle_heartbeat(status, t)
        elif protocol == GK310_GPS:
            self._handle_location(parse_gk310_gps_message(payload).gps, t)
        elif protocol == GT06_GPS:
            self._handle_location(parse_gt06_gps_message(payload), t)
        elif protocol == GK310_GPS_ALARM:
            alarm = parse_gps_alarm(payload, timezone.utc)
            self._handle_location(alarm.gps, t)
            self._handle_alarm(alarm.status, t)
        elif protocol == GT06_GPS_ALARM:
            alarm = parse_gps_alarm(payload, None)
            self._handle_location(alarm.gps, t)
            self._handle_alarm(alarm.status, t)
        elif protocol == INFORMATION_TX_PACKET:
            self._handle_information_packet(payload)
        elif protocol == SERVER_COMMAND_RESPONSE:
            self._handle_command_response(parse_gk310_command_response(payload), t)
        elif protocol == STRING_INFORMATION:
            self._handle_command_response(parse_gt06_command_response(payload), t)
        else:
            self._log.error("unhandled event protocol %x: %s", protocol, payload.hex())

    # handlers

    def _handle_information_packet(self, payload: bytes) -> None:
        sub = payload[0]
        if sub == 0x04:
            text = _text(payload[1:])
            self._log.info("terminal status synchronization: %s", text)
            self._misc.update_attribute(self.tid, "terminal_status", text)
        elif sub == 0x0A:
            sn = parse_device_sn(payload[1:])
            self._log.info("terminal device sn info: %s", sn)
            self._misc.update_attribute(self.tid, "iccid", sn.iccid)
            self._misc.update_attribute(self.tid, "imei", sn.imei)
            self._misc.update_attribute(self.tid, "imsi", sn.imsi)
        else:
            self._log.info("unknown information sub protocol %x: %s", sub, payload[1:].hex())

    def _handle_heartbeat(self, status: StatusInfo, t: datetime) -> None:
        changed = status != self._status
        self._status = status
        self._status_time = t
        if changed:
            self._log.info("status changed: %s", status)
            self._misc.save_event(self.tid, "hearbeat.changed", "", status.to_dict(), t)
            self._sublist.send_event("heartbeat.changed", json.dumps(status.to_dict()).encode(), t)

    def _handle_alarm(self, status: StatusInfo, t: datetime) -> None:
        self._status = status
        self._status_time = t
        self._misc.save_event(self.tid, "alarm", "", status.to_dict(), t)
        self._sublist.send_event("alarm", json.dumps(status.to_dict()).encode(), t)

    def _handle_disconnection(self, t: datetime) -> None:
        self._misc.save_event(self.tid, "disconnected", "", None, t)
        self._sublist.send_event("disconnected", b"", t)

    def _event_started(self, t: datetime) -> None:
        self._misc.save_event(self.tid, "started", "", None, t)
        self._sublist.send_event("started", b"", t)

    def _handle_location(self, loc: GPSMessage, t: datetime) -> None:
        if self.conf.store:
            self._store.put(
                self.serial.nsn, loc.latitude, loc.longitude, -1, loc.speed, loc.timestamp, t
            )
        if self.conf.sublist_send:
            self._sublist.send_location(loc.latitude, loc.longitude, loc.speed, loc.timestamp, t)
        cell_changed = loc.cell_info != self._location.cell_info
        self._location = loc
        self._location_time = t
        if cell_changed:
            self._log.info("cell info changed: %s", loc.cell_info)
            self._misc.save_event(self.tid, "cell_info.changed", "", loc.cell_info.to_dict(), t)

    def _handle_command_response(self, response: CommandResponse, t: datetime) -> None:
        cmd = self._cmd
        matched = response.server_flag == cmd.current_server_flag
        if matched:
            cmd.status = _CommandStatus.EMPTY
        else:
            self._log.error(
                "expecting response with server_flag %d, got %d",
                cmd.current_server_flag,
                response.server_flag,
            )
        self._misc.save_event(
            self.tid, "command.response", response.message, {"server_flag": response.server_flag}, t
        )
        if matched:
            self._misc.save_command_response(
                self.tid, response.server_flag, cmd.current_msg, cmd.sent_time, response.message, t
            )
            if should_update_attribute(cmd.current_msg):
                self._misc.update_attribute(self.tid, cmd.current_msg.upper(), response.message)

    async def _send_command(self, msg: str, force: bool) -> bool:
        cmd = self._cmd
        if cmd.status is not _CommandStatus.EMPTY:
            if not force:
                return True
            self._log.warning("there is pending command")
        cmd.server_flag_counter = (cmd.server_flag_counter + 1) & 0xFFFFFFFF
        cmd.serial_counter += 1
        server_flag = cmd.server_flag_counter
        cmd.current_server_flag = server_flag
        cmd.current_msg = msg
        frame = new_command(msg, server_flag, cmd.serial_counter)
        cmd.status = _CommandStatus.SUBMITTED
        try:
            await self._conn.write(frame)
        except OSError:
            self._log.exception("error when sending command")
            raise
        t = _now()
        cmd.status = _CommandStatus.SENT
        cmd.sent_time = t
        details: dict[str, Any] = {"server_flag": server_flag}
        self._misc.save_event(self.tid, "command.sent", msg, details, t)
        return False