"""A simple JSON tracker session: reads frames and records or fans out their data."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from datetime import datetime, timezone

from gpstrack.conn import Conn
from gpstrack.device import DeviceConfig, Location, Serial
from gpstrack.simplejson.protocol import (
    FrameMessage,
    LocationMessage,
    LoginMessage,
    Protocol,
    Sat,
    StatusMessage,
    read_message,
)
from gpstrack.store import LocationStore
from gpstrack.sublist import Sublist

_LOGGER = logging.getLogger(__name__)

CONNECTION_CLOSED = "connection_closed"


class _RunningState(enum.Enum):
    CREATED = enum.auto()
    RUNNING = enum.auto()
    PAUSED = enum.auto()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_sats(payload: bytes) -> list[Sat]:
    data = json.loads(payload)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError("satellite update must be a JSON array")
    return [Sat.from_dict(item) for item in data]


class SimpleJSON:
    """One tracker, served over a connection that may be replaced on re-login."""

    def __init__(
        self,
        conn: Conn,
        store: LocationStore,
        login_msg: LoginMessage,
        sublist: Sublist,
        conf: DeviceConfig | None,
        logger: logging.Logger | None = None,
        serial: Serial | None = None,
    ) -> None:
        self.login = login_msg
        self.serial = serial or Serial(0, 0)
        self.conf = conf or DeviceConfig()
        self.last_error: BaseException | None = None
        self.last_location = LocationMessage()
        self.last_location_time: datetime | None = None
        self.last_status = StatusMessage()
        self.last_status_time: datetime | None = None
        self.sats: list[Sat] = []
        self.sat_time: datetime | None = None
        self.gps_error_time: datetime | None = None
        self.gps_init_time: datetime | None = None
        self._conn = conn
        self._next_conn: Conn | None = None
        self._stopped = False
        self._state = _RunningState.CREATED
        self._store = store
        self._sublist = sublist
        self._log = logging.LoggerAdapter(logger or _LOGGER, {"module": "simplejson"})

    def run(self) -> asyncio.Task[None]:
        """Start serving in a task on the running loop and return that task."""
        self._state = _RunningState.RUNNING
        return asyncio.get_running_loop().create_task(self._run_loop())

    def stop(self) -> None:
        """Stop serving: no replacement connection will be picked up."""
        self._stopped = True
        self._conn.close()

    def replace_conn(self, conn: Conn) -> asyncio.Task[None] | None:
        """Hand over to a new connection; returns a task if serving had to restart."""
        self._log.info("closing replaced connection", extra={"event": CONNECTION_CLOSED})
        if self._state is _RunningState.RUNNING:
            self._next_conn = conn
            self._conn.close()
            return None
        if self._state is _RunningState.PAUSED:
            self._conn = conn
            return self.run()
        return None

    def get_location(self) -> Location:
        loc = self.last_location
        return Location(
            latitude=loc.latitude,
            longitude=loc.longitude,
            altitude=loc.altitude,
            speed=loc.speed,
            timestamp=loc.gps_time,
        )

    def current_conn_info(self) -> list[str]:
        return self._conn.conn_addr()

    async def _run_loop(self) -> None:
        self._state = _RunningState.RUNNING
        try:
            while True:
                await self._serve()
                if self._stopped or not self._use_next_conn():
                    break
        finally:
            self._state = _RunningState.PAUSED
            self._log.info("exit from run loop")

    def _use_next_conn(self) -> bool:
        if self._next_conn is None:
            return False
        self._conn = self._next_conn
        self._next_conn = None
        return True

    def _close_and_set_err(self, err: BaseException) -> None:
        self.last_error = err
        self._conn.close()

    async def _serve(self) -> None:
        while True:
            try:
                msg = await read_message(self._conn)
            except (OSError, EOFError, ValueError) as exc:
                self._log.error("error while reading message: %r", exc)
                self._close_and_set_err(exc)
                return
            try:
                self._dispatch(msg, _now())
            except ValueError as exc:
                self._log.error("error parsing message %x: %r", msg.protocol, exc)
                self._close_and_set_err(exc)
                return

    def _dispatch(self, msg: FrameMessage, t: datetime) -> None:
        if msg.protocol == Protocol.LOCATION_UPDATE:
            loc = LocationMessage.from_json(msg.payload)
            self.last_location = loc
            self.last_location_time = t
            if self.conf.sublist_send:
                self._sublist.send_location(
                    loc.latitude, loc.longitude, loc.speed, loc.gps_time, t
                )
            if self.conf.store:
                self._store.put(
                    self.serial.nsn,
                    loc.latitude,
                    loc.longitude,
                    loc.altitude,
                    loc.speed,
                    loc.gps_time,
                    t,
                )
        elif msg.protocol == Protocol.STATUS:
            self.last_status = StatusMessage.from_json(msg.payload)
            self.last_status_time = t
        elif msg.protocol == Protocol.SAT_UPDATE:
            self.sats = _parse_sats(msg.payload)
            self.sat_time = t
        elif msg.protocol == Protocol.GPS_ERROR:
            self.gps_error_time = t
        elif msg.protocol == Protocol.GPS_INIT:
            self.gps_init_time = t