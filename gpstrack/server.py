"""The tracker server: accepts connections, identifies the protocol and logs devices in."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from gpstrack.conn import Conn
from gpstrack.device import (
    DEVICE_GT06,
    DEVICE_SIMPLEJSON,
    DeviceConfig,
    DeviceConfigAttribute,
    Serial,
)
from gpstrack.gt06 import protocol as gt06_protocol
from gpstrack.gt06.device import GT06, GT06Param
from gpstrack.simplejson import protocol as sj_protocol
from gpstrack.simplejson.device import SimpleJSON
from gpstrack.store import LocationStore, MiscStore
from gpstrack.sublist import Sublist, SublistMap

logger = logging.getLogger(__name__)

NEW_CONNECTION = "new_connection"
LOGIN_MESSAGE = "login_message"
LOGIN_MESSAGE_ERROR = "login_message_error"
ALLOW_CONNECT_FALSE = "allow_connect_false"
NEW_DEVICE_CREATED = "new_device_created"

LOGIN_TIMEOUT = 2.0
DEFAULT_CONFIG_TEMPLATE = "tracker_default_config"

_GT06_START = 0x78
_SIMPLEJSON_START = 0x99
_U64_LIMIT = 1 << 64
_I64_LIMIT = 1 << 63

_READ_ERRORS = (OSError, EOFError, ValueError)
_REGISTER_ERRORS = (LookupError, ValueError, sqlite3.Error)

_SN_TYPES = {"mac": 1, "aid": 2}
_OTHER_SN_TYPE = 5

_LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}

_UINT_PATTERNS = {10: re.compile(r"[0-9]+"), 16: re.compile(r"[0-9a-fA-F]+")}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tracker (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    nsn INTEGER NOT NULL UNIQUE,
    config TEXT,
    attribute TEXT
);
CREATE TABLE IF NOT EXISTS config_template (
    name TEXT PRIMARY KEY,
    config TEXT NOT NULL
);
"""


def _to_db_int(nsn: int) -> int:
    return nsn - _U64_LIMIT if nsn >= _I64_LIMIT else nsn


def _parse_uint(text: str, base: int) -> int:
    """Parse an unsigned 64-bit number of plain digits, as strictly as the wire allows."""
    if not _UINT_PATTERNS[base].fullmatch(text):
        raise ValueError(f"invalid serial number {text!r}")
    value = int(text, base)
    if value >= _U64_LIMIT:
        raise ValueError(f"serial number {text!r} out of range")
    return value


def _split_addr(addr: str) -> tuple[str | None, int]:
    host, _, port = addr.rpartition(":")
    host = host.strip("[]")
    return (host or None), int(port)


def _device_logger(tid: int, level: str) -> logging.Logger:
    device_log = logging.getLogger(f"{__name__}.tracker.{tid}")
    device_log.setLevel(_LOG_LEVELS.get(level.lower(), logging.INFO))
    return device_log


class TrackerRepository:
    """Registered trackers with their configuration and attributes, kept in SQLite."""

    def __init__(self, database: str = ":memory:") -> None:
        self._db = sqlite3.connect(database, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._db:
            self._db.executescript(_SCHEMA)

    def close(self) -> None:
        self._db.close()

    def set_default_config(self, config: DeviceConfig) -> None:
        """Set the configuration new trackers are registered with."""
        with self._lock, self._db:
            self._db.execute(
                "INSERT OR REPLACE INTO config_template (name, config) VALUES (?, ?)",
                (DEFAULT_CONFIG_TEMPLATE, json.dumps(config.to_dict())),
            )

    def find(self, nsn: int) -> tuple[int, DeviceConfig, dict[str, str]] | None:
        """Return (tracker id, config, attributes) of a tracker, or None if unknown."""
        with self._lock:
            row = self._db.execute(
                "SELECT id, config, attribute FROM tracker WHERE nsn = ?", (_to_db_int(nsn),)
            ).fetchone()
        if row is None:
            return None
        tid, config, attribute = row
        return tid, DeviceConfig.from_dict(json.loads(config or "{}")), json.loads(attribute or "{}")

    def add_default(self, nsn: int) -> tuple[int, DeviceConfig]:
        """Register a tracker with the default configuration.

        Raises LookupError when no default configuration has been set.
        """
        with self._lock, self._db:
            row = self._db.execute(
                "SELECT config FROM config_template WHERE name = ?", (DEFAULT_CONFIG_TEMPLATE,)
            ).fetchone()
            if row is None:
                raise LookupError("no default tracker configuration")
            cursor = self._db.execute(
                "INSERT INTO tracker (nsn, config, attribute) VALUES (?, ?, ?)",
                (_to_db_int(nsn), row[0], "{}"),
            )
            tid = cursor.lastrowid
        return tid, DeviceConfig.from_dict(json.loads(row[0]))

    def update_attribute(self, tid: int, key: str, value: str) -> None:
        with self._lock, self._db:
            row = self._db.execute("SELECT attribute FROM tracker WHERE id = ?", (tid,)).fetchone()
            if row is None:
                return
            attribute = json.loads(row[0] or "{}")
            attribute[key] = value
            self._db.execute(
                "UPDATE tracker SET attribute = ? WHERE id = ?", (json.dumps(attribute), tid)
            )


class _DeviceLike(Protocol):
    def run(self) -> Any: ...

    def stop(self) -> None: ...

    def replace_conn(self, conn: Conn) -> Any: ...


@dataclass
class Device:
    """A logged-in device and how it is identified."""

    dev: _DeviceLike
    type: str
    tracker_id: int
    serial: Serial
    deleted: bool = False


class DeviceList:
    """Devices by tracker id, with a lookup by packed serial number."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: dict[int, Device] = {}
        self._by_nsn: dict[int, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def device_by_nsn(self, nsn: int) -> Device | None:
        with self._lock:
            tid = self._by_nsn.get(nsn)
            if tid is None:
                return None
            return self._devices.get(tid)

    def add_device(self, serial: Serial, tid: int, dev: _DeviceLike, dev_type: str) -> None:
        with self._lock:
            self._by_nsn[serial.nsn] = tid
            self._devices[tid] = Device(dev=dev, type=dev_type, tracker_id=tid, serial=serial)

    def get(self, tid: int) -> Device | None:
        with self._lock:
            return self._devices.get(tid)

    def purge(self, tid: int) -> bool:
        with self._lock:
            device = self._devices.get(tid)
            if device is None:
                return False
            device.deleted = True
            device.dev.stop()
            return True


@dataclass
class ServerConfig:
    listener_addr: str


class Server:
    """Accepts tracker connections and hands each to a login handler."""

    def __init__(
        self,
        repository: TrackerRepository,
        store: LocationStore,
        misc_store: MiscStore,
        sublist_map: SublistMap,
        config: ServerConfig,
    ) -> None:
        self.repository = repository
        self.store = store
        self.misc_store = misc_store
        self.sublist_map = sublist_map
        self.config = config
        self.device_list = DeviceList()
        self._cid_counter = 0
        self._listener: asyncio.AbstractServer | None = None

    async def run(self) -> None:
        """Listen for tracker connections until cancelled."""
        logger.info("starting gps-server on %s", self.config.listener_addr)
        host, port = _split_addr(self.config.listener_addr)
        try:
            listener = await asyncio.start_server(self.handle_connection, host, port)
        except OSError:
            logger.exception("unable to listen")
            return
        self._listener = listener
        async with listener:
            await listener.serve_forever()

    def get_device(self, tid: int) -> Device | None:
        return self.device_list.get(tid)

    def purge_device(self, tid: int) -> bool:
        """Stop a device and mark it deleted; False if there is no such device."""
        return self.device_list.purge(tid)

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        cid = self._cid_counter
        self._cid_counter += 1
        conn = Conn(reader, writer, cid)
        logger.info(
            "new connection cid=%d socket=%s", cid, conn.conn_addr(), extra={"event": NEW_CONNECTION}
        )
        await LoginHandler(self, conn).handle()

    def register_and_fetch_config_attr(
        self, protocol: str, nsn: int
    ) -> tuple[int, DeviceConfigAttribute]:
        """Return a tracker's id and configuration, registering it first if unknown."""
        found = self.repository.find(nsn)
        if found is not None:
            tid, config, attribute = found
            return tid, DeviceConfigAttribute(config=config, attribute=attribute)
        tid, config = self.repository.add_default(nsn)
        return tid, DeviceConfigAttribute(config=config)


_Factory = Callable[[int, DeviceConfigAttribute, logging.Logger, Sublist], _DeviceLike]


class LoginHandler:
    """Detects the protocol of a new connection and logs its device in."""

    def __init__(self, server: Server, conn: Conn) -> None:
        self.server = server
        self.conn = conn
        self.device_type = ""

    def _fail(self, message: str, *args: Any) -> None:
        logger.error(
            message,
            *args,
            extra={"event": LOGIN_MESSAGE_ERROR, "device_type": self.device_type},
        )
        self.conn.close()

    async def handle(self) -> None:
        self.conn.read_timeout = LOGIN_TIMEOUT
        try:
            first = await self.conn.peek(1)
        except (OSError, EOFError) as exc:
            self._fail("error peeking from connection, will close: %r", exc)
            return
        if first[0] == _SIMPLEJSON_START:
            self.device_type = DEVICE_SIMPLEJSON
            await self._handle_simplejson()
        elif first[0] == _GT06_START:
            self.device_type = DEVICE_GT06
            await self._handle_gt06()
        else:
            self._fail("unknown protocol start byte %x", first[0])

    async def _handle_gt06(self) -> None:
        try:
            msg = await gt06_protocol.read_message(self.conn)
        except _READ_ERRORS as exc:
            self._fail("error reading login message: %r", exc)
            return
        self.conn.read_timeout = None
        if msg.protocol != gt06_protocol.LOGIN:
            self._fail("message type is not login, type: %x", msg.protocol)
            return
        try:
            login = gt06_protocol.parse_login_message(msg.payload)
            sn = _parse_uint(login.sn, 10)
        except (ValueError, IndexError) as exc:
            self._fail("error parsing serial number: %r", exc)
            return
        try:
            await gt06_protocol.send_login_ok(self.conn, msg.serial)
        except OSError as exc:
            self._fail("error sending login acknowledge: %r", exc)
            return

        def factory(
            tid: int, conf_attr: DeviceConfigAttribute, device_log: logging.Logger, sublist: Sublist
        ) -> GT06:
            param = GT06Param(
                store=self.server.store,
                misc_store=self.server.misc_store,
                sublist=sublist,
                logger=device_log,
            )
            return GT06(tid, Serial(0, sn), self.conn, login, param, conf_attr)

        self._attach(Serial(0, sn), factory)

    async def _handle_simplejson(self) -> None:
        try:
            msg = await sj_protocol.read_message(self.conn)
        except _READ_ERRORS as exc:
            self._fail("error reading login message: %r", exc)
            return
        self.conn.read_timeout = None
        if msg.protocol != sj_protocol.Protocol.LOGIN:
            self._fail("message type is not login, type: %x", msg.protocol)
            return
        try:
            login = sj_protocol.LoginMessage.from_json(msg.payload)
        except ValueError as exc:
            self._fail("error parsing login message: %r", exc)
            return
        try:
            sn = _parse_uint(login.serial, 16)
        except ValueError as exc:
            self._fail("error parsing serial number: %r", exc)
            return
        serial = Serial(_SN_TYPES.get(login.sn_type, _OTHER_SN_TYPE), sn)

        def factory(
            tid: int, conf_attr: DeviceConfigAttribute, device_log: logging.Logger, sublist: Sublist
        ) -> SimpleJSON:
            return SimpleJSON(
                self.conn,
                self.server.store,
                login,
                sublist,
                conf_attr.config,
                logger=device_log,
                serial=serial,
            )

        self._attach(serial, factory)

    def _attach(self, serial: Serial, factory: _Factory) -> None:
        logger.info(
            "login %s %s", serial.sn_type_name, serial.sn_string, extra={"event": LOGIN_MESSAGE}
        )
        devices = self.server.device_list
        existing = devices.device_by_nsn(serial.nsn)
        if existing is not None and not existing.deleted:
            logger.debug("replacing older connection for %s", serial.sn_string)
            existing.dev.replace_conn(self.conn)
            return
        try:
            tid, conf_attr = self.server.register_and_fetch_config_attr(
                self.device_type, serial.nsn
            )
        except _REGISTER_ERRORS as exc:
            logger.error("error while registering tracker: %r", exc)
            self.conn.close()
            return
        config = conf_attr.config or DeviceConfig()
        if not config.allow_connect:
            logger.info(
                "device not allowed to connect: %s",
                serial.sn_string,
                extra={"event": ALLOW_CONNECT_FALSE},
            )
            self.conn.close()
            return
        logger.info("new device %s", serial.sn_string, extra={"event": NEW_DEVICE_CREATED})
        sublist = self.server.sublist_map.get_sublist(tid, True)
        dev = factory(tid, conf_attr, _device_logger(tid, config.log_level), sublist)
        dev.run()
        devices.add_device(serial, tid, dev, self.device_type)