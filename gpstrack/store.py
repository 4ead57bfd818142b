"""Storage interfaces for locations and miscellaneous tracker data."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class LocationStore(Protocol):
    """Receives location records."""

    def put(
        self,
        nsn: int,
        lon: float,
        lat: float,
        alt: float,
        speed: float,
        gps_time: datetime,
        server_time: datetime,
    ) -> None: ...


@runtime_checkable
class MiscStore(Protocol):
    """Receives command responses, events and attribute updates."""

    def save_command_response(
        self,
        tid: int,
        server_flag: int,
        command: str,
        command_time: datetime,
        response: str,
        response_time: datetime,
    ) -> None: ...

    def save_event(
        self, tid: int, event_type: str, message: str, message_obj: Any, t: datetime
    ) -> None: ...

    def update_attribute(self, tid: int, key: str, value: str) -> None: ...


class LogStore:
    """A location store that only writes records to the log."""

    def put(
        self,
        nsn: int,
        lon: float,
        lat: float,
        alt: float,
        speed: float,
        gps_time: datetime,
        server_time: datetime,
    ) -> None:
        logger.debug(
            "location nsn=%d lon=%s lat=%s alt=%s speed=%s gpstime=%s",
            nsn,
            lon,
            lat,
            alt,
            speed,
            gps_time.isoformat(),
            extra={
                "nsn": nsn,
                "lon": lon,
                "lat": lat,
                "alt": alt,
                "speed": speed,
                "gps_time": gps_time,
                "server_time": server_time,
            },
        )