"""WebSocket stream of tracker updates for authenticated browser sessions."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

import websockets
from websockets.exceptions import ConnectionClosed

from gpstrack.sublist import Sublist, SublistMap

logger = logging.getLogger(__name__)

CMD_ADD_SUB = "ADDSUB"
CMD_DEL_SUB = "DELSUB"
MAX_SUBSCRIPTIONS = 5
POLICY_VIOLATION = 1008

_UINT = re.compile(r"[0-9]+")
_U64_LIMIT = 1 << 64

TokenValidator = Callable[[str], Union[Awaitable[Union[str, None]], str, None]]


@dataclass
class WebStreamConfig:
    """Listening address; ``mock_token`` accepts any token without validation."""

    listen_addr: str
    mock_token: bool = False


def _split_addr(addr: str) -> tuple[str | None, int]:
    host, _, port = addr.rpartition(":")
    host = host.strip("[]")
    return (host or None), int(port)


def _as_text(msg: str | bytes) -> str:
    if isinstance(msg, (bytes, bytearray)):
        return bytes(msg).decode("utf-8", errors="replace")
    return msg


def parse_subscription_command(msg: str | bytes) -> tuple[str, list[int]] | None:
    """Parse ``ADDSUB id,id,...`` or ``DELSUB id,...``; None for anything else.

    Ids that are not unsigned 64-bit decimal numbers are skipped.
    """
    text = _as_text(msg)
    command = text[:6]
    if len(text) < 6 or command not in (CMD_ADD_SUB, CMD_DEL_SUB):
        return None
    ids = [
        int(part)
        for part in text[7:].split(",")
        if _UINT.fullmatch(part) and int(part) < _U64_LIMIT
    ]
    return command, ids


class Delay:
    """Chooses the pause between write rounds from how busy recent rounds were."""

    def __init__(self) -> None:
        self.lower_limit_counter = 0
        self.upper_limit_counter = 0

    def update(self, n: int) -> None:
        if n == 0:
            self.lower_limit_counter += 1
            self.upper_limit_counter = 0
        elif n > 15:
            self.lower_limit_counter = 0
            self.upper_limit_counter += 1

    def get_delay(self) -> int:
        if self.lower_limit_counter > 10:
            return 5
        if self.upper_limit_counter > 10:
            return 0
        return 1


class WebstreamClient:
    """One authenticated websocket; subscribes to trackers and forwards their data."""

    def __init__(
        self,
        websocket: Any,
        sublist_map: SublistMap,
        session_id: str,
        token: str,
        delay_unit: float = 1.0,
    ) -> None:
        self.websocket = websocket
        self.sublist_map = sublist_map
        self.session_id = session_id
        self.token = token
        self.delay_unit = delay_unit
        self.closed = False
        self.error: BaseException | None = None
        self.sublists: dict[int, Sublist] = {}
        self._buf: list[bytes] = []
        self._lock = threading.Lock()

    @property
    def pending(self) -> list[bytes]:
        """Data queued and not yet written."""
        with self._lock:
            return list(self._buf)

    def _close_err(self, err: BaseException) -> None:
        with self._lock:
            self.closed = True
            self.error = err

    def push(self, sender: int, data: bytes) -> bool:
        """Queue data for writing; True means this client is closed."""
        with self._lock:
            if self.closed:
                return True
            self._buf.append(data)
            return False

    def handle_message(self, msg: str | bytes) -> None:
        """Apply a subscribe or unsubscribe command; other messages are ignored."""
        parsed = parse_subscription_command(msg)
        if parsed is None:
            return
        command, ids = parsed
        if command == CMD_ADD_SUB:
            logger.debug("receive add subscription message: %s", ids)
            for tid in ids:
                if tid in self.sublists:
                    logger.warning("already subscribed tracker_id: %d", tid)
                else:
                    sublist = self.sublist_map.get_sublist(tid, True)
                    sublist.subscribe(self)
                    self.sublists[tid] = sublist
                    logger.debug("subscribing to %d", tid)
                if len(self.sublists) > MAX_SUBSCRIPTIONS:
                    self._close_err(RuntimeError("too many subscription"))
                    logger.warning("subscription limit exceeded")
        else:
            logger.debug("receive delete subscription message: %s", ids)
            for tid in ids:
                sublist = self.sublists.pop(tid, None)
                if sublist is None:
                    logger.warning("invalid unsub id %d", tid)
                else:
                    sublist.unsubscribe(self)
                    logger.debug("unsubscribing to %d", tid)

    async def read_loop(self) -> None:
        """Read commands until the connection fails or the client is closed."""
        while not self.closed:
            try:
                msg = await self.websocket.recv()
            except (ConnectionClosed, OSError, EOFError) as exc:
                logger.error("error while reading: %r", exc)
                self._close_err(exc)
                return
            self.handle_message(msg)

    async def write_loop(self) -> None:
        """Write queued data in rounds until writing fails or the client is closed."""
        delay = Delay()
        while True:
            with self._lock:
                items, self._buf = self._buf, []
                closed = self.closed
            for data in items:
                try:
                    await self.websocket.send(data)
                except (ConnectionClosed, OSError) as exc:
                    logger.error("error while writing to connection: %r", exc)
                    self._close_err(exc)
                    return
            if closed:
                return
            delay.update(len(items))
            await asyncio.sleep(delay.get_delay() * self.delay_unit)


class WebstreamServer:
    """Accepts websockets, checks their token and streams subscribed tracker data."""

    token_timeout = 1.0
    delay_unit = 1.0

    def __init__(
        self,
        sublist_map: SublistMap,
        config: WebStreamConfig,
        validate_token: TokenValidator,
    ) -> None:
        self.sublist_map = sublist_map
        self.config = config
        self._validate_token = validate_token

    async def run(self) -> None:
        """Serve websockets on the configured address until cancelled."""
        logger.info("starting ws-server on: %s", self.config.listen_addr)
        host, port = _split_addr(self.config.listen_addr)
        async with websockets.serve(self.serve, host, port, compression=None):
            await asyncio.Future()

    async def _session_for(self, token: str) -> str | None:
        if self.config.mock_token:
            return token
        result = self._validate_token(token)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def serve(self, websocket: Any) -> None:
        """Handle one websocket: read its token, then stream until it closes."""
        try:
            msg = await asyncio.wait_for(websocket.recv(), self.token_timeout)
        except (asyncio.TimeoutError, ConnectionClosed, OSError, EOFError) as exc:
            logger.error("error while reading auth token: %r", exc)
            return
        token = _as_text(msg)
        session_id = await self._session_for(token)
        if session_id is None:
            logger.info("invalid websocket token")
            await websocket.close(POLICY_VIOLATION, "invalid token")
            return
        client = WebstreamClient(
            websocket, self.sublist_map, session_id, token, delay_unit=self.delay_unit
        )
        await asyncio.gather(client.write_loop(), client.read_loop())