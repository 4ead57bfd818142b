"""Batches broadcast data and sends each batch to every connected listener."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BrokerConfig:
    """Listening address, batch size and the age after which a batch is flushed."""

    addr: str
    buf_size: int = 0
    timer_dur: float = 5.0


@dataclass
class _Batch:
    seq: int
    t1: float = 0.0
    t2: float = 0.0
    items: list[bytes] = field(default_factory=list)


def _split_addr(addr: str) -> tuple[str | None, int]:
    host, _, port = addr.rpartition(":")
    host = host.strip("[]")
    return (host or None), int(port)


class Broker:
    """Collects broadcast data into batches; each flushed batch goes to all listeners."""

    write_timeout = 1.0

    def __init__(self, config: BrokerConfig) -> None:
        self.config = config
        self._wbuf = _Batch(seq=0)
        self._rbuf: _Batch | None = None
        self._waiters: list[asyncio.Future[list[bytes]]] = []

    @property
    def pending(self) -> list[bytes]:
        """Data broadcast since the last flush."""
        return list(self._wbuf.items)

    @property
    def sequence(self) -> int:
        """Number of the batch now being collected."""
        return self._wbuf.seq

    async def run(self) -> None:
        """Listen for connections and serve them until cancelled."""
        timer = asyncio.get_running_loop().create_task(self._timer_flusher())
        host, port = _split_addr(self.config.addr)
        try:
            try:
                server = await asyncio.start_server(self._on_connect, host, port)
            except OSError:
                logger.exception("unable to listen on %s", self.config.addr)
                return
            async with server:
                await server.serve_forever()
        finally:
            timer.cancel()

    def broadcast(self, data: bytes) -> None:
        """Add data to the current batch, flushing it when it is full."""
        if not self._wbuf.items:
            self._wbuf.t1 = time.monotonic()
        self._wbuf.items.append(bytes(data))
        if len(self._wbuf.items) == self.config.buf_size:
            self._flush()

    def flush_if_stale(self, now: float) -> None:
        """Flush a non-empty batch older than the configured age at monotonic ``now``."""
        if self._wbuf.items and now - self._wbuf.t1 > self.config.timer_dur:
            self._flush()

    async def handle(self, writer: asyncio.StreamWriter) -> None:
        """Send every batch flushed from now on to ``writer`` until writing fails."""
        loop = asyncio.get_running_loop()
        logger.info("starting flusher task")
        try:
            while True:
                waiter: asyncio.Future[list[bytes]] = loop.create_future()
                self._waiters.append(waiter)
                items = await waiter
                logger.debug("flusher task signalled")
                writer.write(b"".join(items))
                await asyncio.wait_for(writer.drain(), self.write_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("error writing buffer: %r", exc)
        finally:
            writer.close()

    async def _on_connect(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        await self.handle(writer)

    async def _timer_flusher(self) -> None:
        while True:
            await asyncio.sleep(self.config.timer_dur)
            self.flush_if_stale(time.monotonic())

    def _flush(self) -> None:
        batch = self._wbuf
        batch.t2 = time.monotonic()
        self._rbuf = batch
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(list(batch.items))
        self._wbuf = _Batch(seq=batch.seq + 1)