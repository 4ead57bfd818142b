"""A stream connection with peeking, read timeouts and address info."""

from __future__ import annotations

import asyncio


def _split_address(info: object) -> tuple[str, str]:
    if isinstance(info, (tuple, list)) and len(info) >= 2:
        return str(info[0]), str(info[1])
    return "", ""


class Conn:
    """Wraps an asyncio reader/writer pair for one device connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cid: int,
        read_timeout: float | None = None,
    ) -> None:
        self.cid = cid
        self.read_timeout = read_timeout
        self._reader = reader
        self._writer = writer
        self._buffer = bytearray()
        source_ip, source_port = _split_address(writer.get_extra_info("peername"))
        target_ip, target_port = _split_address(writer.get_extra_info("sockname"))
        self._tuple = [source_ip, source_port, target_ip, target_port]

    async def _fill(self, n: int) -> None:
        while len(self._buffer) < n:
            chunk = await self._reader.read(n - len(self._buffer))
            if not chunk:
                raise asyncio.IncompleteReadError(bytes(self._buffer), n)
            self._buffer += chunk

    async def _fill_with_timeout(self, n: int) -> None:
        if self.read_timeout is None:
            await self._fill(n)
            return
        try:
            await asyncio.wait_for(self._fill(n), self.read_timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError("read timed out") from exc

    async def peek(self, n: int) -> bytes:
        """Return the next ``n`` bytes without consuming them."""
        await self._fill_with_timeout(n)
        return bytes(self._buffer[:n])

    async def read_exactly(self, n: int) -> bytes:
        """Read and consume exactly ``n`` bytes."""
        await self._fill_with_timeout(n)
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    async def write(self, data: bytes) -> int:
        self._writer.write(data)
        await self._writer.drain()
        return len(data)

    def close(self) -> None:
        self._writer.close()

    def conn_addr(self) -> list[str]:
        """Return [source ip, source port, target ip, target port]."""
        return list(self._tuple)