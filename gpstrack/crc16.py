"""16-bit cyclic redundancy checks with configurable polynomials."""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property

SIZE = 2

Table = tuple[int, ...]


def reverse_bits(value: int) -> int:
    """Return the 16-bit value with its bit order reversed (0xA001 -> 0x8005)."""
    return int(f"{value & 0xFFFF:016b}"[::-1], 2)


def make_table(poly: int) -> Table:
    """Build a lookup table in bit-reversed order; ``poly`` is given bit-reversed."""
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
        table.append(crc & 0xFFFF)
    return tuple(table)


def make_table_nbr(poly: int) -> Table:
    """Build a lookup table in non-bit-reversed order."""
    table = []
    for i in range(256):
        crc = i << 8
        for _ in range(8):
            crc = (crc << 1) ^ poly if crc & 0x8000 else crc << 1
            crc &= 0xFFFF
        table.append(crc)
    return tuple(table)


def update(crc: int, table: Table, data: bytes) -> int:
    """Feed ``data`` into a bit-reversed CRC register."""
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc & 0xFFFF


def update_nbr(crc: int, table: Table, data: bytes) -> int:
    """Feed ``data`` into a non-bit-reversed CRC register."""
    for byte in data:
        crc = table[((crc >> 8) ^ byte) & 0xFF] ^ ((crc << 8) & 0xFFFF)
    return crc & 0xFFFF


@dataclass(frozen=True)
class Conf:
    """Parameters of a CRC-16 variant."""

    poly: int
    bit_rev: bool
    ini_val: int
    fin_val: int
    big_endian: bool

    @cached_property
    def table(self) -> Table:
        if self.bit_rev:
            return make_table(reverse_bits(self.poly))
        return make_table_nbr(self.poly)

    def update(self, crc: int, data: bytes) -> int:
        """Feed ``data`` into ``crc`` using this configuration's table."""
        if self.bit_rev:
            return update(crc, self.table, data)
        return update_nbr(crc, self.table, data)


X25 = Conf(poly=0x1021, bit_rev=True, ini_val=0xFFFF, fin_val=0xFFFF, big_endian=False)
PPP = X25
MODBUS = Conf(poly=0x8005, bit_rev=True, ini_val=0xFFFF, fin_val=0x0000, big_endian=False)
XMODEM = Conf(poly=0x1021, bit_rev=False, ini_val=0x0000, fin_val=0x0000, big_endian=True)
KERMIT = Conf(poly=0x1021, bit_rev=True, ini_val=0x0000, fin_val=0x0000, big_endian=False)


def checksum(conf: Conf, data: bytes) -> int:
    """Return the CRC-16 checksum of ``data`` under ``conf``."""
    return conf.update(conf.ini_val, data) ^ conf.fin_val


class Digest:
    """Incremental CRC-16 computation."""

    digest_size = SIZE
    block_size = 1

    def __init__(self, conf: Conf) -> None:
        self.conf = conf
        self._crc = conf.ini_val

    def update(self, data: bytes) -> None:
        self._crc = self.conf.update(self._crc, data)

    def reset(self) -> None:
        self._crc = self.conf.ini_val

    def sum16(self) -> int:
        return self._crc ^ self.conf.fin_val

    def digest(self) -> bytes:
        return self.sum16().to_bytes(SIZE, "big" if self.conf.big_endian else "little")