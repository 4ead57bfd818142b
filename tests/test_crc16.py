import pytest

from gpstrack.crc16 import (
    KERMIT,
    MODBUS,
    X25,
    XMODEM,
    Conf,
    Digest,
    checksum,
    make_table,
    make_table_nbr,
    reverse_bits,
    update,
    update_nbr,
)

CHECK_INPUT = b"123456789"


def test_reverse_bits_documented_example():
    assert reverse_bits(0xA001) == 0x8005
    assert reverse_bits(0x8005) == 0xA001


@pytest.mark.parametrize("value", [0, 1, 0x1021, 0xFFFF, 0x1234])
def test_reverse_bits_is_involution(value):
    assert reverse_bits(reverse_bits(value)) == value


def test_gt06_login_frame_crc():
    frame = bytes.fromhex("78780d01012345678901234500018cdd0d0a")
    crc = checksum(X25, frame[2:-4])
    assert crc == int.from_bytes(frame[-4:-2], "big")


def test_catalogue_check_values():
    assert checksum(X25, CHECK_INPUT) == 0x906E
    assert checksum(MODBUS, CHECK_INPUT) == 0x4B37
    assert checksum(XMODEM, CHECK_INPUT) == 0x31C3


def test_tables_start_with_zero_and_have_256_entries():
    for table in (make_table(0x8408), make_table_nbr(0x1021)):
        assert len(table) == 256
        assert table[0] == 0
        assert all(0 <= v <= 0xFFFF for v in table)


def test_conf_uses_matching_table():
    assert X25.table == make_table(reverse_bits(0x1021))
    assert XMODEM.table == make_table_nbr(0x1021)


def test_update_is_incremental():
    table = make_table(reverse_bits(0x1021))
    whole = update(0xFFFF, table, CHECK_INPUT)
    part = update(update(0xFFFF, table, CHECK_INPUT[:4]), table, CHECK_INPUT[4:])
    assert whole == part

    ntable = make_table_nbr(0x1021)
    whole_nbr = update_nbr(0, ntable, CHECK_INPUT)
    part_nbr = update_nbr(update_nbr(0, ntable, CHECK_INPUT[:3]), ntable, CHECK_INPUT[3:])
    assert whole_nbr == part_nbr


@pytest.mark.parametrize("conf", [X25, MODBUS, XMODEM, KERMIT])
def test_digest_matches_checksum(conf):
    d = Digest(conf)
    d.update(CHECK_INPUT[:5])
    d.update(CHECK_INPUT[5:])
    assert d.sum16() == checksum(conf, CHECK_INPUT)


def test_digest_byte_order():
    little = Digest(X25)
    little.update(CHECK_INPUT)
    assert little.digest() == checksum(X25, CHECK_INPUT).to_bytes(2, "little")

    big = Digest(XMODEM)
    big.update(CHECK_INPUT)
    assert big.digest() == checksum(XMODEM, CHECK_INPUT).to_bytes(2, "big")


def test_digest_reset():
    d = Digest(MODBUS)
    d.update(b"garbage")
    d.reset()
    d.update(CHECK_INPUT)
    assert d.sum16() == checksum(MODBUS, CHECK_INPUT)


def test_empty_data_checksum_is_init_xor_final():
    conf = Conf(poly=0x1021, bit_rev=True, ini_val=0x1234, fin_val=0x00FF, big_endian=False)
    assert checksum(conf, b"") == 0x1234 ^ 0x00FF