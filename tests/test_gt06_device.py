import asyncio
import json
from datetime import timezone

import pytest

from gpstrack.conn import Conn
from gpstrack.device import DeviceConfig, DeviceConfigAttribute, Location, Serial
from gpstrack.gt06.device import GT06, GT06Param, should_update_attribute
from gpstrack.gt06.protocol import (
    GK310_GPS,
    GK310_GPS_ALARM,
    INFORMATION_TX_PACKET,
    SERVER_COMMAND_RESPONSE,
    STATUS_INFORMATION,
    TIME_CHECK,
    BadFrameError,
    LoginMessage,
    new_command,
    new_frame,
    parse_device_sn,
    parse_gk310_gps_message,
    parse_gps_alarm,
    parse_status_information,
    read_message,
)
from gpstrack.sublist import Sublist

TID = 7
SERIAL = Serial(0, 123456789012345)
STATUS_PAYLOAD = bytes([0b00000010, 4, 3, 0, 2])


class FakeWriter:
    def __init__(self, reader, port):
        self.reader = reader
        self.port = port
        self.data = bytearray()
        self.closed = False
        self.fail = False

    def write(self, data):
        if self.fail:
            raise ConnectionResetError("broken")
        self.data += data

    async def drain(self):
        return None

    def close(self):
        self.closed = True
        self.reader.feed_eof()

    def get_extra_info(self, name):
        return {
            "peername": ("192.0.2.1", self.port),
            "sockname": ("192.0.2.2", 6000),
        }.get(name)


class RecordingStore:
    def __init__(self):
        self.puts = []

    def put(self, nsn, lon, lat, alt, speed, gps_time, server_time):
        self.puts.append((nsn, lon, lat, alt, speed, gps_time, server_time))


class RecordingMisc:
    def __init__(self):
        self.events = []
        self.responses = []
        self.attributes = []

    def save_command_response(self, tid, server_flag, command, command_time, response, response_time):
        self.responses.append((tid, server_flag, command, command_time, response, response_time))

    def save_event(self, tid, event_type, message, message_obj, t):
        self.events.append((tid, event_type, message, message_obj, t))

    def update_attribute(self, tid, key, value):
        self.attributes.append((tid, key, value))


class RecordingSubscriber:
    def __init__(self):
        self.pushes = []

    def push(self, tid, data):
        self.pushes.append(data)
        return False


def make_conn(data=b"", port=4000, eof=True):
    reader = asyncio.StreamReader()
    writer = FakeWriter(reader, port)
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return Conn(reader, writer, cid=port), writer


def make_device(conn, conf=None):
    store = RecordingStore()
    misc = RecordingMisc()
    sublist = Sublist(TID)
    subscriber = RecordingSubscriber()
    sublist.subscribe(subscriber)
    param = GT06Param(store=store, misc_store=misc, sublist=sublist)
    attr = DeviceConfigAttribute(config=conf or DeviceConfig(allow_connect=True))
    dev = GT06(TID, SERIAL, conn, LoginMessage(sn="0123456789012345"), param, attr)
    dev.reconnect_delay = 0
    return dev, store, misc, subscriber


async def parse_frames(data):
    reader = asyncio.StreamReader()
    reader.feed_data(bytes(data))
    reader.feed_eof()
    conn = Conn(reader, FakeWriter(reader, 1), cid=0)
    frames = []
    while True:
        try:
            frames.append(await read_message(conn))
        except asyncio.IncompleteReadError:
            return frames


def event_types(misc):
    return [event[1] for event in misc.events]


def topics(subscriber):
    return [json.loads(d[1:])["topic"] for d in subscriber.pushes if d[:1] == b"\x01" and len(d) > 1]


def gps_part():
    return (
        bytes([24, 1, 2, 3, 4, 5, 0xC5])
        + (18000000).to_bytes(4, "big")
        + (36000000).to_bytes(4, "big")
        + bytes([36, 0b00010100, 0x10])
    )


def cell_part():
    return (510).to_bytes(2, "big") + bytes([10]) + (1234).to_bytes(2, "big") + (56789).to_bytes(3, "big")


async def run_to_end(dev):
    await asyncio.wait_for(dev.run(), 2)


def test_should_update_attribute():
    assert should_update_attribute("version#")
    assert should_update_attribute("PARAM#")
    assert not should_update_attribute("STATUS#")


@pytest.mark.asyncio
async def test_heartbeat_is_acknowledged_and_published():
    conn, writer = make_conn(new_frame(STATUS_INFORMATION, STATUS_PAYLOAD, 7))
    dev, _, misc, subscriber = make_device(conn)
    await run_to_end(dev)

    frames = await parse_frames(writer.data)
    assert [(m.protocol, m.serial, m.payload) for m in frames] == [(STATUS_INFORMATION, 7, b"")]
    assert event_types(misc) == ["started", "hearbeat.changed", "disconnected"]
    assert misc.events[1][3] == parse_status_information(STATUS_PAYLOAD).to_dict()
    assert topics(subscriber) == ["started", "heartbeat.changed", "disconnected"]
    err, when = dev.error()
    assert isinstance(err, EOFError)
    assert when is not None


@pytest.mark.asyncio
async def test_unchanged_heartbeat_is_published_once():
    frame = new_frame(STATUS_INFORMATION, STATUS_PAYLOAD, 1)
    conn, writer = make_conn(frame + frame)
    dev, _, misc, _ = make_device(conn)
    await run_to_end(dev)
    assert event_types(misc).count("hearbeat.changed") == 1
    assert len(await parse_frames(writer.data)) == 2


@pytest.mark.asyncio
async def test_location_is_stored_and_sent():
    payload = gps_part() + cell_part()
    conn, _ = make_conn(new_frame(GK310_GPS, payload, 2))
    conf = DeviceConfig(allow_connect=True, store=True, sublist_send=True)
    dev, store, misc, subscriber = make_device(conn, conf)
    await run_to_end(dev)

    gps = parse_gk310_gps_message(payload).gps
    assert [p[:6] for p in store.puts] == [
        (SERIAL.nsn, gps.latitude, gps.longitude, -1, gps.speed, gps.timestamp)
    ]
    assert dev.get_location() == Location(gps.latitude, gps.longitude, 0.0, gps.speed, gps.timestamp)
    cell_events = [e for e in misc.events if e[1] == "cell_info.changed"]
    assert [e[3] for e in cell_events] == [gps.cell_info.to_dict()]
    locations = [d for d in subscriber.pushes if len(d) == 39]
    assert len(locations) == 1 and locations[0][0] == 0


@pytest.mark.asyncio
async def test_location_not_stored_when_disabled():
    payload = gps_part() + cell_part()
    conn, _ = make_conn(new_frame(GK310_GPS, payload, 2))
    dev, store, _, subscriber = make_device(conn)
    await run_to_end(dev)
    assert store.puts == []
    assert [d for d in subscriber.pushes if len(d) == 39] == []
    assert dev.get_location().latitude == parse_gk310_gps_message(payload).gps.latitude


@pytest.mark.asyncio
async def test_alarm_updates_location_and_events():
    payload = gps_part() + bytes([8]) + cell_part() + STATUS_PAYLOAD
    conn, _ = make_conn(new_frame(GK310_GPS_ALARM, payload, 4))
    dev, _, misc, subscriber = make_device(conn)
    await run_to_end(dev)
    alarm = parse_gps_alarm(payload, timezone.utc)
    alarm_events = [e for e in misc.events if e[1] == "alarm"]
    assert [e[3] for e in alarm_events] == [alarm.status.to_dict()]
    assert "alarm" in topics(subscriber)
    assert dev.get_location().timestamp == alarm.gps.timestamp


@pytest.mark.asyncio
async def test_time_check_gets_time_response():
    conn, writer = make_conn(new_frame(TIME_CHECK, b"", 3))
    dev, _, _, _ = make_device(conn)
    await run_to_end(dev)
    frames = await parse_frames(writer.data)
    assert [(m.protocol, m.serial, len(m.payload)) for m in frames] == [(TIME_CHECK, 3, 6)]


@pytest.mark.asyncio
async def test_terminal_status_information_packet():
    conn, _ = make_conn(new_frame(INFORMATION_TX_PACKET, b"\x04ACC ON", 5))
    dev, _, misc, _ = make_device(conn)
    await run_to_end(dev)
    assert misc.attributes == [(TID, "terminal_status", "ACC ON")]


@pytest.mark.asyncio
async def test_device_sn_information_packet():
    sn_bytes = bytes(range(1, 27))
    conn, _ = make_conn(new_frame(INFORMATION_TX_PACKET, b"\x0a" + sn_bytes, 5))
    dev, _, misc, _ = make_device(conn)
    await run_to_end(dev)
    sn = parse_device_sn(sn_bytes)
    assert misc.attributes == [(TID, "iccid", sn.iccid), (TID, "imei", sn.imei), (TID, "imsi", sn.imsi)]


@pytest.mark.asyncio
async def test_send_command_pending_and_force():
    conn, writer = make_conn(eof=False)
    dev, _, misc, _ = make_device(conn)

    assert await dev.send_command("STATUS#", False) is False
    assert bytes(writer.data) == new_command("STATUS#", 1, 1)
    assert misc.events[-1][1:4] == ("command.sent", "STATUS#", {"server_flag": 1})

    assert await dev.send_command("STATUS#", False) is True
    assert bytes(writer.data) == new_command("STATUS#", 1, 1)

    assert await dev.send_command("STATUS#", True) is False
    assert bytes(writer.data) == new_command("STATUS#", 1, 1) + new_command("STATUS#", 2, 2)


@pytest.mark.asyncio
async def test_send_command_write_failure_raises():
    conn, writer = make_conn(eof=False)
    dev, _, misc, _ = make_device(conn)
    writer.fail = True
    with pytest.raises(ConnectionResetError):
        await dev.send_command("STATUS#", False)
    assert await dev.send_command("STATUS#", False) is True
    assert misc.events == []


@pytest.mark.asyncio
async def test_matching_command_response_is_saved():
    response = (1).to_bytes(4, "big") + b"\x00" + b"V1.0"
    conn, _ = make_conn(eof=False)
    dev, _, misc, _ = make_device(conn)
    await dev.send_command("VERSION#", False)
    sent_time = misc.events[-1][4]
    conn._reader.feed_data(new_frame(SERVER_COMMAND_RESPONSE, response, 8))
    conn._reader.feed_eof()
    await run_to_end(dev)

    assert [r[:5] for r in misc.responses] == [(TID, 1, "VERSION#", sent_time, "V1.0")]
    assert misc.attributes == [(TID, "VERSION#", "V1.0")]
    assert await dev.send_command("STATUS#", False) is False


@pytest.mark.asyncio
async def test_mismatched_command_response_only_logged_as_event():
    response = (99).to_bytes(4, "big") + b"\x00" + b"V1.0"
    conn, _ = make_conn(eof=False)
    dev, _, misc, _ = make_device(conn)
    await dev.send_command("VERSION#", False)
    conn._reader.feed_data(new_frame(SERVER_COMMAND_RESPONSE, response, 8))
    conn._reader.feed_eof()
    await run_to_end(dev)

    assert [e[1:4] for e in misc.events if e[1] == "command.response"] == [
        ("command.response", "V1.0", {"server_flag": 99})
    ]
    assert misc.responses == []
    assert misc.attributes == []
    assert await dev.send_command("STATUS#", False) is True


@pytest.mark.asyncio
async def test_read_timeout_pings_then_disconnects():
    conn, writer = make_conn(eof=False)
    dev, _, misc, _ = make_device(conn, DeviceConfig(allow_connect=True, read_deadline=1))
    dev.read_deadline_unit = 0.02
    await run_to_end(dev)
    assert bytes(writer.data) == new_command("STATUS#", 1, 1)
    assert event_types(misc) == ["started", "command.sent", "disconnected"]
    assert isinstance(dev.error()[0], TimeoutError)
    assert writer.closed


@pytest.mark.asyncio
async def test_bad_frame_closes_connection():
    conn, writer = make_conn(b"\x00\x00\x00\x00", eof=False)
    dev, _, misc, _ = make_device(conn)
    await run_to_end(dev)
    assert isinstance(dev.error()[0], BadFrameError)
    assert event_types(misc) == ["started", "disconnected"]
    assert writer.closed


@pytest.mark.asyncio
async def test_stop_ends_serving():
    conn, writer = make_conn(eof=False)
    dev, _, misc, _ = make_device(conn)
    task = dev.run()
    dev.stop()
    await asyncio.wait_for(task, 2)
    assert writer.closed
    assert event_types(misc) == ["started", "disconnected"]


@pytest.mark.asyncio
async def test_replace_conn_before_run_is_ignored():
    conn1, _ = make_conn(eof=False, port=4000)
    conn2, _ = make_conn(port=5000)
    dev, _, _, _ = make_device(conn1)
    assert dev.replace_conn(conn2) is None
    assert dev.current_conn_info() == conn1.conn_addr()


@pytest.mark.asyncio
async def test_replace_conn_while_running_and_paused():
    conn1, writer1 = make_conn(eof=False, port=4000)
    dev, _, misc, _ = make_device(conn1)
    task = dev.run()

    conn2, writer2 = make_conn(new_frame(STATUS_INFORMATION, STATUS_PAYLOAD, 9), port=5000)
    assert dev.replace_conn(conn2) is None
    await asyncio.wait_for(task, 2)

    assert writer1.closed
    assert [m.serial for m in await parse_frames(writer2.data)] == [9]
    assert dev.current_conn_info() == conn2.conn_addr()
    assert event_types(misc).count("started") == 2

    conn3, writer3 = make_conn(new_frame(STATUS_INFORMATION, STATUS_PAYLOAD, 11), port=5001)
    restarted = dev.replace_conn(conn3)
    assert restarted is not None
    await asyncio.wait_for(restarted, 2)
    assert [m.serial for m in await parse_frames(writer3.data)] == [11]
    assert dev.current_conn_info() == conn3.conn_addr()