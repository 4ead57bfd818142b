# gpstrack

A gateway for GPS tracking devices, built on asyncio. It accepts TCP
connections from trackers, tells from the first byte which protocol a device
speaks (`0x78` for GT06/GK310, `0x99` for the framed JSON protocol), logs the
device in, and passes its locations and events on to a location store and to
live subscribers. A websocket endpoint lets authenticated clients subscribe to
those live updates.

## Installing

Install the package with pip. The `test` extra adds pytest and pytest-asyncio.
The runtime dependencies are `bcrypt` (password hashing in `gpstrack.util`)
and `websockets` (`gpstrack.webstream`).

## Modules

- `gpstrack.crc16`: table-driven CRC-16. `Conf` holds the polynomial, bit
  order, initial value, final XOR and output byte order. `X25`, `PPP`,
  `MODBUS`, `XMODEM` and `KERMIT` are predefined. `checksum(conf, data)`
  computes a checksum in one call; `Digest` computes it incrementally
  (`update`, `reset`, `sum16`, `digest`).
- `gpstrack.device`: serial numbers. `combine_sn` packs a serial type (top 4
  bits) and a serial (low 60 bits) into one 64-bit "nsn", and `split_sn`
  unpacks it. `Serial` (with `nsn`, `sn_type_name`, `sn_string` and
  `Serial.from_nsn`), `Location`, `DeviceConfig` (with `from_dict` and
  `to_dict`) and `DeviceConfigAttribute` live here too.
- `gpstrack.gt06.protocol`: GT06/GK310 framing. `read_message` reads a frame
  from a `Conn` and raises `BadFrameError` on a malformed one. There are
  parsers for login, heartbeat (`StatusInfo`), GPS, GPS alarm, device serials
  and command responses. `new_frame`, `new_command`, `time_response` and
  `send_login_ok` build or send outgoing frames, with the X25 checksum.
- `gpstrack.gt06.device`: `GT06`, a running device session. It answers time
  checks and heartbeats and records locations. It reports heartbeat changes,
  alarms, cell changes and command responses to a `MiscStore` and to the
  tracker's `Sublist`. `send_command` sends text commands; if a read times
  out it sends a `STATUS#` ping once. `replace_conn` takes over a
  reconnecting device's new connection.
- `gpstrack.simplejson.protocol` and `gpstrack.simplejson.device`: the framed
  JSON protocol (`Protocol`, `read_message`, `LoginMessage`,
  `LocationMessage`, `StatusMessage`, `Sat`) and the `SimpleJSON` session,
  which keeps the last location, status and satellite list.
- `gpstrack.conn`: `Conn`, an asyncio reader/writer pair with `peek`,
  `read_exactly` (under an optional `read_timeout`), `write`, `close` and
  `conn_addr`.
- `gpstrack.sublist`: per-tracker subscriber lists. `SublistMap.get_sublist`
  looks a list up and creates it on request. A `Sublist` pushes 39-byte
  little-endian location records (`encode_location`, tag byte `0x00`) and
  JSON events (`encode_event`, tag byte `0x01`) to each `Subscriber`. A
  subscriber whose `push` returns True is dropped. A new subscriber is first
  sent the latest location and event.
- `gpstrack.server`: `Server` listens for trackers and hands each connection
  to a `LoginHandler`. `TrackerRepository` keeps registered trackers, their
  configuration and attributes in SQLite. `DeviceList` holds the logged-in
  devices.
- `gpstrack.webstream`: `WebstreamServer` accepts websockets. The first
  message must be a token, which a caller-supplied validator checks. After
  that a client sends `ADDSUB 1,2,3` or `DELSUB 1` to manage its
  subscriptions, at most 5 of them. Queued data is written in rounds, and the
  pause between rounds is chosen by `Delay`.
- `gpstrack.broker`: `Broker` collects broadcast data into batches and sends
  each flushed batch to every connected TCP listener. A batch is flushed when
  it reaches `buf_size` items, or by a timer once it is older than
  `timer_dur` seconds. With `buf_size` 0 only the timer flushes.
- `gpstrack.stat`: `Stat` keeps the ten most recent connect and update times,
  newest first.
- `gpstrack.store`: the `LocationStore` and `MiscStore` protocols, and
  `LogStore`, a location store that only writes records to the log.
- `gpstrack.util`: random bytes and URL-safe strings, random UUIDs, and
  bcrypt password hashing.

## Examples

Serial numbers:

```python
from gpstrack.device import combine_sn, split_sn, sn_type_string, format_sn_pretty

nsn = combine_sn(1, 0xABCDEF)
assert split_sn(nsn) == (1, 0xABCDEF)
assert sn_type_string(1) == "mac"
assert format_sn_pretty(1, 0xABCDEF) == "abcdef"
```

Building a GT06 response frame:

```python
from gpstrack.gt06.protocol import new_frame

frame = new_frame(0x01, b"", 1)   # login acknowledgement for serial 1
assert frame[:2] == b"\x78\x78"
assert frame[-2:] == b"\r\n"
```

Running the tracker server. New trackers are registered with the default
configuration; until one is set, unknown trackers are refused:

```python
import asyncio

from gpstrack.device import DeviceConfig
from gpstrack.server import Server, ServerConfig, TrackerRepository
from gpstrack.store import LogStore
from gpstrack.sublist import SublistMap


class PrintMiscStore:
    def save_command_response(self, tid, server_flag, command, command_time, response, response_time):
        print("response", tid, command, response)

    def save_event(self, tid, event_type, message, message_obj, t):
        print("event", tid, event_type, message_obj)

    def update_attribute(self, tid, key, value):
        print("attribute", tid, key, value)


repository = TrackerRepository("trackers.db")
repository.set_default_config(
    DeviceConfig(allow_connect=True, store=True, sublist_send=True, read_deadline=5)
)
server = Server(repository, LogStore(), PrintMiscStore(), SublistMap(), ServerConfig(":6000"))
asyncio.run(server.run())
```

The serial numbers in the examples and tests are made up.

## What it does not do

- There is no command-line program. The servers are started from your own
  code, as above.
- No storage for location history is included. `LogStore` only logs each
  record, so you provide a `LocationStore` that keeps them. No `MiscStore`
  implementation is included either.
- There is no HTTP API for users, login sessions or tracker management.
  `WebstreamServer` does not know about sessions itself: you pass it a token
  validator that returns a session id, or None to reject the token.
- The listeners speak plain TCP, with no TLS and no PROXY-protocol support.