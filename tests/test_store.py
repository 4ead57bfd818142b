import logging
from datetime import datetime, timezone

from gpstrack.store import LogStore

GPS_TIME = datetime(2022, 1, 1, 12, 0, tzinfo=timezone.utc)
SERVER_TIME = datetime(2022, 1, 1, 12, 0, 5, tzinfo=timezone.utc)


def test_logstore_logs_record_fields(caplog):
    caplog.set_level(logging.DEBUG, logger="gpstrack.store")
    LogStore().put(42, 106.8, -6.2, 10.0, 3.5, GPS_TIME, SERVER_TIME)
    records = [r for r in caplog.records if r.name == "gpstrack.store"]
    assert len(records) == 1
    rec = records[0]
    assert rec.nsn == 42
    assert rec.lon == 106.8
    assert rec.lat == -6.2
    assert rec.gps_time == GPS_TIME
    assert rec.server_time == SERVER_TIME
    assert rec.levelno == logging.DEBUG


def test_logstore_message_mentions_values(caplog):
    caplog.set_level(logging.DEBUG, logger="gpstrack.store")
    LogStore().put(7, 1.25, 2.5, -1, 0.0, GPS_TIME, SERVER_TIME)
    message = caplog.records[-1].getMessage()
    assert "nsn=7" in message
    assert "lon=1.25" in message
    assert GPS_TIME.isoformat() in message


def test_logstore_silent_above_debug(caplog):
    caplog.set_level(logging.INFO, logger="gpstrack.store")
    LogStore().put(1, 0.0, 0.0, 0.0, 0.0, GPS_TIME, SERVER_TIME)
    assert [r for r in caplog.records if r.name == "gpstrack.store"] == []