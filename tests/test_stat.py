from datetime import datetime, timedelta, timezone

from gpstrack.stat import Stat

BASE = datetime(2022, 1, 1, tzinfo=timezone.utc)


def _times(n):
    return [BASE + timedelta(seconds=i) for i in range(n)]


def test_empty_stat():
    s = Stat()
    assert s.connect_last() is None
    assert s.update_last() is None
    assert s.connect_list() == []
    assert s.update_list() == []


def test_last_event_is_most_recent():
    s = Stat()
    times = _times(3)
    for t in times:
        s.connect_event(t)
    assert s.connect_last() == times[-1]
    assert s.update_last() is None


def test_list_is_newest_first():
    s = Stat()
    times = _times(4)
    for t in times:
        s.update_event(t)
    assert s.update_list() == list(reversed(times))


def test_history_keeps_only_ten_events():
    s = Stat()
    times = _times(15)
    for t in times:
        s.connect_event(t)
    history = s.connect_list()
    assert len(history) == 10
    assert history == list(reversed(times[5:]))
    assert s.connect_last() == times[-1]


def test_connect_and_update_are_independent():
    s = Stat()
    a, b = _times(2)
    s.connect_event(a)
    s.update_event(b)
    assert s.connect_list() == [a]
    assert s.update_list() == [b]