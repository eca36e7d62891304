# tests/test_timezone_utils.py
from datetime import datetime, timedelta, timezone

from timezone_utils import (
    format_time_ago, local_timezone, now_local, to_local, to_utc,
    today_end_local, today_start_local,
)


class TestTimezoneConversion:

    def test_naive_is_utc(self):
        naive = datetime(2025, 6, 15, 7, 15)
        assert to_utc(naive) == datetime(2025, 6, 15, 7, 15, tzinfo=timezone.utc)

    def test_local_offset(self):
        instant = datetime(2025, 6, 15, 7, 15, tzinfo=timezone.utc)
        local = to_local(instant, offset_minutes=330)
        assert (local.hour, local.minute) == (12, 45)
        assert local.utcoffset() == timedelta(minutes=330)

    def test_negative_offset_crosses_date(self):
        instant = datetime(2025, 6, 15, 2, 0, tzinfo=timezone.utc)
        local = to_local(instant, offset_minutes=-300)
        assert (local.day, local.hour) == (14, 21)

    def test_now_local_follows_clock(self, clock):
        local = now_local(clock)
        assert local.strftime("%Y-%m-%d %H:%M") == "2025-06-15 12:45"
        assert local.tzinfo == local_timezone()

    def test_day_bounds(self, clock):
        start = today_start_local(clock)
        end = today_end_local(clock)
        assert start.strftime("%H:%M:%S") == "00:00:00"
        assert end.strftime("%H:%M:%S") == "23:59:59"
        assert start.date() == end.date() == now_local(clock).date()


class TestTimeAgo:

    def test_just_now(self, clock):
        assert format_time_ago(clock() - timedelta(seconds=30), clock) == "Just now"

    def test_minutes_hours_days(self, clock):
        assert format_time_ago(clock() - timedelta(minutes=5), clock) == "5m ago"
        assert format_time_ago(clock() - timedelta(hours=3, minutes=10), clock) == "3h ago"
        assert format_time_ago(clock() - timedelta(days=2, hours=1), clock) == "2d ago"

    def test_naive_stored_timestamp(self, clock):
        naive = (clock() - timedelta(minutes=90)).replace(tzinfo=None)
        assert format_time_ago(naive, clock) == "1h ago"
