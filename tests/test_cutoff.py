from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sessiongate.service.cutoff import next_cutoff, seconds_until

UTC = timezone.utc


class TestNextCutoff:
    def test_later_today(self):
        now = datetime(2024, 3, 10, 9, 30, tzinfo=UTC)

        assert next_cutoff(now, time(18, 0)) == datetime(2024, 3, 10, 18, 0, tzinfo=UTC)

    def test_already_passed_rolls_to_tomorrow(self):
        now = datetime(2024, 3, 10, 19, 0, tzinfo=UTC)

        assert next_cutoff(now, time(18, 0)) == datetime(2024, 3, 11, 18, 0, tzinfo=UTC)

    def test_exactly_at_cutoff_is_strictly_after(self):
        now = datetime(2024, 3, 10, 0, 0, tzinfo=UTC)

        assert next_cutoff(now, time(0, 0)) == datetime(2024, 3, 11, 0, 0, tzinfo=UTC)

    def test_naive_now_is_treated_as_utc(self):
        now = datetime(2024, 3, 10, 23, 59)

        result = next_cutoff(now, time(0, 0))

        assert result == datetime(2024, 3, 11, 0, 0, tzinfo=UTC)
        assert result.tzinfo is not None

    def test_local_timezone_cutoff(self):
        zone = ZoneInfo("Asia/Jakarta")  # UTC+7, no DST
        now = datetime(2024, 3, 10, 16, 0, tzinfo=UTC)  # 23:00 local

        assert next_cutoff(now, time(0, 0), zone) == datetime(2024, 3, 10, 17, 0, tzinfo=UTC)

    def test_follows_daylight_saving_shift(self):
        zone = ZoneInfo("America/New_York")
        # 01:00 EST on the day before clocks spring forward (2024-03-10)
        now = datetime(2024, 3, 9, 6, 0, tzinfo=UTC)

        first = next_cutoff(now, time(3, 0), zone)
        second = next_cutoff(first, time(3, 0), zone)

        assert first.astimezone(zone).hour == 3
        assert second.astimezone(zone).hour == 3
        assert second - first == timedelta(hours=23)

    def test_always_in_the_future(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)
        for minutes in range(0, 24 * 60, 37):
            moment = now + timedelta(minutes=minutes)
            assert next_cutoff(moment, time(0, 0)) > moment


class TestSecondsUntil:
    def test_rounds_down(self):
        now = datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC)
        target = now + timedelta(seconds=90, milliseconds=900)

        assert seconds_until(target, now) == 90

    def test_never_below_one(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)

        assert seconds_until(now, now) == 1
        assert seconds_until(now - timedelta(hours=1), now) == 1
