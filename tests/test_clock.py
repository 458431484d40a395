from datetime import datetime, timezone

from cronwatch.clock import FixedClock, TimePolicy


def _policy(hour: int, minute: int = 0, day: int = 19) -> TimePolicy:
    return TimePolicy(clock=FixedClock(datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)))


def test_local_today_uses_tenant_zone():
    # 02:00 UTC on the 19th is still the 18th in New York
    policy = _policy(2)
    assert policy.local_today("America/New_York").isoformat() == "2026-10-18"
    assert policy.local_today("Europe/Stockholm").isoformat() == "2026-10-19"


def test_is_local_today_compares_local_dates():
    policy = _policy(14)
    assert policy.is_local_today("2026-10-19T04:30:00+00:00", "America/New_York") is True
    assert policy.is_local_today("2026-10-19T03:30:00+00:00", "America/New_York") is False
    assert policy.is_local_today(None, "America/New_York") is False


def test_morning_window():
    assert _policy(10).morning_window_passed("America/New_York") is False
    assert _policy(12).morning_window_passed("America/New_York") is True
    assert _policy(0).morning_window_passed(None) is True


def test_delivery_window_for_known_and_missing_zones():
    # send hour 07:00 local plus one hour grace
    assert _policy(11, 59).delivery_window_passed("America/New_York") is False
    assert _policy(12).delivery_window_passed("America/New_York") is True
    assert _policy(11).delivery_window_passed(None) is False
    assert _policy(13).delivery_window_passed(None) is True
    assert _policy(23).delivery_window_passed("Not/AZone") is False


def test_expected_send_window_is_the_utc_hour_of_local_send():
    start, end = _policy(14).expected_send_window("America/New_York")
    assert start == datetime(2026, 10, 19, 11, 0, tzinfo=timezone.utc)
    assert (end - start).total_seconds() == 3600


def test_fixed_clock_records_sleeps():
    clock = FixedClock(datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc))
    clock.sleep(3)
    clock.sleep(1.5)
    assert clock.slept == [3, 1.5]
    assert clock.advance(minutes=15) == datetime(2026, 10, 19, 14, 15, tzinfo=timezone.utc)


def test_is_sunday_uses_utc():
    assert _policy(12, day=18).is_sunday() is True
    assert _policy(12, day=19).is_sunday() is False
