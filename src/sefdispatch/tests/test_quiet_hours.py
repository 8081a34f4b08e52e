from datetime import datetime

from sefdispatch.services.quiet_hours import QuietHours, is_quiet_hours, quiet_hours_delay_ms

BELGRADE = QuietHours(start_hour=1, end_hour=6, tz="Europe/Belgrade")


def test_window_uses_local_wall_clock_in_winter():
    # CET = UTC+1: 01:00-06:00 local is 00:00-05:00 UTC
    assert BELGRADE.is_active(datetime(2026, 1, 15, 0, 0))
    assert BELGRADE.is_active(datetime(2026, 1, 15, 4, 59))
    assert not BELGRADE.is_active(datetime(2026, 1, 15, 5, 0))
    assert not BELGRADE.is_active(datetime(2026, 1, 14, 23, 59))


def test_window_end_follows_daylight_saving():
    assert BELGRADE.window_end(datetime(2026, 1, 15, 2, 0)) == datetime(2026, 1, 15, 5, 0)
    # CEST = UTC+2
    assert BELGRADE.window_end(datetime(2026, 7, 10, 2, 0)) == datetime(2026, 7, 10, 4, 0)


def test_delay_is_zero_outside_window():
    noon = datetime(2026, 1, 15, 11, 0)
    assert BELGRADE.window_end(noon) is None
    assert BELGRADE.delay_ms(noon) == 0


def test_delay_runs_until_window_end():
    assert BELGRADE.delay_ms(datetime(2026, 1, 15, 2, 0)) == 3 * 60 * 60 * 1000
    assert BELGRADE.delay_ms(datetime(2026, 1, 15, 4, 59, 30)) == 30 * 1000


def test_window_wrapping_midnight():
    window = QuietHours(start_hour=22, end_hour=5, tz="UTC")
    assert window.is_active(datetime(2026, 1, 15, 23, 30))
    assert window.is_active(datetime(2026, 1, 16, 1, 0))
    assert not window.is_active(datetime(2026, 1, 16, 12, 0))
    assert window.window_end(datetime(2026, 1, 15, 23, 30)) == datetime(2026, 1, 16, 5, 0)
    assert window.window_end(datetime(2026, 1, 16, 1, 0)) == datetime(2026, 1, 16, 5, 0)


def test_empty_window_is_never_active():
    window = QuietHours(start_hour=3, end_hour=3, tz="UTC")
    assert not window.is_active(datetime(2026, 1, 15, 3, 0))


def test_module_helpers_default_to_belgrade_window():
    assert is_quiet_hours(datetime(2026, 1, 15, 2, 0))
    assert not is_quiet_hours(datetime(2026, 1, 15, 12, 0))
    assert quiet_hours_delay_ms(datetime(2026, 1, 15, 4, 0)) == 60 * 60 * 1000
