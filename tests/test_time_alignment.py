from datetime import datetime, timedelta, timezone

import pytest

from utils.time_alignment import (
    format_cycle_stamp,
    next_aligned_wakeup,
    parse_duration,
    timer_delay,
    to_epoch_ms,
    truncate_to_interval,
)


def test_parse_duration_accepts_go_style_values():
    assert parse_duration("1h") == timedelta(hours=1)
    assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)
    assert parse_duration("1.5h") == timedelta(minutes=90)
    assert parse_duration("300ms") == timedelta(milliseconds=300)
    assert parse_duration("-5m") == timedelta(minutes=-5)
    assert parse_duration("0") == timedelta(0)


@pytest.mark.parametrize("raw", ["", "hourly", "5", "1d", "h1", "1h x"])
def test_parse_duration_rejects_invalid_format(raw):
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_truncate_to_interval_is_epoch_aligned():
    now = datetime(2026, 2, 10, 10, 37, 12, tzinfo=timezone.utc)
    assert truncate_to_interval(now, timedelta(hours=1)) == datetime(
        2026, 2, 10, 10, 0, 0, tzinfo=timezone.utc
    )
    assert truncate_to_interval(now, timedelta(minutes=15)) == datetime(
        2026, 2, 10, 10, 30, 0, tzinfo=timezone.utc
    )


def test_truncate_to_interval_rejects_non_positive_interval():
    now = datetime(2026, 2, 10, 10, 37, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        truncate_to_interval(now, timedelta(0))


def test_next_aligned_wakeup_applies_offset():
    now = datetime(2026, 2, 10, 10, 37, 12, tzinfo=timezone.utc)
    wakeup = next_aligned_wakeup(now, timedelta(hours=1), timedelta(minutes=5))
    assert wakeup == datetime(2026, 2, 10, 11, 5, 0, tzinfo=timezone.utc)


def test_next_aligned_wakeup_moves_forward_when_exact_boundary():
    now = datetime(2026, 2, 10, 11, 0, 0, tzinfo=timezone.utc)
    wakeup = next_aligned_wakeup(now, timedelta(hours=1), timedelta(0))
    assert wakeup == datetime(2026, 2, 10, 12, 0, 0, tzinfo=timezone.utc)


def test_next_aligned_wakeup_with_negative_offset_stays_in_future():
    now = datetime(2026, 2, 10, 10, 58, 0, tzinfo=timezone.utc)
    wakeup = next_aligned_wakeup(now, timedelta(hours=1), timedelta(minutes=-5))
    assert wakeup == datetime(2026, 2, 10, 11, 55, 0, tzinfo=timezone.utc)


def test_timer_delay_wakeups_stay_aligned_across_many_instants():
    interval = timedelta(minutes=10)
    offset = timedelta(seconds=30)
    base = datetime(2026, 2, 10, 0, 0, 0, tzinfo=timezone.utc)
    for step in range(0, 3600, 37):
        now = base + timedelta(seconds=step)
        delay = timer_delay(now, interval, offset)
        wakeup = now + delay
        assert delay > timedelta(0)
        assert delay <= interval + offset
        assert (wakeup - offset - base) % interval == timedelta(0)


def test_timer_delay_clamps_waits_longer_than_a_day():
    now = datetime(2026, 2, 10, 10, 0, 0, tzinfo=timezone.utc)
    delay = timer_delay(now, timedelta(hours=1), timedelta(hours=30))
    # 11:00 + 30h 까지 31h -> 하루를 한 번 빼서 7h
    assert delay == timedelta(hours=7)


def test_format_cycle_stamp_uses_truncated_time():
    now = datetime(2026, 2, 10, 10, 37, 12, tzinfo=timezone.utc)
    assert format_cycle_stamp(now, timedelta(hours=1)) == "20260210_100000"


def test_to_epoch_ms():
    assert to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)) == 1000
