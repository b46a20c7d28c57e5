"""Unit tests for availability grid construction."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from ora.calendar.grid import (
    build_availability,
    day_key,
    grid_to_documents,
    local_date,
    normalize_interval,
)
from ora.calendar.models import AvailabilityState, BusyInterval, Transparency
from ora.config import DEFAULTS

pytestmark = pytest.mark.unit

UTC_ZONE = ZoneInfo("UTC")
PARIS = ZoneInfo("Europe/Paris")


def _busy_indexes(slots) -> list[int]:
    return [i for i, slot in enumerate(slots) if slot.state == AvailabilityState.BUSY]


def _timed(start: str, end: str | None, **kwargs) -> BusyInterval:
    return BusyInterval(
        start=datetime.fromisoformat(start),
        end=datetime.fromisoformat(end) if end else None,
        **kwargs,
    )


class TestGridCoverage:
    def test_empty_calendar_is_all_free(self):
        grid = build_availability([], date(2026, 3, 10), 1, tz=UTC_ZONE)

        assert list(grid) == ["2026-03-10"]
        slots = grid["2026-03-10"]
        assert len(slots) == 48
        assert all(slot.state == AvailabilityState.FREE for slot in slots)

    def test_slots_are_contiguous_and_cover_the_day(self):
        grid = build_availability([], date(2026, 3, 10), 3, tz=UTC_ZONE)

        assert list(grid) == ["2026-03-10", "2026-03-11", "2026-03-12"]
        for key, slots in grid.items():
            assert slots[0].start == datetime(2026, 3, 10, tzinfo=UTC) + timedelta(
                days=list(grid).index(key)
            )
            for previous, current in zip(slots, slots[1:], strict=False):
                assert previous.end == current.start
            assert slots[-1].end - slots[0].start == timedelta(days=1)

    def test_zero_days_returns_empty_grid(self):
        assert build_availability([], date(2026, 3, 10), 0, tz=UTC_ZONE) == {}

    def test_uneven_slot_width_truncates_last_slot_at_midnight(self):
        grid = build_availability([], date(2026, 3, 10), 1, 50, tz=UTC_ZONE)
        slots = grid["2026-03-10"]

        assert len(slots) == 29
        assert slots[-1].start == datetime(2026, 3, 10, 23, 20, tzinfo=UTC)
        assert slots[-1].end == datetime(2026, 3, 11, tzinfo=UTC)

    def test_spring_forward_day_has_fewer_slots(self):
        grid = build_availability([], date(2026, 3, 29), 1, tz=PARIS)

        assert len(grid["2026-03-29"]) == 46

    def test_fall_back_day_has_more_slots(self):
        grid = build_availability([], date(2026, 10, 25), 1, tz=PARIS)

        assert len(grid["2026-10-25"]) == 50

    def test_datetime_start_is_truncated_to_its_local_day(self):
        start = datetime(2026, 3, 10, 23, 30, tzinfo=UTC)  # 00:30 on the 11th in Paris
        grid = build_availability([], start, 1, tz=PARIS)

        assert list(grid) == ["2026-03-11"]

    def test_non_positive_slot_width_is_rejected(self):
        with pytest.raises(ValueError, match="slot_minutes"):
            build_availability([], date(2026, 3, 10), 1, 0, tz=UTC_ZONE)


class TestBusyCorrectness:
    def test_overlapping_slots_are_busy_and_end_is_exclusive(self):
        interval = _timed("2026-03-10T09:15:00+00:00", "2026-03-10T10:00:00+00:00")
        grid = build_availability([interval], date(2026, 3, 10), 1, tz=UTC_ZONE)

        assert _busy_indexes(grid["2026-03-10"]) == [18, 19]

    def test_all_day_event_blocks_the_whole_day_only(self):
        interval = BusyInterval(start=date(2026, 3, 10))
        grid = build_availability([interval], date(2026, 3, 10), 2, tz=UTC_ZONE)

        assert len(_busy_indexes(grid["2026-03-10"])) == 48
        assert _busy_indexes(grid["2026-03-11"]) == []

    def test_multi_day_interval_contributes_to_each_day(self):
        interval = _timed("2026-03-10T22:00:00+00:00", "2026-03-11T02:00:00+00:00")
        grid = build_availability([interval], date(2026, 3, 10), 2, tz=UTC_ZONE)

        assert _busy_indexes(grid["2026-03-10"]) == [44, 45, 46, 47]
        assert _busy_indexes(grid["2026-03-11"]) == [0, 1, 2, 3]

    def test_missing_end_uses_default_event_duration(self):
        interval = _timed("2026-03-10T12:00:00+00:00", None)
        grid = build_availability([interval], date(2026, 3, 10), 1, tz=UTC_ZONE)

        assert _busy_indexes(grid["2026-03-10"]) == [24, 25]

    def test_degenerate_end_uses_minimum_probe_span(self):
        interval = _timed("2026-03-10T12:00:00+00:00", "2026-03-10T11:00:00+00:00")
        grid = build_availability([interval], date(2026, 3, 10), 1, tz=UTC_ZONE)

        assert _busy_indexes(grid["2026-03-10"]) == [24]

    def test_transparent_events_count_as_busy_by_default(self):
        interval = _timed(
            "2026-03-10T12:00:00+00:00",
            "2026-03-10T13:00:00+00:00",
            transparency=Transparency.TRANSPARENT,
        )
        grid = build_availability([interval], date(2026, 3, 10), 1, tz=UTC_ZONE)

        assert _busy_indexes(grid["2026-03-10"]) == [24, 25]

    def test_transparent_events_are_ignored_when_respected(self):
        interval = _timed(
            "2026-03-10T12:00:00+00:00",
            "2026-03-10T13:00:00+00:00",
            transparency=Transparency.TRANSPARENT,
        )
        grid = build_availability(
            [interval], date(2026, 3, 10), 1, tz=UTC_ZONE, respect_transparency=True
        )

        assert _busy_indexes(grid["2026-03-10"]) == []

    def test_grid_is_deterministic(self):
        intervals = [
            _timed("2026-03-10T08:00:00+00:00", "2026-03-10T09:00:00+00:00"),
            BusyInterval(start=date(2026, 3, 11)),
        ]
        first = build_availability(intervals, date(2026, 3, 10), 2, tz=UTC_ZONE)
        second = build_availability(list(reversed(intervals)), date(2026, 3, 10), 2, tz=UTC_ZONE)

        assert first == second


class TestNormalizeInterval:
    def test_all_day_range_spans_local_midnights(self):
        start, end = normalize_interval(BusyInterval(start=date(2026, 3, 10)), tz=PARIS)

        assert start == datetime(2026, 3, 9, 23, tzinfo=UTC)
        assert end == datetime(2026, 3, 10, 23, tzinfo=UTC)

    def test_naive_datetimes_are_read_in_the_grid_zone(self):
        interval = BusyInterval(start=datetime(2026, 3, 10, 9), end=datetime(2026, 3, 10, 10))
        start, end = normalize_interval(interval, tz=PARIS, defaults=DEFAULTS)

        assert start == datetime(2026, 3, 10, 8, tzinfo=UTC)
        assert end == datetime(2026, 3, 10, 9, tzinfo=UTC)


class TestSerialization:
    def test_day_documents_use_utc_rfc3339(self):
        grid = build_availability([], date(2026, 3, 10), 1, tz=UTC_ZONE)
        documents = grid_to_documents(grid)

        assert documents["2026-03-10"][0] == {
            "start": "2026-03-10T00:00:00Z",
            "end": "2026-03-10T00:30:00Z",
            "state": "free",
            "confidenceLevel": "medium",
        }

    def test_day_key_and_local_date(self):
        assert day_key(date(2026, 1, 2)) == "2026-01-02"
        assert local_date(datetime(2026, 3, 10, 23, 30, tzinfo=UTC), PARIS) == date(2026, 3, 11)
