"""
ColdTrack — Window Monitor Resolver Tests
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from app.compliance.errors import ConfigurationError
from app.compliance.models import CheckType, WindowMonitor
from app.compliance.windows import (
    build_monitor, candidate_windows, resolve_windows, validate_monitor, window_for,
)

NY = ZoneInfo("America/New_York")
UTC = timezone.utc


def monitor(id=1, check_type="specific", start="08:00", end="09:30", excluded=None, active=True):
    specific = check_type == "specific"
    return WindowMonitor(
        id=id, asset_id=1, label=f"Window {id}", check_type=CheckType(check_type),
        start_time=start if specific else None, end_time=end if specific else None,
        excluded_weekdays=excluded or [], is_active=active,
    )


def length(window):
    return window.end.astimezone(UTC) - window.start.astimezone(UTC)


class TestWindowFor:

    def test_specific_window_in_facility_timezone(self):
        w = window_for(monitor(), date(2024, 1, 2), NY)
        assert w.target_key == "2024-01-02"
        assert w.start.astimezone(UTC) == datetime(2024, 1, 2, 13, 0, tzinfo=UTC)
        assert w.end.astimezone(UTC) == datetime(2024, 1, 2, 14, 30, tzinfo=UTC)

    def test_daily_window_is_whole_local_day(self):
        w = window_for(monitor(check_type="daily"), date(2024, 1, 2), NY)
        assert length(w) == timedelta(hours=24)

    def test_daily_window_spring_forward_is_23_hours(self):
        w = window_for(monitor(check_type="daily"), date(2024, 3, 10), NY)
        assert length(w) == timedelta(hours=23)

    def test_daily_window_fall_back_is_25_hours(self):
        w = window_for(monitor(check_type="daily"), date(2024, 11, 3), NY)
        assert length(w) == timedelta(hours=25)

    def test_excluded_weekday_has_no_window(self):
        # 2024-01-07 is a Sunday
        assert window_for(monitor(excluded=[0, 6]), date(2024, 1, 7), NY) is None
        assert window_for(monitor(excluded=[0, 6]), date(2024, 1, 8), NY) is not None

    def test_inactive_monitor_has_no_window(self):
        assert window_for(monitor(active=False), date(2024, 1, 8), NY) is None

    def test_window_is_half_open(self):
        w = window_for(monitor(), date(2024, 1, 2), UTC)
        assert w.contains(datetime(2024, 1, 2, 8, 0, tzinfo=UTC))
        assert w.contains(datetime(2024, 1, 2, 9, 29, 59, tzinfo=UTC))
        assert not w.contains(datetime(2024, 1, 2, 9, 30, tzinfo=UTC))


class TestResolveWindows:

    def test_one_window_per_covered_day(self):
        windows = resolve_windows(monitor(excluded=[0, 6]), date(2024, 1, 1), date(2024, 1, 15), UTC)
        assert len(windows) == 10
        assert [w.target_key for w in windows][:5] == [
            "2024-01-01", "2024-01-02", "2024-01-03", "2024-01-04", "2024-01-05",
        ]

    def test_empty_range(self):
        assert resolve_windows(monitor(), date(2024, 1, 5), date(2024, 1, 5), UTC) == []


class TestCandidateWindows:

    def setup_method(self):
        self.morning = monitor(id=1, start="08:00", end="09:30")
        self.afternoon = monitor(id=2, start="14:00", end="15:00")
        self.all_day = monitor(id=3, check_type="daily")

    def test_split_around_instant(self):
        containing, ended, upcoming = candidate_windows(
            [self.morning, self.afternoon], datetime(2024, 1, 2, 11, 0, tzinfo=UTC), UTC)
        assert containing == []
        assert [m.id for m, _ in ended] == [1]
        assert [m.id for m, _ in upcoming] == [2]

    def test_containing_ordered_by_start(self):
        containing, _, _ = candidate_windows(
            [self.morning, self.all_day], datetime(2024, 1, 2, 8, 30, tzinfo=UTC), UTC)
        assert [m.id for m, _ in containing] == [3, 1]

    def test_ended_latest_first(self):
        _, ended, _ = candidate_windows(
            [self.morning, self.afternoon], datetime(2024, 1, 2, 20, 0, tzinfo=UTC), UTC)
        assert [m.id for m, _ in ended] == [2, 1]

    def test_uses_facility_local_date(self):
        # 02:00 UTC on Jan 3 is still Jan 2 in New York
        containing, _, _ = candidate_windows(
            [self.all_day], datetime(2024, 1, 3, 2, 0, tzinfo=UTC), NY)
        assert containing[0][1].target_key == "2024-01-02"


class TestMonitorValidation:

    def test_valid_specific(self):
        assert validate_monitor({"label": "Morning", "check_type": "specific",
                                 "start_time": "08:00", "end_time": "09:30"}) == []

    def test_daily_needs_no_times(self):
        assert validate_monitor({"label": "Any time", "check_type": "daily"}) == []

    def test_label_required(self):
        assert "Label is required" in validate_monitor({"check_type": "daily"})

    def test_specific_requires_times(self):
        assert validate_monitor({"label": "M", "check_type": "specific"}) == [
            "Start and end time are required for specific check type"
        ]

    def test_time_format(self):
        assert validate_monitor({"label": "M", "start_time": "8am", "end_time": "09:30"}) == [
            "Times must be in HH:MM format"
        ]

    def test_start_before_end(self):
        assert validate_monitor({"label": "M", "start_time": "10:00", "end_time": "09:30"}) == [
            "Start time must be before end time"
        ]

    def test_bad_check_type(self):
        assert validate_monitor({"label": "M", "check_type": "hourly"}) == [
            "Check type must be specific or daily"
        ]

    def test_excluded_weekday_range(self):
        errors = validate_monitor({"label": "M", "check_type": "daily", "excluded_weekdays": [7]})
        assert errors == ["Excluded weekdays must be between 0 (Sunday) and 6 (Saturday)"]

    def test_build_monitor_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc:
            build_monitor({"label": "", "check_type": "daily"})
        assert exc.value.errors == ["Label is required"]

    def test_build_daily_drops_times(self):
        m = build_monitor({"label": "Any", "check_type": "daily", "start_time": "08:00",
                           "end_time": "09:00", "excluded_weekdays": [6, 0, 6]}, asset_id=4)
        assert m.start_time is None and m.end_time is None
        assert m.excluded_weekdays == [0, 6]
        assert m.asset_id == 4
