"""
ColdTrack — Recurrence Resolver Tests
=====================================
Pure date math: no database needed.
"""

from datetime import date, datetime, timezone

import pytest

from app.compliance.errors import ConfigurationError
from app.compliance.models import Cadence, ScheduleRule
from app.compliance.recurrence import (
    build_schedule_rule, display_for, due_interval, iso_week_key, parse_week_key,
    preview, resolve_schedule, target_key_for, validate_schedule, week_bounds, weekday_of,
)


def rule(cadence, start="2024-01-01", end=None, days=None, active=True, tz="UTC"):
    return ScheduleRule(
        id=1, checklist_id=1, cadence=Cadence(cadence), days_of_week=days or [],
        start_date=date.fromisoformat(start),
        end_date=date.fromisoformat(end) if end else None,
        timezone=tz, is_active=active,
    )


class TestResolveSchedule:

    def test_daily_covers_every_date_in_half_open_range(self):
        keys = resolve_schedule(rule("DAILY"), date(2024, 1, 1), date(2024, 1, 10))
        assert len(keys) == 9
        assert keys[0] == "2024-01-01"
        assert keys[-1] == "2024-01-09"

    def test_dow_mon_wed_fri_over_two_weeks(self):
        keys = resolve_schedule(rule("DOW", days=[1, 3, 5]), date(2024, 1, 1), date(2024, 1, 15))
        assert keys == ["2024-01-01", "2024-01-03", "2024-01-05",
                        "2024-01-08", "2024-01-10", "2024-01-12"]

    def test_dow_sunday_is_zero(self):
        keys = resolve_schedule(rule("DOW", days=[0]), date(2024, 1, 1), date(2024, 1, 15))
        assert keys == ["2024-01-07", "2024-01-14"]

    def test_weekly_one_key_per_overlapped_iso_week(self):
        keys = resolve_schedule(rule("WEEKLY"), date(2024, 1, 3), date(2024, 1, 16))
        assert keys == ["2024-W01", "2024-W02", "2024-W03"]

    def test_weekly_across_year_boundary(self):
        keys = resolve_schedule(rule("WEEKLY", start="2024-12-01"), date(2024, 12, 30), date(2025, 1, 6))
        assert keys == ["2025-W01"]

    def test_clipped_to_rule_start_and_end(self):
        r = rule("DAILY", start="2024-01-05", end="2024-01-08")
        assert resolve_schedule(r, date(2024, 1, 1), date(2024, 1, 31)) == [
            "2024-01-05", "2024-01-06", "2024-01-07",
        ]

    def test_start_equals_end_is_empty(self):
        r = rule("DAILY", start="2024-01-05", end="2024-01-05")
        assert resolve_schedule(r, date(2024, 1, 1), date(2024, 1, 31)) == []

    def test_empty_range_is_empty(self):
        assert resolve_schedule(rule("DAILY"), date(2024, 1, 5), date(2024, 1, 5)) == []

    def test_inactive_rule_resolves_to_nothing(self):
        assert resolve_schedule(rule("DAILY", active=False), date(2024, 1, 1), date(2024, 1, 10)) == []

    def test_dow_without_days_raises(self):
        with pytest.raises(ConfigurationError):
            resolve_schedule(rule("DOW", days=[]), date(2024, 1, 1), date(2024, 1, 10))

    def test_keys_are_ordered_and_unique(self):
        keys = resolve_schedule(rule("DOW", days=[5, 1, 3]), date(2024, 1, 1), date(2024, 3, 1))
        assert keys == sorted(set(keys))


class TestWeekKeys:

    def test_iso_week_key_pads_week_number(self):
        assert iso_week_key(date(2024, 1, 1)) == "2024-W01"
        assert iso_week_key(date(2024, 12, 30)) == "2025-W01"
        assert iso_week_key(date(2021, 1, 3)) == "2020-W53"

    def test_parse_week_key_returns_monday(self):
        assert parse_week_key("2025-W01") == date(2024, 12, 30)

    def test_parse_week_key_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_week_key("2024-01-01")

    def test_week_bounds(self):
        assert week_bounds("2024-W02") == (date(2024, 1, 8), date(2024, 1, 15))

    def test_weekday_zero_is_sunday(self):
        assert weekday_of(date(2024, 1, 7)) == 0
        assert weekday_of(date(2024, 1, 6)) == 6


class TestTargetKeyAndDueInterval:

    def test_target_key_for_daily(self):
        assert target_key_for(rule("DAILY"), date(2024, 1, 3)) == "2024-01-03"

    def test_target_key_for_unrequired_dow_date(self):
        assert target_key_for(rule("DOW", days=[1]), date(2024, 1, 2)) is None

    def test_target_key_for_weekly(self):
        assert target_key_for(rule("WEEKLY"), date(2024, 1, 10)) == "2024-W02"

    def test_target_key_outside_rule_dates(self):
        r = rule("DAILY", start="2024-01-05", end="2024-01-10")
        assert target_key_for(r, date(2024, 1, 4)) is None
        assert target_key_for(r, date(2024, 1, 10)) is None

    def test_daily_due_interval_is_whole_local_day(self):
        start, end = due_interval(rule("DAILY", tz="America/New_York"), "2024-01-03")
        assert start.astimezone(timezone.utc) == datetime(2024, 1, 3, 5, 0, tzinfo=timezone.utc)
        assert end.astimezone(timezone.utc) == datetime(2024, 1, 4, 5, 0, tzinfo=timezone.utc)

    def test_weekly_due_interval_is_whole_iso_week(self):
        start, end = due_interval(rule("WEEKLY"), "2025-W01")
        assert start.date() == date(2024, 12, 30)
        assert end.date() == date(2025, 1, 6)


class TestValidation:

    def test_valid_definition_has_no_errors(self):
        assert validate_schedule({"cadence": "DAILY", "start_date": "2024-01-01"}) == []

    def test_missing_fields(self):
        errors = validate_schedule({})
        assert "Cadence is required" in errors
        assert "Start date is required" in errors

    def test_bad_cadence(self):
        assert validate_schedule({"cadence": "HOURLY", "start_date": "2024-01-01"}) == [
            "Cadence must be DAILY, DOW, or WEEKLY"
        ]

    def test_bad_dates(self):
        errors = validate_schedule({"cadence": "DAILY", "start_date": "01/01/2024", "end_date": "soon"})
        assert "Start date must be in YYYY-MM-DD format" in errors
        assert "End date must be in YYYY-MM-DD format" in errors

    def test_end_not_after_start(self):
        errors = validate_schedule({"cadence": "DAILY", "start_date": "2024-01-05", "end_date": "2024-01-05"})
        assert errors == ["End date must be after start date"]

    def test_dow_day_rules(self):
        assert validate_schedule({"cadence": "DOW", "start_date": "2024-01-01"}) == [
            "Days of week must be specified for DOW cadence"
        ]
        assert validate_schedule({"cadence": "DOW", "start_date": "2024-01-01", "days_of_week": [7]}) == [
            "Days of week must be between 0 (Sunday) and 6 (Saturday)"
        ]

    def test_build_rejects_invalid_rule(self):
        with pytest.raises(ConfigurationError) as exc:
            build_schedule_rule({"cadence": "DOW", "start_date": "2024-01-01", "days_of_week": []})
        assert exc.value.status_code == 400
        assert exc.value.errors == ["Days of week must be specified for DOW cadence"]

    def test_build_normalizes_days(self):
        r = build_schedule_rule({"cadence": "dow", "start_date": "2024-01-01", "days_of_week": [5, 1, 5]})
        assert r.cadence == Cadence.DOW
        assert r.days_of_week == [1, 5]


class TestPreview:

    def test_preview_daily_display(self):
        out = preview(rule("DAILY"), date(2024, 1, 1))
        assert len(out) == 10
        assert out[0]["display_date"] == "Monday, January 1, 2024"

    def test_preview_weekly_display(self):
        out = preview(rule("WEEKLY"), date(2024, 1, 1), days_ahead=14)
        assert [o["target_key"] for o in out] == ["2024-W01", "2024-W02"]
        assert out[0]["display_date"] == "Week of Jan 1 - Jan 7"

    def test_preview_uses_same_resolver_as_generation(self):
        r = rule("DOW", days=[2, 4])
        keys = resolve_schedule(r, date(2024, 1, 1), date(2024, 1, 31))
        assert [o["target_key"] for o in preview(r, date(2024, 1, 1))] == keys[:10]

    def test_display_for_week_spanning_months(self):
        assert display_for("2024-W05") == "Week of Jan 29 - Feb 4"
