"""
ColdTrack — Compliance Aggregation Tests
========================================
Scenario used by most tests: a DAILY checklist over Jan 1-5 2024 with
three on-time completions, one late completion and one missed day.
"""

from datetime import date, datetime

import pytest

from app.compliance.aggregator import (
    ComplianceRecord, Period, aggregate, calendar, get_upcoming, snapshot_daily, trend,
)
from app.compliance.errors import ValidationError
from app.compliance.models import OccurrenceRepository, OwnerKind, RecordRepository
from app.compliance.reconciler import reconcile_checklist, reconcile_reading
from app.compliance.sweeper import override, sweep
from tests.conftest import all_items_checked, at, make_checklist, make_fridge, save_artifact

DAILY = {"cadence": "DAILY", "start_date": "2024-01-01"}


def five_day_scenario():
    cid = make_checklist(schedule=DAILY)
    items = all_items_checked(cid)
    for day in (1, 2, 3):
        reconcile_checklist({"checklist_id": cid, "occurred_at": at(2024, 1, day, 10), "items": items})
    jan4 = OccurrenceRepository.get_by_key(OwnerKind.CHECKLIST, cid, "2024-01-04")
    reconcile_checklist({"checklist_id": cid, "occurred_at": at(2024, 1, 5, 10),
                         "occurrence_id": jan4.id, "items": items})
    sweep(at(2024, 1, 6, 0, 1))
    return cid


def facility(result):
    (rec,) = result["groups"]["facility"]
    return rec


class TestRates:

    def test_completion_and_on_time_rates(self, db):
        five_day_scenario()
        rec = facility(aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 6)), as_of=at(2024, 1, 6)))
        save_artifact("five_day_facility.json", rec)

        assert rec["required_count"] == 5
        assert rec["completed_count"] == 4
        assert rec["on_time_count"] == 3
        assert rec["late_count"] == 1
        assert rec["missed_count"] == 1
        assert rec["completion_rate"] == 0.8
        assert rec["on_time_rate"] == 0.6
        assert rec["status"] == "partial"

    def test_future_occurrences_are_ignored(self, db):
        five_day_scenario()
        rec = facility(aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 31)), as_of=at(2024, 1, 6)))
        # Jan 6 is due from midnight, so it counts (still pending); Jan 7 onward does not
        assert rec["required_count"] == 6
        assert rec["pending_count"] == 1

    def test_override_counts_as_completed_but_not_on_time(self, db):
        cid = five_day_scenario()
        jan5 = OccurrenceRepository.get_by_key(OwnerKind.CHECKLIST, cid, "2024-01-05")
        override(jan5.id, "supervisor", "Paper log found", at(2024, 1, 6, 9))

        rec = facility(aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 6)), as_of=at(2024, 1, 6, 12)))
        assert rec["completed_count"] == 5
        assert rec["on_time_count"] == 3
        assert rec["overridden_count"] == 1
        assert rec["completion_rate"] == 1.0
        assert rec["status"] == "late"

    def test_empty_period_is_zero_not_error(self, db):
        rec = facility(aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 6)), as_of=at(2024, 1, 6)))
        assert rec["required_count"] == 0
        assert rec["completion_rate"] == 0.0
        assert rec["on_time_rate"] == 0.0
        assert rec["status"] == "compliant"

    def test_inverted_period_is_empty(self, db):
        five_day_scenario()
        rec = facility(aggregate(None, Period(date(2024, 1, 6), date(2024, 1, 1)), as_of=at(2024, 1, 6)))
        assert rec["required_count"] == 0

    def test_owner_filter(self, db):
        cid = five_day_scenario()
        other = make_checklist(name="Other", schedule=DAILY)
        period = Period(date(2024, 1, 1), date(2024, 1, 6))
        assert facility(aggregate(None, period, as_of=at(2024, 1, 6)))["required_count"] == 10
        assert facility(aggregate([(OwnerKind.CHECKLIST, cid)], period, as_of=at(2024, 1, 6)))["required_count"] == 5
        assert facility(aggregate([(OwnerKind.CHECKLIST, other)], period,
                                  as_of=at(2024, 1, 6)))["status"] == "missed"

    def test_rates_rounded_to_four_places(self):
        rec = ComplianceRecord(group_key="x", required_count=3, completed_count=2, on_time_count=1)
        assert rec.completion_rate == 0.6667
        assert rec.on_time_rate == 0.3333


class TestStatusLabels:

    @pytest.mark.parametrize("required,completed,on_time,expected", [
        (0, 0, 0, "compliant"),
        (4, 4, 4, "compliant"),
        (4, 4, 3, "late"),
        (4, 0, 0, "missed"),
        (4, 2, 2, "partial"),
    ])
    def test_status(self, required, completed, on_time, expected):
        rec = ComplianceRecord(group_key="x", required_count=required,
                               completed_count=completed, on_time_count=on_time)
        assert rec.status == expected


class TestGroupings:

    def _mixed(self):
        cid = make_checklist(schedule=DAILY)
        asset_id, (mid,) = make_fridge()
        for day in (1, 2):
            reconcile_checklist({"checklist_id": cid, "occurred_at": at(2024, 1, day, 10),
                                 "items": all_items_checked(cid)})
        reconcile_reading({"asset_id": asset_id, "value": 4.0, "occurred_at": at(2024, 1, 1, 8, 30)})
        reconcile_reading({"asset_id": asset_id, "value": 11.0, "occurred_at": at(2024, 1, 2, 8, 30)})
        return cid, asset_id, mid

    def test_every_grouping_from_one_call(self, db):
        cid, asset_id, mid = self._mixed()
        result = aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 3)),
                           ["owner", "subject", "day", "week", "facility"], as_of=at(2024, 1, 3))
        save_artifact("groupings.json", result)
        groups = result["groups"]

        assert [r["group_key"] for r in groups["owner"]] == [f"checklist:{cid}", f"monitor:{mid}"]
        assert [r["group_key"] for r in groups["subject"]] == [f"asset:{asset_id}", f"checklist:{cid}"]
        assert [r["group_key"] for r in groups["day"]] == ["2024-01-01", "2024-01-02"]
        assert [r["group_key"] for r in groups["week"]] == ["2024-W01"]
        assert facility(result)["required_count"] == 4
        assert all(r["required_count"] == 2 for r in groups["day"])

    def test_temperature_rate(self, db):
        cid, _, mid = self._mixed()
        result = aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 3)), "owner", as_of=at(2024, 1, 3))
        by_key = {r["group_key"]: r for r in result["groups"]["owner"]}
        assert by_key[f"monitor:{mid}"]["alert_count"] == 1
        assert by_key[f"monitor:{mid}"]["temperature_rate"] == 0.5
        assert by_key[f"checklist:{cid}"]["temperature_rate"] == 0.0

    def test_weekly_occurrence_folds_onto_monday(self, db):
        make_checklist(schedule={"cadence": "WEEKLY", "start_date": "2024-01-01"})
        result = aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 8)), ["day", "week"],
                           as_of=at(2024, 1, 8))
        assert [r["group_key"] for r in result["groups"]["day"]] == ["2024-01-01"]
        assert [r["group_key"] for r in result["groups"]["week"]] == ["2024-W01"]

    def test_unknown_grouping(self, db):
        with pytest.raises(ValidationError):
            aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 3)), "shift", as_of=at(2024, 1, 3))

    def test_naive_as_of(self, db):
        with pytest.raises(ValidationError):
            aggregate(None, Period(date(2024, 1, 1), date(2024, 1, 3)), as_of=datetime(2024, 1, 3))


class TestOwnerTimezones:
    """A New York fridge under a UTC facility: its all-day window spans two UTC dates."""

    ALL_DAY = [{"label": "All day", "check_type": "daily"}]

    def test_one_day_period_counts_one_check(self, db):
        _, (mid,) = make_fridge(timezone="America/New_York", monitors=self.ALL_DAY)
        result = aggregate(None, Period(date(2024, 1, 2), date(2024, 1, 3)), ["day", "facility"],
                           as_of=at(2024, 1, 10))
        assert [r["group_key"] for r in result["groups"]["day"]] == ["2024-01-02"]
        assert facility(result)["required_count"] == 1
        assert facility(result)["missed_count"] == 0

    def test_trend_steps_do_not_overlap(self, db):
        make_fridge(timezone="America/New_York", monitors=self.ALL_DAY)
        points = trend(None, date(2024, 1, 2), 3, 1, as_of=at(2024, 1, 10))
        assert [p["required_count"] for p in points] == [1, 1, 1]

    def test_snapshot_counts_the_local_day(self, db):
        _, (mid,) = make_fridge(timezone="America/New_York", monitors=self.ALL_DAY)
        snapshot_daily(date(2024, 1, 2), as_of=at(2024, 1, 10))
        rows = {r["level"]: r for r in RecordRepository.get_range(date(2024, 1, 2), date(2024, 1, 3))}
        assert rows["facility"]["required_count"] == 1
        assert rows["owner"]["group_key"] == f"monitor:{mid}"

    def test_calendar_lists_by_local_date(self, db):
        make_fridge(timezone="America/New_York", monitors=self.ALL_DAY)
        rows = calendar(date(2024, 1, 2), date(2024, 1, 3))
        assert [r["target_key"] for r in rows] == ["2024-01-02"]
        assert rows[0]["due_start"] == "2024-01-02T05:00:00+00:00"


class TestTrendAndSnapshots:

    def test_trend_one_record_per_period(self, db):
        five_day_scenario()
        points = trend(None, date(2024, 1, 1), 3, 2, as_of=at(2024, 1, 7))
        assert [p["period"]["start"] for p in points] == ["2024-01-01", "2024-01-03", "2024-01-05"]
        assert [p["status"] for p in points] == ["compliant", "late", "missed"]
        assert all(p["required_count"] == 2 for p in points)

    def test_trend_rejects_zero_periods(self, db):
        with pytest.raises(ValidationError):
            trend(None, date(2024, 1, 1), 0, 7, as_of=at(2024, 1, 7))

    def test_snapshot_is_recomputable(self, db):
        cid = five_day_scenario()
        assert snapshot_daily(date(2024, 1, 2), as_of=at(2024, 1, 3)) == 2
        assert snapshot_daily(date(2024, 1, 2), as_of=at(2024, 1, 3)) == 2

        rows = RecordRepository.get_range(date(2024, 1, 2), date(2024, 1, 3))
        assert sorted((r["level"], r["group_key"]) for r in rows) == [
            ("facility", "facility"), ("owner", f"checklist:{cid}"),
        ]
        assert all(r["completion_rate"] == 1.0 for r in rows)


class TestViews:

    def test_upcoming_includes_open_and_soon_due(self, db):
        cid = make_checklist(schedule=DAILY)
        rows = get_upcoming(at(2024, 1, 2, 8), days_before=1)
        assert [r["target_key"] for r in rows] == ["2024-01-02", "2024-01-03"]
        assert rows[0]["overdue_in_minutes"] == 16 * 60
        assert rows[0]["owner_name"] == "Daily fridge audit"
        assert rows[0]["owner_id"] == cid

    def test_calendar_rows_carry_owner_details(self, db):
        make_checklist(schedule=DAILY)
        _, (mid,) = make_fridge()
        rows = calendar(date(2024, 1, 1), date(2024, 1, 2))
        assert len(rows) == 2
        by_kind = {r["owner_kind"]: r for r in rows}
        assert by_kind["checklist"]["cadence"] == "DAILY"
        assert by_kind["monitor"]["owner_name"] == "Vaccine Fridge A - Morning"
        assert by_kind["monitor"]["cadence"] == "specific"
