"""
ColdTrack — Configuration, Event Stream & Scheduler Tests
"""

from zoneinfo import ZoneInfo

import pytest

from app.compliance import scheduler_jobs
from app.compliance.config import (
    ComplianceConfig, get_all_config, get_config, get_timezone, parse_time_input, set_config,
)
from app.eventstream import emit_event, subscribe, unsubscribe
from app.eventstream.models import count_events, get_event_stats, query_events
from tests.conftest import db_count, make_checklist


class TestConfig:

    def test_defaults_are_typed(self, db):
        assert get_config("horizon_days") == 60
        assert get_config("scheduler_enabled") is True
        assert get_config("severity_critical_delta") == 2.0
        assert get_config("timezone") == "UTC"

    def test_set_persists_across_cache_reset(self, db):
        set_config("horizon_days", 30, user="admin")
        ComplianceConfig.reset_cache()
        assert get_config("horizon_days") == 30

    def test_bool_round_trip(self, db):
        set_config("scheduler_enabled", False)
        ComplianceConfig.reset_cache()
        assert get_config("scheduler_enabled") is False

    def test_timezone_validated(self, db):
        with pytest.raises(ValueError):
            set_config("timezone", "Mars/Olympus_Mons")
        set_config("timezone", "Europe/London")
        assert get_timezone() == ZoneInfo("Europe/London")

    def test_get_all_by_category(self, db):
        assert set(ComplianceConfig.get_all("generation")) == {"backfill_days", "horizon_days"}
        assert "preview_limit" in get_all_config()

    def test_parse_time_input(self):
        assert parse_time_input("06:45") == (6, 45)
        assert parse_time_input("nonsense", (0, 30)) == (0, 30)
        assert parse_time_input(None, (1, 2)) == (1, 2)


class TestEventStream:

    def test_emit_records_event(self, db):
        event_id = emit_event("OCCURRENCE_COMPLETED", owner_kind="checklist", owner_id=3,
                              occurrence_id=11, user="amy", summary="done",
                              details={"target_key": "2024-01-01"}, timestamp="2024-01-01T10:00:00+00:00")
        assert event_id is not None
        (ev,) = query_events(event_type="OCCURRENCE_COMPLETED")
        assert ev["category"] == "occurrence"
        assert ev["severity"] == "info"
        assert ev["timestamp"] == "2024-01-01T10:00:00+00:00"
        assert ev["details"] == {"target_key": "2024-01-01"}

    def test_default_severity_and_category(self, db):
        emit_event("TEMPERATURE_OUT_OF_RANGE")
        emit_event("OCCURRENCES_MISSED")
        emit_event("GENERATION_RUN")
        stats = get_event_stats()
        assert stats["total"] == 3
        assert stats["by_severity"] == {"alert": 1, "warning": 1, "info": 1}
        assert count_events(category="system") == 1
        assert count_events(category="temperature") == 1

    def test_subscribers_receive_events(self, db):
        received = []
        subscribe(received.append)
        try:
            emit_event("OCCURRENCE_OVERRIDDEN", owner_kind="monitor", owner_id=2, user="sup")
        finally:
            unsubscribe(received.append)
        assert len(received) == 1
        assert received[0]["event_type"] == "OCCURRENCE_OVERRIDDEN"
        assert received[0]["owner_kind"] == "monitor"

    def test_failing_subscriber_never_breaks_caller(self, db):
        def broken(payload):
            raise RuntimeError("downstream offline")

        subscribe(broken)
        try:
            assert emit_event("GENERATION_RUN") is not None
        finally:
            unsubscribe(broken)
        assert db_count("event_stream") == 1


class TestScheduler:

    def test_disabled_by_config(self, db):
        set_config("scheduler_enabled", False)
        assert scheduler_jobs.init_compliance_scheduler() is False

    def test_sweep_job_uses_wall_clock(self, db):
        make_checklist(schedule={"cadence": "DAILY", "start_date": "2024-01-01"})
        scheduler_jobs.run_sweep()
        assert db_count("occurrences", "status = 'MISSED'") == 60
