# ============================================================================
# ColdTrack Compliance - Aggregator
# ============================================================================
# Folds occurrences into compliance records. One scan over the occurrences
# whose owner-local date falls in the period feeds every requested grouping:
#   owner     checklist:<id> / monitor:<id>
#   subject   checklist:<id> / asset:<id>   (a fridge's monitors fold together)
#   day       YYYY-MM-DD     (ISO week occurrences fold onto their Monday)
#   week      YYYY-Www
#   facility  one record for everything
#
# An occurrence belongs to the owner-local date of its key (a week key to its
# Monday), never to the UTC instants of its due interval, so an owner in
# another timezone than the facility is counted once per day.
# Only occurrences with due_start <= as_of count; future work is ignored.
# Records are always recomputable; snapshot_daily materializes them.
# ============================================================================

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .models import (
    _ts, to_iso, Occurrence, OccurrenceStatus, OwnerKind,
    AssetRepository, ChecklistRepository, MonitorRepository,
    OccurrenceRepository, RecordRepository, ScheduleRepository,
)
from .recurrence import is_week_key, iso_week_key, parse_week_key

logger = logging.getLogger("compliance.aggregator")

GROUPINGS = ("owner", "subject", "day", "week", "facility")


@dataclass
class Period:
    """Half-open [start, end) range of owner-local dates."""
    start: date
    end: date

    def week_keys(self) -> List[str]:
        """ISO weeks whose Monday falls inside the period."""
        monday = self.start + timedelta(days=(7 - self.start.weekday()) % 7)
        keys = []
        while monday < self.end:
            keys.append(iso_week_key(monday))
            monday += timedelta(days=7)
        return keys

    def occurrences(self, owners: Optional[List[Tuple[OwnerKind, int]]] = None) -> List[Occurrence]:
        if self.start >= self.end:
            return []
        return OccurrenceRepository.list_for_dates(self.start, self.end, self.week_keys(), owners=owners)

    def to_dict(self):
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class ComplianceRecord:
    group_key: str
    required_count: int = 0
    completed_count: int = 0
    on_time_count: int = 0
    late_count: int = 0
    missed_count: int = 0
    overridden_count: int = 0
    pending_count: int = 0
    temperature_count: int = 0
    alert_count: int = 0

    def add(self, occ: Occurrence):
        self.required_count += 1
        if occ.status == OccurrenceStatus.COMPLETED:
            self.completed_count += 1
            if occ.is_overridden:
                self.overridden_count += 1
            elif occ.is_on_time:
                self.on_time_count += 1
            else:
                self.late_count += 1
            if occ.owner_kind == OwnerKind.MONITOR and not occ.is_overridden:
                self.temperature_count += 1
                if (occ.completion_payload or {}).get("is_alert"):
                    self.alert_count += 1
        elif occ.status == OccurrenceStatus.MISSED:
            self.missed_count += 1
        else:
            self.pending_count += 1

    @staticmethod
    def _rate(num: int, den: int) -> float:
        return round(num / den, 4) if den else 0.0

    @property
    def completion_rate(self) -> float:
        return self._rate(self.completed_count, self.required_count)

    @property
    def on_time_rate(self) -> float:
        return self._rate(self.on_time_count, self.required_count)

    @property
    def temperature_rate(self) -> float:
        """Share of logged readings that were inside the fridge's range."""
        return self._rate(self.temperature_count - self.alert_count, self.temperature_count)

    @property
    def status(self) -> str:
        if self.required_count == 0:
            return "compliant"
        if self.completed_count == self.required_count:
            return "compliant" if self.on_time_count == self.required_count else "late"
        if self.completed_count == 0:
            return "missed"
        return "partial"

    def to_dict(self):
        return {
            "group_key": self.group_key,
            "required_count": self.required_count,
            "completed_count": self.completed_count,
            "on_time_count": self.on_time_count,
            "late_count": self.late_count,
            "missed_count": self.missed_count,
            "overridden_count": self.overridden_count,
            "pending_count": self.pending_count,
            "alert_count": self.alert_count,
            "completion_rate": self.completion_rate,
            "on_time_rate": self.on_time_rate,
            "temperature_rate": self.temperature_rate,
            "status": self.status,
        }


def _day_of(occ: Occurrence) -> date:
    if is_week_key(occ.target_key):
        return parse_week_key(occ.target_key)
    return date.fromisoformat(occ.target_key)


def _keys_for(occ: Occurrence, dims: Iterable[str], monitor_assets: Dict[int, int]) -> Dict[str, str]:
    keys = {}
    for dim in dims:
        if dim == "owner":
            keys[dim] = f"{occ.owner_kind.value}:{occ.owner_id}"
        elif dim == "subject":
            if occ.owner_kind == OwnerKind.MONITOR:
                keys[dim] = f"asset:{monitor_assets.get(occ.owner_id, 0)}"
            else:
                keys[dim] = f"checklist:{occ.owner_id}"
        elif dim == "day":
            keys[dim] = _day_of(occ).isoformat()
        elif dim == "week":
            keys[dim] = iso_week_key(_day_of(occ))
        else:
            keys[dim] = "facility"
    return keys


def parse_group_by(group_by) -> List[str]:
    if not group_by:
        return ["facility"]
    if isinstance(group_by, str):
        group_by = [g.strip() for g in group_by.split(",") if g.strip()]
    unknown = [g for g in group_by if g not in GROUPINGS]
    if unknown:
        raise ValidationError(f"Unknown grouping: {', '.join(unknown)} (use {', '.join(GROUPINGS)})")
    return list(dict.fromkeys(group_by))


def aggregate(owners: Optional[List[Tuple[OwnerKind, int]]], period: Period,
              group_by=None, as_of: Optional[datetime] = None) -> Dict[str, Any]:
    """Compliance records for the period, one list per requested grouping."""
    dims = parse_group_by(group_by)
    if as_of is None or as_of.tzinfo is None:
        raise ValidationError("as_of must be a timezone-aware datetime")

    buckets: Dict[str, Dict[str, ComplianceRecord]] = {d: {} for d in dims}
    occurrences = period.occurrences(owners)
    monitor_assets = {}
    if "subject" in dims:
        monitor_assets = {m.id: m.asset_id for m in _all_monitors(occurrences)}
    for occ in occurrences:
        if occ.due_start > as_of:
            continue
        for dim, key in _keys_for(occ, dims, monitor_assets).items():
            rec = buckets[dim].get(key)
            if rec is None:
                rec = buckets[dim][key] = ComplianceRecord(group_key=key)
            rec.add(occ)

    if "facility" in buckets and not buckets["facility"]:
        buckets["facility"]["facility"] = ComplianceRecord(group_key="facility")

    return {
        "period": period.to_dict(),
        "as_of": to_iso(as_of),
        "groups": {
            dim: [buckets[dim][k].to_dict() for k in sorted(buckets[dim])]
            for dim in dims
        },
    }


def _all_monitors(occurrences: List[Occurrence]):
    ids = {o.owner_id for o in occurrences if o.owner_kind == OwnerKind.MONITOR}
    return [m for m in (MonitorRepository.get(i) for i in sorted(ids)) if m is not None]


def trend(owners: Optional[List[Tuple[OwnerKind, int]]], start: date, periods: int,
          step_days: int, as_of: datetime) -> List[Dict[str, Any]]:
    """Facility record for each consecutive step_days-long sub-period."""
    if periods < 1 or step_days < 1:
        raise ValidationError("periods and step_days must be positive")
    out = []
    for i in range(periods):
        p = Period(start + timedelta(days=i * step_days), start + timedelta(days=(i + 1) * step_days))
        result = aggregate(owners, p, ["facility"], as_of)
        out.append({"period": p.to_dict(), **result["groups"]["facility"][0]})
    return out


def snapshot_daily(day: date, as_of: datetime) -> int:
    """Materialize owner and facility records for one day. Returns rows written."""
    result = aggregate(None, Period(day, day + timedelta(days=1)), ["owner", "facility"], as_of)
    written = 0
    stamp = _ts()
    for level, records in result["groups"].items():
        for rec in records:
            RecordRepository.upsert(level, rec["group_key"], day, day + timedelta(days=1), rec, stamp)
            written += 1
    logger.info(f"[Compliance] Snapshot for {day}: {written} records")
    return written


# ============================================================================
# Views over occurrences (dashboards / calendar / reminders)
# ============================================================================

def describe_owners(occurrences: List[Occurrence]) -> Dict[Tuple[str, int], Dict[str, Any]]:
    """Display info for each owner: name, subject and cadence / check type."""
    info = {}
    for occ in occurrences:
        key = (occ.owner_kind.value, occ.owner_id)
        if key in info:
            continue
        if occ.owner_kind == OwnerKind.CHECKLIST:
            checklist = ChecklistRepository.get(occ.owner_id)
            rule = ScheduleRepository.get(occ.source_id) if occ.source_id else None
            info[key] = {
                "owner_name": checklist.name if checklist else f"Checklist {occ.owner_id}",
                "subject": f"checklist:{occ.owner_id}",
                "cadence": rule.cadence.value if rule else None,
            }
        else:
            monitor = MonitorRepository.get(occ.owner_id)
            asset = AssetRepository.get(monitor.asset_id) if monitor else None
            label = monitor.label if monitor else f"Monitor {occ.owner_id}"
            info[key] = {
                "owner_name": f"{asset.name} - {label}" if asset else label,
                "subject": f"asset:{monitor.asset_id}" if monitor else None,
                "cadence": monitor.check_type.value if monitor else None,
            }
    return info


def _with_owner(occurrences: List[Occurrence]) -> List[Dict[str, Any]]:
    info = describe_owners(occurrences)
    rows = []
    for occ in occurrences:
        d = occ.to_dict()
        d.update(info[(occ.owner_kind.value, occ.owner_id)])
        rows.append(d)
    return rows


def get_upcoming(now: datetime, days_before: int = 1) -> List[Dict[str, Any]]:
    """REQUIRED occurrences still open now or due within days_before days."""
    occurrences = OccurrenceRepository.list_upcoming(now, now + timedelta(days=days_before))
    rows = _with_owner(occurrences)
    for row, occ in zip(rows, occurrences):
        row["overdue_in_minutes"] = int((occ.due_end - now).total_seconds() // 60)
    return rows


def calendar(from_date: date, to_date: date,
             owners: Optional[List[Tuple[OwnerKind, int]]] = None) -> List[Dict[str, Any]]:
    """Every occurrence dated in [from_date, to_date), with owner details."""
    return _with_owner(Period(from_date, to_date).occurrences(owners))
