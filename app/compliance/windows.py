"""
ColdTrack Compliance: Window Monitor Resolver

Turns a fridge's WindowMonitor into concrete due windows, one per covered
local date. A "specific" monitor is [start_time, end_time) in the facility
timezone; a "daily" monitor spans the whole local day, which is 23 or 25
hours long on DST transition days.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .errors import ConfigurationError
from .models import CheckType, WindowMonitor
from .recurrence import local_midnight, weekday_of

TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

VALID_CHECK_TYPES = {c.value for c in CheckType}


@dataclass(frozen=True)
class DueWindow:
    target_key: str
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


def _parse_hhmm(value: str) -> time:
    m = TIME_RE.match(value or "")
    if not m:
        raise ValueError(f"Invalid time: {value!r}")
    return time(int(m.group(1)), int(m.group(2)))


def validate_monitor(data: Dict[str, Any]) -> List[str]:
    errors = []
    check_type = data.get("check_type") or CheckType.SPECIFIC.value

    if not (data.get("label") or "").strip():
        errors.append("Label is required")

    if check_type not in VALID_CHECK_TYPES:
        errors.append("Check type must be specific or daily")
    elif check_type == CheckType.SPECIFIC.value:
        start, end = data.get("start_time"), data.get("end_time")
        if not start or not end:
            errors.append("Start and end time are required for specific check type")
        elif not TIME_RE.match(start) or not TIME_RE.match(end):
            errors.append("Times must be in HH:MM format")
        elif _parse_hhmm(start) >= _parse_hhmm(end):
            errors.append("Start time must be before end time")

    excluded = data.get("excluded_weekdays") or []
    if not all(isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6 for d in excluded):
        errors.append("Excluded weekdays must be between 0 (Sunday) and 6 (Saturday)")

    return errors


def build_monitor(data: Dict[str, Any], asset_id: Optional[int] = None) -> WindowMonitor:
    errors = validate_monitor(data)
    if errors:
        raise ConfigurationError(errors[0], errors)

    check_type = CheckType(data.get("check_type") or CheckType.SPECIFIC.value)
    specific = check_type == CheckType.SPECIFIC
    return WindowMonitor(
        asset_id=asset_id,
        label=data["label"].strip(),
        check_type=check_type,
        start_time=data.get("start_time") if specific else None,
        end_time=data.get("end_time") if specific else None,
        excluded_weekdays=sorted(set(data.get("excluded_weekdays") or [])),
        is_active=bool(data.get("is_active", True)),
    )


def covers(monitor: WindowMonitor, local_date: date) -> bool:
    return monitor.is_active and weekday_of(local_date) not in monitor.excluded_weekdays


def window_for(monitor: WindowMonitor, local_date: date, tz: ZoneInfo) -> Optional[DueWindow]:
    """The monitor's window on local_date, or None when that day is excluded."""
    if not covers(monitor, local_date):
        return None
    key = local_date.isoformat()
    if monitor.check_type == CheckType.DAILY:
        return DueWindow(key, local_midnight(local_date, tz),
                         local_midnight(local_date + timedelta(days=1), tz))
    start = datetime.combine(local_date, _parse_hhmm(monitor.start_time), tzinfo=tz)
    end = datetime.combine(local_date, _parse_hhmm(monitor.end_time), tzinfo=tz)
    return DueWindow(key, start, end)


def resolve_windows(monitor: WindowMonitor, from_date: date, to_date: date, tz: ZoneInfo) -> List[DueWindow]:
    """Due windows for every covered local date in [from_date, to_date)."""
    out = []
    d = from_date
    while d < to_date:
        w = window_for(monitor, d, tz)
        if w is not None:
            out.append(w)
        d += timedelta(days=1)
    return out


def candidate_windows(monitors: List[WindowMonitor], instant: datetime,
                      tz: ZoneInfo) -> Tuple[list, list, list]:
    """Split the day's windows around an instant.

    Returns (containing, ended, upcoming) lists of (monitor, window):
    containing ordered by start, ended latest-first, upcoming earliest-first.
    """
    local_date = instant.astimezone(tz).date()
    containing, ended, upcoming = [], [], []
    for m in monitors:
        w = window_for(m, local_date, tz)
        if w is None:
            continue
        if w.contains(instant):
            containing.append((m, w))
        elif w.end <= instant:
            ended.append((m, w))
        else:
            upcoming.append((m, w))
    containing.sort(key=lambda mw: (mw[1].start, mw[0].id or 0))
    ended.sort(key=lambda mw: (mw[1].end, mw[0].id or 0), reverse=True)
    upcoming.sort(key=lambda mw: (mw[1].start, mw[0].id or 0))
    return containing, ended, upcoming
