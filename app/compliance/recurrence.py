"""
ColdTrack Compliance: Recurrence Resolver

Expands a checklist ScheduleRule into target keys:
- DAILY   -> every calendar date, keyed YYYY-MM-DD
- DOW     -> dates whose weekday is listed (0 = Sunday .. 6 = Saturday)
- WEEKLY  -> one ISO week per overlapped week, keyed YYYY-Www

Pure functions: nothing here touches storage or the wall clock. Preview and
generation both go through resolve_schedule so they cannot disagree.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigurationError
from .models import Cadence, ScheduleRule, parse_date

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
WEEK_KEY_RE = re.compile(r"^(\d{4})-W(\d{2})$")

VALID_CADENCES = {c.value for c in Cadence}


def weekday_of(d: date) -> int:
    """Weekday with 0 = Sunday."""
    return d.isoweekday() % 7


def iso_week_key(d: date) -> str:
    iso_year, iso_week, _ = d.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def parse_week_key(key: str) -> date:
    """Monday of the ISO week named by a YYYY-Www key."""
    m = WEEK_KEY_RE.match(key or "")
    if not m:
        raise ValueError(f"Invalid week key: {key!r}")
    return date.fromisocalendar(int(m.group(1)), int(m.group(2)), 1)


def week_bounds(key: str) -> Tuple[date, date]:
    """[monday, next monday) for an ISO week key."""
    monday = parse_week_key(key)
    return monday, monday + timedelta(days=7)


def is_week_key(key: str) -> bool:
    return bool(WEEK_KEY_RE.match(key or ""))


def local_midnight(d: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, time(0, 0), tzinfo=tz)


def _valid_date_string(value) -> bool:
    if isinstance(value, date):
        return True
    if not isinstance(value, str) or not DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


# ============================================================================
# Validation
# ============================================================================

def validate_schedule(data: Dict[str, Any]) -> List[str]:
    """Return every problem with a schedule definition (empty when valid)."""
    errors = []
    cadence = data.get("cadence")
    start_date = data.get("start_date")
    end_date = data.get("end_date")
    days = data.get("days_of_week")

    if not cadence:
        errors.append("Cadence is required")
    elif str(cadence).upper() not in VALID_CADENCES:
        errors.append("Cadence must be DAILY, DOW, or WEEKLY")

    if not start_date:
        errors.append("Start date is required")
    elif not _valid_date_string(start_date):
        errors.append("Start date must be in YYYY-MM-DD format")

    if end_date:
        if not _valid_date_string(end_date):
            errors.append("End date must be in YYYY-MM-DD format")
        elif start_date and _valid_date_string(start_date):
            if parse_date(end_date) <= parse_date(start_date):
                errors.append("End date must be after start date")

    if cadence and str(cadence).upper() == Cadence.DOW.value:
        if not days:
            errors.append("Days of week must be specified for DOW cadence")
        elif not all(isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6 for d in days):
            errors.append("Days of week must be between 0 (Sunday) and 6 (Saturday)")

    tz_name = data.get("timezone")
    if tz_name:
        try:
            ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            errors.append("Timezone must be a valid IANA name")

    return errors


def build_schedule_rule(data: Dict[str, Any], checklist_id: Optional[int] = None,
                        created_by: Optional[str] = None,
                        default_timezone: str = "UTC") -> ScheduleRule:
    """Validate a definition and turn it into an (unsaved) ScheduleRule."""
    errors = validate_schedule(data)
    if errors:
        raise ConfigurationError(errors[0], errors)

    cadence = Cadence(str(data["cadence"]).upper())
    days = sorted(set(data.get("days_of_week") or [])) if cadence == Cadence.DOW else []
    return ScheduleRule(
        checklist_id=checklist_id,
        cadence=cadence,
        days_of_week=days,
        start_date=parse_date(data["start_date"]),
        end_date=parse_date(data.get("end_date")),
        timezone=data.get("timezone") or default_timezone,
        is_active=bool(data.get("is_active", True)),
        created_by=created_by,
    )


# ============================================================================
# Resolution
# ============================================================================

def _clip(rule: ScheduleRule, from_date: date, to_date: date) -> Tuple[date, date]:
    start = max(from_date, rule.start_date)
    end = min(to_date, rule.end_date) if rule.end_date else to_date
    return start, end


def _check_rule(rule: ScheduleRule):
    if rule.cadence == Cadence.DOW and not rule.days_of_week:
        raise ConfigurationError("Days of week must be specified for DOW cadence")


def resolve_schedule(rule: ScheduleRule, from_date: date, to_date: date) -> List[str]:
    """Ordered, unique target keys the rule requires within [from_date, to_date)."""
    _check_rule(rule)
    if not rule.is_active:
        return []

    start, end = _clip(rule, from_date, to_date)
    if start >= end:
        return []

    keys = []
    if rule.cadence == Cadence.WEEKLY:
        monday = start - timedelta(days=start.weekday())
        while monday < end:
            keys.append(iso_week_key(monday))
            monday += timedelta(days=7)
        return keys

    wanted = set(rule.days_of_week) if rule.cadence == Cadence.DOW else None
    d = start
    while d < end:
        if wanted is None or weekday_of(d) in wanted:
            keys.append(d.isoformat())
        d += timedelta(days=1)
    return keys


def target_key_for(rule: ScheduleRule, local_date: date) -> Optional[str]:
    """The key an event on local_date counts toward, or None if not required."""
    _check_rule(rule)
    if local_date < rule.start_date:
        return None
    if rule.end_date and local_date >= rule.end_date:
        return None
    if rule.cadence == Cadence.WEEKLY:
        return iso_week_key(local_date)
    if rule.cadence == Cadence.DOW and weekday_of(local_date) not in rule.days_of_week:
        return None
    return local_date.isoformat()


def due_interval(rule: ScheduleRule, key: str) -> Tuple[datetime, datetime]:
    """Half-open due interval in the rule's timezone."""
    tz = ZoneInfo(rule.timezone or "UTC")
    if is_week_key(key):
        first, after = week_bounds(key)
    else:
        first = date.fromisoformat(key)
        after = first + timedelta(days=1)
    return local_midnight(first, tz), local_midnight(after, tz)


# ============================================================================
# Preview
# ============================================================================

def display_for(key: str) -> str:
    if is_week_key(key):
        monday, after = week_bounds(key)
        sunday = after - timedelta(days=1)
        return f"Week of {monday:%b} {monday.day} - {sunday:%b} {sunday.day}"
    d = date.fromisoformat(key)
    return f"{d:%A}, {d:%B} {d.day}, {d.year}"


def preview(rule: ScheduleRule, today: date, days_ahead: int = 30, limit: int = 10) -> List[Dict[str, str]]:
    """Next required instances starting today, for the schedule editor."""
    keys = resolve_schedule(rule, today, today + timedelta(days=days_ahead))
    out = []
    for key in keys[:limit]:
        first = parse_week_key(key) if is_week_key(key) else date.fromisoformat(key)
        out.append({
            "target_key": key,
            "date": first.isoformat(),
            "display_date": display_for(key),
        })
    return out
