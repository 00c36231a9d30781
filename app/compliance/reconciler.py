"""
ColdTrack Compliance — Event Reconciler

Matches recorded events (temperature readings, checklist completions) to
their occurrence and moves it REQUIRED -> COMPLETED with an on-time flag.

Outcomes per event:
  completed  - a REQUIRED occurrence was completed
  created    - no occurrence existed yet; one was created already COMPLETED
  corrected  - the occurrence was already COMPLETED; payload replaced,
               completion time and on-time flag kept
  missed     - the occurrence is MISSED; the event is stored, status stays
  unmatched  - no window/date requires the event; it is stored only

Out-of-range readings stay open until resolve_alert() closes them with notes.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from app.eventstream import emit_event

from .config import get_config
from .errors import NotFoundError, StateConflictError, ValidationError
from .locks import owner_lock
from .models import (
    _ts, to_iso, Occurrence, OccurrenceStatus, OwnerKind, TemperatureReading,
    AssetRepository, ChecklistRepository, CompletionRepository, MonitorRepository,
    OccurrenceRepository, ReadingRepository, ScheduleRepository,
)
from .recurrence import due_interval, target_key_for
from .windows import candidate_windows, window_for

logger = logging.getLogger(__name__)


def parse_instant(value, tz: ZoneInfo) -> datetime:
    """Event timestamp as an aware datetime; naive values are facility-local."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"occurred_at is not an ISO-8601 timestamp: {value!r}")
    else:
        raise ValidationError("occurred_at is required")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def _int_field(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def classify_temperature(value: float, min_temp: float, max_temp: float) -> Tuple[bool, Optional[str]]:
    """(is_alert, severity) for a reading against the asset's allowed range."""
    outside = max(min_temp - value, value - max_temp)
    if outside <= 0:
        return False, None
    if outside > float(get_config("severity_critical_delta", 2.0)):
        return True, "critical"
    if outside > float(get_config("severity_high_delta", 1.0)):
        return True, "high"
    return True, "medium"


def _apply(kind: OwnerKind, owner_id: int, source_id: int, key: str,
           due_start: datetime, due_end: datetime, occurred_at: datetime,
           actor: Optional[str], payload: Dict[str, Any]) -> Tuple[Occurrence, str]:
    """Apply one completion to (owner, key). Caller holds the owner lock."""
    occ = OccurrenceRepository.get_by_key(kind, owner_id, key)

    if occ is None:
        new = Occurrence(
            owner_kind=kind, owner_id=owner_id, source_id=source_id, target_key=key,
            due_start=due_start, due_end=due_end, status=OccurrenceStatus.COMPLETED,
            is_on_time=occurred_at < due_end, completed_at=occurred_at,
            completed_by=actor, completion_payload=payload,
        )
        if OccurrenceRepository.insert_completed(new, _ts()) is not None:
            return OccurrenceRepository.get_by_key(kind, owner_id, key), "created"
        occ = OccurrenceRepository.get_by_key(kind, owner_id, key)

    if occ.status == OccurrenceStatus.REQUIRED:
        if OccurrenceRepository.complete(occ.id, occurred_at, actor, payload,
                                         occurred_at < occ.due_end, _ts()):
            return OccurrenceRepository.get(occ.id), "completed"
        occ = OccurrenceRepository.get(occ.id)

    if occ.is_completed:
        OccurrenceRepository.replace_payload(occ.id, payload, _ts())
        return OccurrenceRepository.get(occ.id), "corrected"

    return occ, "missed"


def _emit_completion(occ: Occurrence, outcome: str, actor: Optional[str], label: str):
    if outcome not in ("completed", "created"):
        return
    emit_event(
        "OCCURRENCE_COMPLETED",
        owner_kind=occ.owner_kind.value,
        owner_id=occ.owner_id,
        occurrence_id=occ.id,
        user=actor,
        summary=f"{label} {occ.target_key} completed {'on time' if occ.is_on_time else 'late'}",
        details={"target_key": occ.target_key, "is_on_time": occ.is_on_time, "outcome": outcome},
        timestamp=to_iso(occ.completed_at),
    )


# ============================================================================
# Temperature readings
# ============================================================================

def _pick_window(monitors, instant: datetime, tz: ZoneInfo):
    """Containing window, else latest ended window still open for completion,
    else the next window of the day."""
    containing, ended, upcoming = candidate_windows(monitors, instant, tz)
    if containing:
        return containing[0]
    for monitor, window in ended:
        occ = OccurrenceRepository.get_by_key(OwnerKind.MONITOR, monitor.id, window.target_key)
        if occ is None or occ.status == OccurrenceStatus.REQUIRED:
            return monitor, window
    if upcoming:
        return upcoming[0]
    return None


def reconcile_reading(event: Dict[str, Any]) -> Dict[str, Any]:
    """Store a temperature reading and complete the window it belongs to."""
    asset_id = event.get("asset_id")
    if asset_id is None:
        raise ValidationError("asset_id is required")
    try:
        value = float(event.get("value"))
    except (TypeError, ValueError):
        raise ValidationError("value must be a number")
    if not math.isfinite(value):
        raise ValidationError("value must be a finite number")

    asset = AssetRepository.get(_int_field(asset_id, "asset_id"))
    if asset is None or not asset.is_active:
        raise NotFoundError(f"Asset {asset_id} not found")
    tz = ZoneInfo(asset.timezone or "UTC")
    occurred_at = parse_instant(event.get("occurred_at"), tz)

    monitor_id = event.get("monitor_id")
    if monitor_id is not None:
        monitor = MonitorRepository.get(_int_field(monitor_id, "monitor_id"))
        if monitor is None or monitor.asset_id != asset.id or not monitor.is_active:
            raise NotFoundError(f"No active window monitor {monitor_id} on asset {asset.id}")
        window = window_for(monitor, occurred_at.astimezone(tz).date(), tz)
        match = (monitor, window) if window is not None else None
    else:
        monitors = MonitorRepository.get_for_asset(asset.id, active_only=True)
        if not monitors:
            raise NotFoundError(f"No active window monitor on asset {asset.id}")
        match = _pick_window(monitors, occurred_at, tz)

    is_alert, severity = classify_temperature(value, asset.min_temp, asset.max_temp)
    hint = event.get("on_time_hint")
    actor = event.get("recorded_by")
    reading = TemperatureReading(
        asset_id=asset.id,
        value=value,
        recorded_by=actor,
        occurred_at=occurred_at,
        is_alert=is_alert,
        severity=severity,
        on_time_hint=None if hint is None else bool(hint),
        late_reason=event.get("late_reason"),
        corrective_action=event.get("corrective_action"),
    )
    reading.id = ReadingRepository.create(reading, _ts())

    occ, outcome = None, "unmatched"
    if match is not None:
        monitor, window = match
        payload = {
            "reading_id": reading.id,
            "value": value,
            "is_alert": is_alert,
            "severity": severity,
            "recorded_by": actor,
            "late_reason": reading.late_reason,
            "corrective_action": reading.corrective_action,
        }
        with owner_lock(OwnerKind.MONITOR, monitor.id):
            occ, outcome = _apply(OwnerKind.MONITOR, monitor.id, monitor.id, window.target_key,
                                  window.start, window.end, occurred_at, actor, payload)
        ReadingRepository.attach(reading.id, monitor.id, occ.id)
        _emit_completion(occ, outcome, actor, f"{asset.name} / {monitor.label}")
    else:
        logger.info(f"[Compliance] Reading {reading.id} on asset {asset.id} matched no window")

    if is_alert:
        emit_event(
            "TEMPERATURE_OUT_OF_RANGE",
            owner_kind=OwnerKind.MONITOR.value if occ else None,
            owner_id=occ.owner_id if occ else None,
            occurrence_id=occ.id if occ else None,
            user=actor,
            severity="critical" if severity == "critical" else "alert",
            summary=f"{asset.name}: {value:.1f} outside {asset.min_temp:.1f}-{asset.max_temp:.1f} ({severity})",
            details={"asset_id": asset.id, "reading_id": reading.id, "value": value,
                     "min_temp": asset.min_temp, "max_temp": asset.max_temp, "severity": severity},
            timestamp=to_iso(occurred_at),
        )

    return {
        "outcome": outcome,
        "reading": ReadingRepository.get(reading.id).to_dict(),
        "occurrence": occ.to_dict() if occ else None,
    }


def resolve_alert(reading_id: int, actor: str, notes: Optional[str], now: datetime) -> TemperatureReading:
    """Close an out-of-range reading with the follow-up taken."""
    if now.tzinfo is None:
        raise ValidationError("now must be timezone-aware")
    reading = ReadingRepository.get(reading_id)
    if reading is None:
        raise NotFoundError(f"Reading {reading_id} not found")
    if not reading.is_alert:
        raise StateConflictError(f"Reading {reading_id} is within range; there is nothing to resolve")
    notes = (str(notes).strip() if notes is not None else "") or None

    if not ReadingRepository.resolve(reading_id, actor, notes, now):
        raise StateConflictError(f"Reading {reading_id} is already resolved")

    resolved = ReadingRepository.get(reading_id)
    logger.info(f"[Compliance] Out-of-range reading {reading_id} resolved by {actor}")
    emit_event(
        "TEMPERATURE_ALERT_RESOLVED",
        owner_kind=OwnerKind.MONITOR.value if resolved.monitor_id else None,
        owner_id=resolved.monitor_id,
        occurrence_id=resolved.occurrence_id,
        user=actor,
        summary=f"Reading {reading_id} ({resolved.value:.1f}) resolved",
        details={"asset_id": resolved.asset_id, "reading_id": reading_id, "notes": resolved.resolution_notes},
        timestamp=to_iso(now),
    )
    return resolved


# ============================================================================
# Checklist completions
# ============================================================================

def _check_items(checklist, items) -> list:
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    known = {i.id: i for i in checklist.items}
    checked = set()
    for entry in items:
        if not isinstance(entry, dict) or "item_id" not in entry:
            raise ValidationError("each item needs an item_id")
        item_id = entry["item_id"]
        if item_id not in known:
            raise ValidationError(f"Item {item_id} does not belong to checklist {checklist.id}")
        if entry.get("checked"):
            checked.add(item_id)
    missing = [i.label for i in checklist.items if i.required and i.id not in checked]
    if missing:
        raise ValidationError("All required items must be checked: " + ", ".join(missing))
    return [{"item_id": e["item_id"], "checked": bool(e.get("checked"))} for e in items]


def reconcile_checklist(event: Dict[str, Any]) -> Dict[str, Any]:
    """Store a checklist completion and complete the occurrence it belongs to."""
    checklist_id = event.get("checklist_id")
    if checklist_id is None:
        raise ValidationError("checklist_id is required")
    checklist = ChecklistRepository.get(_int_field(checklist_id, "checklist_id"))
    if checklist is None:
        raise NotFoundError(f"Checklist {checklist_id} not found")
    rule = ScheduleRepository.get_active_for_checklist(checklist.id)
    if rule is None:
        raise NotFoundError(f"Checklist {checklist.id} has no active schedule")

    tz = ZoneInfo(rule.timezone or "UTC")
    occurred_at = parse_instant(event.get("occurred_at"), tz)
    items = _check_items(checklist, event.get("items") or [])
    actor = event.get("completed_by")

    explicit = event.get("occurrence_id")
    target = None
    if explicit is not None:
        occ = OccurrenceRepository.get(_int_field(explicit, "occurrence_id"))
        if occ is None or occ.owner_kind != OwnerKind.CHECKLIST or occ.owner_id != checklist.id:
            raise NotFoundError(f"Occurrence {explicit} not found for checklist {checklist.id}")
        target = (occ.source_id, occ.target_key, occ.due_start, occ.due_end)
    else:
        key = target_key_for(rule, occurred_at.astimezone(tz).date())
        if key is not None:
            start, end = due_interval(rule, key)
            target = (rule.id, key, start, end)

    completion_id = CompletionRepository.create(
        checklist.id, None, actor, items, event.get("confirmation_note"), occurred_at, _ts()
    )

    occ, outcome = None, "unmatched"
    if target is not None:
        source_id, key, start, end = target
        payload = {
            "completion_id": completion_id,
            "items": items,
            "confirmation_note": event.get("confirmation_note"),
        }
        with owner_lock(OwnerKind.CHECKLIST, checklist.id):
            occ, outcome = _apply(OwnerKind.CHECKLIST, checklist.id, source_id, key,
                                  start, end, occurred_at, actor, payload)
        CompletionRepository.attach(completion_id, occ.id)
        _emit_completion(occ, outcome, actor, checklist.name)
    else:
        logger.info(f"[Compliance] Ad-hoc completion {completion_id} for checklist {checklist.id}")

    return {
        "outcome": outcome,
        "completion": CompletionRepository.get(completion_id),
        "occurrence": occ.to_dict() if occ else None,
    }
