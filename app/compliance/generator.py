"""
ColdTrack Compliance — Instance Generator

Materializes REQUIRED occurrences for checklist schedules and fridge window
monitors over a date range. Inserts are INSERT OR IGNORE on
(owner_kind, owner_id, target_key), so re-running is always safe and never
touches occurrences that already exist in any status.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from app.eventstream import emit_event

from .config import get_config
from .errors import NotFoundError
from .locks import owner_lock
from .models import (
    _ts, Asset, Occurrence, OwnerKind, ScheduleRule, WindowMonitor,
    AssetRepository, ChecklistRepository, MonitorRepository,
    OccurrenceRepository, ScheduleRepository,
)
from .recurrence import build_schedule_rule, due_interval, local_midnight, resolve_schedule
from .windows import build_monitor, resolve_windows

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    created: int = 0
    existing: int = 0
    owners: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, other: "GenerationResult"):
        self.created += other.created
        self.existing += other.existing
        self.owners += other.owners
        self.failures.extend(other.failures)

    def to_dict(self):
        return {
            "created": self.created,
            "existing": self.existing,
            "owners": self.owners,
            "failures": list(self.failures),
        }


def default_range(today: date) -> Tuple[date, date]:
    """[today - backfill, today + horizon) from configuration."""
    backfill = int(get_config("backfill_days", 14))
    horizon = int(get_config("horizon_days", 60))
    return today - timedelta(days=backfill), today + timedelta(days=horizon)


def forward_range(today: date) -> Tuple[date, date]:
    """[today, today + horizon), used when an owner is created or reactivated."""
    return today, today + timedelta(days=int(get_config("horizon_days", 60)))


def _checklist_occurrences(checklist_id: int, from_date: date, to_date: date) -> List[Occurrence]:
    if ChecklistRepository.get(checklist_id) is None:
        raise NotFoundError(f"Checklist {checklist_id} not found")
    rule = ScheduleRepository.get_active_for_checklist(checklist_id)
    if rule is None:
        return []
    occurrences = []
    for key in resolve_schedule(rule, from_date, to_date):
        start, end = due_interval(rule, key)
        occurrences.append(Occurrence(
            owner_kind=OwnerKind.CHECKLIST, owner_id=checklist_id, source_id=rule.id,
            target_key=key, due_start=start, due_end=end,
        ))
    return occurrences


def _monitor_occurrences(monitor_id: int, from_date: date, to_date: date) -> List[Occurrence]:
    monitor = MonitorRepository.get(monitor_id)
    if monitor is None:
        raise NotFoundError(f"Window monitor {monitor_id} not found")
    asset = AssetRepository.get(monitor.asset_id)
    if asset is None:
        raise NotFoundError(f"Asset {monitor.asset_id} not found")
    if not asset.is_active:
        return []
    tz = ZoneInfo(asset.timezone or "UTC")
    return [
        Occurrence(
            owner_kind=OwnerKind.MONITOR, owner_id=monitor_id, source_id=monitor_id,
            target_key=w.target_key, due_start=w.start, due_end=w.end,
        )
        for w in resolve_windows(monitor, from_date, to_date, tz)
    ]


def generate(owner_kind, owner_id: int, from_date: date, to_date: date) -> GenerationResult:
    """Create the missing REQUIRED occurrences of one owner in [from_date, to_date)."""
    kind = OwnerKind(owner_kind)
    with owner_lock(kind, owner_id):
        if kind == OwnerKind.CHECKLIST:
            occurrences = _checklist_occurrences(owner_id, from_date, to_date)
        else:
            occurrences = _monitor_occurrences(owner_id, from_date, to_date)
        created = OccurrenceRepository.insert_many_if_absent(occurrences, _ts())

    result = GenerationResult(created=created, existing=len(occurrences) - created, owners=1)
    logger.debug(f"[Compliance] generate {kind.value}:{owner_id} {from_date}..{to_date} "
                 f"created={result.created} existing={result.existing}")
    return result


def generate_all(today: date, from_date: Optional[date] = None,
                 to_date: Optional[date] = None) -> GenerationResult:
    """Generate for every active schedule rule and window monitor.

    Backfill never reaches before the day an owner was last activated.
    A failing owner is logged and reported; the run continues with the rest.
    """
    if from_date is None or to_date is None:
        from_date, to_date = default_range(today)

    owners = [(OwnerKind.CHECKLIST, r.checklist_id, r.effective_from) for r in ScheduleRepository.get_active()]
    owners += [(OwnerKind.MONITOR, m.id, m.effective_from) for m in MonitorRepository.get_active()]

    total = GenerationResult()
    for kind, owner_id, effective_from in owners:
        start = max(from_date, effective_from) if effective_from else from_date
        try:
            total.add(generate(kind, owner_id, start, to_date))
        except Exception as e:
            logger.error(f"[Compliance] generation failed for {kind.value}:{owner_id}: {e}")
            total.failures.append({"owner_kind": kind.value, "owner_id": owner_id, "error": str(e)})

    logger.info(f"[Compliance] Generation run {from_date}..{to_date}: {total.owners} owners, "
                f"{total.created} created, {len(total.failures)} failed")
    emit_event(
        "GENERATION_FAILED" if total.failures else "GENERATION_RUN",
        summary=f"Generated {total.created} occurrences for {total.owners} owners",
        details={"from": from_date.isoformat(), "to": to_date.isoformat(), **total.to_dict()},
    )
    return total


# ============================================================================
# Schedule / monitor lifecycle
# ============================================================================

def _prune_pending(kind: OwnerKind, owner_id: int, source_id: int, today: date, tz: ZoneInfo) -> int:
    return OccurrenceRepository.delete_pending_from(kind, owner_id, source_id, local_midnight(today, tz))


def replace_schedule(checklist_id: int, data: Dict[str, Any], today: date,
                     actor: Optional[str] = None) -> Tuple[ScheduleRule, GenerationResult, int]:
    """Create or replace a checklist's schedule rule.

    The previous rule is deactivated and only its still-REQUIRED occurrences
    due from today onward are dropped; everything before today is history.
    Returns (new_rule, generation_result, pruned_count).
    """
    if ChecklistRepository.get(checklist_id) is None:
        raise NotFoundError(f"Checklist {checklist_id} not found")
    rule = build_schedule_rule(data, checklist_id=checklist_id, created_by=actor,
                               default_timezone=get_config("timezone", "UTC"))
    rule.effective_from = today

    pruned = 0
    with owner_lock(OwnerKind.CHECKLIST, checklist_id):
        previous = ScheduleRepository.get_active_for_checklist(checklist_id)
        ScheduleRepository.deactivate_for_checklist(checklist_id, _ts())
        if previous is not None:
            pruned = _prune_pending(OwnerKind.CHECKLIST, checklist_id, previous.id, today,
                                    ZoneInfo(previous.timezone or "UTC"))
        rule.id = ScheduleRepository.create(rule, _ts())

    logger.info(f"[Compliance] Schedule for checklist {checklist_id} set to rule {rule.id} "
                f"({rule.cadence.value}); pruned {pruned} pending occurrences")

    result = GenerationResult()
    if rule.is_active:
        result = generate(OwnerKind.CHECKLIST, checklist_id, *forward_range(today))
    return ScheduleRepository.get(rule.id), result, pruned


def set_schedule_active(checklist_id: int, active: bool, today: date) -> Tuple[ScheduleRule, GenerationResult]:
    """Deactivate (pruning pending future work) or reactivate (regenerating) a schedule."""
    with owner_lock(OwnerKind.CHECKLIST, checklist_id):
        rule = ScheduleRepository.get_latest_for_checklist(checklist_id)
        if rule is None:
            raise NotFoundError(f"No schedule for checklist {checklist_id}")
        ScheduleRepository.set_active(rule.id, active, _ts(), effective_from=today if active else None)
        if not active:
            _prune_pending(OwnerKind.CHECKLIST, checklist_id, rule.id, today,
                           ZoneInfo(rule.timezone or "UTC"))

    result = GenerationResult()
    if active:
        result = generate(OwnerKind.CHECKLIST, checklist_id, *forward_range(today))
    logger.info(f"[Compliance] Schedule rule {rule.id} {'activated' if active else 'deactivated'}")
    return ScheduleRepository.get(rule.id), result


def set_asset_active(asset_id: int, active: bool, today: date) -> Tuple[Asset, GenerationResult, int]:
    """Deactivate or reactivate a fridge together with its window monitors.

    Deactivation drops the monitors' pending occurrences from today on;
    reactivation restarts them from today. Returns (asset, generation, pruned).
    """
    asset = AssetRepository.get(asset_id)
    if asset is None:
        raise NotFoundError(f"Asset {asset_id} not found")
    tz = ZoneInfo(asset.timezone or "UTC")
    AssetRepository.set_active(asset_id, active)

    pruned = 0
    result = GenerationResult()
    for monitor in MonitorRepository.get_for_asset(asset_id, active_only=True):
        if active:
            with owner_lock(OwnerKind.MONITOR, monitor.id):
                monitor.effective_from = today
                MonitorRepository.update(monitor, _ts())
            result.add(generate(OwnerKind.MONITOR, monitor.id, *forward_range(today)))
        else:
            with owner_lock(OwnerKind.MONITOR, monitor.id):
                pruned += _prune_pending(OwnerKind.MONITOR, monitor.id, monitor.id, today, tz)

    logger.info(f"[Compliance] Asset {asset_id} {'reactivated' if active else 'deactivated'}; "
                f"created {result.created}, pruned {pruned} pending occurrences")
    return AssetRepository.get(asset_id), result, pruned


def create_monitor(asset_id: int, data: Dict[str, Any], today: date) -> Tuple[WindowMonitor, GenerationResult]:
    if AssetRepository.get(asset_id) is None:
        raise NotFoundError(f"Asset {asset_id} not found")
    monitor = build_monitor(data, asset_id=asset_id)
    monitor.effective_from = today
    monitor.id = MonitorRepository.create(monitor, _ts())
    result = GenerationResult()
    if monitor.is_active:
        result = generate(OwnerKind.MONITOR, monitor.id, *forward_range(today))
    return MonitorRepository.get(monitor.id), result


def update_monitor(monitor_id: int, data: Dict[str, Any], today: date) -> Tuple[WindowMonitor, GenerationResult]:
    """Edit or toggle a window monitor.

    Pending occurrences from today on are rebuilt from the new definition;
    past occurrences keep the windows they were generated with.
    """
    current = MonitorRepository.get(monitor_id)
    if current is None:
        raise NotFoundError(f"Window monitor {monitor_id} not found")
    asset = AssetRepository.get(current.asset_id)

    merged = current.to_dict()
    merged.update({k: v for k, v in data.items() if k in merged and k not in ("id", "asset_id")})
    updated = build_monitor(merged, asset_id=current.asset_id)
    updated.id = monitor_id
    updated.effective_from = today

    with owner_lock(OwnerKind.MONITOR, monitor_id):
        MonitorRepository.update(updated, _ts())
        pruned = _prune_pending(OwnerKind.MONITOR, monitor_id, monitor_id, today,
                                ZoneInfo(asset.timezone or "UTC"))

    logger.info(f"[Compliance] Monitor {monitor_id} updated (active={updated.is_active}); "
                f"pruned {pruned} pending occurrences")

    result = GenerationResult()
    if updated.is_active:
        result = generate(OwnerKind.MONITOR, monitor_id, *forward_range(today))
    return MonitorRepository.get(monitor_id), result
