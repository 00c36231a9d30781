# ============================================================================
# ColdTrack Compliance - API Routes
# ============================================================================
# FastAPI surface for schedules, fridges, events, occurrences, reporting.
# All responses are {"ok": true, ...}; ComplianceError subclasses are mapped
# to {"ok": false, "error", "code"} with their HTTP status by the handler
# installed in register_compliance_routes(app).
#
# Endpoints that depend on "now" accept an optional today/as_of override;
# otherwise the facility-local wall clock is used.
# ============================================================================

import logging
import math
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from .aggregator import Period, aggregate, calendar, get_upcoming, snapshot_daily, trend
from .config import DEFAULT_CONFIG, ComplianceConfig, get_all_config, get_config, get_timezone, set_config
from .errors import ComplianceError, NotFoundError, ValidationError
from .export import build_export
from .generator import (
    create_monitor, generate, generate_all, replace_schedule, set_asset_active, set_schedule_active,
    update_monitor,
)
from .models import (
    _ts, init_compliance_schema, parse_date, Asset, OwnerKind,
    AssetRepository, ChecklistRepository, MonitorRepository, OccurrenceRepository,
    ReadingRepository, RecordRepository, ScheduleRepository,
)
from .recurrence import build_schedule_rule, preview
from .reconciler import parse_instant, reconcile_checklist, reconcile_reading, resolve_alert
from .sweeper import override, sweep
from .windows import build_monitor

logger = logging.getLogger("compliance.routes")

router = APIRouter(prefix="/api/compliance", tags=["compliance"])


# ============================================================================
# Helper utilities
# ============================================================================

def _get_user(request: Request) -> str:
    """Acting user from the session, falling back to the X-User header."""
    return request.session.get("user") or request.headers.get("X-User") or "system"


async def _body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _date_param(value, name: str) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return parse_date(value)
    except ValueError:
        raise ValidationError(f"{name} must be in YYYY-MM-DD format")


def _int_param(value, name: str, default) -> int:
    if value in (None, ""):
        return int(default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _today(value=None) -> date:
    return _date_param(value, "today") or datetime.now(get_timezone()).date()


def _as_of(value=None) -> datetime:
    if value in (None, ""):
        return datetime.now(get_timezone())
    return parse_instant(value, get_timezone())


def _owners_param(values: Optional[List[str]]) -> Optional[List[Tuple[OwnerKind, int]]]:
    """owner=checklist:3&owner=monitor:7 -> [(CHECKLIST, 3), (MONITOR, 7)]"""
    if not values:
        return None
    owners = []
    for raw in values:
        kind, _, oid = raw.partition(":")
        try:
            owners.append((OwnerKind(kind), int(oid)))
        except ValueError:
            raise ValidationError(f"owner must look like checklist:<id> or monitor:<id>, got {raw!r}")
    return owners


def _range(from_, to, default_days: int = 7) -> Tuple[date, date]:
    start = _date_param(from_, "from") or _today()
    end = _date_param(to, "to") or start + timedelta(days=default_days)
    return start, end


def _checklist_view(checklist_id: int, today: date) -> Dict[str, Any]:
    checklist = ChecklistRepository.get(checklist_id)
    if checklist is None:
        raise NotFoundError(f"Checklist {checklist_id} not found")
    rule = ScheduleRepository.get_latest_for_checklist(checklist_id)
    d = checklist.to_dict()
    d["schedule"] = rule.to_dict() if rule else None
    d["preview"] = preview(
        rule, today,
        days_ahead=int(get_config("preview_days_ahead", 30)),
        limit=int(get_config("preview_limit", 10)),
    ) if rule and rule.is_active else []
    return d


# ============================================================================
# Checklists & schedules
# ============================================================================

@router.post("/checklists")
async def create_checklist(request: Request):
    """Create a checklist, optionally with its schedule.

    Expects JSON body:
    ```json
    {
        "name": "Weekly fridge audit",
        "items": [{"label": "Door seal intact", "required": true}],
        "schedule": {"cadence": "DOW", "days_of_week": [1, 3, 5], "start_date": "2024-01-01"}
    }
    ```
    """
    data = await _body(request)
    user = _get_user(request)

    name = (data.get("name") or "").strip()
    items = data.get("items") or []
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if not isinstance(items, list) or not all(isinstance(i, dict) and (i.get("label") or "").strip() for i in items):
        raise HTTPException(status_code=400, detail="items must be a list of {label, required}")

    today = _today(data.get("today"))
    schedule = data.get("schedule")
    if schedule is not None:
        if not isinstance(schedule, dict):
            raise HTTPException(status_code=400, detail="schedule must be an object")
        # reject a bad rule before anything is written
        build_schedule_rule(schedule)

    checklist_id = ChecklistRepository.create(
        name, data.get("description"),
        [{**i, "label": i["label"].strip()} for i in items], user, _ts(),
    )
    generation = None
    if schedule is not None:
        _, result, _ = replace_schedule(checklist_id, schedule, today, actor=user)
        generation = result.to_dict()

    logger.info(f"[Compliance] Checklist {checklist_id} '{name}' created by {user}")
    return {"ok": True, "checklist": _checklist_view(checklist_id, today), "generation": generation}


@router.get("/checklists")
async def list_checklists(active_only: bool = True):
    out = []
    for c in ChecklistRepository.get_all(active_only=active_only):
        d = c.to_dict()
        rule = ScheduleRepository.get_active_for_checklist(c.id)
        d["schedule"] = rule.to_dict() if rule else None
        out.append(d)
    return {"ok": True, "checklists": out}


@router.get("/checklists/{checklist_id}")
async def get_checklist(checklist_id: int, today: Optional[str] = None):
    return {"ok": True, "checklist": _checklist_view(checklist_id, _today(today))}


@router.put("/checklists/{checklist_id}/schedule")
async def put_schedule(checklist_id: int, request: Request):
    """Create or replace the schedule rule; history before today is kept."""
    data = await _body(request)
    today = _today(data.pop("today", None))
    rule, result, pruned = replace_schedule(checklist_id, data, today, actor=_get_user(request))
    return {"ok": True, "schedule": rule.to_dict(), "generation": result.to_dict(), "pruned": pruned}


@router.post("/checklists/{checklist_id}/schedule/deactivate")
async def deactivate_schedule(checklist_id: int, today: Optional[str] = None):
    rule, _ = set_schedule_active(checklist_id, False, _today(today))
    return {"ok": True, "schedule": rule.to_dict()}


@router.post("/checklists/{checklist_id}/schedule/activate")
async def activate_schedule(checklist_id: int, today: Optional[str] = None):
    rule, result = set_schedule_active(checklist_id, True, _today(today))
    return {"ok": True, "schedule": rule.to_dict(), "generation": result.to_dict()}


@router.post("/schedules/preview")
async def preview_schedule(request: Request):
    """Upcoming instances of an unsaved schedule definition."""
    data = await _body(request)
    rule = build_schedule_rule(data, default_timezone=get_config("timezone", "UTC"))
    instances = preview(
        rule, _today(data.get("today")),
        days_ahead=_int_param(data.get("days_ahead"), "days_ahead", get_config("preview_days_ahead", 30)),
        limit=_int_param(data.get("limit"), "limit", get_config("preview_limit", 10)),
    )
    return {"ok": True, "instances": instances}


# ============================================================================
# Assets (fridges) & window monitors
# ============================================================================

@router.post("/assets")
async def create_asset(request: Request):
    data = await _body(request)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    try:
        min_temp, max_temp = float(data.get("min_temp")), float(data.get("max_temp"))
    except (TypeError, ValueError):
        raise ValidationError("min_temp and max_temp must be numbers")
    if not (math.isfinite(min_temp) and math.isfinite(max_temp)):
        raise ValidationError("min_temp and max_temp must be finite numbers")
    if min_temp >= max_temp:
        raise ValidationError("min_temp must be below max_temp")
    tz_name = data.get("timezone") or get_config("timezone", "UTC")
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValidationError(f"Unknown timezone: {tz_name}")
    today = _today(data.get("today"))

    monitor_defs = data.get("monitors") or []
    if not isinstance(monitor_defs, list) or not all(isinstance(m, dict) for m in monitor_defs):
        raise HTTPException(status_code=400, detail="monitors must be a list of objects")
    # every monitor is checked before the asset row is written
    for m in monitor_defs:
        build_monitor(m)

    asset = Asset(name=name, location=data.get("location"), min_temp=min_temp,
                  max_temp=max_temp, timezone=tz_name)
    asset_id = AssetRepository.create(asset, _ts())

    monitors = []
    for m in monitor_defs:
        monitor, _ = create_monitor(asset_id, m, today)
        monitors.append(monitor.to_dict())

    logger.info(f"[Compliance] Asset {asset_id} '{name}' created with {len(monitors)} monitors")
    return {"ok": True, "asset": {**AssetRepository.get(asset_id).to_dict(), "monitors": monitors}}


@router.get("/assets")
async def list_assets(active_only: bool = True):
    out = []
    for a in AssetRepository.get_all(active_only=active_only):
        d = a.to_dict()
        d["monitors"] = [m.to_dict() for m in MonitorRepository.get_for_asset(a.id, active_only=False)]
        out.append(d)
    return {"ok": True, "assets": out}


@router.get("/assets/{asset_id}")
async def get_asset(asset_id: int, readings: int = Query(20, ge=0, le=500)):
    asset = AssetRepository.get(asset_id)
    if asset is None:
        raise NotFoundError(f"Asset {asset_id} not found")
    d = asset.to_dict()
    d["monitors"] = [m.to_dict() for m in MonitorRepository.get_for_asset(asset_id, active_only=False)]
    d["readings"] = [r.to_dict() for r in ReadingRepository.get_for_asset(asset_id, limit=readings)]
    return {"ok": True, "asset": d}


@router.post("/assets/{asset_id}/monitors")
async def add_monitor(asset_id: int, request: Request):
    data = await _body(request)
    monitor, result = create_monitor(asset_id, data, _today(data.pop("today", None)))
    return {"ok": True, "monitor": monitor.to_dict(), "generation": result.to_dict()}


@router.put("/monitors/{monitor_id}")
async def edit_monitor(monitor_id: int, request: Request):
    """Edit or toggle (is_active) a monitor; reactivation regenerates."""
    data = await _body(request)
    monitor, result = update_monitor(monitor_id, data, _today(data.pop("today", None)))
    return {"ok": True, "monitor": monitor.to_dict(), "generation": result.to_dict()}


@router.post("/assets/{asset_id}/deactivate")
async def deactivate_asset(asset_id: int, today: Optional[str] = None):
    asset, _, pruned = set_asset_active(asset_id, False, _today(today))
    return {"ok": True, "asset": asset.to_dict(), "pruned": pruned}


@router.post("/assets/{asset_id}/activate")
async def activate_asset(asset_id: int, today: Optional[str] = None):
    asset, result, _ = set_asset_active(asset_id, True, _today(today))
    return {"ok": True, "asset": asset.to_dict(), "generation": result.to_dict()}


# ============================================================================
# Out-of-range alerts
# ============================================================================

@router.get("/alerts")
async def list_alerts(
    asset_id: Optional[int] = None,
    resolved: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    alerts = ReadingRepository.get_alerts(asset_id=asset_id, resolved=resolved, limit=limit)
    return {
        "ok": True,
        "alerts": [a.to_dict() for a in alerts],
        "unresolved_count": ReadingRepository.count_unresolved(asset_id),
    }


@router.post("/alerts/{reading_id}/resolve")
async def resolve_out_of_range(reading_id: int, request: Request):
    data = await _body(request)
    reading = resolve_alert(reading_id, _get_user(request), data.get("notes"), _as_of(data.get("now")))
    return {"ok": True, "alert": reading.to_dict(),
            "unresolved_count": ReadingRepository.count_unresolved(reading.asset_id)}


# ============================================================================
# Events
# ============================================================================

@router.post("/events/reading")
async def post_reading(request: Request):
    data = await _body(request)
    data.setdefault("recorded_by", _get_user(request))
    return {"ok": True, **reconcile_reading(data)}


@router.post("/events/checklist")
async def post_checklist_completion(request: Request):
    data = await _body(request)
    data.setdefault("completed_by", _get_user(request))
    return {"ok": True, **reconcile_checklist(data)}


# ============================================================================
# Occurrences
# ============================================================================

@router.get("/occurrences")
async def list_occurrences(
    owner_kind: Optional[str] = None,
    owner_id: Optional[int] = None,
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = None,
    status: Optional[str] = None,
):
    start, end = _range(from_, to)
    owners = None
    if owner_kind and owner_id is not None:
        owners = _owners_param([f"{owner_kind}:{owner_id}"])
    elif owner_kind or owner_id is not None:
        raise ValidationError("owner_kind and owner_id go together")
    rows = calendar(start, end, owners=owners)
    if status:
        rows = [r for r in rows if r["status"] == status.upper()]
    return {"ok": True, "occurrences": rows, "from": start.isoformat(), "to": end.isoformat()}


@router.get("/occurrences/{occurrence_id}")
async def get_occurrence(occurrence_id: int):
    occ = OccurrenceRepository.get(occurrence_id)
    if occ is None:
        raise NotFoundError(f"Occurrence {occurrence_id} not found")
    return {"ok": True, "occurrence": occ.to_dict()}


@router.post("/occurrences/{occurrence_id}/override")
async def override_occurrence(occurrence_id: int, request: Request):
    data = await _body(request)
    occ = override(occurrence_id, _get_user(request), data.get("reason"), _as_of(data.get("now")))
    return {"ok": True, "occurrence": occ.to_dict()}


# ============================================================================
# Reporting
# ============================================================================

@router.get("/records")
async def get_records(
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = None,
    group_by: Optional[str] = "facility",
    owner: Optional[List[str]] = Query(None),
    as_of: Optional[str] = None,
):
    start, end = _range(from_, to)
    result = aggregate(_owners_param(owner), Period(start, end), group_by, _as_of(as_of))
    return {"ok": True, **result}


@router.get("/trend")
async def get_trend(
    start: Optional[str] = None,
    periods: int = Query(4, ge=1, le=366),
    step_days: int = Query(7, ge=1, le=366),
    owner: Optional[List[str]] = Query(None),
    as_of: Optional[str] = None,
):
    now = _as_of(as_of)
    first = _date_param(start, "start") or (now.date() - timedelta(days=periods * step_days))
    return {"ok": True, "trend": trend(_owners_param(owner), first, periods, step_days, now)}


@router.get("/upcoming")
async def upcoming(days_before: Optional[int] = None, as_of: Optional[str] = None):
    days = days_before if days_before is not None else int(get_config("upcoming_days_before", 1))
    return {"ok": True, "upcoming": get_upcoming(_as_of(as_of), days)}


@router.get("/calendar")
async def get_calendar(from_: Optional[str] = Query(None, alias="from"), to: Optional[str] = None):
    start, end = _range(from_, to, default_days=31)
    return {"ok": True, "events": calendar(start, end)}


@router.get("/export")
async def export(
    format: str = "csv",
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = None,
    owner: Optional[List[str]] = Query(None),
    as_of: Optional[str] = None,
):
    if format not in ("csv", "xlsx"):
        raise HTTPException(status_code=400, detail="format must be csv or xlsx")
    start, end = _range(from_, to)
    content, media_type, filename = build_export(format, start, end, _as_of(as_of), _owners_param(owner))
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/snapshots")
async def get_snapshots(from_: Optional[str] = Query(None, alias="from"), to: Optional[str] = None,
                        level: Optional[str] = None):
    start, end = _range(from_, to)
    return {"ok": True, "records": RecordRepository.get_range(start, end, level)}


# ============================================================================
# Operations (manual triggers for the periodic jobs)
# ============================================================================

@router.post("/generate")
async def run_generate(request: Request):
    data = await _body(request)
    today = _today(data.get("today"))
    start = _date_param(data.get("from"), "from")
    end = _date_param(data.get("to"), "to")
    if data.get("owner_kind") and data.get("owner_id") is not None:
        (kind, oid), = _owners_param([f"{data['owner_kind']}:{data['owner_id']}"])
        if start is None or end is None:
            raise ValidationError("from and to are required for a single owner")
        result = generate(kind, oid, start, end)
    else:
        result = generate_all(today, start, end)
    return {"ok": True, "generation": result.to_dict()}


@router.post("/sweep")
async def run_sweep(request: Request):
    data = await _body(request)
    owner = None
    if data.get("owner_kind") and data.get("owner_id") is not None:
        owner = _owners_param([f"{data['owner_kind']}:{data['owner_id']}"])[0]
    return {"ok": True, **sweep(_as_of(data.get("as_of")), owner)}


@router.post("/snapshot")
async def run_snapshot(request: Request):
    data = await _body(request)
    now = _as_of(data.get("as_of"))
    day = _date_param(data.get("day"), "day") or now.date() - timedelta(days=1)
    return {"ok": True, "day": day.isoformat(), "written": snapshot_daily(day, now)}


# ============================================================================
# Configuration
# ============================================================================

@router.get("/config")
async def get_compliance_config():
    return {"ok": True, "config": get_all_config()}


@router.put("/config")
async def put_compliance_config(request: Request):
    data = await _body(request)
    user = _get_user(request)
    unknown = [k for k in data if k not in DEFAULT_CONFIG]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown config keys: {', '.join(unknown)}")
    for key, value in data.items():
        try:
            set_config(key, value, user=user)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "config": get_all_config()}


# ============================================================================
# Registration
# ============================================================================

async def _compliance_error_handler(request: Request, exc: ComplianceError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def register_compliance_routes(app: FastAPI):
    """Create tables, load config defaults, mount the router and error handler."""
    init_compliance_schema()
    ComplianceConfig.init_defaults()
    app.include_router(router)
    app.add_exception_handler(ComplianceError, _compliance_error_handler)
    logger.info("Compliance module registered: /api/compliance")
