# ============================================================================
# ColdTrack Compliance - Database Models & Schema
# ============================================================================
# Checklists, schedule rules, fridges (assets), window monitors, occurrences
# and the raw events (temperature readings, checklist completions).
#
# All instants are stored as UTC ISO-8601 strings with an explicit offset so
# lexical comparison in SQL matches chronological order.
# ============================================================================

import json
import os
import sqlite3
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable, Tuple

DB_PATH = os.environ.get("COMPLIANCE_DB_PATH", "compliance.db")


def _get_conn():
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def _ts() -> str:
    """Audit stamp for created_at/updated_at columns."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Normalize an aware datetime to the stored UTC form."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        raise ValueError("naive datetime cannot be stored; attach a timezone")
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    return date.fromisoformat(str(value)[:10])


def _loads(value, default):
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


class Cadence(str, Enum):
    DAILY = "DAILY"
    DOW = "DOW"
    WEEKLY = "WEEKLY"


class CheckType(str, Enum):
    SPECIFIC = "specific"
    DAILY = "daily"


class OccurrenceStatus(str, Enum):
    REQUIRED = "REQUIRED"
    COMPLETED = "COMPLETED"
    MISSED = "MISSED"


class OwnerKind(str, Enum):
    CHECKLIST = "checklist"
    MONITOR = "monitor"


# ============================================================================
# Database Schema
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS checklists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    is_active INTEGER DEFAULT 1,
    created_by TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS checklist_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    checklist_id INTEGER NOT NULL REFERENCES checklists(id),
    label TEXT NOT NULL,
    required INTEGER DEFAULT 1,
    order_index INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS schedule_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    checklist_id INTEGER NOT NULL REFERENCES checklists(id),
    cadence TEXT NOT NULL,
    days_of_week TEXT DEFAULT '[]',
    start_date TEXT NOT NULL,
    end_date TEXT,
    timezone TEXT DEFAULT 'UTC',
    is_active INTEGER DEFAULT 1,
    effective_from TEXT,
    created_by TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    location TEXT,
    min_temp REAL NOT NULL,
    max_temp REAL NOT NULL,
    timezone TEXT DEFAULT 'UTC',
    is_active INTEGER DEFAULT 1,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS window_monitors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id INTEGER NOT NULL REFERENCES assets(id),
    label TEXT NOT NULL,
    check_type TEXT NOT NULL DEFAULT 'specific',
    start_time TEXT,
    end_time TEXT,
    excluded_weekdays TEXT DEFAULT '[]',
    is_active INTEGER DEFAULT 1,
    effective_from TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS occurrences (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_kind TEXT NOT NULL,
    owner_id INTEGER NOT NULL,
    source_id INTEGER,
    target_key TEXT NOT NULL,
    due_start TEXT NOT NULL,
    due_end TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'REQUIRED',
    is_on_time INTEGER,
    completed_at TEXT,
    completed_by TEXT,
    completion_payload TEXT,
    missed_reason TEXT,
    missed_at TEXT,
    override_reason TEXT,
    overridden_by TEXT,
    overridden_at TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (owner_kind, owner_id, target_key)
);

CREATE TABLE IF NOT EXISTS temperature_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id INTEGER NOT NULL REFERENCES assets(id),
    monitor_id INTEGER,
    occurrence_id INTEGER,
    value REAL NOT NULL,
    recorded_by TEXT,
    occurred_at TEXT NOT NULL,
    is_alert INTEGER DEFAULT 0,
    severity TEXT,
    on_time_hint INTEGER,
    late_reason TEXT,
    corrective_action TEXT,
    resolved_at TEXT,
    resolved_by TEXT,
    resolution_notes TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS checklist_completions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    checklist_id INTEGER NOT NULL REFERENCES checklists(id),
    occurrence_id INTEGER,
    completed_by TEXT,
    items_json TEXT DEFAULT '[]',
    confirmation_note TEXT,
    occurred_at TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS compliance_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    level TEXT NOT NULL,
    group_key TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    required_count INTEGER DEFAULT 0,
    completed_count INTEGER DEFAULT 0,
    on_time_count INTEGER DEFAULT 0,
    missed_count INTEGER DEFAULT 0,
    completion_rate REAL DEFAULT 0,
    on_time_rate REAL DEFAULT 0,
    status TEXT,
    computed_at TEXT,
    UNIQUE (level, group_key, period_start)
);

CREATE INDEX IF NOT EXISTS idx_occ_owner ON occurrences(owner_kind, owner_id);
CREATE INDEX IF NOT EXISTS idx_occ_status_end ON occurrences(status, due_end);
CREATE INDEX IF NOT EXISTS idx_occ_start ON occurrences(due_start);
CREATE INDEX IF NOT EXISTS idx_rules_checklist ON schedule_rules(checklist_id, is_active);
CREATE INDEX IF NOT EXISTS idx_monitors_asset ON window_monitors(asset_id, is_active);
CREATE INDEX IF NOT EXISTS idx_readings_asset ON temperature_readings(asset_id, occurred_at);
"""


def init_compliance_schema():
    """Create compliance tables if they don't exist."""
    conn = _get_conn()
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    conn.close()


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ChecklistItem:
    id: Optional[int] = None
    checklist_id: Optional[int] = None
    label: str = ""
    required: bool = True
    order_index: int = 0

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        d["required"] = bool(d.get("required", 1))
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class Checklist:
    id: Optional[int] = None
    name: str = ""
    description: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    items: List[ChecklistItem] = field(default_factory=list)

    def to_dict(self):
        d = asdict(self)
        d["items"] = [i.to_dict() for i in self.items]
        return d

    @classmethod
    def from_row(cls, row, items=None):
        d = dict(row)
        d["is_active"] = bool(d.get("is_active", 1))
        obj = cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__ and k != "items"})
        obj.items = list(items or [])
        return obj


@dataclass
class ScheduleRule:
    id: Optional[int] = None
    checklist_id: Optional[int] = None
    cadence: Cadence = Cadence.DAILY
    days_of_week: List[int] = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    timezone: str = "UTC"
    is_active: bool = True
    effective_from: Optional[date] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self):
        d = asdict(self)
        d["cadence"] = self.cadence.value
        for key in ("start_date", "end_date", "effective_from"):
            d[key] = d[key].isoformat() if d[key] else None
        return d

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        return cls(
            id=d["id"],
            checklist_id=d["checklist_id"],
            cadence=Cadence(d["cadence"]),
            days_of_week=sorted(int(x) for x in _loads(d.get("days_of_week"), [])),
            start_date=parse_date(d["start_date"]),
            end_date=parse_date(d.get("end_date")),
            timezone=d.get("timezone") or "UTC",
            is_active=bool(d.get("is_active", 1)),
            effective_from=parse_date(d.get("effective_from")),
            created_by=d.get("created_by"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass
class Asset:
    id: Optional[int] = None
    name: str = ""
    location: Optional[str] = None
    min_temp: float = 2.0
    max_temp: float = 8.0
    timezone: str = "UTC"
    is_active: bool = True
    created_at: Optional[str] = None

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        d["is_active"] = bool(d.get("is_active", 1))
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class WindowMonitor:
    id: Optional[int] = None
    asset_id: Optional[int] = None
    label: str = ""
    check_type: CheckType = CheckType.SPECIFIC
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    excluded_weekdays: List[int] = field(default_factory=list)
    is_active: bool = True
    effective_from: Optional[date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self):
        d = asdict(self)
        d["check_type"] = self.check_type.value
        d["effective_from"] = self.effective_from.isoformat() if self.effective_from else None
        return d

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        return cls(
            id=d["id"],
            asset_id=d["asset_id"],
            label=d.get("label") or "",
            check_type=CheckType(d.get("check_type") or CheckType.SPECIFIC.value),
            start_time=d.get("start_time"),
            end_time=d.get("end_time"),
            excluded_weekdays=sorted(int(x) for x in _loads(d.get("excluded_weekdays"), [])),
            is_active=bool(d.get("is_active", 1)),
            effective_from=parse_date(d.get("effective_from")),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass
class Occurrence:
    id: Optional[int] = None
    owner_kind: OwnerKind = OwnerKind.CHECKLIST
    owner_id: Optional[int] = None
    source_id: Optional[int] = None
    target_key: str = ""
    due_start: Optional[datetime] = None
    due_end: Optional[datetime] = None
    status: OccurrenceStatus = OccurrenceStatus.REQUIRED
    is_on_time: Optional[bool] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    completion_payload: Optional[Dict[str, Any]] = None
    missed_reason: Optional[str] = None
    missed_at: Optional[datetime] = None
    override_reason: Optional[str] = None
    overridden_by: Optional[str] = None
    overridden_at: Optional[datetime] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_overridden(self) -> bool:
        return self.overridden_at is not None

    @property
    def is_completed(self) -> bool:
        return self.status == OccurrenceStatus.COMPLETED

    def to_dict(self):
        return {
            "id": self.id,
            "owner_kind": self.owner_kind.value,
            "owner_id": self.owner_id,
            "source_id": self.source_id,
            "target_key": self.target_key,
            "due_start": to_iso(self.due_start),
            "due_end": to_iso(self.due_end),
            "status": self.status.value,
            "is_on_time": self.is_on_time,
            "is_overridden": self.is_overridden,
            "completed_at": to_iso(self.completed_at),
            "completed_by": self.completed_by,
            "completion_payload": self.completion_payload,
            "missed_reason": self.missed_reason,
            "missed_at": to_iso(self.missed_at),
            "override_reason": self.override_reason,
            "overridden_by": self.overridden_by,
            "overridden_at": to_iso(self.overridden_at),
        }

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        on_time = d.get("is_on_time")
        return cls(
            id=d["id"],
            owner_kind=OwnerKind(d["owner_kind"]),
            owner_id=d["owner_id"],
            source_id=d.get("source_id"),
            target_key=d["target_key"],
            due_start=parse_dt(d["due_start"]),
            due_end=parse_dt(d["due_end"]),
            status=OccurrenceStatus(d["status"]),
            is_on_time=None if on_time is None else bool(on_time),
            completed_at=parse_dt(d.get("completed_at")),
            completed_by=d.get("completed_by"),
            completion_payload=_loads(d.get("completion_payload"), None),
            missed_reason=d.get("missed_reason"),
            missed_at=parse_dt(d.get("missed_at")),
            override_reason=d.get("override_reason"),
            overridden_by=d.get("overridden_by"),
            overridden_at=parse_dt(d.get("overridden_at")),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass
class TemperatureReading:
    id: Optional[int] = None
    asset_id: Optional[int] = None
    monitor_id: Optional[int] = None
    occurrence_id: Optional[int] = None
    value: float = 0.0
    recorded_by: Optional[str] = None
    occurred_at: Optional[datetime] = None
    is_alert: bool = False
    severity: Optional[str] = None
    on_time_hint: Optional[bool] = None
    late_reason: Optional[str] = None
    corrective_action: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self):
        d = asdict(self)
        d["occurred_at"] = to_iso(self.occurred_at)
        d["resolved_at"] = to_iso(self.resolved_at)
        d["is_resolved"] = self.is_resolved
        return d

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        hint = d.get("on_time_hint")
        d["occurred_at"] = parse_dt(d.get("occurred_at"))
        d["resolved_at"] = parse_dt(d.get("resolved_at"))
        d["is_alert"] = bool(d.get("is_alert", 0))
        d["on_time_hint"] = None if hint is None else bool(hint)
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# ============================================================================
# Repositories
# ============================================================================

class ChecklistRepository:
    @staticmethod
    def create(name: str, description: Optional[str], items: Iterable[Dict],
               created_by: Optional[str], created_at: str) -> int:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO checklists (name, description, is_active, created_by, created_at)
                   VALUES (?, ?, 1, ?, ?)""",
                (name, description, created_by, created_at),
            )
            checklist_id = cur.lastrowid
            for idx, item in enumerate(items):
                conn.execute(
                    """INSERT INTO checklist_items (checklist_id, label, required, order_index)
                       VALUES (?, ?, ?, ?)""",
                    (checklist_id, item["label"], 1 if item.get("required", True) else 0,
                     int(item.get("order_index", idx))),
                )
            conn.commit()
            return checklist_id
        finally:
            conn.close()

    @staticmethod
    def get(checklist_id: int) -> Optional[Checklist]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM checklists WHERE id = ?", (checklist_id,)).fetchone()
        items = conn.execute(
            "SELECT * FROM checklist_items WHERE checklist_id = ? ORDER BY order_index, id",
            (checklist_id,),
        ).fetchall()
        conn.close()
        if not row:
            return None
        return Checklist.from_row(row, [ChecklistItem.from_row(i) for i in items])

    @staticmethod
    def get_all(active_only: bool = True) -> List[Checklist]:
        conn = _get_conn()
        sql = "SELECT id FROM checklists"
        if active_only:
            sql += " WHERE is_active = 1"
        ids = [r["id"] for r in conn.execute(sql + " ORDER BY id").fetchall()]
        conn.close()
        return [ChecklistRepository.get(i) for i in ids]


class ScheduleRepository:
    @staticmethod
    def create(rule: ScheduleRule, now_ts: str) -> int:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO schedule_rules
                   (checklist_id, cadence, days_of_week, start_date, end_date, timezone,
                    is_active, effective_from, created_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (rule.checklist_id, rule.cadence.value, json.dumps(sorted(rule.days_of_week)),
                 rule.start_date.isoformat(), rule.end_date.isoformat() if rule.end_date else None,
                 rule.timezone, 1 if rule.is_active else 0,
                 rule.effective_from.isoformat() if rule.effective_from else None,
                 rule.created_by, now_ts, now_ts),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    @staticmethod
    def get(rule_id: int) -> Optional[ScheduleRule]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM schedule_rules WHERE id = ?", (rule_id,)).fetchone()
        conn.close()
        return ScheduleRule.from_row(row) if row else None

    @staticmethod
    def get_active_for_checklist(checklist_id: int) -> Optional[ScheduleRule]:
        conn = _get_conn()
        row = conn.execute(
            "SELECT * FROM schedule_rules WHERE checklist_id = ? AND is_active = 1 ORDER BY id DESC LIMIT 1",
            (checklist_id,),
        ).fetchone()
        conn.close()
        return ScheduleRule.from_row(row) if row else None

    @staticmethod
    def get_latest_for_checklist(checklist_id: int) -> Optional[ScheduleRule]:
        conn = _get_conn()
        row = conn.execute(
            "SELECT * FROM schedule_rules WHERE checklist_id = ? ORDER BY id DESC LIMIT 1",
            (checklist_id,),
        ).fetchone()
        conn.close()
        return ScheduleRule.from_row(row) if row else None

    @staticmethod
    def get_active() -> List[ScheduleRule]:
        conn = _get_conn()
        rows = conn.execute("SELECT * FROM schedule_rules WHERE is_active = 1 ORDER BY id").fetchall()
        conn.close()
        return [ScheduleRule.from_row(r) for r in rows]

    @staticmethod
    def set_active(rule_id: int, active: bool, now_ts: str, effective_from: Optional[date] = None) -> bool:
        conn = _get_conn()
        try:
            if active:
                conn.execute(
                    """UPDATE schedule_rules SET is_active = 0, updated_at = ?
                       WHERE is_active = 1 AND id != ?
                         AND checklist_id = (SELECT checklist_id FROM schedule_rules WHERE id = ?)""",
                    (now_ts, rule_id, rule_id),
                )
            cur = conn.execute(
                """UPDATE schedule_rules
                   SET is_active = ?, effective_from = COALESCE(?, effective_from), updated_at = ?
                   WHERE id = ?""",
                (1 if active else 0, effective_from.isoformat() if effective_from else None,
                 now_ts, rule_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    @staticmethod
    def deactivate_for_checklist(checklist_id: int, now_ts: str) -> List[int]:
        """Deactivate every active rule of a checklist; returns their ids."""
        conn = _get_conn()
        try:
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM schedule_rules WHERE checklist_id = ? AND is_active = 1",
                (checklist_id,),
            ).fetchall()]
            conn.execute(
                "UPDATE schedule_rules SET is_active = 0, updated_at = ? WHERE checklist_id = ? AND is_active = 1",
                (now_ts, checklist_id),
            )
            conn.commit()
            return ids
        finally:
            conn.close()


class AssetRepository:
    @staticmethod
    def create(asset: Asset, now_ts: str) -> int:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO assets (name, location, min_temp, max_temp, timezone, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, 1, ?)""",
                (asset.name, asset.location, float(asset.min_temp), float(asset.max_temp),
                 asset.timezone, now_ts),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    @staticmethod
    def set_active(asset_id: int, active: bool) -> bool:
        conn = _get_conn()
        try:
            cur = conn.execute(
                "UPDATE assets SET is_active = ? WHERE id = ?",
                (1 if active else 0, asset_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    @staticmethod
    def get(asset_id: int) -> Optional[Asset]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
        conn.close()
        return Asset.from_row(row) if row else None

    @staticmethod
    def get_all(active_only: bool = True) -> List[Asset]:
        conn = _get_conn()
        sql = "SELECT * FROM assets"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = conn.execute(sql + " ORDER BY id").fetchall()
        conn.close()
        return [Asset.from_row(r) for r in rows]


class MonitorRepository:
    @staticmethod
    def create(monitor: WindowMonitor, now_ts: str) -> int:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO window_monitors
                   (asset_id, label, check_type, start_time, end_time, excluded_weekdays,
                    is_active, effective_from, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (monitor.asset_id, monitor.label, monitor.check_type.value, monitor.start_time,
                 monitor.end_time, json.dumps(sorted(monitor.excluded_weekdays)),
                 1 if monitor.is_active else 0,
                 monitor.effective_from.isoformat() if monitor.effective_from else None,
                 now_ts, now_ts),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    @staticmethod
    def update(monitor: WindowMonitor, now_ts: str) -> bool:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """UPDATE window_monitors
                   SET label = ?, check_type = ?, start_time = ?, end_time = ?,
                       excluded_weekdays = ?, is_active = ?, effective_from = ?, updated_at = ?
                   WHERE id = ?""",
                (monitor.label, monitor.check_type.value, monitor.start_time, monitor.end_time,
                 json.dumps(sorted(monitor.excluded_weekdays)), 1 if monitor.is_active else 0,
                 monitor.effective_from.isoformat() if monitor.effective_from else None,
                 now_ts, monitor.id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    @staticmethod
    def get(monitor_id: int) -> Optional[WindowMonitor]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM window_monitors WHERE id = ?", (monitor_id,)).fetchone()
        conn.close()
        return WindowMonitor.from_row(row) if row else None

    @staticmethod
    def get_for_asset(asset_id: int, active_only: bool = True) -> List[WindowMonitor]:
        conn = _get_conn()
        sql = "SELECT * FROM window_monitors WHERE asset_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        rows = conn.execute(sql + " ORDER BY start_time, id", (asset_id,)).fetchall()
        conn.close()
        return [WindowMonitor.from_row(r) for r in rows]

    @staticmethod
    def get_active() -> List[WindowMonitor]:
        conn = _get_conn()
        rows = conn.execute(
            """SELECT m.* FROM window_monitors m
               JOIN assets a ON a.id = m.asset_id
               WHERE m.is_active = 1 AND a.is_active = 1
               ORDER BY m.id"""
        ).fetchall()
        conn.close()
        return [WindowMonitor.from_row(r) for r in rows]


class OccurrenceRepository:
    """Occurrence storage. Every status change is a conditional write."""

    @staticmethod
    def insert_many_if_absent(occurrences: Iterable[Occurrence], now_ts: str) -> int:
        """INSERT OR IGNORE each occurrence; returns how many rows were new."""
        conn = _get_conn()
        created = 0
        try:
            for occ in occurrences:
                cur = conn.execute(
                    """INSERT OR IGNORE INTO occurrences
                       (owner_kind, owner_id, source_id, target_key, due_start, due_end,
                        status, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (occ.owner_kind.value, occ.owner_id, occ.source_id, occ.target_key,
                     to_iso(occ.due_start), to_iso(occ.due_end), occ.status.value,
                     now_ts, now_ts),
                )
                created += cur.rowcount
            conn.commit()
        finally:
            conn.close()
        return created

    @staticmethod
    def insert_completed(occ: Occurrence, now_ts: str) -> Optional[int]:
        """Create an occurrence directly in COMPLETED state.

        Returns the new id, or None when a row for the key already exists.
        """
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT OR IGNORE INTO occurrences
                   (owner_kind, owner_id, source_id, target_key, due_start, due_end, status,
                    is_on_time, completed_at, completed_by, completion_payload,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 'COMPLETED', ?, ?, ?, ?, ?, ?)""",
                (occ.owner_kind.value, occ.owner_id, occ.source_id, occ.target_key,
                 to_iso(occ.due_start), to_iso(occ.due_end), 1 if occ.is_on_time else 0,
                 to_iso(occ.completed_at), occ.completed_by,
                 json.dumps(occ.completion_payload, default=str), now_ts, now_ts),
            )
            conn.commit()
            return cur.lastrowid if cur.rowcount else None
        finally:
            conn.close()

    @staticmethod
    def get(occurrence_id: int) -> Optional[Occurrence]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM occurrences WHERE id = ?", (occurrence_id,)).fetchone()
        conn.close()
        return Occurrence.from_row(row) if row else None

    @staticmethod
    def get_by_key(owner_kind: OwnerKind, owner_id: int, target_key: str) -> Optional[Occurrence]:
        conn = _get_conn()
        row = conn.execute(
            "SELECT * FROM occurrences WHERE owner_kind = ? AND owner_id = ? AND target_key = ?",
            (owner_kind.value, owner_id, target_key),
        ).fetchone()
        conn.close()
        return Occurrence.from_row(row) if row else None

    @staticmethod
    def list_for_dates(from_date: date, to_date: date, week_keys: Iterable[str] = (),
                       owners: Optional[Iterable[Tuple[OwnerKind, int]]] = None,
                       status: Optional[OccurrenceStatus] = None) -> List[Occurrence]:
        """Occurrences whose owner-local date key falls in [from_date, to_date),
        plus the listed ISO week keys.

        Keys are resolved in each owner's timezone when generated, so this is
        the owner-local selection; due intervals are never compared here.
        """
        sql = ("SELECT * FROM occurrences WHERE ((target_key >= ? AND target_key < ?"
               " AND target_key NOT LIKE '%-W%')")
        params: List[Any] = [from_date.isoformat(), to_date.isoformat()]
        week_keys = list(week_keys)
        if week_keys:
            sql += " OR target_key IN (" + ", ".join("?" for _ in week_keys) + ")"
            params.extend(week_keys)
        sql += ")"
        if owners is not None:
            owners = list(owners)
            if not owners:
                return []
            clauses = []
            for kind, oid in owners:
                clauses.append("(owner_kind = ? AND owner_id = ?)")
                params.extend([kind.value, oid])
            sql += " AND (" + " OR ".join(clauses) + ")"
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY due_start, owner_kind, owner_id"
        conn = _get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [Occurrence.from_row(r) for r in rows]

    @staticmethod
    def list_overdue(as_of: datetime, owner: Optional[Tuple[OwnerKind, int]] = None) -> List[Occurrence]:
        sql = "SELECT * FROM occurrences WHERE status = 'REQUIRED' AND due_end < ?"
        params: List[Any] = [to_iso(as_of)]
        if owner is not None:
            sql += " AND owner_kind = ? AND owner_id = ?"
            params.extend([owner[0].value, owner[1]])
        sql += " ORDER BY due_end, id"
        conn = _get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [Occurrence.from_row(r) for r in rows]

    @staticmethod
    def complete(occurrence_id: int, completed_at: datetime, completed_by: Optional[str],
                 payload: Dict[str, Any], is_on_time: bool, now_ts: str) -> bool:
        """REQUIRED -> COMPLETED. False when the row was no longer REQUIRED."""
        conn = _get_conn()
        try:
            cur = conn.execute(
                """UPDATE occurrences
                   SET status = 'COMPLETED', completed_at = ?, completed_by = ?,
                       completion_payload = ?, is_on_time = ?, updated_at = ?
                   WHERE id = ? AND status = 'REQUIRED'""",
                (to_iso(completed_at), completed_by, json.dumps(payload, default=str),
                 1 if is_on_time else 0, now_ts, occurrence_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    @staticmethod
    def mark_missed(occurrence_id: int, reason: str, missed_at: datetime, now_ts: str) -> bool:
        """REQUIRED -> MISSED. False when the row was no longer REQUIRED."""
        conn = _get_conn()
        try:
            cur = conn.execute(
                """UPDATE occurrences
                   SET status = 'MISSED', missed_reason = ?, missed_at = ?, is_on_time = 0, updated_at = ?
                   WHERE id = ? AND status = 'REQUIRED'""",
                (reason, to_iso(missed_at), now_ts, occurrence_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    @staticmethod
    def apply_override(occurrence_id: int, actor_id: str, reason: str, at: datetime, now_ts: str) -> bool:
        """MISSED -> COMPLETED (overridden). False when the row was no longer MISSED."""
        conn = _get_conn()
        try:
            cur = conn.execute(
                """UPDATE occurrences
                   SET status = 'COMPLETED', is_on_time = 0, completed_at = ?, completed_by = ?,
                       override_reason = ?, overridden_by = ?, overridden_at = ?, updated_at = ?
                   WHERE id = ? AND status = 'MISSED'""",
                (to_iso(at), actor_id, reason, actor_id, to_iso(at), now_ts, occurrence_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    @staticmethod
    def replace_payload(occurrence_id: int, payload: Dict[str, Any], now_ts: str) -> bool:
        """Correction on a COMPLETED occurrence; timing fields are left alone."""
        conn = _get_conn()
        try:
            cur = conn.execute(
                """UPDATE occurrences SET completion_payload = ?, updated_at = ?
                   WHERE id = ? AND status = 'COMPLETED'""",
                (json.dumps(payload, default=str), now_ts, occurrence_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    @staticmethod
    def delete_pending_from(owner_kind: OwnerKind, owner_id: int, source_id: int, start: datetime) -> int:
        """Drop still-REQUIRED rows of a retired rule that are not yet due."""
        conn = _get_conn()
        try:
            cur = conn.execute(
                """DELETE FROM occurrences
                   WHERE owner_kind = ? AND owner_id = ? AND source_id = ?
                     AND status = 'REQUIRED' AND due_start >= ?""",
                (owner_kind.value, owner_id, source_id, to_iso(start)),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    @staticmethod
    def list_upcoming(start: datetime, end: datetime) -> List[Occurrence]:
        """REQUIRED occurrences whose due interval ends at or after start and begins before end."""
        conn = _get_conn()
        rows = conn.execute(
            """SELECT * FROM occurrences
               WHERE status = 'REQUIRED' AND due_end >= ? AND due_start < ?
               ORDER BY due_end, id""",
            (to_iso(start), to_iso(end)),
        ).fetchall()
        conn.close()
        return [Occurrence.from_row(r) for r in rows]


class ReadingRepository:
    @staticmethod
    def create(reading: TemperatureReading, now_ts: str) -> int:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO temperature_readings
                   (asset_id, monitor_id, occurrence_id, value, recorded_by, occurred_at, is_alert,
                    severity, on_time_hint, late_reason, corrective_action, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (reading.asset_id, reading.monitor_id, reading.occurrence_id, float(reading.value),
                 reading.recorded_by, to_iso(reading.occurred_at), 1 if reading.is_alert else 0,
                 reading.severity,
                 None if reading.on_time_hint is None else (1 if reading.on_time_hint else 0),
                 reading.late_reason, reading.corrective_action, now_ts),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    @staticmethod
    def attach(reading_id: int, monitor_id: Optional[int], occurrence_id: Optional[int]):
        conn = _get_conn()
        try:
            conn.execute(
                "UPDATE temperature_readings SET monitor_id = ?, occurrence_id = ? WHERE id = ?",
                (monitor_id, occurrence_id, reading_id),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def resolve(reading_id: int, resolved_by: str, notes: Optional[str], at: datetime) -> bool:
        """Close an open out-of-range reading. False when it was already resolved."""
        conn = _get_conn()
        try:
            cur = conn.execute(
                """UPDATE temperature_readings
                   SET resolved_at = ?, resolved_by = ?, resolution_notes = COALESCE(?, resolution_notes)
                   WHERE id = ? AND is_alert = 1 AND resolved_at IS NULL""",
                (to_iso(at), resolved_by, notes, reading_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    @staticmethod
    def get_alerts(asset_id: Optional[int] = None, resolved: Optional[bool] = None,
                   limit: int = 100) -> List[TemperatureReading]:
        sql = "SELECT * FROM temperature_readings WHERE is_alert = 1"
        params: List[Any] = []
        if asset_id is not None:
            sql += " AND asset_id = ?"
            params.append(asset_id)
        if resolved is True:
            sql += " AND resolved_at IS NOT NULL"
        elif resolved is False:
            sql += " AND resolved_at IS NULL"
        sql += " ORDER BY occurred_at DESC, id DESC LIMIT ?"
        params.append(limit)
        conn = _get_conn()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [TemperatureReading.from_row(r) for r in rows]

    @staticmethod
    def count_unresolved(asset_id: Optional[int] = None) -> int:
        sql = "SELECT COUNT(*) AS cnt FROM temperature_readings WHERE is_alert = 1 AND resolved_at IS NULL"
        params: List[Any] = []
        if asset_id is not None:
            sql += " AND asset_id = ?"
            params.append(asset_id)
        conn = _get_conn()
        row = conn.execute(sql, params).fetchone()
        conn.close()
        return row["cnt"]

    @staticmethod
    def get(reading_id: int) -> Optional[TemperatureReading]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM temperature_readings WHERE id = ?", (reading_id,)).fetchone()
        conn.close()
        return TemperatureReading.from_row(row) if row else None

    @staticmethod
    def get_for_asset(asset_id: int, limit: int = 100) -> List[TemperatureReading]:
        conn = _get_conn()
        rows = conn.execute(
            "SELECT * FROM temperature_readings WHERE asset_id = ? ORDER BY occurred_at DESC LIMIT ?",
            (asset_id, limit),
        ).fetchall()
        conn.close()
        return [TemperatureReading.from_row(r) for r in rows]


class CompletionRepository:
    @staticmethod
    def create(checklist_id: int, occurrence_id: Optional[int], completed_by: Optional[str],
               items: List[Dict], confirmation_note: Optional[str], occurred_at: datetime,
               now_ts: str) -> int:
        conn = _get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO checklist_completions
                   (checklist_id, occurrence_id, completed_by, items_json, confirmation_note,
                    occurred_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (checklist_id, occurrence_id, completed_by, json.dumps(items), confirmation_note,
                 to_iso(occurred_at), now_ts),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    @staticmethod
    def attach(completion_id: int, occurrence_id: Optional[int]):
        conn = _get_conn()
        try:
            conn.execute(
                "UPDATE checklist_completions SET occurrence_id = ? WHERE id = ?",
                (occurrence_id, completion_id),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def get(completion_id: int) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM checklist_completions WHERE id = ?", (completion_id,)).fetchone()
        conn.close()
        if not row:
            return None
        d = dict(row)
        d["items"] = _loads(d.pop("items_json", None), [])
        return d


class RecordRepository:
    """Materialized compliance records (recomputable at any time)."""

    @staticmethod
    def upsert(level: str, group_key: str, period_start: date, period_end: date,
               counts: Dict[str, Any], now_ts: str):
        conn = _get_conn()
        try:
            conn.execute(
                """INSERT INTO compliance_records
                   (level, group_key, period_start, period_end, required_count, completed_count,
                    on_time_count, missed_count, completion_rate, on_time_rate, status, computed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(level, group_key, period_start) DO UPDATE SET
                     period_end = excluded.period_end,
                     required_count = excluded.required_count,
                     completed_count = excluded.completed_count,
                     on_time_count = excluded.on_time_count,
                     missed_count = excluded.missed_count,
                     completion_rate = excluded.completion_rate,
                     on_time_rate = excluded.on_time_rate,
                     status = excluded.status,
                     computed_at = excluded.computed_at""",
                (level, group_key, period_start.isoformat(), period_end.isoformat(),
                 counts["required_count"], counts["completed_count"], counts["on_time_count"],
                 counts["missed_count"], counts["completion_rate"], counts["on_time_rate"],
                 counts["status"], now_ts),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def get_range(start: date, end: date, level: Optional[str] = None) -> List[Dict]:
        conn = _get_conn()
        sql = "SELECT * FROM compliance_records WHERE period_start >= ? AND period_start < ?"
        params: List[Any] = [start.isoformat(), end.isoformat()]
        if level:
            sql += " AND level = ?"
            params.append(level)
        rows = conn.execute(sql + " ORDER BY period_start, level, group_key", params).fetchall()
        conn.close()
        return [dict(r) for r in rows]
