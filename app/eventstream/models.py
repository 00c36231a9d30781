"""
ColdTrack Event Stream — Database Models & Query Helpers
"""
import json
import os
import sqlite3
from typing import Optional, List, Dict

DB_PATH = os.environ.get("COMPLIANCE_DB_PATH", "compliance.db")


def _get_conn():
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_eventstream_schema():
    """Create event_stream table if it doesn't exist."""
    conn = _get_conn()
    c = conn.cursor()
    c.execute("""
        CREATE TABLE IF NOT EXISTS event_stream (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            event_type TEXT NOT NULL,
            category TEXT DEFAULT 'compliance',
            severity TEXT DEFAULT 'info',
            owner_kind TEXT,
            owner_id INTEGER,
            occurrence_id INTEGER,
            user TEXT,
            summary TEXT,
            details_json TEXT
        )
    """)
    for col in ("timestamp", "event_type", "category", "owner_id"):
        c.execute(f"CREATE INDEX IF NOT EXISTS idx_es_{col} ON event_stream ({col})")
    conn.commit()
    conn.close()


def insert_event(
    timestamp: str,
    event_type: str,
    category: str = "compliance",
    severity: str = "info",
    owner_kind: Optional[str] = None,
    owner_id: Optional[int] = None,
    occurrence_id: Optional[int] = None,
    user: Optional[str] = None,
    summary: Optional[str] = None,
    details: Optional[Dict] = None,
) -> int:
    """Insert an event and return its ID."""
    conn = _get_conn()
    c = conn.cursor()
    c.execute("""
        INSERT INTO event_stream
            (timestamp, event_type, category, severity, owner_kind, owner_id, occurrence_id,
             user, summary, details_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        timestamp, event_type, category, severity,
        owner_kind, owner_id, occurrence_id, user, summary,
        json.dumps(details, default=str) if details else None,
    ))
    event_id = c.lastrowid
    conn.commit()
    conn.close()
    return event_id


def _filters(category, event_type, owner_kind, owner_id, severity, since):
    conditions = []
    params = []
    if category:
        conditions.append("category = ?")
        params.append(category)
    if event_type:
        conditions.append("event_type = ?")
        params.append(event_type)
    if owner_kind:
        conditions.append("owner_kind = ?")
        params.append(owner_kind)
    if owner_id is not None:
        conditions.append("owner_id = ?")
        params.append(owner_id)
    if severity:
        conditions.append("severity = ?")
        params.append(severity)
    if since:
        conditions.append("timestamp >= ?")
        params.append(since)
    where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
    return where, params


def query_events(
    limit: int = 50,
    offset: int = 0,
    category: Optional[str] = None,
    event_type: Optional[str] = None,
    owner_kind: Optional[str] = None,
    owner_id: Optional[int] = None,
    severity: Optional[str] = None,
    since: Optional[str] = None,
) -> List[Dict]:
    """Query events with filters, newest first."""
    where, params = _filters(category, event_type, owner_kind, owner_id, severity, since)
    conn = _get_conn()
    rows = conn.execute(
        f"SELECT * FROM event_stream{where} ORDER BY id DESC LIMIT ? OFFSET ?",
        params + [limit, offset]
    ).fetchall()
    conn.close()

    events = []
    for r in rows:
        ev = dict(r)
        raw = ev.pop("details_json", None)
        ev["details"] = json.loads(raw) if raw else None
        events.append(ev)
    return events


def count_events(**filters) -> int:
    """Count events matching filters."""
    where, params = _filters(
        filters.get("category"), filters.get("event_type"), filters.get("owner_kind"),
        filters.get("owner_id"), filters.get("severity"), filters.get("since"),
    )
    conn = _get_conn()
    row = conn.execute(f"SELECT COUNT(*) as cnt FROM event_stream{where}", params).fetchone()
    conn.close()
    return row["cnt"] if row else 0


def get_event_stats(since: Optional[str] = None) -> Dict:
    """Aggregate counts by event_type and severity."""
    time_filter = ""
    params = []
    if since:
        time_filter = " WHERE timestamp >= ?"
        params.append(since)

    conn = _get_conn()
    by_type = {}
    for row in conn.execute(
        f"SELECT event_type, COUNT(*) as cnt FROM event_stream{time_filter} GROUP BY event_type ORDER BY cnt DESC LIMIT 20",
        params
    ).fetchall():
        by_type[row["event_type"]] = row["cnt"]

    by_severity = {}
    for row in conn.execute(
        f"SELECT severity, COUNT(*) as cnt FROM event_stream{time_filter} GROUP BY severity",
        params
    ).fetchall():
        by_severity[row["severity"]] = row["cnt"]
    conn.close()

    return {"total": sum(by_type.values()), "by_type": by_type, "by_severity": by_severity}
