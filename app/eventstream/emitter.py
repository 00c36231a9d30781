"""
ColdTrack Event Stream — Core Emitter

emit_event() is the single entry point for outbound compliance events
(occurrence completed, occurrences missed, override applied, out-of-range
temperature, generation runs). It writes to the DB and hands the event to any
registered subscribers (notification / export services). Wrapped in
try/except so it NEVER breaks the caller's flow.
"""
import datetime
import logging
import threading
from typing import Callable, Dict, List, Optional

from .models import insert_event, init_eventstream_schema

logger = logging.getLogger(__name__)

_schema_ready = False
_subscribers: List[Callable[[Dict], None]] = []
_subscribers_lock = threading.Lock()


def _ensure_schema():
    global _schema_ready
    if not _schema_ready:
        init_eventstream_schema()
        _schema_ready = True


def _ts() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


def _severity_for_event(event_type: str) -> str:
    if event_type == "TEMPERATURE_OUT_OF_RANGE":
        return "alert"
    if event_type in ("OCCURRENCES_MISSED", "GENERATION_FAILED"):
        return "warning"
    return "info"


def _category_for_event(event_type: str) -> str:
    if event_type.startswith("TEMPERATURE_"):
        return "temperature"
    if event_type.startswith("OCCURRENCE"):
        return "occurrence"
    if event_type.startswith("GENERATION_") or event_type.startswith("SWEEP_"):
        return "system"
    return "compliance"


def subscribe(callback: Callable[[Dict], None]):
    with _subscribers_lock:
        if callback not in _subscribers:
            _subscribers.append(callback)


def unsubscribe(callback: Callable[[Dict], None]):
    with _subscribers_lock:
        if callback in _subscribers:
            _subscribers.remove(callback)


def emit_event(
    event_type: str,
    owner_kind: Optional[str] = None,
    owner_id: Optional[int] = None,
    occurrence_id: Optional[int] = None,
    user: Optional[str] = None,
    summary: Optional[str] = None,
    details: Optional[Dict] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> Optional[int]:
    """
    Record a compliance event to the event stream.

    The timestamp is the engine's logical "now" when given; the wall clock
    is used only when the caller has none.

    Returns the event ID on success, None on failure.
    """
    try:
        _ensure_schema()

        ts = timestamp or _ts()
        cat = category or _category_for_event(event_type)
        sev = severity or _severity_for_event(event_type)
        kind = getattr(owner_kind, "value", owner_kind)

        event_id = insert_event(
            timestamp=ts,
            event_type=event_type,
            category=cat,
            severity=sev,
            owner_kind=kind,
            owner_id=owner_id,
            occurrence_id=occurrence_id,
            user=user,
            summary=summary,
            details=details,
        )

        _notify({
            "id": event_id,
            "timestamp": ts,
            "event_type": event_type,
            "category": cat,
            "severity": sev,
            "owner_kind": kind,
            "owner_id": owner_id,
            "occurrence_id": occurrence_id,
            "user": user,
            "summary": summary,
            "details": details,
        })

        return event_id

    except Exception as e:
        logger.error(f"[EventStream] emit_event failed: {e}")
        return None


def _notify(payload: Dict):
    """Deliver an event to subscribers; a failing subscriber is logged and skipped."""
    with _subscribers_lock:
        targets = list(_subscribers)
    for callback in targets:
        try:
            callback(payload)
        except Exception as e:
            logger.warning(f"[EventStream] subscriber {getattr(callback, '__name__', callback)} failed: {e}")
