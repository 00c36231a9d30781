"""
ColdTrack Event Stream — API Routes
"""
from fastapi import FastAPI, Request, Query
from typing import Optional

from .models import query_events, count_events, get_event_stats, init_eventstream_schema


def register_eventstream_routes(app: FastAPI):
    """Register all event stream endpoints."""

    init_eventstream_schema()

    @app.get("/api/events")
    async def api_events(
        request: Request,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        category: Optional[str] = None,
        event_type: Optional[str] = None,
        owner_kind: Optional[str] = None,
        owner_id: Optional[int] = None,
        severity: Optional[str] = None,
        since: Optional[str] = None,
    ):
        """Paginated, filtered outbound event log."""
        events = query_events(
            limit=limit, offset=offset,
            category=category, event_type=event_type,
            owner_kind=owner_kind, owner_id=owner_id,
            severity=severity, since=since,
        )
        total = count_events(
            category=category, event_type=event_type,
            owner_kind=owner_kind, owner_id=owner_id,
            severity=severity, since=since,
        )
        return {
            "ok": True,
            "events": events,
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    @app.get("/api/events/stats")
    async def api_event_stats(request: Request, since: Optional[str] = None):
        """Event counts by type/severity."""
        return {"ok": True, "stats": get_event_stats(since=since)}
