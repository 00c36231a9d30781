"""
ColdTrack Event Stream Module
Outbound log of compliance events, with in-process subscribers for
notification and export services.
"""
from .routes import register_eventstream_routes
from .emitter import emit_event, subscribe, unsubscribe
from .models import init_eventstream_schema

__all__ = [
    "register_eventstream_routes",
    "emit_event",
    "subscribe",
    "unsubscribe",
    "init_eventstream_schema",
]
