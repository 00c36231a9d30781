"""
ColdTrack Compliance Module
Recurrence-driven compliance engine for fridge temperature checks and
recurring audit checklists.
"""
from .routes import register_compliance_routes
from .models import init_compliance_schema
from .scheduler_jobs import init_compliance_scheduler, shutdown_compliance_scheduler

__all__ = [
    "register_compliance_routes",
    "init_compliance_schema",
    "init_compliance_scheduler",
    "shutdown_compliance_scheduler",
]
