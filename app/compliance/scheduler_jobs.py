"""
ColdTrack Compliance — Scheduler Jobs

The only place that reads the wall clock: each job takes "now" in the
facility timezone and hands it to the engine.
  - generation: daily at generate_time, plus once at startup
  - sweep:      every sweep_interval_minutes
  - snapshot:   daily at snapshot_time, materializes yesterday's records
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler

from .aggregator import snapshot_daily
from .config import get_config, get_timezone, parse_time_input
from .generator import generate_all
from .sweeper import sweep

logger = logging.getLogger("compliance.scheduler")

_scheduler: Optional[BackgroundScheduler] = None


def get_compliance_scheduler() -> BackgroundScheduler:
    """Get or create the singleton compliance scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            timezone=get_timezone(),
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 120},
        )
        _scheduler.add_listener(_on_job_executed, EVENT_JOB_EXECUTED)
        _scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    return _scheduler


def _on_job_executed(event):
    logger.debug(f"Job {event.job_id} executed")


def _on_job_error(event):
    logger.error(f"Job {event.job_id} failed: {event.exception}")


def _now() -> datetime:
    return datetime.now(get_timezone())


def run_generation():
    now = _now()
    result = generate_all(now.date())
    if result.failures:
        logger.warning(f"[Compliance] {len(result.failures)} owners failed generation")


def run_sweep():
    sweep(_now())


def run_snapshot():
    now = _now()
    snapshot_daily(now.date() - timedelta(days=1), now)


def init_compliance_scheduler() -> bool:
    """Register and start the compliance jobs. Returns False when disabled."""
    if not get_config("scheduler_enabled", True):
        logger.info("[Compliance] Scheduler disabled by config")
        return False

    scheduler = get_compliance_scheduler()
    if scheduler.running:
        return True

    gen_hour, gen_minute = parse_time_input(get_config("generate_time", "00:05"), (0, 5))
    snap_hour, snap_minute = parse_time_input(get_config("snapshot_time", "00:30"), (0, 30))

    scheduler.add_job(
        run_generation,
        "cron",
        hour=gen_hour,
        minute=gen_minute,
        id="compliance_generate",
        replace_existing=True,
    )
    scheduler.add_job(
        run_generation,
        "date",
        id="compliance_generate_startup",
        replace_existing=True,
    )
    scheduler.add_job(
        run_sweep,
        "interval",
        minutes=int(get_config("sweep_interval_minutes", 15)),
        id="compliance_sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        run_snapshot,
        "cron",
        hour=snap_hour,
        minute=snap_minute,
        id="compliance_snapshot",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("[Compliance] Scheduler started with generation, sweep and snapshot jobs")
    return True


def shutdown_compliance_scheduler():
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("[Compliance] Scheduler stopped")
    _scheduler = None
