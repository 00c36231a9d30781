# ============================================================================
# ColdTrack Compliance - Configuration Management
# ============================================================================
# Database-backed configuration with type casting and defaults.
# The facility timezone defaults to UTC until configured.
# ============================================================================

import json
import logging
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import _get_conn

logger = logging.getLogger(__name__)

# key: (default, value_type, category)
DEFAULT_CONFIG = {
    "timezone": ("UTC", "string", "general"),

    # Generation window
    "backfill_days": (14, "int", "generation"),
    "horizon_days": (60, "int", "generation"),

    # Scheduler
    "scheduler_enabled": (True, "bool", "scheduler"),
    "sweep_interval_minutes": (15, "int", "scheduler"),
    "generate_time": ("00:05", "string", "scheduler"),
    "snapshot_time": ("00:30", "string", "scheduler"),

    # Reminders / dashboards
    "upcoming_days_before": (1, "int", "general"),
    "preview_days_ahead": (30, "int", "general"),
    "preview_limit": (10, "int", "general"),

    # Temperature severity bands (degrees outside the allowed range)
    "severity_high_delta": (1.0, "float", "temperature"),
    "severity_critical_delta": (2.0, "float", "temperature"),
}

CONFIG_SCHEMA = """
CREATE TABLE IF NOT EXISTS compliance_config (
    key TEXT PRIMARY KEY,
    value TEXT,
    value_type TEXT DEFAULT 'string',
    category TEXT DEFAULT 'general',
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_by TEXT
);
"""


class ComplianceConfig:
    """
    Database-backed configuration manager for the compliance engine.

    Values live in the compliance_config table; reads go through a
    class-level cache that is reset whenever the table is re-initialized.
    """

    _cache: Dict[str, Any] = {}
    _cache_loaded: bool = False

    @classmethod
    def _load_cache(cls):
        if cls._cache_loaded:
            return

        for key, (default, vtype, category) in DEFAULT_CONFIG.items():
            cls._cache[key] = default

        conn = _get_conn()
        conn.executescript(CONFIG_SCHEMA)
        rows = conn.execute("SELECT key, value, value_type FROM compliance_config").fetchall()
        conn.close()

        for row in rows:
            cls._cache[row["key"]] = cls._cast_value(row["value"], row["value_type"])

        cls._cache_loaded = True

    @classmethod
    def _cast_value(cls, value: str, value_type: str) -> Any:
        """Cast string value to appropriate type."""
        if value is None:
            return None
        if value_type == "bool":
            return value.lower() in ("true", "1", "yes", "on")
        if value_type == "int":
            try:
                return int(value)
            except ValueError:
                return 0
        if value_type == "float":
            try:
                return float(value)
            except ValueError:
                return 0.0
        if value_type == "json":
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value

    @classmethod
    def _serialize_value(cls, value: Any, value_type: str) -> str:
        if value is None:
            return ""
        if value_type == "bool":
            return "true" if value else "false"
        if value_type == "json":
            return json.dumps(value)
        return str(value)

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        cls._load_cache()
        return cls._cache.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, value_type: str = None,
            category: str = "general", user: str = None) -> bool:
        """Set a configuration value (typed by DEFAULT_CONFIG when known)."""
        cls._load_cache()

        if value_type is None:
            if key in DEFAULT_CONFIG:
                _, value_type, category = DEFAULT_CONFIG[key]
            elif isinstance(value, bool):
                value_type = "bool"
            elif isinstance(value, int):
                value_type = "int"
            elif isinstance(value, float):
                value_type = "float"
            elif isinstance(value, (dict, list)):
                value_type = "json"
            else:
                value_type = "string"

        if key == "timezone":
            try:
                ZoneInfo(str(value))
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"Unknown timezone: {value}")

        old_value = cls._cache.get(key)
        serialized = cls._serialize_value(value, value_type)

        conn = _get_conn()
        conn.execute(
            """INSERT INTO compliance_config (key, value, value_type, category, updated_by)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
               value = excluded.value,
               value_type = excluded.value_type,
               category = excluded.category,
               updated_at = CURRENT_TIMESTAMP,
               updated_by = excluded.updated_by""",
            (key, serialized, value_type, category, user),
        )
        conn.commit()
        conn.close()

        cls._cache[key] = cls._cast_value(serialized, value_type)

        if old_value != cls._cache[key]:
            logger.info(f"[Compliance] Config {key} changed by {user or 'system'}: {old_value} -> {cls._cache[key]}")

        return True

    @classmethod
    def get_all(cls, category: str = None) -> Dict[str, Any]:
        cls._load_cache()

        if category is None:
            return dict(cls._cache)

        result = {}
        for key, (default, vtype, cat) in DEFAULT_CONFIG.items():
            if cat == category:
                result[key] = cls._cache.get(key, default)
        return result

    @classmethod
    def reset_cache(cls):
        cls._cache = {}
        cls._cache_loaded = False

    @classmethod
    def init_defaults(cls):
        """Create the config table and insert defaults that are not present."""
        conn = _get_conn()
        conn.executescript(CONFIG_SCHEMA)
        for key, (default, value_type, category) in DEFAULT_CONFIG.items():
            conn.execute(
                """INSERT OR IGNORE INTO compliance_config (key, value, value_type, category)
                   VALUES (?, ?, ?, ?)""",
                (key, cls._serialize_value(default, value_type), value_type, category),
            )
        conn.commit()
        conn.close()
        cls.reset_cache()


def get_config(key: str, default: Any = None) -> Any:
    return ComplianceConfig.get(key, default)


def set_config(key: str, value: Any, user: str = None) -> bool:
    return ComplianceConfig.set(key, value, user=user)


def get_all_config() -> Dict[str, Any]:
    return ComplianceConfig.get_all()


def get_timezone() -> ZoneInfo:
    """Facility timezone; falls back to UTC on a bad stored name."""
    tz_name = get_config("timezone", "UTC")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[Compliance] Unknown timezone {tz_name!r}, using UTC")
        return ZoneInfo("UTC")


def parse_time_input(time_str: str, fallback: tuple = (0, 0)) -> tuple:
    """Parse a time string like '00:30' into (hour, minute)."""
    try:
        hour, minute = (int(p) for p in time_str.split(":")[:2])
        return (hour, minute)
    except (AttributeError, ValueError):
        return fallback
