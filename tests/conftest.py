"""
ColdTrack — Test Infrastructure (conftest.py)
=============================================
Provides:
  - COMPLIANCE_TEST_MODE environment setup (scheduler stays off)
  - Test database (compliance_test.db), wiped before each test that asks for `db`
  - FastAPI TestClient
  - Builders for checklists / fridges, DB assertion helpers
  - Artifact collection
"""

import os
import sys
import sqlite3
import datetime
import json
import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

# ============================================================================
# TEST MODE: Use separate test database (must be set before app imports)
# ============================================================================
TEST_DB_PATH = os.path.join(ROOT_DIR, "compliance_test.db")
ARTIFACTS_DIR = os.path.join(ROOT_DIR, "test_artifacts",
                             datetime.datetime.now().strftime("%Y%m%d_%H%M%S"))

os.environ["COMPLIANCE_TEST_MODE"] = "1"
os.environ["COMPLIANCE_DB_PATH"] = TEST_DB_PATH

UTC = datetime.timezone.utc

TABLES = [
    "occurrences", "temperature_readings", "checklist_completions", "compliance_records",
    "window_monitors", "assets", "schedule_rules", "checklist_items", "checklists",
    "compliance_config", "event_stream",
]


def _point_modules_at_test_db():
    from app.compliance import models
    from app.eventstream import models as es_models
    models.DB_PATH = TEST_DB_PATH
    es_models.DB_PATH = TEST_DB_PATH


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Session-wide test environment setup."""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
    os.makedirs(os.path.join(ARTIFACTS_DIR, "json_snapshots"), exist_ok=True)
    os.makedirs(os.path.join(ARTIFACTS_DIR, "exported_reports"), exist_ok=True)

    _point_modules_at_test_db()

    yield

    try:
        if os.path.exists(TEST_DB_PATH):
            os.remove(TEST_DB_PATH)
    except (PermissionError, OSError):
        pass


@pytest.fixture
def db():
    """Empty compliance schema with default config."""
    _point_modules_at_test_db()
    from app.compliance.models import init_compliance_schema
    from app.compliance.config import ComplianceConfig
    from app.eventstream.models import init_eventstream_schema

    init_compliance_schema()
    init_eventstream_schema()
    ComplianceConfig.init_defaults()

    conn = sqlite3.connect(TEST_DB_PATH, timeout=30)
    for table in TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.execute("DELETE FROM sqlite_sequence")
    conn.commit()
    conn.close()

    ComplianceConfig.init_defaults()
    return TEST_DB_PATH


@pytest.fixture(scope="session")
def app():
    """Get the FastAPI app instance with test DB."""
    _point_modules_at_test_db()
    import main
    return main.app


@pytest.fixture(scope="session")
def client(app):
    """FastAPI TestClient (session-scoped for speed)."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def api(client, db):
    """Client over a freshly wiped database."""
    return client


# ============================================================================
# Builders
# ============================================================================

def at(y, mo, d, h=0, mi=0, tz=UTC):
    return datetime.datetime(y, mo, d, h, mi, tzinfo=tz)


def make_checklist(name="Daily fridge audit", items=None, schedule=None,
                   today=datetime.date(2024, 1, 1)):
    """Create a checklist (and schedule) through the engine; returns checklist id."""
    from app.compliance.models import ChecklistRepository
    from app.compliance.generator import replace_schedule

    items = items if items is not None else [
        {"label": "Door seal intact", "required": True},
        {"label": "Thermometer calibrated", "required": True},
        {"label": "Notes", "required": False},
    ]
    checklist_id = ChecklistRepository.create(name, None, items, "tester", "2024-01-01T00:00:00+00:00")
    if schedule is not None:
        replace_schedule(checklist_id, schedule, today, actor="tester")
    return checklist_id


def make_fridge(name="Vaccine Fridge A", min_temp=2.0, max_temp=8.0, timezone="UTC",
                monitors=None, today=datetime.date(2024, 1, 1)):
    """Create an asset with window monitors; returns (asset_id, [monitor_id, ...])."""
    from app.compliance.models import Asset, AssetRepository
    from app.compliance.generator import create_monitor

    asset_id = AssetRepository.create(
        Asset(name=name, min_temp=min_temp, max_temp=max_temp, timezone=timezone),
        "2024-01-01T00:00:00+00:00",
    )
    monitor_ids = []
    for m in monitors if monitors is not None else [
        {"label": "Morning", "check_type": "specific", "start_time": "08:00", "end_time": "09:30"},
    ]:
        monitor, _ = create_monitor(asset_id, m, today)
        monitor_ids.append(monitor.id)
    return asset_id, monitor_ids


def all_items_checked(checklist_id):
    from app.compliance.models import ChecklistRepository
    return [{"item_id": i.id, "checked": True} for i in ChecklistRepository.get(checklist_id).items]


# ============================================================================
# DB helpers
# ============================================================================

def get_test_db():
    """Direct connection to test database for assertions."""
    conn = sqlite3.connect(TEST_DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def db_query(sql, params=()):
    """Run a query against the test DB and return list of dicts."""
    conn = get_test_db()
    rows = conn.execute(sql, params).fetchall()
    result = [dict(r) for r in rows]
    conn.close()
    return result


def db_count(table, where="1=1", params=()):
    """Count rows in a table."""
    conn = get_test_db()
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()
    conn.close()
    return row["cnt"]


# ============================================================================
# Artifact helpers
# ============================================================================

def save_artifact(name, content, subdir="json_snapshots"):
    """Save test artifact to the artifacts directory."""
    path = os.path.join(ARTIFACTS_DIR, subdir, name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if isinstance(content, (dict, list)):
        with open(path, "w") as f:
            json.dump(content, f, indent=2, default=str)
    elif isinstance(content, bytes):
        with open(path, "wb") as f:
            f.write(content)
    else:
        with open(path, "w") as f:
            f.write(str(content))
    return path
