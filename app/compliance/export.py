# ============================================================================
# ColdTrack Compliance - Export
# ============================================================================
# Occurrence-level compliance exports in CSV and XLSX for auditors.
# ============================================================================

import csv
import io
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import openpyxl
from openpyxl.styles import Font, PatternFill

from .aggregator import Period, aggregate, calendar
from .models import OwnerKind

logger = logging.getLogger("compliance.export")

EXPORT_COLUMNS = [
    "date_or_week",
    "owner_kind",
    "owner_name",
    "cadence",
    "status",
    "required",
    "completed",
    "on_time",
    "overridden",
    "completed_at",
    "completed_by",
]

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill(start_color="2C3E50", end_color="2C3E50", fill_type="solid")


def _yes_no(value) -> str:
    return "Yes" if value else "No"


def export_rows(from_date: date, to_date: date,
                owners: Optional[List[Tuple[OwnerKind, int]]] = None) -> List[Dict[str, Any]]:
    rows = []
    for occ in calendar(from_date, to_date, owners=owners):
        completed = occ["status"] == "COMPLETED"
        rows.append({
            "date_or_week": occ["target_key"],
            "owner_kind": occ["owner_kind"],
            "owner_name": occ["owner_name"],
            "cadence": occ["cadence"] or "",
            "status": occ["status"],
            "required": "Yes",
            "completed": _yes_no(completed),
            "on_time": _yes_no(completed and occ["is_on_time"]),
            "overridden": _yes_no(occ["is_overridden"]),
            "completed_at": occ["completed_at"] or "",
            "completed_by": occ["completed_by"] or "",
        })
    return rows


def render_csv(rows: List[Dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def _style_header(ws):
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL


def render_xlsx(rows: List[Dict[str, Any]], summary: Optional[Dict[str, Any]] = None) -> bytes:
    """Workbook with an Occurrences sheet and, when given, a Summary sheet."""
    wb = openpyxl.Workbook()

    ws = wb.active
    ws.title = "Occurrences"
    ws.append(EXPORT_COLUMNS)
    _style_header(ws)
    for row in rows:
        ws.append([row.get(c, "") for c in EXPORT_COLUMNS])
    for col, width in zip("ABCDEFGHIJK", (14, 10, 32, 10, 12, 10, 10, 10, 11, 26, 18)):
        ws.column_dimensions[col].width = width

    if summary:
        ws2 = wb.create_sheet("Summary")
        ws2.append(["Metric", "Value"])
        _style_header(ws2)
        for key, value in summary.items():
            ws2.append([key, value])
        ws2.column_dimensions["A"].width = 20
        ws2.column_dimensions["B"].width = 16

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def build_export(fmt: str, from_date: date, to_date: date, as_of: datetime,
                 owners: Optional[List[Tuple[OwnerKind, int]]] = None) -> Tuple[bytes, str, str]:
    """Returns (content, media_type, filename) for csv or xlsx."""
    rows = export_rows(from_date, to_date, owners)
    stem = f"compliance_{from_date.isoformat()}_{to_date.isoformat()}"
    if fmt == "xlsx":
        facility = aggregate(owners, Period(from_date, to_date), ["facility"], as_of)["groups"]["facility"][0]
        content = render_xlsx(rows, summary=facility)
        logger.info(f"[Compliance] XLSX export {stem}: {len(rows)} rows")
        return (content,
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                f"{stem}.xlsx")
    logger.info(f"[Compliance] CSV export {stem}: {len(rows)} rows")
    return render_csv(rows).encode("utf-8"), "text/csv", f"{stem}.csv"
