"""Excel report writer — produces IPE_Report.xlsx."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, cast

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo
from openpyxl.worksheet.worksheet import Worksheet

from fleet_ipe.aggregate import aggregate_by_vehicle, monthly_frame, vehicle_frame
from fleet_ipe.models import ExtractionReport, MonthlyTotals, RegressionResult, VehicleRecord

# ── Style constants ──────────────────────────────────────────────

HEADER_FONT = Font(name="Calibri", bold=True, size=11, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="1F6F43", end_color="1F6F43", fill_type="solid")
HEADER_ALIGN = Alignment(horizontal="center", vertical="center", wrap_text=True)

TITLE_FONT = Font(name="Calibri", bold=True, size=14, color="1F6F43")
SUBTITLE_FONT = Font(name="Calibri", size=10, color="808080")
LABEL_FONT = Font(name="Calibri", bold=True, size=11)
VALUE_FONT = Font(name="Calibri", size=11)
WARN_FONT = Font(name="Calibri", italic=True, size=10, color="CC6600")

NOTE_FILL = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")
KPI_FILL = PatternFill(start_color="E2EFDA", end_color="E2EFDA", fill_type="solid")

QTY_FMT = "#,##0.00"
COUNT_FMT = "#,##0"
INDEX_FMT = "0.0000"

_COL_FORMATS: dict[str, str] = {
    "liters": QTY_FMT,
    "tep": INDEX_FMT,
    "cost": QTY_FMT,
    "distance_km": QTY_FMT,
    "tonnage": QTY_FMT,
    "vehicle_count": COUNT_FMT,
    "record_count": COUNT_FMT,
    "sample_size": COUNT_FMT,
    "index_per_100km": INDEX_FMT,
    "index_per_100km_per_ton": INDEX_FMT,
    "avg_index_per_100km": INDEX_FMT,
    "avg_index_per_100km_per_ton": INDEX_FMT,
    "km_per_liter": QTY_FMT,
    "cost_per_km": INDEX_FMT,
    "kilometrage": "0.000000",
    "tonnage_coef": "0.000000",
    "intercept": INDEX_FMT,
    "r_squared": INDEX_FMT,
    "adjusted_r_squared": INDEX_FMT,
    "mse": INDEX_FMT,
}

RECORD_COLUMNS: list[str] = [
    "month",
    "vehicle_type",
    "vehicle_id",
    "liters",
    "tep",
    "cost",
    "distance_km",
    "tonnage",
    "index_per_100km",
    "index_per_100km_per_ton",
]

REGRESSION_COLUMNS: list[str] = [
    "vehicle_type",
    "equation",
    "kilometrage",
    "tonnage_coef",
    "intercept",
    "r_squared",
    "adjusted_r_squared",
    "mse",
    "sample_size",
    "low_confidence",
    "is_default",
]

_AUTO_WIDTH_SAMPLE_ROWS = 300
_MAX_WIDTH = 60
_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")


# ── Frames ───────────────────────────────────────────────────────


def records_frame(records: Iterable[VehicleRecord]) -> pd.DataFrame:
    rows = [{col: getattr(r, col) for col in RECORD_COLUMNS} for r in records]
    return pd.DataFrame(rows, columns=RECORD_COLUMNS)


def regression_frame(regressions: Mapping[str, RegressionResult]) -> pd.DataFrame:
    rows = [
        {
            "vehicle_type": r.vehicle_type,
            "equation": r.equation,
            "kilometrage": r.coefficients["kilometrage"],
            "tonnage_coef": r.coefficients["tonnage"],
            "intercept": r.intercept,
            "r_squared": r.r_squared,
            "adjusted_r_squared": r.adjusted_r_squared,
            "mse": r.mse,
            "sample_size": r.sample_size,
            "low_confidence": r.low_confidence,
            "is_default": r.is_default,
        }
        for r in regressions.values()
    ]
    return pd.DataFrame(rows, columns=REGRESSION_COLUMNS)


# ── Helpers ──────────────────────────────────────────────────────


def _style_header(ws: Worksheet, ncols: int) -> None:
    for c in range(1, ncols + 1):
        cell = ws.cell(row=1, column=c)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGN


def _auto_width(ws: Worksheet) -> None:
    last_row = min(ws.max_row, _AUTO_WIDTH_SAMPLE_ROWS + 1)
    for c_idx in range(1, ws.max_column + 1):
        width = max(
            (len(str(row[0].value or "")) for row in ws.iter_rows(min_row=1, max_row=last_row, min_col=c_idx, max_col=c_idx)),
            default=0,
        )
        ws.column_dimensions[get_column_letter(c_idx)].width = min(width + 4, _MAX_WIDTH)


def _apply_number_formats(ws: Worksheet, col_names: list[str]) -> None:
    if ws.max_row < 2:
        return
    for c_idx, name in enumerate(col_names, 1):
        fmt = _COL_FORMATS.get(name)
        if not fmt:
            continue
        for row in ws.iter_rows(min_row=2, max_row=ws.max_row, min_col=c_idx, max_col=c_idx):
            row[0].number_format = fmt


def _table_name(ws: Worksheet, name: str) -> str:
    base = re.sub(r"[^A-Za-z0-9_]", "_", name) or "Table"
    if not re.match(r"^[A-Za-z_]", base):
        base = f"_{base}"
    existing: set[str] = set()
    if ws.parent is not None:
        for sheet in ws.parent.worksheets:
            existing.update(cast(Iterable[str], sheet.tables.keys()))
    candidate, suffix = base, 1
    while candidate in existing:
        candidate = f"{base}_{suffix}"
        suffix += 1
    return candidate


def _add_excel_table(ws: Worksheet, name: str, ncols: int, nrows: int) -> None:
    ref = f"A1:{get_column_letter(ncols)}{nrows + 1}"
    table = Table(displayName=_table_name(ws, name), ref=ref)
    table.tableStyleInfo = TableStyleInfo(
        name="TableStyleMedium7", showFirstColumn=False,
        showLastColumn=False, showRowStripes=True, showColumnStripes=False,
    )
    ws.add_table(table)


def _excel_value(val: Any) -> Any:
    if val is None:
        return None
    if isinstance(val, float) and not math.isfinite(val):
        return None
    item = getattr(val, "item", None)
    if callable(item):
        val = item()
    if isinstance(val, str):
        stripped = val.lstrip()
        if stripped and stripped[0] in _EXCEL_FORMULA_PREFIXES and not val.startswith("'"):
            return f"'{val}"
    return val


def _df_to_sheet(wb: Workbook, name: str, df: pd.DataFrame) -> Worksheet:
    ws = wb.create_sheet(title=name)
    col_names = list(df.columns)
    for c_idx, col_name in enumerate(col_names, 1):
        ws.cell(row=1, column=c_idx, value=col_name)
    for r_idx, row_vals in enumerate(df.itertuples(index=False, name=None), 2):
        for c_idx, val in enumerate(row_vals, 1):
            ws.cell(row=r_idx, column=c_idx, value=_excel_value(val))
    _style_header(ws, len(col_names))
    _apply_number_formats(ws, col_names)
    ws.freeze_panes = "A2"
    _auto_width(ws)
    if len(df) > 0:
        _add_excel_table(ws, name, len(col_names), len(df))
    return ws


def _fill_row(ws: Worksheet, row: int, fill: PatternFill, ncols: int = 4) -> None:
    for c in range(1, ncols + 1):
        ws.cell(row=row, column=c).fill = fill


def _write_dashboard(
    wb: Workbook,
    records: Sequence[VehicleRecord],
    regressions: Mapping[str, RegressionResult],
    report: ExtractionReport,
) -> None:
    ws = wb.create_sheet(title="Dashboard")

    ws.cell(row=1, column=1, value="fleet-ipe: consumption dashboard").font = TITLE_FONT
    ws.merge_cells("A1:D1")
    generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    subtitle = f"Sheet {report.sheet!r} · generated {generated}" if report.sheet else f"Generated {generated}"
    ws.cell(row=2, column=1, value=subtitle).font = SUBTITLE_FONT
    ws.merge_cells("A2:D2")

    # ── Extraction notes ─────────────────────────────────────────
    row = 4
    ws.cell(row=row, column=1, value="Notes").font = LABEL_FONT
    _fill_row(ws, row, NOTE_FILL)
    ws.merge_cells(f"A{row}:D{row}")
    row += 1
    ws.cell(row=row, column=1, value=f"Rows in: {report.rows_in}")
    ws.cell(row=row, column=2, value=f"Records: {report.rows_out}")
    ws.cell(row=row, column=3, value=f"Dropped: {report.dropped_rows}")
    _fill_row(ws, row, NOTE_FILL)
    row += 1
    for warn in report.warnings or ["No warnings"]:
        cell = ws.cell(row=row, column=1, value=f"⚠ {warn}" if report.warnings else warn)
        cell.font = WARN_FONT if report.warnings else VALUE_FONT
        _fill_row(ws, row, NOTE_FILL)
        row += 1

    # ── Fleet totals ─────────────────────────────────────────────
    row += 1
    ws.cell(row=row, column=1, value="Fleet totals").font = LABEL_FONT
    ws.merge_cells(f"A{row}:D{row}")
    _fill_row(ws, row, KPI_FILL)
    row += 1

    fleet = MonthlyTotals("all")
    for record in records:
        fleet.add(record)
    totals = fleet.to_dict()
    kpis: list[tuple[str, Any, str]] = [
        ("Vehicle-months", totals["vehicle_count"], COUNT_FMT),
        ("Total liters", totals["liters"], QTY_FMT),
        ("Total TEP", totals["tep"], INDEX_FMT),
        ("Total cost (DT)", totals["cost"], QTY_FMT),
        ("Total distance (km)", totals["distance_km"], QTY_FMT),
        ("Total tonnage", totals["tonnage"], QTY_FMT),
        ("L/100 km", totals["avg_index_per_100km"], INDEX_FMT),
        ("L/T.100 km", totals["avg_index_per_100km_per_ton"], INDEX_FMT),
    ]
    for label, value, fmt in kpis:
        ws.cell(row=row, column=1, value=label).font = LABEL_FONT
        val_cell = ws.cell(row=row, column=2, value=value)
        val_cell.font = VALUE_FONT
        val_cell.number_format = fmt
        val_cell.alignment = Alignment(horizontal="right")
        _fill_row(ws, row, KPI_FILL, ncols=2)
        row += 1

    # ── Regression equations ─────────────────────────────────────
    row += 1
    ws.cell(row=row, column=1, value="Regression models").font = LABEL_FONT
    ws.merge_cells(f"A{row}:D{row}")
    _fill_row(ws, row, KPI_FILL)
    row += 1
    if not regressions:
        ws.cell(row=row, column=1, value="No regression fitted").font = VALUE_FONT
    for result in regressions.values():
        ws.cell(row=row, column=1, value=result.vehicle_type).font = LABEL_FONT
        ws.cell(row=row, column=2, value=result.equation).font = VALUE_FONT
        note = f"R² {result.r_squared:.4f}, n={result.sample_size}"
        if result.is_default:
            note += " (default model)"
        elif result.low_confidence:
            note += " (low confidence)"
        ws.cell(row=row, column=3, value=note).font = SUBTITLE_FONT
        row += 1

    ws.column_dimensions["A"].width = 24
    ws.column_dimensions["B"].width = 64
    ws.column_dimensions["C"].width = 28
    ws.column_dimensions["D"].width = 14


# ── Public API ───────────────────────────────────────────────────


def write_report(
    out_dir: Path,
    records: Sequence[VehicleRecord],
    totals: Mapping[str, MonthlyTotals],
    regressions: Mapping[str, RegressionResult],
    report: ExtractionReport | None = None,
) -> Path:
    """Write ``IPE_Report.xlsx`` and return the path."""
    if report is None:
        report = ExtractionReport()

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    report_path = out_dir / "IPE_Report.xlsx"

    wb = Workbook()
    default_sheet = wb.active
    if default_sheet is not None:
        wb.remove(default_sheet)

    _write_dashboard(wb, records, regressions, report)
    _df_to_sheet(wb, "Monthly", monthly_frame(totals))
    _df_to_sheet(wb, "Vehicles", vehicle_frame(aggregate_by_vehicle(records)))
    _df_to_sheet(wb, "Records", records_frame(records))
    _df_to_sheet(wb, "Regression", regression_frame(regressions))

    tmp_path = out_dir / "IPE_Report.tmp.xlsx"
    wb.save(tmp_path)
    tmp_path.replace(report_path)
    return report_path
