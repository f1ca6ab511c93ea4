"""Row extractor — turn a classified grid into vehicle records and monthly totals."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import BinaryIO

from fleet_ipe.columns import apply_overrides, classify_columns
from fleet_ipe.grid import build_grid
from fleet_ipe.models import (
    EMPTY_CELL,
    UNSPECIFIED_MONTH,
    CellValue,
    ColumnRoles,
    ExtractionReport,
    Grid,
    MonthlyTotals,
    SkippedRow,
    VehicleRecord,
)
from fleet_ipe.parsing import parse_currency, parse_number

logger = logging.getLogger(__name__)

TRUCK_ID = re.compile(r"\d+\s*TU\s*\d+|TU\s*\d+", re.IGNORECASE)
MINIBUS_ID = re.compile(r"\d+\s*RS\s*\d*", re.IGNORECASE)
FORKLIFT_DESC = re.compile(r"chariot|élévateur|elevateur", re.IGNORECASE)
MINIBUS_DESC = re.compile(r"minibus|bus", re.IGNORECASE)

_ZERO_LIKE = frozenset({"", "0", "0.0"})


@dataclass
class ExtractionResult:
    records: list[VehicleRecord] = field(default_factory=list)
    monthly_totals: dict[str, MonthlyTotals] = field(default_factory=dict)
    roles: ColumnRoles = field(default_factory=ColumnRoles)
    report: ExtractionReport = field(default_factory=ExtractionReport)
    skipped: list[SkippedRow] = field(default_factory=list)


# ── Row helpers ─────────────────────────────────────────────────


def _cell(row: Sequence[CellValue], index: int | None) -> CellValue:
    if index is None or index >= len(row):
        return EMPTY_CELL
    return row[index]


def _has_text(cell: CellValue) -> bool:
    return cell.value is not None and cell.as_text != ""


def _unevaluated_formulas(row: Sequence[CellValue], roles: ColumnRoles) -> list[str]:
    """Formula texts of numeric cells left empty because they had no result."""
    found: list[str] = []
    for index in (roles.liters, roles.tep, roles.cost, roles.distance, roles.tonnage, roles.index):
        cell = _cell(row, index)
        if cell.is_empty and cell.display.startswith("="):
            found.append(cell.display)
    return found


def is_blank_row(row: Sequence[CellValue]) -> bool:
    """True when every cell is empty or reads as a bare zero."""
    return all(cell.value is None or cell.as_text.strip() in _ZERO_LIKE for cell in row)


def classify_vehicle(vehicle_id: str, description: str = "") -> str | None:
    """Vehicle type for a row, or ``None`` when the row does not describe a vehicle."""
    vehicle_id = vehicle_id.strip()
    description = description.strip()
    if not vehicle_id:
        return None
    if TRUCK_ID.search(vehicle_id):
        return "Camion"
    if MINIBUS_ID.search(vehicle_id):
        return "Minibus"
    if description:
        if FORKLIFT_DESC.search(description):
            return "Chariot"
        if MINIBUS_DESC.search(description):
            return "Minibus"
    return None


def energy_indices(
    liters: float, distance_km: float, tonnage: float, direct_index: float
) -> tuple[float | None, float | None]:
    """Return ``(index_per_100km, index_per_100km_per_ton)`` for one row.

    A direct index read from the sheet only applies when the per-ton index
    could not be computed, and then overrides the per-100 km value.
    """
    per_100km: float | None = None
    per_ton: float | None = None
    if liters > 0 and distance_km > 0:
        per_100km = liters / (distance_km / 100)
    if liters > 0 and distance_km > 0 and tonnage > 0:
        per_ton = (liters / (distance_km / 100)) * (1 / (tonnage / 1000))
    elif direct_index > 0:
        per_100km = direct_index
    return per_100km, per_ton


def _build_record(
    row: Sequence[CellValue], roles: ColumnRoles, vehicle_id: str, vehicle_type: str, month: str
) -> VehicleRecord:
    liters = parse_number(_cell(row, roles.liters))
    tep = parse_number(_cell(row, roles.tep))
    cost = parse_currency(_cell(row, roles.cost))
    distance_km = parse_number(_cell(row, roles.distance))
    tonnage = parse_number(_cell(row, roles.tonnage))
    direct_index = parse_number(_cell(row, roles.index))

    raw_values: dict[str, float] = {}
    for role, key, value in (
        ("liters", "liters", liters),
        ("tep", "tep", tep),
        ("cost", "cost", cost),
        ("distance", "distance_km", distance_km),
        ("tonnage", "tonnage", tonnage),
        ("index", "direct_index", direct_index),
    ):
        if getattr(roles, role) is not None:
            raw_values[key] = value

    per_100km, per_ton = energy_indices(liters, distance_km, tonnage, direct_index)
    return VehicleRecord(
        vehicle_type=vehicle_type,
        vehicle_id=vehicle_id,
        month=month,
        liters=liters,
        tep=tep,
        cost=cost,
        distance_km=distance_km,
        tonnage=tonnage,
        index_per_100km=per_100km,
        index_per_100km_per_ton=per_ton,
        raw_values=raw_values,
    )


# ── Extraction ──────────────────────────────────────────────────


def extract_records(grid: Grid, roles: ColumnRoles, sheet_name: str = "") -> ExtractionResult:
    """Walk the data rows of *grid* (row 0 is the header) and build records.

    The month column is carried forward: a month label applies to every
    following row until another label appears. A failure in one row is
    logged and recorded; the remaining rows are still processed.
    """
    result = ExtractionResult(roles=roles)
    warnings: list[str] = []
    missing = roles.missing_roles()
    if missing:
        warnings.append(f"Missing roles: {', '.join(missing)}")

    current_month: str | None = None
    data_rows = grid[1:]

    for i, row in enumerate(data_rows, start=1):
        try:
            if is_blank_row(row):
                result.skipped.append(SkippedRow(i, "blank"))
                continue
            month_cell = _cell(row, roles.month)
            if _has_text(month_cell):
                current_month = month_cell.as_text.strip()
                result.monthly_totals.setdefault(current_month, MonthlyTotals(current_month))
                logger.debug("Row %d: month %r", i, current_month)

            id_cell = _cell(row, roles.vehicle_id)
            if not _has_text(id_cell):
                result.skipped.append(SkippedRow(i, "missing_vehicle_id"))
                continue

            if current_month is None:
                current_month = UNSPECIFIED_MONTH
                result.monthly_totals.setdefault(current_month, MonthlyTotals(current_month))

            vehicle_id = id_cell.as_text.strip()
            description = _cell(row, roles.description).as_text.strip() if roles.description is not None else ""
            vehicle_type = classify_vehicle(vehicle_id, description)
            if vehicle_type is None:
                logger.debug("Row %d: %r is not a vehicle", i, vehicle_id)
                result.skipped.append(SkippedRow(i, "not_a_vehicle", vehicle_id))
                continue

            record = _build_record(row, roles, vehicle_id, vehicle_type, current_month)
            for formula in _unevaluated_formulas(row, roles):
                warnings.append(f"Row {i}: formula {formula} could not be evaluated; read as 0")
        except Exception as exc:
            logger.error("Error processing row %d in sheet %r: %s", i, sheet_name, exc)
            result.skipped.append(SkippedRow(i, "error", str(exc)))
            warnings.append(f"Row {i}: {exc}")
            continue

        result.records.append(record)
        result.monthly_totals[current_month].add(record)

    rows_in = len(data_rows)
    rows_out = len(result.records)
    result.report = ExtractionReport(
        sheet=sheet_name,
        rows_in=rows_in,
        rows_out=rows_out,
        dropped_rows=rows_in - rows_out,
        missing_roles=missing,
        warnings=warnings,
    )
    logger.info(
        "Extracted %d vehicle records from sheet %r across %d months",
        rows_out,
        sheet_name,
        len(result.monthly_totals),
    )
    return result


def extract_workbook(
    source: bytes | BinaryIO,
    sheet_name: str,
    overrides: Mapping[str, str] | None = None,
) -> ExtractionResult:
    """Build the grid of *sheet_name*, classify its columns and extract records."""
    grid = build_grid(source, sheet_name)
    header = grid[0] if grid else ()
    roles = classify_columns(header, sheet_name)
    override_warnings: list[str] = []
    if overrides:
        roles, override_warnings = apply_overrides(roles, header, overrides)
    result = extract_records(grid, roles, sheet_name)
    if override_warnings:
        result.report.warnings = override_warnings + result.report.warnings
    return result
