"""Tests for row extraction: carry-forward, vehicle typing, IPE and diagnostics."""

from __future__ import annotations

import pytest

from fleet_ipe import extract as extract_mod
from fleet_ipe.columns import classify_columns
from fleet_ipe.extract import (
    classify_vehicle,
    energy_indices,
    extract_records,
    extract_workbook,
    is_blank_row,
)
from fleet_ipe.grid import SheetNotFoundError, build_grid
from fleet_ipe.models import EMPTY_CELL, UNSPECIFIED_MONTH, CellValue


def test_extract_fleet_sheet(fleet_bytes: bytes) -> None:
    result = extract_workbook(fleet_bytes, "Flotte")

    assert [r.vehicle_id for r in result.records] == [
        "1682 TU 147",
        "003 TU 187",
        "105774 RS",
        "Chariot 1",
        "1682 TU 147",
    ]
    assert [r.vehicle_type for r in result.records] == [
        "Camion",
        "Camion",
        "Minibus",
        "Chariot",
        "Camion",
    ]
    assert result.report.rows_in == 7
    assert result.report.rows_out == 5
    assert result.report.dropped_rows == 2
    assert result.report.sheet == "Flotte"
    assert result.report.missing_roles == []


def test_month_is_carried_forward_across_merged_block(fleet_bytes: bytes) -> None:
    result = extract_workbook(fleet_bytes, "Flotte")

    assert [r.month for r in result.records] == ["Janvier"] * 4 + ["Février"]
    assert list(result.monthly_totals) == ["Janvier", "Février"]
    assert result.monthly_totals["Janvier"].vehicle_count == 4
    assert result.monthly_totals["Février"].vehicle_count == 1


def test_values_and_indices_of_first_truck(fleet_bytes: bytes) -> None:
    record = extract_workbook(fleet_bytes, "Flotte").records[0]

    assert record.liters == 50.0
    assert record.tep == pytest.approx(0.043)
    assert record.cost == pytest.approx(6368.16)
    assert record.distance_km == 1000.0
    assert record.tonnage == 5.0
    assert record.index_per_100km == pytest.approx(5.0)
    assert record.index_per_100km_per_ton == pytest.approx(1000.0)
    assert set(record.raw_values) == {"liters", "tep", "cost", "distance_km", "tonnage", "direct_index"}


def test_direct_index_used_when_per_ton_index_is_unavailable(fleet_bytes: bytes) -> None:
    records = extract_workbook(fleet_bytes, "Flotte").records
    forklift = records[3]
    minibus = records[2]

    assert forklift.index_per_100km == 4.5
    assert forklift.index_per_100km_per_ton is None
    assert minibus.index_per_100km == pytest.approx(5.0)
    assert minibus.index_per_100km_per_ton is None


def test_skipped_rows_carry_reasons(fleet_bytes: bytes) -> None:
    result = extract_workbook(fleet_bytes, "Flotte")
    reasons = {row.row_index: row.reason for row in result.skipped}

    assert reasons == {5: "not_a_vehicle", 6: "blank"}


def test_rows_before_any_month_use_placeholder() -> None:
    grid = (
        (CellValue.text("Mois"), CellValue.text("Matricule"), CellValue.text("Gasoil")),
        (EMPTY_CELL, CellValue.text("12 TU 3456"), CellValue.number(40)),
        (CellValue.text("Mars"), CellValue.text("12 TU 3456"), CellValue.number(45)),
    )
    result = extract_records(grid, classify_columns(grid[0]), "s")

    assert [r.month for r in result.records] == [UNSPECIFIED_MONTH, "Mars"]
    assert list(result.monthly_totals) == [UNSPECIFIED_MONTH, "Mars"]


def test_month_row_without_vehicle_opens_month() -> None:
    grid = (
        (CellValue.text("Mois"), CellValue.text("Matricule"), CellValue.text("Gasoil")),
        (CellValue.text("Avril"), EMPTY_CELL, EMPTY_CELL),
        (EMPTY_CELL, CellValue.text("12 TU 3456"), CellValue.number(40)),
    )
    result = extract_records(grid, classify_columns(grid[0]))

    assert result.records[0].month == "Avril"
    assert result.skipped[0].reason == "missing_vehicle_id"


def test_zero_only_rows_are_blank() -> None:
    assert is_blank_row([EMPTY_CELL, CellValue.number(0), CellValue.text("0.0"), CellValue.text(" ")])
    assert not is_blank_row([CellValue.number(0), CellValue.text("x")])


@pytest.mark.parametrize(
    ("vehicle_id", "description", "expected"),
    [
        ("1682 TU 147", "", "Camion"),
        ("TU 147", "", "Camion"),
        ("105774 RS", "", "Minibus"),
        ("105774 rs 12", "", "Minibus"),
        ("CH-01", "Chariot élévateur", "Chariot"),
        ("CH-02", "elevateur", "Chariot"),
        ("BUS-7", "Minibus 30 places", "Minibus"),
        ("BUS-8", "Bus", "Minibus"),
        ("ABC 123", "Voiture", None),
        ("ABC 123", "", None),
        ("", "Chariot", None),
    ],
)
def test_classify_vehicle(vehicle_id: str, description: str, expected: str | None) -> None:
    assert classify_vehicle(vehicle_id, description) == expected


def test_energy_indices() -> None:
    assert energy_indices(50, 1000, 5, 0) == (pytest.approx(5.0), pytest.approx(1000.0))
    assert energy_indices(50, 1000, 0, 0) == (pytest.approx(5.0), None)
    assert energy_indices(50, 1000, 0, 7.5) == (7.5, None)
    assert energy_indices(0, 0, 0, 3.2) == (3.2, None)
    assert energy_indices(0, 0, 0, 0) == (None, None)


def test_row_failure_is_logged_and_skipped(fleet_bytes: bytes, monkeypatch, caplog) -> None:  # type: ignore[no-untyped-def]
    real_parse = extract_mod.parse_currency

    def _flaky(cell: CellValue) -> float:
        if cell.as_text == "250":
            raise ValueError("boom")
        return real_parse(cell)

    monkeypatch.setattr(extract_mod, "parse_currency", _flaky)
    result = extract_workbook(fleet_bytes, "Flotte")

    assert len(result.records) == 4
    assert any(row.reason == "error" and row.row_index == 3 for row in result.skipped)
    assert any("boom" in w for w in result.report.warnings)
    assert result.report.dropped_rows == result.report.rows_in - result.report.rows_out
    assert "Error processing row 3" in caplog.text


def test_best_effort_when_required_roles_missing() -> None:
    grid = (
        (CellValue.text("Code"), CellValue.text("Zone")),
        (CellValue.text("12 TU 3456"), CellValue.text("Nord")),
    )
    roles = classify_columns(grid[0])
    result = extract_records(grid, roles)

    assert not roles.is_valid
    assert result.report.missing_roles == ["liters|tep"]
    assert "Missing roles" in result.report.warnings[0]


def test_overrides_are_applied(make_xlsx) -> None:  # type: ignore[no-untyped-def]
    data = make_xlsx(
        [
            ["Mois", "Matricule", "Gasoil", "Conso réelle"],
            ["Mai", "5 TU 55", 10, 99],
        ]
    )
    result = extract_workbook(data, "Flotte", {"liters": "conso réelle", "tonnage": "Absent"})

    assert result.records[0].liters == 99.0
    assert result.roles.liters == 3
    assert any("Absent" in w for w in result.report.warnings)


def test_missing_sheet_propagates(fleet_bytes: bytes) -> None:
    with pytest.raises(SheetNotFoundError):
        extract_workbook(fleet_bytes, "Camions")


def test_grid_then_extract_matches_one_call(fleet_bytes: bytes) -> None:
    grid = build_grid(fleet_bytes, "Flotte")
    staged = extract_records(grid, classify_columns(grid[0], "Flotte"), "Flotte")
    assert staged.records == extract_workbook(fleet_bytes, "Flotte").records


def test_unevaluable_liters_formula_reads_zero_with_warning(make_xlsx) -> None:  # type: ignore[no-untyped-def]
    data = make_xlsx(
        [
            ["Mois", "Matricule", "Gasoil", "Kilométrage"],
            ["Mai", "5 TU 55", "=NOSUCHFUNC(D2)", 400],
        ]
    )
    result = extract_workbook(data, "Flotte")

    assert result.records[0].liters == 0.0
    assert any("=NOSUCHFUNC(D2)" in w and w.startswith("Row 1") for w in result.report.warnings)


def test_liters_formula_is_evaluated(make_xlsx) -> None:  # type: ignore[no-untyped-def]
    data = make_xlsx(
        [
            ["Mois", "Matricule", "Gasoil", "Base"],
            ["Mai", "5 TU 55", "=D2*1.5", 21],
        ]
    )
    result = extract_workbook(data, "Flotte")

    assert result.records[0].liters == pytest.approx(31.5)
    assert not any("could not be evaluated" in w for w in result.report.warnings)


class _BrokenCell:
    """Stands in for a cell whose attributes blow up when read."""

    def __getattr__(self, name: str) -> object:
        raise AttributeError(name)


def test_unexpected_row_exception_skips_only_that_row() -> None:
    grid = (
        (CellValue.text("Mois"), CellValue.text("Matricule"), CellValue.text("Gasoil")),
        (CellValue.text("Mai"), CellValue.text("1 TU 1"), CellValue.number(10)),
        (EMPTY_CELL, CellValue.text("2 TU 2"), _BrokenCell()),
        (EMPTY_CELL, CellValue.text("3 TU 3"), CellValue.number(30)),
    )
    result = extract_records(grid, classify_columns(grid[0]), "s")  # type: ignore[arg-type]

    assert [r.vehicle_id for r in result.records] == ["1 TU 1", "3 TU 3"]
    assert [(row.row_index, row.reason) for row in result.skipped] == [(2, "error")]
    assert result.report.dropped_rows == 1
