from __future__ import annotations

import io
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest
from openpyxl import Workbook

FLEET_HEADER = [
    "Mois",
    "Matricule",
    "Description",
    "Consommation L",
    "Consommation TEP",
    "Coût DT",
    "Kilométrage",
    "Produits transportés (T)",
    "IPE L/100km",
]

FLEET_ROWS: list[list[Any]] = [
    ["Janvier", "1682 TU 147", "Camion benne", 50, 0.043, "6,368.16 TND", 1000, 5, None],
    [None, "003 TU 187", None, 120, 0.103, "100,5 DT", 2000, 10, None],
    [None, "105774 RS", "Minibus", 30, 0.026, 250, 600, 0, None],
    [None, "Chariot 1", "Chariot élévateur", 15, 0.013, 80, 0, 0, 4.5],
    [None, "ABC 123", "Voiture de service", 10, 0.009, 40, 100, 0, None],
    [None] * 9,
    ["Février", "1682 TU 147", "Camion benne", 55, 0.047, "7 000 DT", 1100, 6, None],
]

# "Janvier" is written once and merged down over its five data rows.
FLEET_MERGES = ["A2:A6"]


def workbook_bytes(
    rows: Iterable[Sequence[Any]],
    *,
    sheet: str = "Flotte",
    merges: Iterable[str] = (),
    extra_sheets: Iterable[str] = (),
) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    for row in rows:
        ws.append(list(row))
    for rng in merges:
        ws.merge_cells(rng)
    for name in extra_sheets:
        wb.create_sheet(name)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture
def make_xlsx() -> Callable[..., bytes]:
    return workbook_bytes


@pytest.fixture
def fleet_bytes() -> bytes:
    return workbook_bytes(
        [FLEET_HEADER, *FLEET_ROWS],
        merges=FLEET_MERGES,
        extra_sheets=["Notes"],
    )


@pytest.fixture
def fleet_path(tmp_path: Path, fleet_bytes: bytes) -> Path:
    path = tmp_path / "flotte.xlsx"
    path.write_bytes(fleet_bytes)
    return path
