"""Grid builder — turn workbook bytes into an immutable grid of resolved cells.

Formula cells take the result cached in the workbook by the application that
last saved it. Formulas saved without a cached result (workbooks written by
scripts rather than by a spreadsheet application) are evaluated with pycel;
when evaluation fails the cell is left empty with the formula as its display
text. Merged regions are expanded so that every covered cell carries
the value of the region's top-left cell.
"""

from __future__ import annotations

import io
import logging
import tempfile
import zipfile
from datetime import date, datetime, time, timedelta
from numbers import Real
from pathlib import Path
from typing import Any, BinaryIO

import openpyxl
import xlrd
from openpyxl.utils.datetime import to_excel
from openpyxl.utils.exceptions import InvalidFileException
from pycel import ExcelCompiler
from xlrd.compdoc import CompDocError

from fleet_ipe.models import EMPTY_CELL, CellValue, Grid

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"
OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

EXCEL_ERRORS = frozenset({"#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A"})


class SheetNotFoundError(LookupError):
    """Raised when the requested sheet does not exist in the workbook."""

    def __init__(self, sheet_name: str, available: list[str] | None = None) -> None:
        self.sheet_name = sheet_name
        self.available = list(available or [])
        message = f"Sheet not found: {sheet_name!r}"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class EmptyInputError(ValueError):
    """Raised when the input is empty or not a readable xls/xlsx workbook."""


# ── Input handling ───────────────────────────────────────────────


def _read_bytes(source: bytes | bytearray | memoryview | BinaryIO) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    return source.read()


def _container_kind(data: bytes) -> str:
    if not data:
        raise EmptyInputError("Input is empty")
    if data.startswith(ZIP_SIGNATURE):
        return "xlsx"
    if data.startswith(OLE2_SIGNATURE):
        return "xls"
    raise EmptyInputError("Input is not an xls/xlsx workbook")


def _open_xlsx(data: bytes, *, data_only: bool) -> openpyxl.Workbook:
    try:
        return openpyxl.load_workbook(io.BytesIO(data), data_only=data_only)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError) as exc:
        raise EmptyInputError(f"Could not read xlsx workbook: {exc}") from exc


def _open_xls(data: bytes) -> xlrd.book.Book:
    try:
        return xlrd.open_workbook(file_contents=data, formatting_info=True)
    except (xlrd.XLRDError, CompDocError) as exc:
        raise EmptyInputError(f"Could not read xls workbook: {exc}") from exc


def list_sheet_names(source: bytes | BinaryIO) -> list[str]:
    """Return the sheet names of the workbook in workbook order."""
    data = _read_bytes(source)
    if _container_kind(data) == "xlsx":
        wb = _open_xlsx(data, data_only=True)
        try:
            return list(wb.sheetnames)
        finally:
            wb.close()
    book = _open_xls(data)
    try:
        return list(book.sheet_names())
    finally:
        book.release_resources()


# ── Cell resolution ──────────────────────────────────────────────


def _date_display(value: datetime, number_format: str) -> str:
    if "mmm" in number_format.lower():
        return value.strftime("%B %Y")
    if value.time() == time(0, 0):
        return value.strftime("%Y-%m-%d")
    return value.isoformat(sep=" ")


def _resolve_value(
    value: Any,
    number_format: str = "General",
    formula: str | None = None,
    *,
    is_error: bool = False,
    epoch: datetime | None = None,
) -> CellValue:
    """Classify one openpyxl value into a CellValue."""
    if is_error:
        return CellValue.empty(display=str(value))
    if value is None:
        if formula:
            logger.warning("No result for formula %s; leaving the cell empty", formula)
            return CellValue.empty(display=formula)
        return EMPTY_CELL
    if isinstance(value, bool):
        return CellValue.boolean(value)
    if isinstance(value, datetime):
        serial = to_excel(value, epoch) if epoch is not None else to_excel(value)
        return CellValue.date(value, serial=float(serial), display=_date_display(value, number_format))
    if isinstance(value, date):
        as_dt = datetime.combine(value, time(0, 0))
        serial = to_excel(as_dt, epoch) if epoch is not None else to_excel(as_dt)
        return CellValue.date(as_dt, serial=float(serial), display=_date_display(as_dt, number_format))
    if isinstance(value, (time, timedelta)):
        return CellValue.number(float(to_excel(value)))
    if isinstance(value, (int, float)):
        return CellValue.number(float(value))
    if isinstance(value, str):
        return CellValue.text(value)
    return CellValue.text(str(value))


def _qualified(sheet_name: str, coordinate: str) -> str:
    if sheet_name.replace("_", "").isalnum():
        return f"{sheet_name}!{coordinate}"
    return f"'{sheet_name}'!{coordinate}"


class _FormulaEvaluator:
    """Evaluate formulas of one sheet that were saved without a cached result.

    The workbook is only compiled on the first request, so sheets whose
    formulas all carry cached values never pay for it.
    """

    def __init__(self, data: bytes, sheet_name: str) -> None:
        self._data = data
        self._sheet_name = sheet_name
        self._tmpdir: tempfile.TemporaryDirectory[str] | None = None
        self._compiler: ExcelCompiler | None = None

    def _compile(self) -> ExcelCompiler:
        if self._compiler is None:
            self._tmpdir = tempfile.TemporaryDirectory(prefix="fleet_ipe_")
            path = Path(self._tmpdir.name) / "workbook.xlsx"
            path.write_bytes(self._data)
            self._compiler = ExcelCompiler(filename=str(path))
        return self._compiler

    def evaluate(self, coordinate: str, formula: str) -> CellValue:
        try:
            result = self._compile().evaluate(_qualified(self._sheet_name, coordinate))
        except Exception as exc:
            logger.warning("Could not evaluate formula %s at %s: %s", formula, coordinate, exc)
            return CellValue.empty(display=formula)

        if isinstance(result, bool):
            return CellValue.boolean(result)
        if isinstance(result, Real):
            return CellValue.number(float(result))
        if isinstance(result, str) and result not in EXCEL_ERRORS:
            return CellValue.text(result)
        if result is None:
            return EMPTY_CELL
        logger.warning("Formula %s at %s evaluated to %r; leaving the cell empty", formula, coordinate, result)
        return CellValue.empty(display=formula)

    def close(self) -> None:
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None
        self._compiler = None


def _formula_text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = getattr(raw, "text", raw)
    if isinstance(text, str) and text.startswith("="):
        return text
    return None


def _apply_merges(rows: list[list[CellValue]], regions: list[tuple[int, int, int, int]]) -> None:
    """Copy each region's top-left value to every covered cell (zero-based, inclusive)."""
    for first_row, first_col, last_row, last_col in regions:
        if first_row >= len(rows) or first_col >= len(rows[first_row]):
            continue
        anchor = rows[first_row][first_col]
        for r in range(first_row, min(last_row, len(rows) - 1) + 1):
            row = rows[r]
            for c in range(first_col, min(last_col, len(row) - 1) + 1):
                row[c] = anchor


def _freeze(rows: list[list[CellValue]]) -> Grid:
    width = max((len(row) for row in rows), default=0)
    return tuple(tuple(row) + (EMPTY_CELL,) * (width - len(row)) for row in rows)


def _build_xlsx_grid(data: bytes, sheet_name: str) -> Grid:
    values_wb = _open_xlsx(data, data_only=True)
    formulas_wb = _open_xlsx(data, data_only=False)
    evaluator = _FormulaEvaluator(data, sheet_name)
    try:
        if sheet_name not in values_wb.sheetnames:
            raise SheetNotFoundError(sheet_name, values_wb.sheetnames)
        ws = values_wb[sheet_name]
        ws_formulas = formulas_wb[sheet_name]
        max_row, max_col = ws.max_row, ws.max_column
        rows: list[list[CellValue]] = []
        for value_row, formula_row in zip(
            ws.iter_rows(min_row=1, max_row=max_row, max_col=max_col),
            ws_formulas.iter_rows(min_row=1, max_row=max_row, max_col=max_col),
        ):
            resolved: list[CellValue] = []
            for cell, raw in zip(value_row, formula_row):
                formula = _formula_text(raw.value)
                if cell.value is None and formula:
                    resolved.append(evaluator.evaluate(cell.coordinate, formula))
                    continue
                resolved.append(
                    _resolve_value(
                        cell.value,
                        cell.number_format or "General",
                        formula,
                        is_error=cell.data_type == "e",
                        epoch=values_wb.epoch,
                    )
                )
            rows.append(resolved)

        regions = [
            (rng.min_row - 1, rng.min_col - 1, rng.max_row - 1, rng.max_col - 1)
            for rng in ws.merged_cells.ranges
        ]
        _apply_merges(rows, regions)
        logger.debug("Built %dx%d grid from sheet %r", len(rows), max_col, sheet_name)
        return _freeze(rows)
    finally:
        evaluator.close()
        values_wb.close()
        formulas_wb.close()


def _xls_cell(book: xlrd.book.Book, sheet: xlrd.sheet.Sheet, r: int, c: int) -> CellValue:
    ctype = sheet.cell_type(r, c)
    value = sheet.cell_value(r, c)
    if ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
        return EMPTY_CELL
    if ctype == xlrd.XL_CELL_TEXT:
        return CellValue.text(value)
    if ctype == xlrd.XL_CELL_BOOLEAN:
        return CellValue.boolean(bool(value))
    if ctype == xlrd.XL_CELL_ERROR:
        return CellValue.empty(display=xlrd.error_text_from_code.get(value, "#ERR"))
    if ctype == xlrd.XL_CELL_DATE:
        xf = book.xf_list[sheet.cell_xf_index(r, c)]
        fmt = book.format_map[xf.format_key].format_str if xf.format_key in book.format_map else ""
        as_dt = xlrd.xldate_as_datetime(value, book.datemode)
        return CellValue.date(as_dt, serial=float(value), display=_date_display(as_dt, fmt))
    return CellValue.number(float(value))


def _build_xls_grid(data: bytes, sheet_name: str) -> Grid:
    book = _open_xls(data)
    try:
        names = book.sheet_names()
        if sheet_name not in names:
            raise SheetNotFoundError(sheet_name, names)
        sheet = book.sheet_by_name(sheet_name)
        rows = [
            [_xls_cell(book, sheet, r, c) for c in range(sheet.ncols)]
            for r in range(sheet.nrows)
        ]
        # xlrd reports merged ranges with exclusive upper bounds.
        regions = [(rlo, clo, rhi - 1, chi - 1) for rlo, rhi, clo, chi in sheet.merged_cells]
        _apply_merges(rows, regions)
        logger.debug("Built %dx%d grid from legacy sheet %r", sheet.nrows, sheet.ncols, sheet_name)
        return _freeze(rows)
    finally:
        book.release_resources()


def build_grid(source: bytes | BinaryIO, sheet_name: str) -> Grid:
    """Read *sheet_name* from an xls/xlsx byte stream into a rectangular Grid.

    Raises
    ------
    EmptyInputError
        If the bytes are empty or not a readable workbook.
    SheetNotFoundError
        If the workbook has no sheet called *sheet_name*.
    """
    data = _read_bytes(source)
    if _container_kind(data) == "xlsx":
        return _build_xlsx_grid(data, sheet_name)
    return _build_xls_grid(data, sheet_name)
