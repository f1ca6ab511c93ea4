"""I/O helpers — read workbook sources, read/write JSON artifacts."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from datetime import date, datetime
from pathlib import Path
from typing import Any

from fleet_ipe.models import VehicleRecord

WORKBOOK_SUFFIXES: tuple[str, ...] = (".xlsx", ".xlsm", ".xls")

# ── Loading ──────────────────────────────────────────────────────


def read_source(path: Path) -> bytes:
    """Return the raw bytes of a workbook file.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the extension is not a supported workbook type.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    if path.is_dir():
        raise ValueError(f"Input path is a directory, not a file: {path}")

    suffix = path.suffix.lower()
    if suffix not in WORKBOOK_SUFFIXES:
        raise ValueError(f"Unsupported file type: {suffix!r}. Use .xlsx, .xlsm, or .xls")
    return path.read_bytes()


def load_records(path: Path) -> list[VehicleRecord]:
    """Load ``records.json`` written by a previous run.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the file is not a JSON list of record objects.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Records file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Could not parse {path}: {exc}") from exc
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError(f"{path} must contain a JSON list of record objects")
    records: list[VehicleRecord] = []
    for index, item in enumerate(data):
        try:
            records.append(VehicleRecord.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"{path}: invalid record at index {index}: {exc}") from exc
    return records


# ── Writing ──────────────────────────────────────────────────────


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    item = getattr(obj, "item", None)
    if callable(item):
        converted = item()
        if isinstance(converted, (str, int, float, bool)) or converted is None:
            return converted
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _finite(data: Any) -> Any:
    """Replace NaN/inf floats with ``None`` so the output stays strict JSON."""
    if isinstance(data, float) and not math.isfinite(data):
        return None
    if isinstance(data, dict):
        return {k: _finite(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_finite(v) for v in data]
    return data


def write_json(path: Path, data: Any) -> Path:
    """Write *data* as pretty-printed JSON to *path* (atomic + deterministic)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = json.dumps(
        _finite(data),
        indent=2,
        sort_keys=True,
        ensure_ascii=False,
        allow_nan=False,
        default=_json_default,
    ) + "\n"
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    tmp_path.replace(path)
    return path


def write_records(out_dir: Path, records: Iterable[VehicleRecord]) -> Path:
    return write_json(Path(out_dir) / "records.json", [r.to_dict() for r in records])
