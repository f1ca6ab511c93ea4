"""Data models shared across the extraction pipeline and the regression engine."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from numbers import Integral, Real
from types import MappingProxyType
from typing import Any

UNSPECIFIED_MONTH = "Mois non spécifié"

ROLE_NAMES: tuple[str, ...] = (
    "month",
    "vehicle_id",
    "liters",
    "tep",
    "cost",
    "distance",
    "tonnage",
    "index",
    "description",
)


def _to_non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise TypeError(f"{field_name} must be an integer")
    result = int(value)
    if result < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return result


def _to_string_list(values: Sequence[Any] | None, field_name: str) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise TypeError(f"{field_name} must be a sequence of strings")
    normalized: list[str] = []
    for item in values:
        if not isinstance(item, str):
            raise TypeError(f"{field_name} items must be strings")
        normalized.append(item)
    return normalized


def _to_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise TypeError(f"{field_name} must be a number")
    return float(value)


def _finite_or_none(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


def round_half_up(value: float, places: int = 4) -> float:
    """Round like a spreadsheet display does (half away from -inf, not banker's)."""
    if not math.isfinite(value):
        return value
    scale = 10 ** places
    return math.floor(value * scale + 0.5) / scale


def render_number(value: float) -> str:
    """Render a float the way a ``General`` spreadsheet cell displays it."""
    if math.isfinite(value) and value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return f"{value:.10g}"


# ── Cells and grids ─────────────────────────────────────────────


class CellKind(str, Enum):
    EMPTY = "empty"
    NUMBER = "number"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"


@dataclass(frozen=True)
class CellValue:
    """One resolved spreadsheet cell.

    ``display`` is the pre-rendered text used whenever the raw value cannot be
    parsed. Date cells also keep their spreadsheet serial number in ``serial``.
    """

    kind: CellKind = CellKind.EMPTY
    value: float | str | bool | datetime | None = None
    display: str = ""
    serial: float | None = None

    def __post_init__(self) -> None:
        kind = self.kind
        value = self.value
        if kind is CellKind.EMPTY:
            if value is not None:
                raise ValueError("empty cells cannot carry a value")
        elif kind is CellKind.NUMBER:
            object.__setattr__(self, "value", _to_float(value, "value"))
        elif kind is CellKind.TEXT:
            if not isinstance(value, str):
                raise TypeError("text cells must carry a string")
        elif kind is CellKind.BOOLEAN:
            if not isinstance(value, bool):
                raise TypeError("boolean cells must carry a bool")
        elif kind is CellKind.DATE:
            if not isinstance(value, datetime):
                raise TypeError("date cells must carry a datetime")
        if kind is not CellKind.DATE and self.serial is not None:
            raise ValueError("only date cells carry a serial number")
        if not isinstance(self.display, str):
            raise TypeError("display must be a string")

    @classmethod
    def empty(cls, display: str = "") -> CellValue:
        return cls(CellKind.EMPTY, None, display)

    @classmethod
    def number(cls, value: float, display: str | None = None) -> CellValue:
        value = float(value)
        return cls(CellKind.NUMBER, value, render_number(value) if display is None else display)

    @classmethod
    def text(cls, value: str) -> CellValue:
        return cls(CellKind.TEXT, value, value)

    @classmethod
    def boolean(cls, value: bool) -> CellValue:
        return cls(CellKind.BOOLEAN, value, "TRUE" if value else "FALSE")

    @classmethod
    def date(cls, value: datetime, serial: float | None = None, display: str | None = None) -> CellValue:
        if display is None:
            display = value.strftime("%Y-%m-%d")
        return cls(CellKind.DATE, value, display, serial)

    @property
    def is_empty(self) -> bool:
        return self.kind is CellKind.EMPTY

    @property
    def is_number(self) -> bool:
        """True for plain numeric cells; date cells are excluded."""
        return self.kind is CellKind.NUMBER

    @property
    def as_text(self) -> str:
        if self.display:
            return self.display
        if self.value is None:
            return ""
        return str(self.value)

    @property
    def is_blank(self) -> bool:
        return self.is_empty or not self.as_text.strip()


EMPTY_CELL = CellValue()

Grid = tuple[tuple[CellValue, ...], ...]


# ── Column roles ────────────────────────────────────────────────


@dataclass(frozen=True)
class ColumnRoles:
    """Zero-based column index per semantic role, ``None`` when unassigned."""

    month: int | None = None
    vehicle_id: int | None = None
    liters: int | None = None
    tep: int | None = None
    cost: int | None = None
    distance: int | None = None
    tonnage: int | None = None
    index: int | None = None
    description: int | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                _to_non_negative_int(value, f.name)

    @property
    def is_valid(self) -> bool:
        return (
            self.month is not None
            and self.vehicle_id is not None
            and (self.liters is not None or self.tep is not None)
        )

    def missing_roles(self) -> list[str]:
        missing = [name for name in ("month", "vehicle_id") if getattr(self, name) is None]
        if self.liters is None and self.tep is None:
            missing.append("liters|tep")
        return missing

    def to_dict(self) -> dict[str, int | None]:
        return {name: getattr(self, name) for name in ROLE_NAMES}


# ── Records ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class VehicleRecord:
    """One vehicle's consumption for one month, as read from a data row."""

    vehicle_type: str
    vehicle_id: str
    month: str
    liters: float = 0.0
    tep: float = 0.0
    cost: float = 0.0
    distance_km: float = 0.0
    tonnage: float = 0.0
    index_per_100km: float | None = None
    index_per_100km_per_ton: float | None = None
    raw_values: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("vehicle_type", "vehicle_id", "month"):
            if not isinstance(getattr(self, name), str):
                raise TypeError(f"{name} must be a string")
        for name in ("liters", "tep", "cost", "distance_km", "tonnage"):
            object.__setattr__(self, name, _to_float(getattr(self, name), name))
        for name in ("index_per_100km", "index_per_100km_per_ton"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _to_float(value, name))
        raw = {str(k): _to_float(v, f"raw_values[{k!r}]") for k, v in dict(self.raw_values).items()}
        object.__setattr__(self, "raw_values", MappingProxyType(raw))

    def to_dict(self) -> dict[str, Any]:
        return {
            "vehicle_type": self.vehicle_type,
            "vehicle_id": self.vehicle_id,
            "month": self.month,
            "liters": self.liters,
            "tep": self.tep,
            "cost": self.cost,
            "distance_km": self.distance_km,
            "tonnage": self.tonnage,
            "index_per_100km": self.index_per_100km,
            "index_per_100km_per_ton": self.index_per_100km_per_ton,
            "raw_values": dict(self.raw_values),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VehicleRecord:
        missing = [key for key in ("vehicle_type", "vehicle_id", "month") if key not in data]
        if missing:
            raise ValueError(f"record is missing keys: {', '.join(missing)}")
        return cls(
            vehicle_type=data["vehicle_type"],
            vehicle_id=data["vehicle_id"],
            month=data["month"],
            liters=data.get("liters", 0.0),
            tep=data.get("tep", 0.0),
            cost=data.get("cost", 0.0),
            distance_km=data.get("distance_km", 0.0),
            tonnage=data.get("tonnage", 0.0),
            index_per_100km=data.get("index_per_100km"),
            index_per_100km_per_ton=data.get("index_per_100km_per_ton"),
            raw_values=data.get("raw_values") or {},
        )


def _index_per_100km(liters: float, distance_km: float) -> float:
    if distance_km > 0:
        return (liters * 100) / distance_km
    return 0.0


def _index_per_100km_per_ton(liters: float, distance_km: float, tonnage: float) -> float:
    if tonnage > 0 and distance_km > 0:
        divisor = (tonnage * distance_km) / 100
        if divisor > 0:
            return (liters * 100) / divisor
    return 0.0


@dataclass
class MonthlyTotals:
    """Running sums for one month label.

    Published metrics (``to_dict``) are rounded to 4 decimals half-up.
    """

    month: str
    liters: float = 0.0
    tep: float = 0.0
    cost: float = 0.0
    distance_km: float = 0.0
    tonnage: float = 0.0
    vehicle_count: int = 0

    def __post_init__(self) -> None:
        self.vehicle_count = _to_non_negative_int(self.vehicle_count, "vehicle_count")

    def add(self, record: VehicleRecord) -> None:
        self.liters += record.liters
        self.tep += record.tep
        self.cost += record.cost
        self.distance_km += record.distance_km
        self.tonnage += record.tonnage
        self.vehicle_count += 1

    @property
    def avg_index_per_100km(self) -> float:
        return _index_per_100km(self.liters, self.distance_km)

    @property
    def avg_index_per_100km_per_ton(self) -> float:
        return _index_per_100km_per_ton(self.liters, self.distance_km, self.tonnage)

    @property
    def km_per_liter(self) -> float:
        if self.liters > 0:
            return self.distance_km / self.liters
        return 0.0

    @property
    def cost_per_km(self) -> float:
        if self.distance_km > 0:
            return self.cost / self.distance_km
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": self.month,
            "liters": round_half_up(self.liters),
            "tep": round_half_up(self.tep),
            "cost": round_half_up(self.cost),
            "distance_km": round_half_up(self.distance_km),
            "tonnage": round_half_up(self.tonnage),
            "vehicle_count": self.vehicle_count,
            "avg_index_per_100km": round_half_up(self.avg_index_per_100km),
            "avg_index_per_100km_per_ton": round_half_up(self.avg_index_per_100km_per_ton),
            "km_per_liter": round_half_up(self.km_per_liter),
            "cost_per_km": round_half_up(self.cost_per_km),
        }


@dataclass
class VehicleTotals:
    """Sums of every month for one vehicle, with IPE over the whole period."""

    vehicle_id: str
    vehicle_type: str
    liters: float = 0.0
    distance_km: float = 0.0
    tonnage: float = 0.0
    record_count: int = 0

    def __post_init__(self) -> None:
        self.record_count = _to_non_negative_int(self.record_count, "record_count")

    def add(self, record: VehicleRecord) -> None:
        if record.vehicle_id != self.vehicle_id:
            raise ValueError(f"Record for {record.vehicle_id!r} added to totals of {self.vehicle_id!r}")
        self.liters += record.liters
        self.distance_km += record.distance_km
        self.tonnage += record.tonnage
        self.record_count += 1

    @property
    def index_per_100km(self) -> float:
        return _index_per_100km(self.liters, self.distance_km)

    @property
    def index_per_100km_per_ton(self) -> float:
        return _index_per_100km_per_ton(self.liters, self.distance_km, self.tonnage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "vehicle_type": self.vehicle_type,
            "liters": round_half_up(self.liters),
            "distance_km": round_half_up(self.distance_km),
            "tonnage": round_half_up(self.tonnage),
            "record_count": self.record_count,
            "index_per_100km": round_half_up(self.index_per_100km),
            "index_per_100km_per_ton": round_half_up(self.index_per_100km_per_ton),
        }


# ── Regression ──────────────────────────────────────────────────


@dataclass(frozen=True)
class CoefficientStats:
    name: str
    estimate: float
    std_error: float
    t_value: float
    p_value: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "estimate": self.estimate,
            "std_error": _finite_or_none(self.std_error),
            "t_value": _finite_or_none(self.t_value),
            "p_value": _finite_or_none(self.p_value),
        }


@dataclass(frozen=True)
class RegressionResult:
    """Fit of ``liters = intercept + kilometrage*distance + tonnage*tonnage``."""

    vehicle_type: str
    equation: str
    coefficients: Mapping[str, float]
    intercept: float
    r_squared: float
    adjusted_r_squared: float
    mse: float
    statistics: tuple[CoefficientStats, ...] = ()
    sample_size: int = 0
    low_confidence: bool = False
    is_default: bool = False

    def __post_init__(self) -> None:
        coefficients = dict(self.coefficients)
        if set(coefficients) != {"kilometrage", "tonnage"}:
            raise ValueError("coefficients must have exactly the keys 'kilometrage' and 'tonnage'")
        object.__setattr__(
            self,
            "coefficients",
            MappingProxyType({k: _to_float(v, f"coefficients[{k!r}]") for k, v in coefficients.items()}),
        )
        object.__setattr__(self, "statistics", tuple(self.statistics))
        object.__setattr__(self, "sample_size", _to_non_negative_int(self.sample_size, "sample_size"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "vehicle_type": self.vehicle_type,
            "equation": self.equation,
            "coefficients": dict(self.coefficients),
            "intercept": self.intercept,
            "r_squared": self.r_squared,
            "adjusted_r_squared": self.adjusted_r_squared,
            "mse": self.mse,
            "statistics": [s.to_dict() for s in self.statistics],
            "sample_size": self.sample_size,
            "low_confidence": self.low_confidence,
            "is_default": self.is_default,
        }


# ── Run bookkeeping ─────────────────────────────────────────────


@dataclass(frozen=True)
class SkippedRow:
    row_index: int
    reason: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "reason": self.reason, "detail": self.detail}


@dataclass
class ExtractionReport:
    """Quality-control report emitted alongside every extraction.

    Contract invariant: ``dropped_rows == rows_in - rows_out``.
    """

    sheet: str = ""
    rows_in: int = 0
    rows_out: int = 0
    dropped_rows: int = 0
    missing_roles: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.rows_in = _to_non_negative_int(self.rows_in, "rows_in")
        self.rows_out = _to_non_negative_int(self.rows_out, "rows_out")
        self.dropped_rows = _to_non_negative_int(self.dropped_rows, "dropped_rows")
        self.missing_roles = _to_string_list(self.missing_roles, "missing_roles")
        self.warnings = _to_string_list(self.warnings, "warnings")
        if self.rows_out > self.rows_in:
            raise ValueError("rows_out must be <= rows_in")
        expected_dropped = self.rows_in - self.rows_out
        if self.dropped_rows != expected_dropped:
            raise ValueError("dropped_rows must equal rows_in - rows_out")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheet": self.sheet,
            "rows_in": self.rows_in,
            "rows_out": self.rows_out,
            "dropped_rows": self.dropped_rows,
            "missing_roles": list(self.missing_roles),
            "warnings": list(self.warnings),
        }


@dataclass
class RunManifest:
    """Audit-trail manifest for a single CLI run."""

    tool: str = "fleet-ipe"
    version: str = ""
    run_id: str = ""
    input_path: str = ""
    sheet: str = ""
    output_dir: str = ""
    created_at_utc: str = ""
    rows_in: int = 0
    rows_out: int = 0
    sha256: str = ""
    status: str = "success"
    error_code: int | None = None
    error_message: str = ""

    def __post_init__(self) -> None:
        self.rows_in = _to_non_negative_int(self.rows_in, "rows_in")
        self.rows_out = _to_non_negative_int(self.rows_out, "rows_out")
        if self.status not in {"success", "failed"}:
            raise ValueError("status must be 'success' or 'failed'")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "version": self.version,
            "run_id": self.run_id,
            "input_path": self.input_path,
            "sheet": self.sheet,
            "output_dir": self.output_dir,
            "created_at_utc": self.created_at_utc,
            "rows_in": self.rows_in,
            "rows_out": self.rows_out,
            "sha256": self.sha256,
            "status": self.status,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }
