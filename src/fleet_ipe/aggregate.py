"""Fleet aggregation — monthly and per-vehicle totals with energy indices."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

import pandas as pd

from fleet_ipe.models import MonthlyTotals, VehicleRecord, VehicleTotals
from fleet_ipe.parsing import month_number

MONTHLY_COLUMNS: list[str] = [
    "month",
    "liters",
    "tep",
    "cost",
    "distance_km",
    "tonnage",
    "vehicle_count",
    "avg_index_per_100km",
    "avg_index_per_100km_per_ton",
    "km_per_liter",
    "cost_per_km",
]

VEHICLE_COLUMNS: list[str] = [
    "vehicle_id",
    "vehicle_type",
    "liters",
    "distance_km",
    "tonnage",
    "record_count",
    "index_per_100km",
    "index_per_100km_per_ton",
]


def aggregate_monthly(records: Iterable[VehicleRecord]) -> dict[str, MonthlyTotals]:
    """Group *records* by month label and sum them, in first-seen month order."""
    totals: dict[str, MonthlyTotals] = {}
    for record in records:
        entry = totals.get(record.month)
        if entry is None:
            entry = totals[record.month] = MonthlyTotals(record.month)
        entry.add(record)
    return totals


def aggregate_by_vehicle(records: Iterable[VehicleRecord]) -> dict[str, VehicleTotals]:
    """Sum every record of each vehicle id, in first-seen order.

    The vehicle type is the one of the vehicle's first record.
    """
    totals: dict[str, VehicleTotals] = {}
    for record in records:
        entry = totals.get(record.vehicle_id)
        if entry is None:
            entry = totals[record.vehicle_id] = VehicleTotals(record.vehicle_id, record.vehicle_type)
        entry.add(record)
    return totals


def order_months(totals: Mapping[str, MonthlyTotals]) -> list[MonthlyTotals]:
    """Return the entries of *totals* in calendar order.

    Labels that are not recognised as a month sort first; ties keep their
    original order.
    """
    return sorted(totals.values(), key=lambda entry: month_number(entry.month))


def monthly_frame(totals: Mapping[str, MonthlyTotals]) -> pd.DataFrame:
    """Published (rounded) monthly metrics as a DataFrame in calendar order."""
    rows = [entry.to_dict() for entry in order_months(totals)]
    df = pd.DataFrame(rows, columns=MONTHLY_COLUMNS)
    df["vehicle_count"] = df["vehicle_count"].astype("int64")
    return df.reset_index(drop=True)


def vehicle_frame(totals: Mapping[str, VehicleTotals]) -> pd.DataFrame:
    """Published per-vehicle metrics, grouped by type then ordered by vehicle id."""
    rows = [entry.to_dict() for entry in totals.values()]
    df = pd.DataFrame(rows, columns=VEHICLE_COLUMNS)
    df["record_count"] = df["record_count"].astype("int64")
    return df.sort_values(["vehicle_type", "vehicle_id"], kind="stable").reset_index(drop=True)
