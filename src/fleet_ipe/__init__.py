"""fleet-ipe — Rebuild fuel-consumption logs from messy spreadsheets and fit IPE regressions."""

__version__ = "0.2.0"

REQUIRED_ROLES: list[str] = ["month", "vehicle_id"]
CONSUMPTION_ROLES: list[str] = ["liters", "tep"]
