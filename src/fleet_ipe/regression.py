"""Regression engine — OLS fit of fuel consumption on distance and tonnage.

The model is always ``liters = b0 + b1*distance + b2*tonnage`` on raw,
unscaled values so that coefficients match a spreadsheet's LINEST output.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np

from fleet_ipe.models import CoefficientStats, RegressionResult, VehicleRecord, round_half_up

logger = logging.getLogger(__name__)

PREDICTORS: tuple[str, ...] = ("kilometrage", "tonnage")
MIN_CONFIDENT_SAMPLES = 3
MIN_OUTLIER_SAMPLES = 5
OUTLIER_SIGMAS = 3.0
DEFAULT_COEFFICIENT = 0.001


class InvalidFitError(ArithmeticError):
    """Raised when a fit produces NaN or infinite coefficients."""


# ── Equation ─────────────────────────────────────────────────────


def _signed(value: float) -> str:
    sign = "+" if value >= 0 else "-"
    return f"{sign} {abs(value):.4f}"


def format_equation(kilometrage: float, tonnage: float, intercept: float) -> str:
    return (
        f"Consommation = {kilometrage:.4f} × Kilometrage "
        f"{_signed(tonnage)} × Tonnage {_signed(intercept)}"
    )


# ── Fitting ──────────────────────────────────────────────────────


def _design(records: Sequence[VehicleRecord]) -> tuple[np.ndarray, np.ndarray]:
    x = np.array([[1.0, r.distance_km, r.tonnage] for r in records], dtype=float)
    y = np.array([r.liters for r in records], dtype=float)
    return x, y


def _approx_p_value(t: float, df: int) -> float:
    # Approximation only, not a Student-t tail probability.
    return 2 * (1 - abs(t) / math.sqrt(df + t * t))


def _coefficient_stats(
    x: np.ndarray, beta: np.ndarray, ssr: float, n: int
) -> tuple[CoefficientStats, ...]:
    df = n - x.shape[1]
    names = ("intercept",) + PREDICTORS
    if df <= 0:
        nan = float("nan")
        return tuple(CoefficientStats(name, float(b), nan, nan, nan) for name, b in zip(names, beta))

    sigma2 = ssr / df
    with np.errstate(divide="ignore", invalid="ignore"):
        cov = sigma2 * np.linalg.pinv(x.T @ x)
        std_errors = np.sqrt(np.diag(cov))
        t_values = beta / std_errors

    stats = []
    for name, b, se, t in zip(names, beta, std_errors, t_values):
        p = _approx_p_value(float(t), df) if math.isfinite(t) else float("nan")
        stats.append(CoefficientStats(name, float(b), float(se), float(t), p))
    return tuple(stats)


def fit_regression(records: Sequence[VehicleRecord], vehicle_type: str) -> RegressionResult:
    """Fit the consumption model on *records*.

    Raises
    ------
    ValueError
        If *records* is empty.
    InvalidFitError
        If the solver fails or yields non-finite coefficients.
    """
    records = list(records)
    if not records:
        raise ValueError("Vehicle records cannot be empty")

    n = len(records)
    low_confidence = n < MIN_CONFIDENT_SAMPLES
    if low_confidence:
        logger.warning("Only %d records for %s; regression has low confidence", n, vehicle_type)

    x, y = _design(records)
    try:
        beta, _, rank, _ = np.linalg.lstsq(x, y, rcond=None)
    except np.linalg.LinAlgError as exc:
        raise InvalidFitError(f"Regression failed for {vehicle_type}: {exc}") from exc

    if not np.all(np.isfinite(beta)):
        logger.error("Invalid regression coefficients for %s: %s", vehicle_type, beta)
        raise InvalidFitError(f"Regression resulted in invalid coefficients for {vehicle_type}")
    if rank < x.shape[1]:
        logger.warning("Design matrix for %s is rank deficient (rank %d)", vehicle_type, rank)
        low_confidence = True

    intercept, kilometrage, tonnage = (float(b) for b in beta)
    residuals = y - x @ beta
    ssr = float(residuals @ residuals)
    centered = y - y.mean()
    sst = float(centered @ centered)

    r_squared = 1.0 - ssr / sst if sst > 0 else 0.0
    df = n - x.shape[1]
    adjusted = 1.0 - (1.0 - r_squared) * (n - 1) / df if df > 0 else r_squared
    mse = ssr / n

    equation = format_equation(kilometrage, tonnage, intercept)
    logger.info("Regression equation for %s: %s (R²=%.4f, n=%d)", vehicle_type, equation, r_squared, n)

    return RegressionResult(
        vehicle_type=vehicle_type,
        equation=equation,
        coefficients={"kilometrage": kilometrage, "tonnage": tonnage},
        intercept=intercept,
        r_squared=round_half_up(r_squared),
        adjusted_r_squared=round_half_up(adjusted),
        mse=mse,
        statistics=_coefficient_stats(x, beta, ssr, n),
        sample_size=n,
        low_confidence=low_confidence,
    )


def default_fit(vehicle_type: str, sample_size: int = 0) -> RegressionResult:
    """Placeholder model used when a real fit is not possible."""
    return RegressionResult(
        vehicle_type=vehicle_type,
        equation=format_equation(DEFAULT_COEFFICIENT, DEFAULT_COEFFICIENT, 0.0),
        coefficients={"kilometrage": DEFAULT_COEFFICIENT, "tonnage": DEFAULT_COEFFICIENT},
        intercept=0.0,
        r_squared=0.0,
        adjusted_r_squared=0.0,
        mse=0.0,
        sample_size=sample_size,
        low_confidence=True,
        is_default=True,
    )


def fit_or_default(records: Sequence[VehicleRecord], vehicle_type: str) -> RegressionResult:
    try:
        return fit_regression(records, vehicle_type)
    except InvalidFitError as exc:
        logger.warning("Falling back to the default model for %s: %s", vehicle_type, exc)
        return default_fit(vehicle_type, sample_size=len(records))


# ── Record selection ─────────────────────────────────────────────


def select_for_regression(records: Iterable[VehicleRecord], vehicle_type: str = "all") -> list[VehicleRecord]:
    """Records of *vehicle_type* ("all" for any) with positive liters and distance."""
    wanted = vehicle_type.strip().lower()
    return [
        r
        for r in records
        if (wanted == "all" or r.vehicle_type.lower() == wanted) and r.liters > 0 and r.distance_km > 0
    ]


@dataclass(frozen=True)
class Outlier:
    vehicle_id: str
    month: str
    metric: str
    value: float
    mean: float
    std: float


def detect_outliers(records: Sequence[VehicleRecord]) -> list[Outlier]:
    """Values more than three population standard deviations from the mean.

    Checked for distance, tonnage and liters; needs at least five records.
    """
    if len(records) < MIN_OUTLIER_SAMPLES:
        return []

    found: list[Outlier] = []
    for metric in ("distance_km", "tonnage", "liters"):
        values = np.array([getattr(r, metric) for r in records], dtype=float)
        mean = float(values.mean())
        std = float(values.std())
        for record, value in zip(records, values):
            if abs(value - mean) > OUTLIER_SIGMAS * std:
                logger.warning(
                    "Potential outlier: %s = %s for %s (mean = %.4f, std = %.4f)",
                    metric,
                    value,
                    record.vehicle_id,
                    mean,
                    std,
                )
                found.append(Outlier(record.vehicle_id, record.month, metric, float(value), mean, std))
    return found


def fit_by_type(records: Iterable[VehicleRecord]) -> dict[str, RegressionResult]:
    """One fit per vehicle type present in *records*, in sorted type order."""
    records = list(records)
    results: dict[str, RegressionResult] = {}
    for vehicle_type in sorted({r.vehicle_type for r in records}):
        usable = select_for_regression(records, vehicle_type)
        if not usable:
            logger.info("No usable records for %s; skipping regression", vehicle_type)
            continue
        detect_outliers(usable)
        try:
            results[vehicle_type] = fit_or_default(usable, vehicle_type)
        except ValueError as exc:
            logger.error("Regression failed for %s: %s", vehicle_type, exc)
    return results
