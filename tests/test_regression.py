"""Tests for the OLS regression engine and the per-type service helpers."""

from __future__ import annotations

import math

import numpy as np
import pytest

from fleet_ipe import regression as regression_mod
from fleet_ipe.models import VehicleRecord
from fleet_ipe.regression import (
    InvalidFitError,
    default_fit,
    detect_outliers,
    fit_by_type,
    fit_or_default,
    fit_regression,
    format_equation,
    select_for_regression,
)

DISTANCES = [100.0, 200.0, 300.0, 400.0, 500.0, 600.0]
TONNAGES = [5.0, 3.0, 8.0, 1.0, 9.0, 4.0]


def _rec(
    liters: float,
    distance: float,
    tonnage: float = 0.0,
    vehicle_type: str = "Camion",
    vehicle_id: str = "1 TU 1",
) -> VehicleRecord:
    return VehicleRecord(
        vehicle_type=vehicle_type,
        vehicle_id=vehicle_id,
        month="Janvier",
        liters=liters,
        distance_km=distance,
        tonnage=tonnage,
    )


def _exact_records() -> list[VehicleRecord]:
    return [_rec(10 + 0.05 * d + 0.02 * t, d, t) for d, t in zip(DISTANCES, TONNAGES)]


def test_exact_data_recovers_coefficients() -> None:
    result = fit_regression(_exact_records(), "Camion")

    assert result.coefficients["kilometrage"] == pytest.approx(0.05, abs=1e-9)
    assert result.coefficients["tonnage"] == pytest.approx(0.02, abs=1e-9)
    assert result.intercept == pytest.approx(10.0, abs=1e-7)
    assert result.r_squared == 1.0
    assert result.adjusted_r_squared == 1.0
    assert result.mse == pytest.approx(0.0, abs=1e-12)
    assert result.sample_size == 6
    assert not result.low_confidence
    assert not result.is_default
    assert result.equation == "Consommation = 0.0500 × Kilometrage + 0.0200 × Tonnage + 10.0000"


def test_matches_numpy_reference_on_noisy_data() -> None:
    noise = [0.3, -0.2, 0.1, -0.4, 0.25, -0.05]
    records = [
        _rec(10 + 0.05 * d + 0.02 * t + e, d, t) for d, t, e in zip(DISTANCES, TONNAGES, noise)
    ]
    result = fit_regression(records, "Camion")

    x = np.column_stack([np.ones(6), DISTANCES, TONNAGES])
    y = np.array([r.liters for r in records])
    beta = np.linalg.solve(x.T @ x, x.T @ y)
    residuals = y - x @ beta
    ssr = float(residuals @ residuals)
    sst = float(((y - y.mean()) ** 2).sum())

    assert result.intercept == pytest.approx(beta[0])
    assert result.coefficients["kilometrage"] == pytest.approx(beta[1])
    assert result.coefficients["tonnage"] == pytest.approx(beta[2])
    assert result.mse == pytest.approx(ssr / 6)
    assert result.r_squared == pytest.approx(1 - ssr / sst, abs=1e-4)
    r2 = 1 - ssr / sst
    assert result.adjusted_r_squared == pytest.approx(1 - (1 - r2) * 5 / 3, abs=1e-4)

    stats = {s.name: s for s in result.statistics}
    assert set(stats) == {"intercept", "kilometrage", "tonnage"}
    se = math.sqrt((ssr / 3) * np.linalg.inv(x.T @ x)[1, 1])
    t = beta[1] / se
    assert stats["kilometrage"].std_error == pytest.approx(se)
    assert stats["kilometrage"].t_value == pytest.approx(t)
    assert stats["kilometrage"].p_value == pytest.approx(2 * (1 - abs(t) / math.sqrt(3 + t * t)))


def test_fewer_than_three_records_still_returns_a_result(caplog) -> None:  # type: ignore[no-untyped-def]
    result = fit_regression([_rec(10, 100, 1), _rec(20, 200, 3)], "Minibus")

    assert result.sample_size == 2
    assert result.low_confidence
    assert all(math.isfinite(v) for v in result.coefficients.values())
    assert all(math.isnan(s.p_value) for s in result.statistics)
    assert "low confidence" in caplog.text


def test_single_record_has_zero_r_squared() -> None:
    result = fit_regression([_rec(10, 100, 1)], "Voiture")
    assert result.r_squared == 0.0
    assert result.low_confidence


def test_empty_records_raise_value_error() -> None:
    with pytest.raises(ValueError, match="empty"):
        fit_regression([], "Camion")


def test_non_finite_coefficients_raise_invalid_fit() -> None:
    records = [_rec(float("inf"), 100, 1), _rec(5, 200, 2), _rec(6, 300, 5)]
    with pytest.raises(InvalidFitError):
        fit_regression(records, "Camion")


def test_solver_failure_raises_invalid_fit(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _boom(*_args: object, **_kwargs: object) -> None:
        raise np.linalg.LinAlgError("SVD did not converge")

    monkeypatch.setattr(regression_mod.np.linalg, "lstsq", _boom)
    with pytest.raises(InvalidFitError, match="SVD"):
        fit_regression(_exact_records(), "Camion")


def test_fit_or_default_substitutes_default_model() -> None:
    records = [_rec(float("nan"), 100, 1), _rec(5, 200, 2), _rec(6, 300, 5)]
    result = fit_or_default(records, "Camion")

    assert result.is_default
    assert result.coefficients == {"kilometrage": 0.001, "tonnage": 0.001}
    assert result.intercept == 0.0
    assert result.r_squared == 0.0
    assert result.sample_size == 3


def test_default_fit_equation() -> None:
    result = default_fit("Chariot")
    assert result.equation == "Consommation = 0.0010 × Kilometrage + 0.0010 × Tonnage + 0.0000"
    assert result.is_default


def test_format_equation_signs() -> None:
    assert format_equation(0.12345, -0.5, -3.25) == (
        "Consommation = 0.1235 × Kilometrage - 0.5000 × Tonnage - 3.2500"
    )
    assert format_equation(-0.1, 0.0, 0.0) == (
        "Consommation = -0.1000 × Kilometrage + 0.0000 × Tonnage + 0.0000"
    )


def test_result_serializes_with_fixed_coefficient_keys() -> None:
    payload = fit_regression([_rec(10, 100, 1), _rec(20, 200, 3)], "Minibus").to_dict()

    assert set(payload["coefficients"]) == {"kilometrage", "tonnage"}
    assert payload["statistics"][0]["p_value"] is None
    assert payload["vehicle_type"] == "Minibus"


# ── Selection and per-type fitting ───────────────────────────────


def test_select_for_regression_filters_type_and_non_positive_values() -> None:
    records = [
        _rec(10, 100, vehicle_type="Camion"),
        _rec(0, 100, vehicle_type="Camion"),
        _rec(10, 0, vehicle_type="Camion"),
        _rec(10, 100, vehicle_type="Minibus"),
    ]

    assert len(select_for_regression(records, "camion")) == 1
    assert len(select_for_regression(records, "all")) == 2
    assert len(select_for_regression(records)) == 2
    assert select_for_regression(records, "Chariot") == []


def test_detect_outliers_needs_five_records() -> None:
    records = [_rec(10, 100), _rec(10, 100), _rec(10, 100), _rec(10, 100000)]
    assert detect_outliers(records) == []


def test_detect_outliers_flags_three_sigma_values(caplog) -> None:  # type: ignore[no-untyped-def]
    records = [_rec(10, 100, vehicle_id=f"{i} TU 1") for i in range(19)]
    records.append(_rec(10, 100000, vehicle_id="99 TU 9"))

    outliers = detect_outliers(records)

    assert [(o.vehicle_id, o.metric) for o in outliers] == [("99 TU 9", "distance_km")]
    assert "Potential outlier" in caplog.text


def test_fit_by_type_fits_each_type_in_sorted_order() -> None:
    records = _exact_records() + [
        _rec(8, 100, 0, vehicle_type="Minibus"),
        _rec(0, 0, 0, vehicle_type="Chariot"),
    ]
    results = fit_by_type(records)

    assert list(results) == ["Camion", "Minibus"]
    assert results["Camion"].coefficients["kilometrage"] == pytest.approx(0.05, abs=1e-9)
    assert results["Minibus"].low_confidence
