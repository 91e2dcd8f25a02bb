"""Unit tests for rate models and index compounding."""
from __future__ import annotations

import pytest

from lending_engine.config import ReserveConfig
from lending_engine.errors import InvariantViolation
from lending_engine.fixed_point import RAY, WAD, YEAR_IN_SECONDS
from lending_engine.lending import (
    FixedRateModel,
    KinkedRateModel,
    build_rate_model,
    compound_index,
)
from lending_engine.lending.interest import per_second_rate


class TestRateModels:
    def test_fixed(self) -> None:
        assert FixedRateModel(rate_bps=300).annual_rate_bps(WAD // 2) == 300

    def test_kinked_segments(self) -> None:
        model = KinkedRateModel(
            base_rate_bps=100, slope1_bps=400, slope2_bps=6000, optimal_utilization_bps=8000
        )
        assert model.annual_rate_bps(0) == 100
        assert model.annual_rate_bps(WAD * 8 // 10) == 500
        assert model.annual_rate_bps(WAD * 9 // 10) == 3500
        assert model.annual_rate_bps(WAD) == 6500

    def test_kinked_is_monotonic(self) -> None:
        model = KinkedRateModel(100, 400, 6000, 8000)
        rates = [model.annual_rate_bps(WAD * u // 100) for u in range(101)]
        assert rates == sorted(rates)

    def test_build_from_config(self) -> None:
        assert isinstance(build_rate_model(ReserveConfig(base_rate_bps=50)), FixedRateModel)
        assert isinstance(
            build_rate_model(ReserveConfig(rate_model="kinked", slope1_bps=10)), KinkedRateModel
        )


class TestCompoundIndex:
    def test_zero_elapsed_is_identity(self) -> None:
        assert compound_index(RAY, 500, 0) == RAY

    def test_negative_elapsed_rejected(self) -> None:
        with pytest.raises(InvariantViolation):
            compound_index(RAY, 500, -1)

    def test_one_year_continuous_compounding(self) -> None:
        index = compound_index(RAY, 500, YEAR_IN_SECONDS)
        # e^0.05 = 1.051271...
        assert 1_051_200 * RAY // 1_000_000 < index < 1_051_300 * RAY // 1_000_000

    def test_split_accrual_close_to_single(self) -> None:
        once = compound_index(RAY, 1_000, 2 * 86_400)
        twice = compound_index(compound_index(RAY, 1_000, 86_400), 1_000, 86_400)
        assert abs(once - twice) < 10**9

    def test_per_second_rate(self) -> None:
        assert per_second_rate(0) == RAY
        assert per_second_rate(10_000) == RAY + RAY // YEAR_IN_SECONDS
