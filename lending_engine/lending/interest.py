"""Interest-rate models and per-second index compounding."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..config import ReserveConfig
from ..errors import InvariantViolation
from ..fixed_point import BPS, RAY, WAD, YEAR_IN_SECONDS, mul_div_down, rpow


class RateModel(Protocol):
    def annual_rate_bps(self, utilization_wad: int) -> int: ...


@dataclass(frozen=True)
class FixedRateModel:
    rate_bps: int

    def annual_rate_bps(self, utilization_wad: int) -> int:
        return self.rate_bps


@dataclass(frozen=True)
class KinkedRateModel:
    """Piecewise-linear curve with a kink at the optimal utilization.

    rate = base + u/u_opt × slope1                       for u ≤ u_opt
    rate = base + slope1 + (u − u_opt)/(1 − u_opt) × slope2  otherwise
    """

    base_rate_bps: int
    slope1_bps: int
    slope2_bps: int
    optimal_utilization_bps: int

    def annual_rate_bps(self, utilization_wad: int) -> int:
        utilization_wad = max(0, min(WAD, utilization_wad))
        optimal_wad = self.optimal_utilization_bps * WAD // BPS
        if utilization_wad <= optimal_wad:
            return self.base_rate_bps + mul_div_down(
                utilization_wad, self.slope1_bps, optimal_wad
            )
        excess = utilization_wad - optimal_wad
        return (
            self.base_rate_bps
            + self.slope1_bps
            + mul_div_down(excess, self.slope2_bps, WAD - optimal_wad)
        )


def build_rate_model(cfg: ReserveConfig) -> RateModel:
    if cfg.rate_model == "kinked":
        return KinkedRateModel(
            base_rate_bps=cfg.base_rate_bps,
            slope1_bps=cfg.slope1_bps,
            slope2_bps=cfg.slope2_bps,
            optimal_utilization_bps=cfg.optimal_utilization_bps,
        )
    return FixedRateModel(rate_bps=cfg.base_rate_bps)


def per_second_rate(annual_rate_bps: int) -> int:
    """RAY-scaled per-second growth factor (1 + r/year)."""
    return RAY + annual_rate_bps * RAY // (BPS * YEAR_IN_SECONDS)


def compound_index(index: int, annual_rate_bps: int, elapsed: int) -> int:
    """Advance ``index`` by ``elapsed`` seconds of per-second compounding."""
    if elapsed < 0:
        raise InvariantViolation(f"Cannot accrue over negative time: {elapsed}")
    if elapsed == 0 or annual_rate_bps == 0:
        return index
    factor = rpow(per_second_rate(annual_rate_bps), elapsed, RAY)
    new_index = mul_div_down(index, factor, RAY)
    if new_index < index:
        raise InvariantViolation(f"Interest index decreased: {index} -> {new_index}")
    return new_index
