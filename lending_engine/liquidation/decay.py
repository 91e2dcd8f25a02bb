"""Price decay curves for Dutch auctions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..config import DecayConfig
from ..fixed_point import BPS, RAY, mul_div_down, rpow


class DecayCurve(Protocol):
    def price(self, start_price: int, elapsed: int) -> int: ...


@dataclass(frozen=True)
class LinearDecay:
    """Falls in a straight line from the start price to zero over ``duration``."""

    duration: int

    def price(self, start_price: int, elapsed: int) -> int:
        if elapsed >= self.duration:
            return 0
        return mul_div_down(start_price, self.duration - max(elapsed, 0), self.duration)


@dataclass(frozen=True)
class StairstepExponentialDecay:
    """Multiplies the price by ``cut`` once every ``step_duration`` seconds.

    price(t) = start × cut^(t // step_duration)
    """

    step_duration: int
    cut_bps: int

    def price(self, start_price: int, elapsed: int) -> int:
        steps = max(elapsed, 0) // self.step_duration
        factor = rpow(self.cut_bps * RAY // BPS, steps, RAY)
        return mul_div_down(start_price, factor, RAY)


def build_decay(cfg: DecayConfig) -> DecayCurve:
    if cfg.kind == "linear":
        return LinearDecay(duration=cfg.duration)
    return StairstepExponentialDecay(step_duration=cfg.step_duration, cut_bps=cfg.cut_bps)
