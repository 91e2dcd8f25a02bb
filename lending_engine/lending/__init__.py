"""Lending pool, positions and interest accrual."""
from .interest import FixedRateModel, KinkedRateModel, build_rate_model, compound_index
from .pool import LendingPool

__all__ = [
    "FixedRateModel",
    "KinkedRateModel",
    "LendingPool",
    "build_rate_model",
    "compound_index",
]
