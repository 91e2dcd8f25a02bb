"""Atomic flash loans and the strategies that run inside them."""
from .coordinator import FlashLoanCoordinator
from .strategies import FlashLiquidationStrategy

__all__ = ["FlashLiquidationStrategy", "FlashLoanCoordinator"]
