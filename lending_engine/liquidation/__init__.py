"""Dutch-auction liquidation."""
from .decay import LinearDecay, StairstepExponentialDecay, build_decay
from .engine import LiquidationEngine

__all__ = ["LinearDecay", "LiquidationEngine", "StairstepExponentialDecay", "build_decay"]
