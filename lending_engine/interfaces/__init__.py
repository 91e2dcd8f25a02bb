"""Protocol interfaces for the lending engine."""
from .checkpoint import Checkpointable
from .price_source import PriceSource
from .strategy import FlashLoanStrategy

__all__ = ["Checkpointable", "FlashLoanStrategy", "PriceSource"]
