"""Price oracle, its secondary sources and external ingestion."""
from .price_oracle import PriceOracle, normalize_price
from .pyth import PythPriceSource
from .sequencer import SequencerUptimeFeed
from .twap import AmmTwapSource

__all__ = [
    "AmmTwapSource",
    "PriceOracle",
    "PythPriceSource",
    "SequencerUptimeFeed",
    "normalize_price",
]
