"""Price source protocol — secondary price feeds for the fallback read path."""
from typing import Protocol

from ..models import ExecutionContext, PriceReading


class PriceSource(Protocol):
    """Abstract interface for a source of validated price readings."""

    def get_price(self, ctx: ExecutionContext, asset: str) -> PriceReading: ...
