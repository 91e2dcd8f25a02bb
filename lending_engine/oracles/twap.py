"""Time-weighted average price from AMM cumulative-price accumulators."""
from __future__ import annotations

import logging

from ..amm.exchange import AmmExchange
from ..config import SecondarySourceConfig
from ..errors import OracleNoData
from ..executor import CheckpointMixin
from ..models import ExecutionContext, PriceReading

logger = logging.getLogger(__name__)

MAX_OBSERVATIONS = 64
TWAP_DECIMALS = 18


class AmmTwapSource(CheckpointMixin):
    """Serves the average pool price over ``window`` seconds.

    Prices are quoted in the pool's other asset. Observations must be
    recorded periodically; a read needs one at least ``window`` old.
    """

    _checkpoint_fields = ("_observations",)

    def __init__(self, amm: AmmExchange, sources: dict[str, SecondarySourceConfig]) -> None:
        self._amm = amm
        self._sources = dict(sources)
        self._observations: dict[str, list[tuple[int, int]]] = {
            asset: [] for asset in sources
        }

    def record(self, ctx: ExecutionContext, asset: str) -> None:
        cfg = self._require(asset)
        cumulative = self._amm.cumulative_price(cfg.pool_id, asset, ctx.timestamp)
        observations = self._observations[asset]
        if observations and observations[-1][0] == ctx.timestamp:
            return
        observations.append((ctx.timestamp, cumulative))
        del observations[:-MAX_OBSERVATIONS]

    def get_price(self, ctx: ExecutionContext, asset: str) -> PriceReading:
        cfg = self._require(asset)
        cutoff = ctx.timestamp - cfg.window
        anchor = None
        for timestamp, cumulative in reversed(self._observations[asset]):
            if timestamp <= cutoff:
                anchor = (timestamp, cumulative)
                break
        if anchor is None:
            raise OracleNoData(f"No TWAP observation for '{asset}' older than {cfg.window}s")

        elapsed = ctx.timestamp - anchor[0]
        if elapsed <= 0:
            raise OracleNoData(f"TWAP window for '{asset}' is empty")
        now_cumulative = self._amm.cumulative_price(cfg.pool_id, asset, ctx.timestamp)
        price = (now_cumulative - anchor[1]) // elapsed
        return PriceReading(
            asset=asset,
            price=price,
            updated_at=ctx.timestamp,
            decimals=TWAP_DECIMALS,
            source="twap",
        )

    def _require(self, asset: str) -> SecondarySourceConfig:
        try:
            return self._sources[asset]
        except KeyError:
            raise OracleNoData(f"No TWAP source configured for '{asset}'") from None
