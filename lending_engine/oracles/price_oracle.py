"""Price oracle — ingests observations and serves validated reads."""
from __future__ import annotations

import logging

from ..config import OracleFeedConfig
from ..errors import (
    ExecutionHalted,
    OracleError,
    OracleInvalidPrice,
    OracleMismatch,
    OracleNoData,
    OracleStale,
    Unauthorized,
)
from ..executor import CheckpointMixin
from ..fixed_point import BPS, WAD, mul_div_down
from ..interfaces.price_source import PriceSource
from ..models import ExecutionContext, PriceReading
from ..state import OracleFeed
from .sequencer import SequencerUptimeFeed

logger = logging.getLogger(__name__)

# Errors after which the secondary source may stand in for the primary.
_FALLBACK_ERRORS = (OracleNoData, OracleInvalidPrice, OracleStale)


def normalize_price(price: int, decimals: int) -> int:
    """Bring a feed price to WAD using the feed's own decimals."""
    return mul_div_down(price, WAD, 10**decimals)


class PriceOracle(CheckpointMixin):
    """Per-asset feeds with freshness, sign and sequencer checks on every read."""

    _checkpoint_fields = ("_feeds",)

    def __init__(
        self,
        feeds: dict[str, OracleFeedConfig],
        admins: tuple[str, ...],
        sequencer: SequencerUptimeFeed | None = None,
        secondary_sources: dict[str, PriceSource] | None = None,
    ) -> None:
        self._configs = dict(feeds)
        self._admins = frozenset(admins)
        self._sequencer = sequencer
        self._secondary = dict(secondary_sources or {})
        self._feeds: dict[str, OracleFeed] = {
            asset: OracleFeed(asset=asset, decimals=cfg.decimals)
            for asset, cfg in feeds.items()
        }

    def set_secondary_source(self, asset: str, source: PriceSource) -> None:
        self._secondary[asset] = source

    def has_feed(self, asset: str) -> bool:
        return asset in self._configs

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def report_price(
        self,
        ctx: ExecutionContext,
        asset: str,
        price: int,
        updated_at: int | None = None,
        decimals: int | None = None,
        answered_in_round: int | None = None,
    ) -> bool:
        """Record a new round. Returns False if the observation is older than the feed."""
        if ctx.caller_id not in self._admins:
            raise Unauthorized(f"{ctx.caller_id} may not report prices")
        if asset not in self._feeds:
            raise OracleNoData(f"No feed configured for '{asset}'")

        if updated_at is None:
            updated_at = ctx.timestamp
        if updated_at > ctx.timestamp:
            raise OracleInvalidPrice(
                f"Observation for {asset} is dated {updated_at}, after {ctx.timestamp}"
            )

        feed = self._feeds[asset]
        if updated_at < feed.updated_at:
            logger.debug("Ignoring out-of-order %s observation at %d", asset, updated_at)
            return False

        feed.round_id += 1
        feed.answered_in_round = (
            feed.round_id if answered_in_round is None else answered_in_round
        )
        feed.price = price
        feed.updated_at = updated_at
        if decimals is not None:
            feed.decimals = decimals
        logger.info(
            "Price reported for %s: %d (decimals %d, round %d)",
            asset, price, feed.decimals, feed.round_id,
        )
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def latest_round(self, asset: str) -> OracleFeed:
        """Raw feed record, unvalidated."""
        if asset not in self._feeds:
            raise OracleNoData(f"No feed configured for '{asset}'")
        feed = self._feeds[asset]
        return OracleFeed(**vars(feed))

    def get_price(self, ctx: ExecutionContext, asset: str) -> PriceReading:
        """Validated primary read: data, sign, freshness, then sequencer."""
        feed = self._feeds.get(asset)
        if feed is None:
            raise OracleNoData(f"No feed configured for '{asset}'")
        if feed.round_id == 0 or feed.updated_at == 0:
            raise OracleNoData(f"No price reported for '{asset}'")
        if feed.answered_in_round < feed.round_id:
            raise OracleNoData(f"Round {feed.round_id} for '{asset}' is incomplete")

        if feed.price <= 0:
            raise OracleInvalidPrice(f"Non-positive price for '{asset}': {feed.price}")

        cfg = self._configs[asset]
        age = ctx.timestamp - feed.updated_at
        if age >= cfg.heartbeat + cfg.max_staleness_buffer:
            raise OracleStale(
                f"Price for '{asset}' is {age}s old "
                f"(limit {cfg.heartbeat + cfg.max_staleness_buffer}s)"
            )

        self._check_sequencer(ctx)

        return PriceReading(
            asset=asset,
            price=feed.price,
            updated_at=feed.updated_at,
            decimals=feed.decimals,
        )

    def get_price_with_fallback(self, ctx: ExecutionContext, asset: str) -> PriceReading:
        """Primary read, falling back to the secondary source when the primary
        is missing, invalid or stale. When both are fresh they must agree
        within the feed's deviation threshold.
        """
        secondary = self._secondary.get(asset)
        try:
            primary = self.get_price(ctx, asset)
        except _FALLBACK_ERRORS as primary_error:
            if secondary is None:
                raise
            self._check_sequencer(ctx)
            try:
                reading = secondary.get_price(ctx, asset)
            except OracleError:
                raise primary_error
            logger.warning(
                "Primary price for %s unavailable (%s); using %s",
                asset, primary_error, reading.source,
            )
            return reading

        if secondary is None:
            return primary
        try:
            reading = secondary.get_price(ctx, asset)
        except OracleError as e:
            logger.debug("Secondary price for %s unavailable: %s", asset, e)
            return primary

        self._check_deviation(asset, primary, reading)
        return primary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_sequencer(self, ctx: ExecutionContext) -> None:
        if self._sequencer is not None and not self._sequencer.is_execution_live(ctx):
            raise ExecutionHalted("Sequencer is down or within its grace period")

    def _check_deviation(
        self, asset: str, primary: PriceReading, secondary: PriceReading
    ) -> None:
        p1 = normalize_price(primary.price, primary.decimals)
        p2 = normalize_price(secondary.price, secondary.decimals)
        threshold = self._configs[asset].deviation_threshold_bps
        if abs(p1 - p2) * BPS > threshold * p1:
            raise OracleMismatch(
                f"Primary and {secondary.source} prices for '{asset}' differ by more "
                f"than {threshold} bps ({p1} vs {p2})"
            )
