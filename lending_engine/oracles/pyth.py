"""Pyth Network price source — fetches observations from Hermes."""
import logging
import ssl

import aiohttp
import certifi

from ..config import PythConfig
from ..models import PriceObservation

logger = logging.getLogger(__name__)


def parse_observation(asset: str, price_data: dict) -> PriceObservation:
    """Turn a Hermes ``price`` object into an integer observation.

    Pyth prices are ``price × 10^expo``; a negative exponent becomes the
    observation's decimals, a positive one is folded into the integer.
    """
    price_raw = int(price_data.get("price", 0))
    expo = int(price_data.get("expo", 0))
    publish_time = int(price_data.get("publish_time", 0))

    if expo <= 0:
        return PriceObservation(
            asset=asset, price=price_raw, decimals=-expo, published_at=publish_time
        )
    return PriceObservation(
        asset=asset, price=price_raw * 10**expo, decimals=0, published_at=publish_time
    )


class PythPriceSource:
    """Fetch raw price observations from Pyth Network."""

    def __init__(self, config: PythConfig) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)

    async def fetch_observations(
        self, symbols: list[str] | None = None
    ) -> list[PriceObservation]:
        """Fetch the latest observation for each configured feed.

        Args:
            symbols: Optional list of assets to fetch. If None, fetches all
                     configured feeds.
        """
        observations: list[PriceObservation] = []

        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}

        feed_ids = list(set(feeds.values()))
        if not feed_ids:
            return observations

        query_params = "&".join([f"ids[]={fid}" for fid in feed_ids])
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return observations

                    data = await response.json()
                    parsed = data.get("parsed", [])

                    id_to_assets: dict[str, list[str]] = {}
                    for asset, feed_id in feeds.items():
                        id_to_assets.setdefault(feed_id, []).append(asset)

                    for item in parsed:
                        feed_id = item.get("id")
                        for asset in id_to_assets.get(feed_id, []):
                            observations.append(
                                parse_observation(asset, item.get("price", {}))
                            )

                    logger.info("Fetched %d observations from Pyth Network", len(observations))
                    for obs in observations:
                        logger.debug(
                            "  %s: %d (decimals %d, published %d)",
                            obs.asset, obs.price, obs.decimals, obs.published_at,
                        )

        except (aiohttp.ClientError, TimeoutError, ConnectionError, ValueError) as e:
            logger.error("Error fetching prices from Pyth: %s", e)

        return observations
