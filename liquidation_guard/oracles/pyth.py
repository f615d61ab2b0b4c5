"""Pyth Network (Hermes) live price source."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import PythConfig

logger = logging.getLogger(__name__)


def _scaled_price(item: dict[str, Any]) -> float | None:
    """Decode a Hermes ``parsed`` entry into a USD price; ``None`` if unusable."""
    price_data = item.get("price") or {}
    try:
        price = int(price_data.get("price", 0)) * (10 ** int(price_data.get("expo", 0)))
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


class PythOracle:
    """Fetch USD prices for the configured symbols from Pyth Hermes."""

    def __init__(self, config: PythConfig) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = config.timeout

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        """Fetch current prices; returns an empty or partial map on failure.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds. Symbols without a configured feed are
                     skipped.
        """
        prices: dict[str, float] = {}

        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}
            missing = sorted(set(symbols) - set(feeds))
            if missing:
                logger.debug("No Pyth feed configured for: %s", ", ".join(missing))

        id_to_symbols: dict[str, list[str]] = {}
        for symbol, feed_id in feeds.items():
            id_to_symbols.setdefault(feed_id.lower().removeprefix("0x"), []).append(symbol)
        if not id_to_symbols:
            return prices

        params = [("ids[]", feed_id) for feed_id in sorted(id_to_symbols)]
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    self.hermes_url,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return prices

                    data = await response.json()
                    for item in data.get("parsed", []):
                        feed_id = str(item.get("id", "")).lower().removeprefix("0x")
                        price = _scaled_price(item)
                        if price is None:
                            logger.warning("Discarding unusable Pyth price for feed %s", feed_id)
                            continue
                        for symbol in id_to_symbols.get(feed_id, []):
                            prices[symbol] = price

        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)

        logger.info("Fetched %d/%d prices from Pyth", len(prices), len(feeds))
        return prices
