"""Configured prices for simulated runs, with optional seeded jitter."""
from __future__ import annotations

import logging

import numpy as np

from ..config import StaticPricesConfig

logger = logging.getLogger(__name__)


class StaticPriceSource:
    """Serve fixed prices, optionally perturbed by ``N(0, jitter)`` relative noise.

    With a seed the sequence of perturbations is reproducible across runs.
    """

    def __init__(self, config: StaticPricesConfig) -> None:
        self.prices = dict(config.prices)
        self.jitter = config.jitter
        self._rng = np.random.default_rng(config.seed)

    def update(self, prices: dict[str, float]) -> None:
        self.prices.update(prices)

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        wanted = sorted(self.prices if symbols is None else set(symbols) & set(self.prices))
        prices: dict[str, float] = {}
        for symbol in wanted:
            price = self.prices[symbol]
            if self.jitter > 0.0:
                price *= max(1e-6, 1.0 + self._rng.normal(0.0, self.jitter))
            prices[symbol] = float(price)
        logger.debug("Static prices: %s", prices)
        return prices
