"""Rolling per-asset price history with EWMA volatility estimates."""
from __future__ import annotations

import logging
import math
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, Mapping

import numpy as np

from ..config import MarketConfig

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365.25 * 24 * 60 * 60


class _AssetSeries:
    """Bounded price series for one asset, guarded by its own lock."""

    def __init__(self, limit: int) -> None:
        self.lock = threading.Lock()
        self.prices: deque[float] = deque(maxlen=limit)
        self.timestamps: deque[datetime] = deque(maxlen=limit)
        self.cached_volatility: float | None = None


class MarketModel:
    """Holds rolling price series per asset and derives volatility/correlation.

    Writes are expected from a single price-ingestion path; reads may come
    from many concurrent pipelines. Each asset series carries its own lock.
    """

    def __init__(self, config: MarketConfig | None = None) -> None:
        self._config = config or MarketConfig()
        self._series: dict[str, _AssetSeries] = {}
        self._registry_lock = threading.Lock()

    @property
    def default_volatility(self) -> float:
        return self._config.default_volatility

    def _get_series(self, asset: str, create: bool = False) -> _AssetSeries | None:
        series = self._series.get(asset)
        if series is None and create:
            with self._registry_lock:
                series = self._series.setdefault(
                    asset, _AssetSeries(self._config.history_limit)
                )
        return series

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record_price(
        self, asset: str, price: float, timestamp: datetime | None = None
    ) -> bool:
        """Append an observation and return whether it was stored.

        Non-positive or non-finite prices are dropped, as are samples stamped
        at or before the last stored one and samples arriving sooner than
        ``min_sample_interval_seconds`` after it.
        """
        if not math.isfinite(price) or price <= 0.0:
            logger.warning("Ignoring invalid price %r for %s", price, asset)
            return False

        series = self._get_series(asset, create=True)
        with series.lock:
            ts = timestamp or datetime.now(timezone.utc)
            if series.timestamps:
                last = series.timestamps[-1]
                if timestamp is not None and ts <= last:
                    logger.debug("Ignoring stale %s sample at %s", asset, ts.isoformat())
                    return False
                if (ts - last).total_seconds() < self._config.min_sample_interval_seconds:
                    logger.debug("Ignoring %s sample within the sampling interval", asset)
                    return False
            series.prices.append(float(price))
            series.timestamps.append(ts)
            series.cached_volatility = None
            return True

    def record_prices(
        self, prices: Mapping[str, float], timestamp: datetime | None = None
    ) -> int:
        """Record a whole oracle map at one timestamp; returns the number stored."""
        ts = timestamp or datetime.now(timezone.utc)
        return sum(self.record_price(asset, price, ts) for asset, price in prices.items())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_history(self, asset: str | None = None) -> bool:
        if asset is None:
            return any(len(s.prices) > 0 for s in list(self._series.values()))
        series = self._get_series(asset)
        return series is not None and len(series.prices) > 0

    def history(self, asset: str) -> tuple[float, ...]:
        series = self._get_series(asset)
        if series is None:
            return ()
        with series.lock:
            return tuple(series.prices)

    def volatility(self, asset: str) -> float:
        """Annualised EWMA volatility, or the conservative default.

        Returns are annualised from the actual spacing of their timestamps. A
        zero estimate (flat history) carries no information and also falls
        back to the default.
        """
        fallback = self._config.volatility_overrides.get(
            asset, self._config.default_volatility
        )
        series = self._get_series(asset)
        if series is None:
            return fallback

        with series.lock:
            if series.cached_volatility is not None:
                return series.cached_volatility
            prices = list(series.prices)
            if len(prices) < 2:
                return fallback
            stamps = list(series.timestamps)
            intervals = [
                (b - a).total_seconds() / SECONDS_PER_YEAR for a, b in zip(stamps, stamps[1:])
            ]
            sigma = ewma_volatility(prices, self._config.ewma_lambda, intervals=intervals)
            if sigma <= 0.0 or not math.isfinite(sigma):
                sigma = fallback
            series.cached_volatility = sigma
            return sigma

    def volatilities(self, assets: Iterable[str]) -> dict[str, float]:
        return {asset: self.volatility(asset) for asset in assets}

    def correlation(self, assets: list[str]) -> np.ndarray:
        """Correlation of aligned log returns; identity without enough data."""
        n = len(assets)
        identity = np.eye(n)
        if n < 2:
            return identity

        returns: list[np.ndarray] = []
        for asset in assets:
            prices = self.history(asset)
            if len(prices) < 2:
                return identity
            returns.append(np.diff(np.log(np.asarray(prices, dtype=float))))

        window = min(len(r) for r in returns)
        if window < self._config.min_correlation_samples:
            return identity

        matrix = np.corrcoef(np.vstack([r[-window:] for r in returns]))
        # Flat series produce NaN rows; treat them as uncorrelated.
        matrix = np.nan_to_num(matrix, nan=0.0)
        np.fill_diagonal(matrix, 1.0)
        return matrix


def ewma_volatility(
    prices: list[float],
    decay: float = 0.94,
    periods_per_year: float = 365.25,
    intervals: list[float] | None = None,
) -> float:
    """EWMA of squared log returns, seeded with the first return, annualised.

    ``intervals`` gives the spacing of each return in years; each squared
    return is then scaled by its own interval and ``periods_per_year`` is
    ignored. Returns over a zero or negative interval are skipped.
    """
    log_returns = np.diff(np.log(np.asarray(prices, dtype=float)))
    if intervals is None:
        rates = log_returns**2 * periods_per_year
    else:
        spacing = np.asarray(intervals, dtype=float)
        keep = spacing > 0.0
        rates = log_returns[keep] ** 2 / spacing[keep]
    if rates.size == 0:
        return 0.0

    variance = rates[0]
    for rate in rates[1:]:
        variance = decay * variance + (1.0 - decay) * rate
    return float(math.sqrt(variance))
