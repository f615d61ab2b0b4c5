"""Time-to-breach estimation — deterministic bound plus Monte Carlo simulation."""
from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np

from ..config import PredictorConfig
from ..models import Outcome, Position, TimeToBreachResult, health_factor
from .market_model import MarketModel

logger = logging.getLogger(__name__)

MINUTES_PER_YEAR = 365.25 * 24 * 60
DT = 1.0 / MINUTES_PER_YEAR


@dataclass(frozen=True)
class AssessParams:
    """Per-call knobs; ``None`` takes the configured default."""

    horizon_minutes: int | None = None
    confidence_level: float = 0.95
    n_simulations: int | None = None
    volatility_multiplier: float = 1.0
    seed: int | None = None

    @classmethod
    def coerce(cls, params: AssessParams | Mapping[str, Any] | None) -> AssessParams:
        if params is None:
            return cls()
        if isinstance(params, AssessParams):
            return params
        known = {k: v for k, v in params.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class PortfolioMetrics:
    """Priced view of a position. Assets without a usable price are excluded.

    Unpriced debt cannot be excluded safely, so it is listed in
    ``unpriced_debt`` and the health factor is reported as 0.
    """

    collateral_value: float
    debt_value: float
    health_factor: float
    haircut: float
    collateral_units: dict[str, float] = field(default_factory=dict)
    debt_units: dict[str, float] = field(default_factory=dict)
    prices: dict[str, float] = field(default_factory=dict)
    unpriced_debt: tuple[str, ...] = ()


@dataclass(frozen=True)
class SimulationSummary:
    breach_probability: float
    expected_ttb: float
    median_ttb: float
    tail_ttb: float
    n_breaches: int


def _usable_price(prices: Mapping[str, float], asset: str) -> float | None:
    price = prices.get(asset)
    if price is None or not math.isfinite(price) or price <= 0.0:
        return None
    return float(price)


def portfolio_metrics(
    position: Position, oracle_prices: Mapping[str, float]
) -> PortfolioMetrics:
    """Value collateral and debt at ``oracle_prices``; HF uses the threshold as haircut."""
    haircut = position.liquidation_threshold if position.liquidation_threshold > 0 else 1.0
    collateral_units: dict[str, float] = {}
    debt_units: dict[str, float] = {}
    prices: dict[str, float] = {}
    unpriced_debt: list[str] = []

    sides = ((position.collateral, collateral_units, False), (position.debt, debt_units, True))
    for side, units, is_debt in sides:
        for holding in side:
            price = _usable_price(oracle_prices, holding.mint)
            if price is None:
                logger.debug("No oracle price for %s, excluded from valuation", holding.mint)
                if is_debt and holding.mint not in unpriced_debt:
                    unpriced_debt.append(holding.mint)
                continue
            prices[holding.mint] = price
            units[holding.mint] = units.get(holding.mint, 0.0) + float(holding.amount)

    collateral_value = sum(u * prices[a] for a, u in collateral_units.items())
    debt_value = sum(u * prices[a] for a, u in debt_units.items())

    if not position.collateral and not position.debt:
        hf = position.health_factor
    elif unpriced_debt:
        hf = 0.0
    else:
        hf = health_factor(collateral_value, debt_value, haircut)

    return PortfolioMetrics(
        collateral_value=collateral_value,
        debt_value=debt_value,
        health_factor=hf,
        haircut=haircut,
        collateral_units=collateral_units,
        debt_units=debt_units,
        prices=prices,
        unpriced_debt=tuple(unpriced_debt),
    )


def fallback_result() -> TimeToBreachResult:
    return TimeToBreachResult(
        ttb_minutes=5.0,
        breach_probability=0.5,
        shock_scenarios=(-0.05,),
        critical_price_levels={},
        confidence=0.1,
        outcome=Outcome.FALLBACK,
    )


class RiskPredictor:
    """Estimates how soon a position breaches its liquidation threshold."""

    def __init__(
        self, market: MarketModel, config: PredictorConfig | None = None
    ) -> None:
        self._market = market
        self._config = config or PredictorConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assess(
        self,
        position: Position,
        oracle_prices: Mapping[str, float],
        params: AssessParams | Mapping[str, Any] | None = None,
    ) -> TimeToBreachResult:
        """Produce a TimeToBreachResult; never raises.

        Any internal failure is logged and converted into the conservative
        fallback (5 minutes, 50% breach probability, confidence 0.1).
        """
        try:
            p = AssessParams.coerce(params)
            horizon = max(
                0, int(self._config.horizon_minutes if p.horizon_minutes is None else p.horizon_minutes)
            )
            n_sims = max(
                0, int(self._config.n_simulations if p.n_simulations is None else p.n_simulations)
            )
            seed = self._config.seed if p.seed is None else p.seed

            metrics = portfolio_metrics(position, oracle_prices)
            if metrics.unpriced_debt:
                logger.warning(
                    "No price for debt %s of %s, using fallback assessment",
                    ", ".join(metrics.unpriced_debt),
                    position.position_id,
                )
                return fallback_result()

            deterministic = self.deterministic_ttb(
                metrics, position.liquidation_threshold, p.volatility_multiplier
            )
            stochastic = self.simulate(
                metrics, horizon, n_sims, seed, p.volatility_multiplier, p.confidence_level
            )
            shocks = self.shock_scenarios(metrics)
            critical = self.critical_price_levels(metrics, position.liquidation_threshold)
            confidence = self.prediction_confidence(metrics)

            logger.debug(
                "TTB for %s: deterministic=%.2f expected=%.2f median=%.2f tail=%.2f p=%.4f",
                position.position_id,
                deterministic,
                stochastic.expected_ttb,
                stochastic.median_ttb,
                stochastic.tail_ttb,
                stochastic.breach_probability,
            )

            return TimeToBreachResult(
                ttb_minutes=min(deterministic, stochastic.expected_ttb),
                breach_probability=stochastic.breach_probability,
                shock_scenarios=shocks,
                critical_price_levels=critical,
                confidence=confidence,
            )
        except Exception:
            logger.exception("TTB prediction failed for %s", position.position_id)
            return fallback_result()

    def analyze_scenarios(
        self, position: Position, oracle_prices: Mapping[str, float]
    ) -> dict[str, TimeToBreachResult]:
        """Base case, doubled volatility, and a 15% drop in collateral prices."""
        collateral = {h.mint for h in position.collateral}
        stressed = {
            asset: price * 0.85 if asset in collateral else price
            for asset, price in oracle_prices.items()
        }
        return {
            "base_case": self.assess(position, oracle_prices, AssessParams(horizon_minutes=60)),
            "high_volatility": self.assess(
                position,
                oracle_prices,
                AssessParams(horizon_minutes=60, volatility_multiplier=2.0),
            ),
            "market_stress": self.assess(position, stressed, AssessParams(horizon_minutes=30)),
        }

    # ------------------------------------------------------------------
    # Deterministic bound
    # ------------------------------------------------------------------

    def deterministic_ttb(
        self,
        metrics: PortfolioMetrics,
        liquidation_threshold: float,
        volatility_multiplier: float = 1.0,
    ) -> float:
        """Minutes until a 2-sigma move of the most volatile collateral covers the gap."""
        hf = metrics.health_factor
        if hf <= liquidation_threshold:
            return 0.0
        if math.isinf(hf):
            return math.inf

        max_vol = max(
            (self._market.volatility(a) for a in metrics.collateral_units), default=0.0
        )
        if max_vol <= 0.0:
            max_vol = self._market.default_volatility
        sigma_per_minute = max_vol * volatility_multiplier / math.sqrt(MINUTES_PER_YEAR)
        if sigma_per_minute <= 0.0:
            return math.inf

        price_drop_needed = (hf - liquidation_threshold) / hf
        return max(1.0, (price_drop_needed / (2.0 * sigma_per_minute)) ** 2)

    # ------------------------------------------------------------------
    # Monte Carlo
    # ------------------------------------------------------------------

    def simulate(
        self,
        metrics: PortfolioMetrics,
        horizon_minutes: int,
        n_simulations: int,
        seed: int | None = None,
        volatility_multiplier: float = 1.0,
        confidence_level: float = 0.95,
    ) -> SimulationSummary:
        """Simulate zero-drift correlated GBM paths and collect first breach times."""
        horizon = float(horizon_minutes)
        if n_simulations <= 0 or horizon_minutes <= 0:
            return SimulationSummary(0.0, horizon, horizon, horizon, 0)

        assets = sorted(metrics.prices)
        start = np.array([metrics.prices[a] for a in assets], dtype=float)
        sigmas = np.array(
            [self._market.volatility(a) * volatility_multiplier for a in assets], dtype=float
        )
        c_units = np.array([metrics.collateral_units.get(a, 0.0) for a in assets])
        d_units = np.array([metrics.debt_units.get(a, 0.0) for a in assets])
        chol = self._cholesky(assets)

        chunk = self._config.chunk_size
        sizes = [min(chunk, n_simulations - i) for i in range(0, n_simulations, chunk)]
        seeds = np.random.SeedSequence(seed).spawn(len(sizes))

        def run(args: tuple[np.random.SeedSequence, int]) -> np.ndarray:
            child, size = args
            return _simulate_chunk(
                np.random.default_rng(child),
                size,
                horizon_minutes,
                start,
                sigmas,
                chol,
                c_units,
                d_units,
                metrics.haircut,
                metrics.health_factor,
                self._config.breach_hf,
            )

        workers = min(self._config.workers, len(sizes))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(run, zip(seeds, sizes)))
        else:
            results = [run(item) for item in zip(seeds, sizes)]

        breach_steps = np.concatenate(results)
        breach_times = breach_steps[breach_steps > 0].astype(float)
        n_breaches = int(breach_times.size)

        if n_breaches == 0:
            return SimulationSummary(0.0, horizon, horizon, horizon, 0)
        return SimulationSummary(
            breach_probability=n_breaches / n_simulations,
            expected_ttb=float(np.mean(breach_times)),
            median_ttb=float(np.median(breach_times)),
            tail_ttb=float(np.quantile(breach_times, confidence_level)),
            n_breaches=n_breaches,
        )

    def _cholesky(self, assets: list[str]) -> np.ndarray | None:
        if len(assets) < 2:
            return None
        corr = self._market.correlation(assets)
        if np.allclose(corr, np.eye(len(assets))):
            return None
        try:
            return np.linalg.cholesky(corr)
        except np.linalg.LinAlgError:
            logger.warning("Correlation matrix not positive definite, using independent shocks")
            return None

    # ------------------------------------------------------------------
    # Scenario analysis
    # ------------------------------------------------------------------

    def shock_scenarios(self, metrics: PortfolioMetrics) -> tuple[float, ...]:
        """Uniform collateral price shocks that would push HF to the breach level."""
        if not metrics.collateral_units and not metrics.debt_units:
            return tuple(
                s for s in self._config.shock_levels
                if metrics.health_factor <= self._config.breach_hf
            )

        breaching: list[float] = []
        for shock in self._config.shock_levels:
            collateral = sum(
                u * metrics.prices[a] * (1.0 + shock)
                for a, u in metrics.collateral_units.items()
            )
            hf = health_factor(collateral, metrics.debt_value, metrics.haircut)
            if hf <= self._config.breach_hf:
                breaching.append(shock)
        return tuple(breaching)

    def critical_price_levels(
        self, metrics: PortfolioMetrics, liquidation_threshold: float
    ) -> dict[str, float]:
        """Per collateral asset, the price bringing HF to the threshold (others fixed)."""
        if metrics.debt_value <= 0.0:
            return {}

        levels: dict[str, float] = {}
        h = metrics.haircut
        for asset, c_units in metrics.collateral_units.items():
            price = metrics.prices[asset]
            d_units = metrics.debt_units.get(asset, 0.0)
            other_collateral = metrics.collateral_value - c_units * price
            other_debt = metrics.debt_value - d_units * price
            denominator = h * c_units - liquidation_threshold * d_units
            if denominator <= 0.0:
                continue
            critical = (liquidation_threshold * other_debt - h * other_collateral) / denominator
            levels[asset] = max(0.0, critical)
        return levels

    def prediction_confidence(self, metrics: PortfolioMetrics) -> float:
        data_quality = 0.8 if self._market.has_history() else 0.3

        vols = [self._market.volatility(a) for a in metrics.collateral_units]
        avg_vol = float(np.mean(vols)) if vols else self._market.default_volatility
        vol_factor = math.exp(-avg_vol)

        hf = metrics.health_factor
        hf_factor = 1.0 if math.isinf(hf) else min(1.0, hf / 2.0)
        diversification = min(1.0, len(metrics.collateral_units) / 3.0)

        factors = np.maximum(
            np.array([data_quality, vol_factor, hf_factor, diversification]), 1e-6
        )
        overall = float(np.exp(np.mean(np.log(factors))))
        return min(0.95, max(0.1, overall))


def _simulate_chunk(
    rng: np.random.Generator,
    n_paths: int,
    n_steps: int,
    start_prices: np.ndarray,
    sigmas: np.ndarray,
    chol: np.ndarray | None,
    collateral_units: np.ndarray,
    debt_units: np.ndarray,
    haircut: float,
    static_hf: float,
    breach_hf: float,
) -> np.ndarray:
    """Return the first breach step per path (0 when the path never breaches).

    Normals are drawn one step at a time so that a longer horizon with the
    same generator extends, rather than reshuffles, every path.
    """
    breach_step = np.zeros(n_paths, dtype=np.int64)
    k = start_prices.size
    if k == 0:
        if static_hf <= breach_hf:
            breach_step[:] = 1
        return breach_step

    log_prices = np.tile(np.log(start_prices), (n_paths, 1))
    drift = -0.5 * sigmas**2 * DT
    diffusion = sigmas * math.sqrt(DT)
    alive = np.ones(n_paths, dtype=bool)

    for step in range(1, n_steps + 1):
        z = rng.standard_normal((n_paths, k))
        if chol is not None:
            z = z @ chol.T
        log_prices += drift + diffusion * z
        prices = np.exp(log_prices)

        collateral = prices @ collateral_units
        debt = prices @ debt_units
        with np.errstate(divide="ignore", invalid="ignore"):
            hf = np.where(debt > 0.0, collateral * haircut / debt, np.inf)

        newly = alive & (hf <= breach_hf)
        breach_step[newly] = step
        alive &= ~newly
        if not alive.any():
            break

    return breach_step
