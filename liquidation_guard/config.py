"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PredictorConfig:
    horizon_minutes: int = 30
    n_simulations: int = 10000
    confidence_level: float = 0.95
    breach_hf: float = 1.02
    shock_levels: tuple[float, ...] = (-0.05, -0.10, -0.15, -0.20, -0.30)
    workers: int = 4
    chunk_size: int = 2000
    seed: int | None = None


@dataclass(frozen=True)
class MarketConfig:
    ewma_lambda: float = 0.94
    default_volatility: float = 0.5
    history_limit: int = 1440
    min_sample_interval_seconds: float = 60.0
    min_correlation_samples: int = 10
    volatility_overrides: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class VenueProfile:
    base_fee: float
    gas_usd: float
    slippage_base: float


def _default_profiles() -> dict[str, VenueProfile]:
    return {
        "dex": VenueProfile(base_fee=0.003, gas_usd=0.50, slippage_base=0.001),
        "lending": VenueProfile(base_fee=0.0005, gas_usd=0.30, slippage_base=0.0005),
        "perp": VenueProfile(base_fee=0.005, gas_usd=0.80, slippage_base=0.002),
    }


@dataclass(frozen=True)
class CostModelConfig:
    profiles: dict[str, VenueProfile] = field(default_factory=_default_profiles)
    slippage_threshold_usd: float = 1000.0
    slippage_k: float = 0.0001


def _default_reference_prices() -> dict[str, float]:
    return {
        "SOL": 120.0,
        "ETH": 2500.0,
        "BTC": 45000.0,
        "USDC": 1.0,
        "USDT": 1.0,
        "DAI": 1.0,
    }


@dataclass(frozen=True)
class OptimizerConfig:
    conservative_multiplier: float = 1.5
    min_conservative_usd: float = 100.0
    hedge_ratio: float = 0.3
    fallback_add_usd: float = 100.0
    reference_prices: dict[str, float] = field(default_factory=_default_reference_prices)


@dataclass(frozen=True)
class PipelineConfig:
    assess_timeout_seconds: float = 10.0
    optimize_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)
    timeout: int = 10


@dataclass(frozen=True)
class StaticPricesConfig:
    prices: dict[str, float] = field(default_factory=dict)
    jitter: float = 0.0
    seed: int | None = None


@dataclass(frozen=True)
class PriceSourceConfig:
    provider: str = "static"
    pyth: PythConfig = field(default_factory=PythConfig)
    static: StaticPricesConfig = field(default_factory=StaticPricesConfig)


@dataclass(frozen=True)
class ExecutorConfig:
    mode: str = "simulated"
    endpoints: tuple[str, ...] = ()
    timeout: int = 10
    auth_token: str = ""


@dataclass(frozen=True)
class AppConfig:
    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    costs: CostModelConfig = field(default_factory=CostModelConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    price_source: PriceSourceConfig = field(default_factory=PriceSourceConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)


_PRICE_PROVIDERS = ("static", "pyth")
_EXECUTOR_MODES = ("simulated", "webhook")

# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _build_predictor(raw: dict[str, Any]) -> PredictorConfig:
    defaults = PredictorConfig()
    return PredictorConfig(
        horizon_minutes=int(raw.get("horizon_minutes", defaults.horizon_minutes)),
        n_simulations=int(raw.get("n_simulations", defaults.n_simulations)),
        confidence_level=float(raw.get("confidence_level", defaults.confidence_level)),
        breach_hf=float(raw.get("breach_hf", defaults.breach_hf)),
        shock_levels=tuple(
            float(s) for s in raw.get("shock_levels", defaults.shock_levels)
        ),
        workers=int(raw.get("workers", defaults.workers)),
        chunk_size=int(raw.get("chunk_size", defaults.chunk_size)),
        seed=_optional_int(raw.get("seed")),
    )


def _build_market(raw: dict[str, Any]) -> MarketConfig:
    defaults = MarketConfig()
    return MarketConfig(
        ewma_lambda=float(raw.get("ewma_lambda", defaults.ewma_lambda)),
        default_volatility=float(
            raw.get("default_volatility", defaults.default_volatility)
        ),
        history_limit=int(raw.get("history_limit", defaults.history_limit)),
        min_sample_interval_seconds=float(
            raw.get("min_sample_interval_seconds", defaults.min_sample_interval_seconds)
        ),
        min_correlation_samples=int(
            raw.get("min_correlation_samples", defaults.min_correlation_samples)
        ),
        volatility_overrides={
            k: float(v) for k, v in raw.get("volatility_overrides", {}).items()
        },
    )


def _build_costs(raw: dict[str, Any]) -> CostModelConfig:
    profiles = _default_profiles()
    for venue_type, cfg in raw.get("profiles", {}).items():
        base = profiles.get(venue_type, VenueProfile(0.0, 0.0, 0.0))
        profiles[venue_type] = VenueProfile(
            base_fee=float(cfg.get("base_fee", base.base_fee)),
            gas_usd=float(cfg.get("gas_usd", base.gas_usd)),
            slippage_base=float(cfg.get("slippage_base", base.slippage_base)),
        )
    return CostModelConfig(
        profiles=profiles,
        slippage_threshold_usd=float(raw.get("slippage_threshold_usd", 1000.0)),
        slippage_k=float(raw.get("slippage_k", 0.0001)),
    )


def _build_optimizer(raw: dict[str, Any]) -> OptimizerConfig:
    defaults = OptimizerConfig()
    reference = _default_reference_prices()
    reference.update({k: float(v) for k, v in raw.get("reference_prices", {}).items()})
    return OptimizerConfig(
        conservative_multiplier=float(
            raw.get("conservative_multiplier", defaults.conservative_multiplier)
        ),
        min_conservative_usd=float(
            raw.get("min_conservative_usd", defaults.min_conservative_usd)
        ),
        hedge_ratio=float(raw.get("hedge_ratio", defaults.hedge_ratio)),
        fallback_add_usd=float(raw.get("fallback_add_usd", defaults.fallback_add_usd)),
        reference_prices=reference,
    )


def _build_pipeline(raw: dict[str, Any]) -> PipelineConfig:
    return PipelineConfig(
        assess_timeout_seconds=float(raw.get("assess_timeout_seconds", 10.0)),
        optimize_timeout_seconds=float(raw.get("optimize_timeout_seconds", 5.0)),
    )


def _build_price_source(raw: dict[str, Any]) -> PriceSourceConfig:
    pyth_raw = raw.get("pyth", {})
    static_raw = raw.get("static", {})
    return PriceSourceConfig(
        provider=raw.get("provider", "static"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
            timeout=int(pyth_raw.get("timeout", 10)),
        ),
        static=StaticPricesConfig(
            prices={k: float(v) for k, v in static_raw.get("prices", {}).items()},
            jitter=float(static_raw.get("jitter", 0.0)),
            seed=_optional_int(static_raw.get("seed")),
        ),
    )


def _build_executor(raw: dict[str, Any]) -> ExecutorConfig:
    return ExecutorConfig(
        mode=raw.get("mode", "simulated"),
        endpoints=tuple(raw.get("endpoints", [])),
        timeout=int(raw.get("timeout", 10)),
        auth_token=raw.get("auth_token", ""),
    )


def build_config(raw: dict[str, Any]) -> AppConfig:
    """Build and validate an ``AppConfig`` from an already-parsed mapping."""
    cfg = AppConfig(
        predictor=_build_predictor(raw.get("predictor") or {}),
        market=_build_market(raw.get("market") or {}),
        costs=_build_costs(raw.get("costs") or {}),
        optimizer=_build_optimizer(raw.get("optimizer") or {}),
        pipeline=_build_pipeline(raw.get("pipeline") or {}),
        price_source=_build_price_source(raw.get("price_source") or {}),
        executor=_build_executor(raw.get("executor") or {}),
    )
    _validate(cfg)
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    config_path: str | Path | None = None, allow_missing: bool = False
) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
        allow_missing: Return the built-in defaults instead of raising when
            the file does not exist.
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        if allow_missing:
            logger.info("Config file %s not found, using defaults", config_path)
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    cfg = build_config(_interpolate_env(raw))
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if cfg.predictor.horizon_minutes < 0:
        raise ValueError("predictor.horizon_minutes must be non-negative")
    if cfg.predictor.n_simulations < 0:
        raise ValueError("predictor.n_simulations must be non-negative")
    if cfg.predictor.workers < 1 or cfg.predictor.chunk_size < 1:
        raise ValueError("predictor.workers and predictor.chunk_size must be positive")
    if not 0.0 < cfg.market.ewma_lambda < 1.0:
        raise ValueError("market.ewma_lambda must be between 0 and 1")
    if cfg.market.history_limit < 2:
        raise ValueError("market.history_limit must keep at least 2 observations")
    if cfg.market.min_sample_interval_seconds < 0:
        raise ValueError("market.min_sample_interval_seconds must be non-negative")
    for venue_type in ("dex", "lending", "perp"):
        if venue_type not in cfg.costs.profiles:
            raise ValueError(f"costs.profiles is missing venue type '{venue_type}'")
    if cfg.price_source.provider not in _PRICE_PROVIDERS:
        raise ValueError(
            f"Unknown price_source provider '{cfg.price_source.provider}'"
        )
    if cfg.executor.mode not in _EXECUTOR_MODES:
        raise ValueError(f"Unknown executor mode '{cfg.executor.mode}'")
    if cfg.executor.mode == "webhook" and not cfg.executor.endpoints:
        raise ValueError("Webhook executor requires at least one endpoint")
