"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from liquidation_guard.config import (
    AppConfig,
    ExecutorConfig,
    MarketConfig,
    PredictorConfig,
    PriceSourceConfig,
    PythConfig,
    StaticPricesConfig,
)
from liquidation_guard.models import (
    AssetAmount,
    Policy,
    Position,
    TimeToBreachResult,
    User,
    Venue,
    VenueType,
)
from liquidation_guard.services.market_model import MarketModel
from liquidation_guard.services.risk_predictor import RiskPredictor


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def predictor_config() -> PredictorConfig:
    return PredictorConfig(
        horizon_minutes=30,
        n_simulations=2000,
        workers=2,
        chunk_size=500,
        seed=42,
    )


@pytest.fixture()
def market_config() -> MarketConfig:
    return MarketConfig(volatility_overrides={"USDC": 0.01})


@pytest.fixture()
def sample_pyth_config() -> PythConfig:
    return PythConfig(
        hermes_url="https://hermes.example.com/v2/updates/price/latest",
        feeds={"ETH": "aaa111", "BTC": "bbb222", "USDC": "ccc333"},
    )


@pytest.fixture()
def sample_app_config(
    predictor_config: PredictorConfig, market_config: MarketConfig
) -> AppConfig:
    return AppConfig(
        predictor=predictor_config,
        market=market_config,
        price_source=PriceSourceConfig(
            provider="static",
            static=StaticPricesConfig(prices={"ETH": 2500.0, "USDC": 1.0}),
        ),
        executor=ExecutorConfig(mode="simulated"),
    )


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def market(market_config: MarketConfig) -> MarketModel:
    return MarketModel(market_config)


@pytest.fixture()
def predictor(market: MarketModel, predictor_config: PredictorConfig) -> RiskPredictor:
    return RiskPredictor(market, predictor_config)


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def eth_position() -> Position:
    """10 ETH against 15,000 USDC at an 83% threshold: HF ~1.383 at $2,500."""
    return Position(
        position_id="eth-aave-0001",
        account_id="0xabc123",
        chain="ethereum",
        protocol="aave_v3",
        collateral=(AssetAmount("ETH", 10.0),),
        debt=(AssetAmount("USDC", 15000.0),),
        health_factor=10.0 * 2500.0 * 0.83 / 15000.0,
        liquidation_threshold=0.83,
    )


@pytest.fixture()
def eth_prices() -> dict[str, float]:
    return {"ETH": 2500.0, "USDC": 1.0}


@pytest.fixture()
def sample_policy() -> Policy:
    return Policy(user_id="user-1", hf_target=1.5, max_per_incident_usd=20.0)


@pytest.fixture()
def sample_user() -> User:
    return User(user_id="user-1", auto_protect=True)


@pytest.fixture()
def sample_risk() -> TimeToBreachResult:
    return TimeToBreachResult(ttb_minutes=45.0, breach_probability=0.2, confidence=0.7)


@pytest.fixture()
def sample_venues() -> list[Venue]:
    return [
        Venue("aave_v3", chain="ethereum", name="aave_v3", venue_type=VenueType.LENDING),
        Venue("uniswap_v3", chain="ethereum", name="uniswap_v3", venue_type=VenueType.DEX),
        Venue("gmx", chain="arbitrum", name="gmx", venue_type=VenueType.PERP),
    ]


# ---------------------------------------------------------------------------
# YAML fixtures
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    predictor:
      horizon_minutes: 20
      n_simulations: 500
      workers: 1
      seed: 7
    market:
      ewma_lambda: 0.9
      min_sample_interval_seconds: 30
      volatility_overrides: {USDC: 0.01}
    costs:
      profiles:
        dex: {base_fee: 0.002}
    optimizer:
      hedge_ratio: 0.25
      reference_prices: {ARB: 1.1}
    pipeline:
      assess_timeout_seconds: 3
    price_source:
      provider: static
      static:
        prices: {ETH: 2500, USDC: 1}
        jitter: 0.01
        seed: 3
    executor:
      mode: simulated
""")

SAMPLE_INCIDENT_YAML = textwrap.dedent("""\
    position:
      position_id: eth-aave-0001
      account_id: "0xabc123"
      chain: ethereum
      protocol: aave_v3
      health_factor: 1.3833333
      liquidation_threshold: 0.83
      collateral:
        - {mint: ETH, amount: 10}
      debt:
        USDC: 15000
    policy:
      hf_target: 1.5
      max_per_incident_usd: 20
      approval_mode: auto
      blocked_venues: [sushiswap]
    user:
      user_id: user-1
      spent_today_usd: 5
    venues:
      aave_v3: {chain: ethereum, name: aave_v3, type: lending}
      gmx: {chain: arbitrum, name: gmx, type: perp, fee_schedule: {base_fee: 0.004}}
    prices:
      ETH: 2500
      USDC: 1
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


@pytest.fixture()
def sample_incident_path(tmp_path: Path) -> Path:
    path = tmp_path / "incident.yaml"
    path.write_text(SAMPLE_INCIDENT_YAML)
    return path
