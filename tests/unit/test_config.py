"""Unit tests for config loading, env interpolation, and validation."""
from __future__ import annotations

from pathlib import Path

import pytest

from liquidation_guard.config import (
    AppConfig,
    PredictorConfig,
    _interpolate_env,
    build_config,
    load_config,
)


class TestInterpolateEnv:
    def test_simple_substitution(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MY_VAR", "hello")
        assert _interpolate_env("${MY_VAR}") == "hello"

    def test_missing_var_becomes_empty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NONEXISTENT_VAR_XYZ", raising=False)
        assert _interpolate_env("${NONEXISTENT_VAR_XYZ}") == ""

    def test_nested_dict(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOK", "secret")
        result = _interpolate_env({"key": "${TOK}", "plain": "text"})
        assert result == {"key": "secret", "plain": "text"}

    def test_nested_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("A", "x")
        assert _interpolate_env(["${A}", "y"]) == ["x", "y"]

    def test_non_string_passthrough(self) -> None:
        assert _interpolate_env(42) == 42
        assert _interpolate_env(True) is True


class TestLoadConfig:
    def test_loads_valid_yaml(self, sample_yaml_path: Path) -> None:
        cfg = load_config(sample_yaml_path)
        assert isinstance(cfg, AppConfig)
        assert cfg.predictor.horizon_minutes == 20
        assert cfg.predictor.n_simulations == 500
        assert cfg.predictor.seed == 7
        assert cfg.market.ewma_lambda == 0.9
        assert cfg.market.volatility_overrides == {"USDC": 0.01}
        assert cfg.market.min_sample_interval_seconds == 30.0
        assert cfg.pipeline.assess_timeout_seconds == 3.0
        assert cfg.price_source.static.prices["ETH"] == 2500.0
        assert cfg.price_source.static.seed == 3

    def test_partial_profile_override_keeps_other_fields(self, sample_yaml_path: Path) -> None:
        cfg = load_config(sample_yaml_path)
        dex = cfg.costs.profiles["dex"]
        assert dex.base_fee == 0.002
        assert dex.gas_usd == 0.50
        assert cfg.costs.profiles["perp"].base_fee == 0.005

    def test_reference_prices_extend_defaults(self, sample_yaml_path: Path) -> None:
        cfg = load_config(sample_yaml_path)
        assert cfg.optimizer.reference_prices["ARB"] == 1.1
        assert cfg.optimizer.reference_prices["ETH"] == 2500.0
        assert cfg.optimizer.hedge_ratio == 0.25

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_missing_file_allowed_returns_defaults(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "nonexistent.yaml", allow_missing=True)
        assert cfg == AppConfig()

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("")
        cfg = load_config(cfg_file)
        assert cfg.predictor == PredictorConfig()
        assert cfg.executor.mode == "simulated"

    def test_env_interpolation_in_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TEST_ENDPOINT", "https://actioner.test/submit")
        monkeypatch.setenv("TEST_SEED", "11")
        yaml_content = """\
predictor:
  seed: ${TEST_SEED}
executor:
  mode: webhook
  endpoints: ["${TEST_ENDPOINT}"]
"""
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text(yaml_content)
        cfg = load_config(cfg_file)
        assert cfg.executor.endpoints == ("https://actioner.test/submit",)
        assert cfg.predictor.seed == 11

    def test_unset_seed_is_none(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("UNSET_SEED_XYZ", raising=False)
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("predictor:\n  seed: ${UNSET_SEED_XYZ}\n")
        assert load_config(cfg_file).predictor.seed is None


class TestValidation:
    def test_negative_horizon_raises(self) -> None:
        with pytest.raises(ValueError, match="horizon_minutes"):
            build_config({"predictor": {"horizon_minutes": -1}})

    def test_zero_workers_raises(self) -> None:
        with pytest.raises(ValueError, match="workers"):
            build_config({"predictor": {"workers": 0}})

    def test_lambda_out_of_range_raises(self) -> None:
        with pytest.raises(ValueError, match="ewma_lambda"):
            build_config({"market": {"ewma_lambda": 1.0}})

    def test_negative_sample_interval_raises(self) -> None:
        with pytest.raises(ValueError, match="min_sample_interval_seconds"):
            build_config({"market": {"min_sample_interval_seconds": -1}})

    def test_unknown_price_provider_raises(self) -> None:
        with pytest.raises(ValueError, match="price_source provider"):
            build_config({"price_source": {"provider": "chainlink"}})

    def test_unknown_executor_mode_raises(self) -> None:
        with pytest.raises(ValueError, match="executor mode"):
            build_config({"executor": {"mode": "onchain"}})

    def test_webhook_without_endpoints_raises(self) -> None:
        with pytest.raises(ValueError, match="endpoint"):
            build_config({"executor": {"mode": "webhook"}})

    def test_zero_simulations_allowed(self) -> None:
        cfg = build_config({"predictor": {"n_simulations": 0, "horizon_minutes": 0}})
        assert cfg.predictor.n_simulations == 0


class TestFrozenConfig:
    def test_config_is_immutable(self) -> None:
        cfg = AppConfig()
        with pytest.raises(AttributeError):
            cfg.predictor = PredictorConfig()  # type: ignore[misc]
