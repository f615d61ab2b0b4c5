"""Unit tests for incident input files."""
from __future__ import annotations

from pathlib import Path

import pytest

from liquidation_guard.inputs import build_incident, build_position, load_incident
from liquidation_guard.models import ApprovalMode, AssetAmount, VenueType


class TestLoadIncident:
    def test_loads_sample(self, sample_incident_path: Path) -> None:
        incident = load_incident(sample_incident_path)

        assert incident.position.position_id == "eth-aave-0001"
        assert incident.position.collateral == (AssetAmount("ETH", 10.0),)
        assert incident.position.debt == (AssetAmount("USDC", 15000.0),)
        assert incident.position.liquidation_threshold == 0.83
        assert incident.policy.approval_mode is ApprovalMode.AUTO
        assert incident.policy.blocked_venues == ("sushiswap",)
        assert incident.policy.user_id == "user-1"
        assert incident.user.spent_today_usd == 5.0
        assert incident.prices == {"ETH": 2500.0, "USDC": 1.0}

        venues = {v.venue_id: v for v in incident.venues}
        assert venues["gmx"].venue_type is VenueType.PERP
        assert venues["gmx"].base_fee == 0.004

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_incident(tmp_path / "nope.yaml")


class TestBuilders:
    def test_position_id_required(self) -> None:
        with pytest.raises(ValueError, match="position_id"):
            build_position({"health_factor": 1.2})

    def test_policy_defaults(self) -> None:
        incident = build_incident({"position": {"position_id": "p"}})
        assert incident.policy.hf_target == 1.15
        assert incident.policy.max_per_incident_usd == 20.0
        assert incident.venues == ()
        assert incident.prices == {}

    def test_user_falls_back_to_account(self) -> None:
        incident = build_incident({"position": {"position_id": "p", "account_id": "0xabc"}})
        assert incident.user.user_id == "0xabc"
        assert incident.policy.user_id == "0xabc"

    def test_holdings_accept_symbol_key(self) -> None:
        position = build_position(
            {"position_id": "p", "collateral": [{"symbol": "SOL", "amount": "3.5"}]}
        )
        assert position.collateral == (AssetAmount("SOL", 3.5),)
