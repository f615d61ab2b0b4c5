"""Incident input files — YAML describing a position, its policy, user and venues."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import AssetAmount, Policy, Position, User, Venue
from .services.cost_model import parse_venues

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncidentInput:
    position: Position
    policy: Policy
    user: User
    venues: tuple[Venue, ...] = ()
    prices: dict[str, float] = field(default_factory=dict)


def _build_holdings(raw: Any) -> tuple[AssetAmount, ...]:
    """Accept ``[{mint, amount}, ...]`` or a ``{mint: amount}`` map."""
    if not raw:
        return ()
    if isinstance(raw, dict):
        return tuple(AssetAmount(str(k), float(v)) for k, v in raw.items())
    return tuple(
        AssetAmount(str(item.get("mint", item.get("symbol"))), float(item["amount"]))
        for item in raw
    )


def build_position(raw: dict[str, Any]) -> Position:
    if "position_id" not in raw:
        raise ValueError("position.position_id is required")
    return Position(
        position_id=str(raw["position_id"]),
        account_id=str(raw.get("account_id", "")),
        chain=raw.get("chain", ""),
        protocol=raw.get("protocol", ""),
        collateral=_build_holdings(raw.get("collateral")),
        debt=_build_holdings(raw.get("debt")),
        health_factor=float(raw.get("health_factor", 0.0)),
        liquidation_threshold=float(raw.get("liquidation_threshold", 0.0)),
    )


def build_policy(raw: dict[str, Any], user_id: str = "") -> Policy:
    defaults = Policy()
    return Policy(
        user_id=str(raw.get("user_id", user_id)),
        max_daily_spend_usd=float(raw.get("max_daily_spend_usd", defaults.max_daily_spend_usd)),
        max_per_incident_usd=float(
            raw.get("max_per_incident_usd", defaults.max_per_incident_usd)
        ),
        hf_target=float(raw.get("hf_target", defaults.hf_target)),
        critical_hf=float(raw.get("critical_hf", defaults.critical_hf)),
        approval_mode=raw.get("approval_mode", defaults.approval_mode),
        approval_threshold=float(raw.get("approval_threshold", defaults.approval_threshold)),
        allowed_venues=tuple(raw.get("allowed_venues", ())),
        blocked_venues=tuple(raw.get("blocked_venues", ())),
        allowed_assets=tuple(raw.get("allowed_assets", ())),
        blocked_assets=tuple(raw.get("blocked_assets", ())),
        collateral_add_allowed=bool(
            raw.get("collateral_add_allowed", defaults.collateral_add_allowed)
        ),
        partial_repay_allowed=bool(
            raw.get("partial_repay_allowed", defaults.partial_repay_allowed)
        ),
        hedge_allowed=bool(raw.get("hedge_allowed", defaults.hedge_allowed)),
        migration_allowed=bool(raw.get("migration_allowed", defaults.migration_allowed)),
    )


def build_user(raw: dict[str, Any], fallback_id: str = "") -> User:
    return User(
        user_id=str(raw.get("user_id", fallback_id)),
        auto_protect=bool(raw.get("auto_protect", False)),
        spent_today_usd=float(raw.get("spent_today_usd", 0.0)),
    )


def build_incident(raw: dict[str, Any]) -> IncidentInput:
    position = build_position(raw.get("position") or {})
    user = build_user(raw.get("user") or {}, position.account_id)
    return IncidentInput(
        position=position,
        policy=build_policy(raw.get("policy") or {}, user.user_id),
        user=user,
        venues=tuple(parse_venues(raw.get("venues") or {})),
        prices={k: float(v) for k, v in (raw.get("prices") or {}).items()},
    )


def load_incident(path: str | Path) -> IncidentInput:
    """Read and build an incident input file; raises on missing or malformed input."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    incident = build_incident(raw)
    logger.info("Loaded incident input for position %s", incident.position.position_id)
    return incident
