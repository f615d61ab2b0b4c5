"""Data models — all frozen (immutable)."""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _freeze_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


def _encode(value: Any) -> Any:
    """Convert a model value into a JSON-compatible structure."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        # Unbounded values (no debt, nothing to breach) serialise as JSON null.
        return None
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Mapping):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


class _Serializable:
    def to_dict(self) -> dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    ADD_COLLATERAL = "add_collateral"
    REPAY = "repay"
    HEDGE = "hedge"
    MIGRATE = "migrate"


class ApprovalMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    AUTO_IF_CONFIDENCE_GE = "auto_if_confidence_ge"


class VenueType(str, Enum):
    DEX = "dex"
    LENDING = "lending"
    PERP = "perp"


class Outcome(str, Enum):
    """How a pipeline stage produced its value."""

    OK = "ok"
    INFEASIBLE = "infeasible"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssetAmount(_Serializable):
    """Amount of a single asset (collateral or debt)."""

    mint: str
    amount: float

    @property
    def symbol(self) -> str:
        return self.mint


@dataclass(frozen=True)
class Position(_Serializable):
    """Lending position snapshot as delivered by a watcher."""

    position_id: str
    account_id: str = ""
    chain: str = ""
    protocol: str = ""
    collateral: tuple[AssetAmount, ...] = ()
    debt: tuple[AssetAmount, ...] = ()
    health_factor: float = 0.0
    liquidation_threshold: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "collateral", tuple(self.collateral))
        object.__setattr__(self, "debt", tuple(self.debt))


def health_factor(collateral_value: float, debt_value: float, haircut: float) -> float:
    """Haircut-adjusted collateral over debt; ``inf`` without debt."""
    if debt_value <= 0.0:
        return math.inf
    if collateral_value <= 0.0:
        return 0.0
    return collateral_value * haircut / debt_value


# ---------------------------------------------------------------------------
# Risk assessment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeToBreachResult(_Serializable):
    """Time-to-breach assessment for one position."""

    ttb_minutes: float
    breach_probability: float
    shock_scenarios: tuple[float, ...] = ()
    critical_price_levels: Mapping[str, float] = field(default_factory=dict)
    confidence: float = 0.1
    calculation_time: datetime = field(default_factory=_utcnow)
    outcome: Outcome = Outcome.OK

    def __post_init__(self) -> None:
        object.__setattr__(self, "shock_scenarios", tuple(self.shock_scenarios))
        object.__setattr__(
            self, "critical_price_levels", _freeze_mapping(self.critical_price_levels)
        )


# ---------------------------------------------------------------------------
# Users & policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class User(_Serializable):
    user_id: str
    auto_protect: bool = False
    spent_today_usd: float = 0.0


@dataclass(frozen=True)
class Policy(_Serializable):
    """User-defined protection policy."""

    user_id: str = ""
    max_daily_spend_usd: float = 50.0
    max_per_incident_usd: float = 20.0
    hf_target: float = 1.15
    critical_hf: float = 1.05
    approval_mode: ApprovalMode = ApprovalMode.AUTO_IF_CONFIDENCE_GE
    approval_threshold: float = 0.85
    allowed_venues: tuple[str, ...] = ()
    blocked_venues: tuple[str, ...] = ()
    allowed_assets: tuple[str, ...] = ()
    blocked_assets: tuple[str, ...] = ()
    collateral_add_allowed: bool = True
    partial_repay_allowed: bool = True
    hedge_allowed: bool = True
    migration_allowed: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "approval_mode", ApprovalMode(self.approval_mode))
        for name in ("allowed_venues", "blocked_venues", "allowed_assets", "blocked_assets"):
            object.__setattr__(self, name, tuple(getattr(self, name)))


# ---------------------------------------------------------------------------
# Venues
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Venue(_Serializable):
    """Execution venue metadata. ``None`` fees take the venue-type profile."""

    venue_id: str
    chain: str = ""
    name: str = ""
    venue_type: VenueType = VenueType.LENDING
    base_fee: float | None = None
    gas_usd: float | None = None
    slippage_base: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "venue_type", VenueType(self.venue_type))

    @property
    def key(self) -> str:
        """``chain:name`` form used in policy venue lists."""
        return f"{self.chain}:{self.name or self.venue_id}"


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Action(_Serializable):
    """Single protective action within a plan."""

    action_type: ActionType
    asset: str
    amount: float
    venue: str
    estimated_cost_usd: float = 0.0
    estimated_gas: float = 0.0
    slippage_impact: float = 0.0
    route_info: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "action_type", ActionType(self.action_type))
        object.__setattr__(self, "route_info", _freeze_mapping(self.route_info))


@dataclass(frozen=True)
class Plan(_Serializable):
    """Ordered set of protective actions with aggregate cost and projected HF."""

    actions: tuple[Action, ...] = ()
    total_cost_usd: float = 0.0
    total_gas_cost: float = 0.0
    hf_after: float = 0.0
    risk_reduction: float = 0.0
    confidence: float = 0.0
    solver_status: str = ""
    can_be_netted: bool = False
    netting_priority: float = 0.0
    plan_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "actions", tuple(self.actions))


@dataclass(frozen=True)
class OptimizationResult(_Serializable):
    primary_plan: Plan
    alternative_plans: tuple[Plan, ...] = ()
    optimization_time_ms: float = 0.0
    objective_value: float = 0.0
    constraints_satisfied: bool = True
    warnings: tuple[str, ...] = ()
    outcome: Outcome = Outcome.OK

    def __post_init__(self) -> None:
        object.__setattr__(self, "alternative_plans", tuple(self.alternative_plans))
        object.__setattr__(self, "warnings", tuple(self.warnings))


@dataclass(frozen=True)
class PlanValidation(_Serializable):
    valid: bool
    violations: tuple[str, ...] = ()
    approved: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "violations", tuple(self.violations))

    def __getitem__(self, key: str) -> Any:
        # Mapping-style access: result["valid"], result["violations"], ...
        return getattr(self, key)


@dataclass(frozen=True)
class ExecutionReceipt(_Serializable):
    """Acknowledgement returned by an executor after handoff."""

    plan_id: str
    executor: str
    accepted: bool
    reference: str = ""
    detail: str = ""
    submitted_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class IncidentReport(_Serializable):
    """Outcome of one protection cycle for one position."""

    incident_id: str
    position_id: str
    status: str
    risk: TimeToBreachResult
    optimization: OptimizationResult
    validation: PlanValidation
    execution_ref: str = ""
    reasons: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "reasons", tuple(self.reasons))
