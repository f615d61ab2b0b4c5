"""Cost-minimal protection plans under policy constraints."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import numpy as np
from scipy.optimize import brentq, minimize

from ..config import OptimizerConfig
from ..models import (
    Action,
    ActionType,
    OptimizationResult,
    Outcome,
    Plan,
    Policy,
    Position,
    TimeToBreachResult,
    Venue,
    VenueType,
    health_factor,
)
from .cost_model import ActionQuote, CostModel, eligible_venues, parse_venues

logger = logging.getLogger(__name__)

_BALANCE_SHEET_VENUES = (VenueType.LENDING, VenueType.DEX)
_HEDGE_VENUES = (VenueType.PERP,)
# Relative bump so float rounding never leaves hf_after a hair under target.
_TARGET_MARGIN = 1e-9
_MIN_NOTIONAL = 1e-6

DEFAULT_VENUES = (
    Venue(venue_id="default_lending", name="default_lending", venue_type=VenueType.LENDING),
    Venue(venue_id="default_dex", name="default_dex", venue_type=VenueType.DEX),
    Venue(venue_id="default_perp", name="default_perp", venue_type=VenueType.PERP),
)


@dataclass
class _Problem:
    """Balance sheet in USD, calibrated to the position's reported HF."""

    position: Position
    policy: Policy
    risk: TimeToBreachResult
    venues: list[Venue]
    prices: dict[str, float]
    collateral_value: float
    debt_value: float
    effective_collateral: float
    haircut: float
    current_hf: float
    target_hf: float
    collateral_asset: str | None = None
    debt_asset: str | None = None
    repay_cap: float = 0.0
    warnings: list[str] = field(default_factory=list)

    def hf(self, add_usd: float, repay_usd: float) -> float:
        remaining = self.debt_value - repay_usd
        if remaining <= 0.0:
            return math.inf
        return (self.effective_collateral + add_usd * self.haircut) / remaining

    @property
    def add_needed(self) -> float:
        gap = self.target_hf * self.debt_value - self.effective_collateral
        return max(0.0, gap / self.haircut) * (1.0 + _TARGET_MARGIN)

    @property
    def repay_needed(self) -> float:
        return max(0.0, self.debt_value - self.effective_collateral / self.target_hf) * (
            1.0 + _TARGET_MARGIN
        )


@dataclass
class _Candidate:
    add_usd: float
    repay_usd: float
    add_quote: ActionQuote | None
    repay_quote: ActionQuote | None

    @property
    def cost(self) -> float:
        return sum(q.cost_usd for q in (self.add_quote, self.repay_quote) if q is not None)


def _asset_permitted(asset: str, policy: Policy) -> bool:
    if asset in policy.blocked_assets:
        return False
    return not policy.allowed_assets or asset in policy.allowed_assets


class PlanOptimizer:
    """Finds the cheapest add-collateral / repay mix that restores ``hf_target``."""

    def __init__(
        self, cost_model: CostModel | None = None, config: OptimizerConfig | None = None
    ) -> None:
        self._costs = cost_model or CostModel()
        self._config = config or OptimizerConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def optimize(
        self,
        position: Position,
        policy: Policy,
        risk_assessment: TimeToBreachResult,
        venues: Mapping[str, Any] | Iterable[Venue] | None = None,
        oracle_prices: Mapping[str, float] | None = None,
    ) -> OptimizationResult:
        """Primary cost-minimal plan plus ranked alternatives; never raises."""
        start = time.perf_counter()
        try:
            problem = self._prepare(position, policy, risk_assessment, venues, oracle_prices)
            primary, feasible = self._solve_primary(problem)
            alternatives = self._alternatives(problem, primary)
            elapsed = (time.perf_counter() - start) * 1000.0

            logger.info(
                "Optimized %s in %.1fms: cost $%.2f, HF %.3f -> %.3f (%s)",
                position.position_id,
                elapsed,
                primary.total_cost_usd,
                problem.current_hf,
                primary.hf_after,
                primary.solver_status,
            )
            return OptimizationResult(
                primary_plan=primary,
                alternative_plans=alternatives,
                optimization_time_ms=elapsed,
                objective_value=primary.total_cost_usd,
                constraints_satisfied=feasible,
                warnings=problem.warnings,
                outcome=Outcome.OK if feasible else Outcome.INFEASIBLE,
            )
        except Exception as e:
            logger.exception("Optimization failed for %s", position.position_id)
            return OptimizationResult(
                primary_plan=self.fallback_plan(position, policy, oracle_prices),
                alternative_plans=(),
                optimization_time_ms=(time.perf_counter() - start) * 1000.0,
                objective_value=math.inf,
                constraints_satisfied=False,
                warnings=(f"Optimization failed: {e}",),
                outcome=Outcome.FALLBACK,
            )

    def fallback_plan(
        self,
        position: Position,
        policy: Policy,
        oracle_prices: Mapping[str, float] | None = None,
    ) -> Plan:
        """Minimal add-collateral plan used when optimization cannot run."""
        logger.warning("Creating fallback protection plan for %s", position.position_id)
        actions: list[Action] = []
        notional = self._config.fallback_add_usd

        if position.collateral and policy.collateral_add_allowed:
            asset = position.collateral[0].mint
            price = (oracle_prices or {}).get(asset) or self._config.reference_prices.get(asset)
            if not price or price <= 0:
                price = 1.0
            actions.append(
                Action(
                    action_type=ActionType.ADD_COLLATERAL,
                    asset=asset,
                    amount=notional / price,
                    venue="fallback_venue",
                    estimated_cost_usd=notional * 0.01,
                    estimated_gas=0.0,
                    slippage_impact=0.01,
                    route_info={"variant": "fallback", "reason": "optimization_failed"},
                )
            )

        hf = position.health_factor if math.isfinite(position.health_factor) else 0.0
        return Plan(
            actions=actions,
            total_cost_usd=sum(a.estimated_cost_usd for a in actions),
            total_gas_cost=sum(a.estimated_gas for a in actions),
            hf_after=hf * 1.1,
            risk_reduction=0.1,
            confidence=0.5,
            solver_status="fallback",
            can_be_netted=False,
            netting_priority=0.1,
        )

    # ------------------------------------------------------------------
    # Problem setup
    # ------------------------------------------------------------------

    def _resolve_prices(
        self, position: Position, oracle_prices: Mapping[str, float] | None, warnings: list[str]
    ) -> dict[str, float]:
        prices: dict[str, float] = {}
        for holding in (*position.collateral, *position.debt):
            asset = holding.mint
            if asset in prices:
                continue
            price = (oracle_prices or {}).get(asset)
            if price is not None and price > 0:
                prices[asset] = float(price)
                continue
            reference = self._config.reference_prices.get(asset)
            if reference:
                prices[asset] = float(reference)
                warnings.append(f"Using reference price for {asset}")
            else:
                prices[asset] = 1.0
                warnings.append(f"No price for {asset}, assuming 1.0")
        return prices

    def _prepare(
        self,
        position: Position,
        policy: Policy,
        risk: TimeToBreachResult,
        venues: Mapping[str, Any] | Iterable[Venue] | None,
        oracle_prices: Mapping[str, float] | None,
    ) -> _Problem:
        warnings: list[str] = []
        prices = self._resolve_prices(position, oracle_prices, warnings)
        haircut = position.liquidation_threshold if position.liquidation_threshold > 0 else 1.0

        collateral_by_asset: dict[str, float] = {}
        for h in position.collateral:
            collateral_by_asset[h.mint] = collateral_by_asset.get(h.mint, 0.0) + h.amount * prices[h.mint]
        debt_by_asset: dict[str, float] = {}
        for h in position.debt:
            debt_by_asset[h.mint] = debt_by_asset.get(h.mint, 0.0) + h.amount * prices[h.mint]

        collateral_value = sum(collateral_by_asset.values())
        debt_value = sum(debt_by_asset.values())
        current_hf = position.health_factor
        if current_hf <= 0.0 or not math.isfinite(current_hf):
            current_hf = health_factor(collateral_value, debt_value, haircut)
        effective = current_hf * debt_value if math.isfinite(current_hf) else collateral_value * haircut

        permitted = eligible_venues(parse_venues(venues) or list(DEFAULT_VENUES), policy)

        collateral_choices = sorted(
            (a for a in collateral_by_asset if _asset_permitted(a, policy)),
            key=lambda a: (-collateral_by_asset[a], a),
        )
        debt_choices = sorted(
            (a for a in debt_by_asset if _asset_permitted(a, policy)),
            key=lambda a: (-debt_by_asset[a], a),
        )
        debt_asset = debt_choices[0] if debt_choices else None

        return _Problem(
            position=position,
            policy=policy,
            risk=risk,
            venues=permitted,
            prices=prices,
            collateral_value=collateral_value,
            debt_value=debt_value,
            effective_collateral=effective,
            haircut=haircut,
            current_hf=current_hf,
            target_hf=policy.hf_target,
            collateral_asset=collateral_choices[0] if collateral_choices else None,
            debt_asset=debt_asset,
            repay_cap=debt_by_asset.get(debt_asset, 0.0) if debt_asset else 0.0,
            warnings=warnings,
        )

    def _can_add(self, problem: _Problem) -> bool:
        return (
            problem.policy.collateral_add_allowed
            and problem.collateral_asset is not None
            and any(v.venue_type in _BALANCE_SHEET_VENUES for v in problem.venues)
        )

    def _can_repay(self, problem: _Problem) -> bool:
        return (
            problem.policy.partial_repay_allowed
            and problem.debt_asset is not None
            and problem.repay_cap > 0.0
            and any(v.venue_type in _BALANCE_SHEET_VENUES for v in problem.venues)
        )

    # ------------------------------------------------------------------
    # Primary solve
    # ------------------------------------------------------------------

    def _quote(self, problem: _Problem, notional: float) -> ActionQuote | None:
        if notional <= _MIN_NOTIONAL:
            return None
        return self._costs.cheapest(problem.venues, notional, _BALANCE_SHEET_VENUES)

    def _candidate(self, problem: _Problem, add_usd: float, repay_usd: float) -> _Candidate:
        add_usd = add_usd if add_usd > _MIN_NOTIONAL else 0.0
        repay_usd = repay_usd if repay_usd > _MIN_NOTIONAL else 0.0
        return _Candidate(
            add_usd=add_usd,
            repay_usd=repay_usd,
            add_quote=self._quote(problem, add_usd),
            repay_quote=self._quote(problem, repay_usd),
        )

    def _mixed_candidate(self, problem: _Problem) -> _Candidate | None:
        """Split between adding and repaying via SLSQP on the smooth friction cost."""
        add_hi = problem.add_needed
        repay_hi = min(problem.repay_needed, problem.repay_cap)
        add_venue = self._quote(problem, add_hi)
        repay_venue = self._quote(problem, repay_hi)
        if add_venue is None or repay_venue is None:
            return None

        target, h = problem.target_hf, problem.haircut
        E, D = problem.effective_collateral, problem.debt_value

        def objective(x: np.ndarray) -> float:
            return self._costs.friction(add_venue.venue, float(x[0])) + self._costs.friction(
                repay_venue.venue, float(x[1])
            )

        constraint = {
            "type": "ineq",
            "fun": lambda x: (E + x[0] * h) - target * (D - x[1]),
        }
        x0 = np.array([add_hi / 2.0, repay_hi / 2.0])
        result = minimize(
            objective,
            x0,
            method="SLSQP",
            bounds=[(0.0, add_hi), (0.0, repay_hi)],
            constraints=[constraint],
            options={"ftol": 1e-10, "maxiter": 200},
        )
        if not result.success:
            logger.debug("SLSQP did not converge: %s", result.message)

        def feasible(x: np.ndarray) -> _Candidate:
            # Restore feasibility lost to solver tolerance.
            add_usd = float(np.clip(x[0], 0.0, add_hi))
            repay_usd = float(np.clip(x[1], 0.0, repay_hi))
            shortfall = (D - (E + add_usd * h) / target) * (1.0 + _TARGET_MARGIN)
            repay_usd = min(repay_hi, max(repay_usd, shortfall))
            if problem.hf(add_usd, repay_usd) < target:
                add_usd = (target * (D - repay_usd) - E) / h * (1.0 + _TARGET_MARGIN)
            return self._candidate(problem, add_usd, repay_usd)

        # The step in slippage at the size threshold can strand SLSQP above its start.
        return min(feasible(x0), feasible(result.x), key=lambda c: c.cost)

    def _solve_primary(self, problem: _Problem) -> tuple[Plan, bool]:
        if problem.debt_value <= 0.0 or problem.current_hf >= problem.target_hf:
            return self._build_plan(
                problem,
                self._candidate(problem, 0.0, 0.0),
                solver_status="no_action_needed",
                confidence=1.0,
            ), True

        can_add, can_repay = self._can_add(problem), self._can_repay(problem)
        candidates: list[_Candidate] = []
        if can_add:
            candidates.append(self._candidate(problem, problem.add_needed, 0.0))
        if can_repay and problem.repay_needed <= problem.repay_cap:
            candidates.append(self._candidate(problem, 0.0, problem.repay_needed))
        if can_add and can_repay:
            mixed = self._mixed_candidate(problem)
            if mixed is not None:
                candidates.append(mixed)

        reaching = [
            c for c in candidates
            if problem.hf(c.add_usd, c.repay_usd) >= problem.target_hf
        ]
        if not (can_add or can_repay):
            problem.warnings.append("No balance-sheet strategy permitted by policy and venues")

        cap = problem.policy.max_per_incident_usd
        if reaching:
            best = min(reaching, key=lambda c: (c.cost, c.repay_usd))
            if best.cost <= cap:
                return self._build_plan(problem, best, "optimal", 0.9), True
            problem.warnings.append(
                f"Cheapest plan costs ${best.cost:.2f}, above per-incident limit ${cap:.2f}"
            )
        else:
            problem.warnings.append(f"Target HF {problem.target_hf:.3f} is not reachable")

        best_effort = self._best_effort(problem, can_add, can_repay)
        return self._build_plan(problem, best_effort, "infeasible", 0.6), False

    def _max_within_budget(self, problem: _Problem, upper: float, budget: float) -> float:
        """Largest notional in ``[0, upper]`` whose quoted cost fits ``budget``."""
        if upper <= _MIN_NOTIONAL:
            return 0.0

        def cost(notional: float) -> float:
            quote = self._quote(problem, notional)
            return quote.cost_usd if quote else 0.0

        if cost(upper) <= budget:
            return upper
        if cost(_MIN_NOTIONAL * 2) > budget:
            return 0.0
        amount = brentq(lambda n: cost(n) - budget, _MIN_NOTIONAL * 2, upper, xtol=1e-6)
        # Slippage steps make cost discontinuous; back off until it fits.
        while amount > _MIN_NOTIONAL and cost(amount) > budget:
            amount *= 0.999
        return amount

    def _best_effort(self, problem: _Problem, can_add: bool, can_repay: bool) -> _Candidate:
        budget = problem.policy.max_per_incident_usd
        options = [self._candidate(problem, 0.0, 0.0)]
        if can_add:
            add = self._max_within_budget(problem, problem.add_needed, budget)
            options.append(self._candidate(problem, add, 0.0))
        if can_repay:
            upper = min(problem.repay_needed, problem.repay_cap)
            repay = self._max_within_budget(problem, upper, budget)
            options.append(self._candidate(problem, 0.0, repay))
        return max(options, key=lambda c: (problem.hf(c.add_usd, c.repay_usd), -c.cost))

    # ------------------------------------------------------------------
    # Plan assembly
    # ------------------------------------------------------------------

    def _action(
        self,
        problem: _Problem,
        action_type: ActionType,
        asset: str,
        notional: float,
        quote: ActionQuote,
        variant: str,
    ) -> Action:
        return Action(
            action_type=action_type,
            asset=asset,
            amount=notional / problem.prices[asset],
            venue=quote.venue.venue_id,
            estimated_cost_usd=quote.cost_usd,
            estimated_gas=quote.gas_usd,
            slippage_impact=quote.slippage,
            route_info={
                "variant": variant,
                "notional_usd": notional,
                "venue_key": quote.venue.key,
                "venue_type": quote.venue.venue_type.value,
                "fee_rate": quote.fee_rate,
            },
        )

    def _balance_sheet_actions(
        self, problem: _Problem, candidate: _Candidate, variant: str
    ) -> list[Action]:
        actions: list[Action] = []
        if candidate.add_quote is not None and problem.collateral_asset:
            actions.append(
                self._action(
                    problem, ActionType.ADD_COLLATERAL, problem.collateral_asset,
                    candidate.add_usd, candidate.add_quote, variant,
                )
            )
        if candidate.repay_quote is not None and problem.debt_asset:
            actions.append(
                self._action(
                    problem, ActionType.REPAY, problem.debt_asset,
                    candidate.repay_usd, candidate.repay_quote, variant,
                )
            )
        return actions

    def _risk_reduction(self, problem: _Problem, hf_after: float) -> float:
        if problem.current_hf <= 0.0 or math.isinf(problem.current_hf):
            return 0.0
        if math.isinf(hf_after):
            return 1.0
        return max(0.0, (hf_after - problem.current_hf) / problem.current_hf)

    def _build_plan(
        self,
        problem: _Problem,
        candidate: _Candidate,
        solver_status: str,
        confidence: float,
        variant: str = "primary",
        netting_priority: float | None = None,
    ) -> Plan:
        actions = self._balance_sheet_actions(problem, candidate, variant)
        hf_after = problem.hf(candidate.add_usd, candidate.repay_usd)
        return Plan(
            actions=actions,
            total_cost_usd=sum(a.estimated_cost_usd for a in actions),
            total_gas_cost=sum(a.estimated_gas for a in actions),
            hf_after=hf_after,
            risk_reduction=self._risk_reduction(problem, hf_after),
            confidence=confidence,
            solver_status=solver_status,
            can_be_netted=bool(actions),
            netting_priority=(
                1.0 + problem.risk.breach_probability
                if netting_priority is None
                else netting_priority
            ),
        )

    # ------------------------------------------------------------------
    # Alternatives
    # ------------------------------------------------------------------

    def _alternatives(self, problem: _Problem, primary: Plan) -> tuple[Plan, ...]:
        plans: list[Plan] = []
        for build in (self._conservative, self._aggressive, self._hedge_focused):
            try:
                plan = build(problem, primary)
            except Exception as e:
                logger.warning("Failed to build %s alternative: %s", build.__name__, e)
                continue
            if plan is not None:
                plans.append(plan)
        return tuple(sorted(plans, key=lambda p: p.total_cost_usd))

    def _conservative(self, problem: _Problem, primary: Plan) -> Plan | None:
        """1.5x the primary's add-collateral amount for extra margin."""
        if not self._can_add(problem) or problem.debt_value <= 0.0:
            return None
        primary_add = sum(
            a.route_info.get("notional_usd", 0.0)
            for a in primary.actions
            if a.action_type is ActionType.ADD_COLLATERAL
        )
        base = primary_add if primary_add > 0.0 else problem.add_needed
        notional = max(
            self._config.min_conservative_usd, base * self._config.conservative_multiplier
        )
        candidate = self._candidate(problem, notional, 0.0)
        return self._build_plan(
            problem, candidate, "alternative_conservative", 0.95,
            variant="conservative", netting_priority=0.8,
        )

    def _aggressive(self, problem: _Problem, primary: Plan) -> Plan | None:
        """Minimal repayment that lands exactly on the target."""
        repay = problem.repay_needed
        if not self._can_repay(problem) or repay <= 0.0:
            return None
        if repay > problem.repay_cap:
            logger.debug(
                "Skipping aggressive alternative: repay $%.2f exceeds %s debt $%.2f",
                repay, problem.debt_asset, problem.repay_cap,
            )
            return None
        candidate = self._candidate(problem, 0.0, repay)
        return self._build_plan(
            problem, candidate, "alternative_aggressive", 0.75,
            variant="aggressive", netting_priority=1.2,
        )

    def _hedge_focused(self, problem: _Problem, primary: Plan) -> Plan | None:
        """Short perp sized to a fraction of collateral; HF itself is unchanged."""
        asset = problem.collateral_asset
        if not problem.policy.hedge_allowed or asset is None or problem.collateral_value <= 0.0:
            return None
        notional = problem.collateral_value * self._config.hedge_ratio
        quote = self._costs.cheapest(problem.venues, notional, _HEDGE_VENUES)
        if quote is None:
            return None

        action = self._action(problem, ActionType.HEDGE, asset, notional, quote, "hedge")
        return Plan(
            actions=(action,),
            total_cost_usd=action.estimated_cost_usd,
            total_gas_cost=action.estimated_gas,
            hf_after=problem.current_hf,
            risk_reduction=self._config.hedge_ratio,
            confidence=0.8,
            solver_status="alternative_hedge",
            can_be_netted=False,
            netting_priority=0.5,
        )
