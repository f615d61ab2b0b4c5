"""Incident pipeline: prices -> assess -> optimize -> validate -> execute or hold."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping

from ..config import AppConfig
from ..executors import SimulatedExecutor, WebhookExecutor
from ..interfaces.executor import Executor
from ..interfaces.price_source import PriceSource
from ..models import (
    ExecutionReceipt,
    IncidentReport,
    OptimizationResult,
    Outcome,
    Policy,
    Position,
    TimeToBreachResult,
    User,
    Venue,
)
from ..oracles import PythOracle, StaticPriceSource
from .cost_model import CostModel
from .market_model import MarketModel
from .plan_optimizer import PlanOptimizer
from .policy_validator import validate_plan
from .risk_predictor import RiskPredictor, fallback_result

logger = logging.getLogger(__name__)

STATUS_EXECUTED = "executed"
STATUS_AWAITING_APPROVAL = "awaiting_approval"
STATUS_EXECUTION_FAILED = "execution_failed"
STATUS_NO_ACTION = "no_action_needed"


@dataclass(frozen=True)
class GuardContext:
    """Long-lived collaborators shared by every incident."""

    config: AppConfig
    market: MarketModel
    price_source: PriceSource
    executor: Executor


def build_context(config: AppConfig) -> GuardContext:
    """Pick the live or simulated price source and executor once, from config."""
    if config.price_source.provider == "pyth":
        price_source: PriceSource = PythOracle(config.price_source.pyth)
    else:
        price_source = StaticPriceSource(config.price_source.static)

    if config.executor.mode == "webhook":
        executor: Executor = WebhookExecutor(config.executor)
    else:
        executor = SimulatedExecutor()

    logger.info(
        "Guard context: prices=%s executor=%s",
        config.price_source.provider,
        config.executor.mode,
    )
    return GuardContext(
        config=config,
        market=MarketModel(config.market),
        price_source=price_source,
        executor=executor,
    )


class Orchestrator:
    """Runs one protection cycle per incident using the shared context."""

    def __init__(self, context: GuardContext) -> None:
        self._ctx = context
        config = context.config
        self._pipeline = config.pipeline
        self.predictor = RiskPredictor(context.market, config.predictor)
        self.optimizer = PlanOptimizer(CostModel(config.costs), config.optimizer)
        # Spend handed to the executor during this process, per user and UTC day.
        self._spent: dict[tuple[str, date], float] = {}

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def ingest_prices(
        self, prices: Mapping[str, float], timestamp: datetime | None = None
    ) -> int:
        """The only path that writes into the market model's price history.

        The market model drops samples that are stale or arrive inside its
        sampling interval, so back-to-back incidents add at most one point.
        """
        stored = self._ctx.market.record_prices(prices, timestamp)
        if stored:
            logger.debug("Recorded %d/%d prices into market history", stored, len(prices))
        return stored

    async def fetch_prices(
        self, position: Position, overrides: Mapping[str, float] | None = None
    ) -> dict[str, float]:
        """Current prices for the position's assets.

        Prices from the price source are ingested into the market model;
        caller ``overrides`` apply to this incident only.
        """
        symbols = sorted({h.mint for h in (*position.collateral, *position.debt)})
        prices: dict[str, float] = {}
        try:
            prices = dict(await self._ctx.price_source.fetch_prices(symbols))
        except Exception as e:
            logger.error("Price fetch failed for %s: %s", position.position_id, e)
        self.ingest_prices(prices)
        if overrides:
            prices.update(overrides)

        missing = [s for s in symbols if s not in prices]
        if missing:
            logger.warning("No price for %s", ", ".join(missing))
        return prices

    async def assess(
        self, position: Position, prices: Mapping[str, float]
    ) -> TimeToBreachResult:
        timeout = self._pipeline.assess_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.predictor.assess, position, prices), timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "Risk assessment for %s timed out after %.1fs", position.position_id, timeout
            )
            return fallback_result()

    async def optimize(
        self,
        position: Position,
        policy: Policy,
        risk: TimeToBreachResult,
        venues: Mapping[str, Any] | Iterable[Venue] | None,
        prices: Mapping[str, float],
    ) -> OptimizationResult:
        timeout = self._pipeline.optimize_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.optimizer.optimize, position, policy, risk, venues, prices
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Optimization for %s timed out after %.1fs", position.position_id, timeout
            )
            return OptimizationResult(
                primary_plan=self.optimizer.fallback_plan(position, policy, prices),
                optimization_time_ms=timeout * 1000.0,
                constraints_satisfied=False,
                warnings=(f"Optimization timed out after {timeout:.1f}s",),
                outcome=Outcome.FALLBACK,
            )

    def spent_today(self, user: User) -> float:
        today = datetime.now(timezone.utc).date()
        return user.spent_today_usd + self._spent.get((user.user_id, today), 0.0)

    # ------------------------------------------------------------------
    # Incident handling
    # ------------------------------------------------------------------

    async def handle_incident(
        self,
        position: Position,
        policy: Policy,
        user: User,
        venues: Mapping[str, Any] | Iterable[Venue] | None = None,
        prices: Mapping[str, float] | None = None,
    ) -> IncidentReport:
        """Run the full pipeline for one at-risk position.

        ``prices`` entries override what the price source returns.
        """
        incident_id = str(uuid.uuid4())
        logger.info(
            "Incident %s: position %s (HF %.3f) for user %s",
            incident_id,
            position.position_id,
            position.health_factor,
            user.user_id,
        )

        oracle_prices = await self.fetch_prices(position, prices)
        risk = await self.assess(position, oracle_prices)
        optimization = await self.optimize(position, policy, risk, venues, oracle_prices)
        plan = optimization.primary_plan
        validation = validate_plan(plan, policy, user)

        def report(status: str, reasons: Iterable[str] = (), ref: str = "") -> IncidentReport:
            logger.info("Incident %s -> %s", incident_id, status)
            return IncidentReport(
                incident_id=incident_id,
                position_id=position.position_id,
                status=status,
                risk=risk,
                optimization=optimization,
                validation=validation,
                execution_ref=ref,
                reasons=tuple(reasons),
            )

        if not plan.actions:
            if optimization.outcome is Outcome.OK:
                return report(STATUS_NO_ACTION, optimization.warnings)
            return report(STATUS_AWAITING_APPROVAL, optimization.warnings)

        if not validation.approved:
            reasons = list(validation.violations) or ["Manual approval required by policy"]
            return report(STATUS_AWAITING_APPROVAL, reasons)

        spent = self.spent_today(user)
        if spent + plan.total_cost_usd > policy.max_daily_spend_usd:
            return report(
                STATUS_AWAITING_APPROVAL,
                [
                    f"Daily spend ${spent + plan.total_cost_usd:.2f} would exceed "
                    f"limit ${policy.max_daily_spend_usd:.2f}"
                ],
            )

        try:
            receipt: ExecutionReceipt = await self._ctx.executor.submit(plan, position)
        except Exception as e:
            logger.exception("Executor failed for plan %s", plan.plan_id)
            return report(STATUS_EXECUTION_FAILED, [str(e)])

        if not receipt.accepted:
            return report(STATUS_EXECUTION_FAILED, [receipt.detail], receipt.reference)

        key = (user.user_id, datetime.now(timezone.utc).date())
        self._spent[key] = self._spent.get(key, 0.0) + plan.total_cost_usd
        return report(STATUS_EXECUTED, ref=receipt.reference)
