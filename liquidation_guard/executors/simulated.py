"""In-memory executor used for dry runs and tests."""
from __future__ import annotations

import logging

from ..models import ExecutionReceipt, Plan, Position

logger = logging.getLogger(__name__)


class SimulatedExecutor:
    """Accepts every plan and keeps the receipts."""

    name = "simulated"

    def __init__(self) -> None:
        self.receipts: list[ExecutionReceipt] = []

    async def submit(self, plan: Plan, position: Position) -> ExecutionReceipt:
        receipt = ExecutionReceipt(
            plan_id=plan.plan_id,
            executor=self.name,
            accepted=True,
            reference=f"sim-{len(self.receipts) + 1}",
            detail=f"{len(plan.actions)} action(s) for {position.position_id}",
        )
        self.receipts.append(receipt)
        logger.info(
            "Simulated execution of plan %s (%d actions, $%.2f)",
            plan.plan_id,
            len(plan.actions),
            plan.total_cost_usd,
        )
        return receipt
