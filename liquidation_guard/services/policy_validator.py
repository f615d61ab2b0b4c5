"""Policy checks for protection plans. Pure functions; inputs are never mutated."""
from __future__ import annotations

import logging

from ..models import Action, ActionType, ApprovalMode, Plan, PlanValidation, Policy, User

logger = logging.getLogger(__name__)

_TYPE_GATES = (
    (ActionType.HEDGE, "hedge_allowed", "Hedging not allowed by policy"),
    (ActionType.MIGRATE, "migration_allowed", "Position migration not allowed by policy"),
    (ActionType.REPAY, "partial_repay_allowed", "Partial repayment not allowed by policy"),
    (
        ActionType.ADD_COLLATERAL,
        "collateral_add_allowed",
        "Adding collateral not allowed by policy",
    ),
)


def validate_action(action: Action, policy: Policy, user: User | None = None) -> list[str]:
    """Venue, asset, and action-type violations for a single action."""
    violations: list[str] = []

    # A venue may be listed by id or by its ``chain:name`` key.
    names = {action.venue, action.route_info.get("venue_key") or action.venue}
    if names & set(policy.blocked_venues):
        violations.append(f"Action uses blocked venue: {action.venue}")
    if policy.allowed_venues and not names & set(policy.allowed_venues):
        violations.append(f"Action uses non-allowed venue: {action.venue}")

    if action.asset in policy.blocked_assets:
        violations.append(f"Action uses blocked asset: {action.asset}")
    if policy.allowed_assets and action.asset not in policy.allowed_assets:
        violations.append(f"Action uses non-allowed asset: {action.asset}")

    for action_type, flag, message in _TYPE_GATES:
        if action.action_type is action_type and not getattr(policy, flag):
            violations.append(message)

    return violations


def validate_plan(plan: Plan, policy: Policy, user: User | None = None) -> PlanValidation:
    """Accumulate every violation; approval additionally requires a non-manual mode."""
    violations: list[str] = []

    if plan.total_cost_usd > policy.max_per_incident_usd:
        violations.append(
            f"Plan cost (${plan.total_cost_usd:.2f}) exceeds per-incident limit "
            f"(${policy.max_per_incident_usd:.2f})"
        )

    for action in plan.actions:
        violations.extend(validate_action(action, policy, user))

    if (
        policy.approval_mode is ApprovalMode.AUTO_IF_CONFIDENCE_GE
        and plan.confidence < policy.approval_threshold
    ):
        violations.append(
            f"Plan confidence ({plan.confidence:.2f}) below auto-approval threshold "
            f"({policy.approval_threshold:.2f})"
        )

    valid = not violations
    if violations:
        logger.info("Plan %s violates policy: %s", plan.plan_id, "; ".join(violations))

    return PlanValidation(
        valid=valid,
        violations=violations,
        approved=valid and policy.approval_mode is not ApprovalMode.MANUAL,
    )
