"""Unit tests for policy validation of actions and plans."""
from __future__ import annotations

from dataclasses import replace

import pytest

from liquidation_guard.models import Action, ActionType, ApprovalMode, Plan, Policy, User
from liquidation_guard.services.policy_validator import validate_action, validate_plan


def _action(
    action_type: ActionType = ActionType.ADD_COLLATERAL,
    asset: str = "ETH",
    venue: str = "aave_v3",
) -> Action:
    return Action(action_type, asset, 1.0, venue, estimated_cost_usd=1.0)


def _plan(*actions: Action, cost: float = 5.0, confidence: float = 0.9) -> Plan:
    return Plan(actions=actions, total_cost_usd=cost, confidence=confidence)


@pytest.fixture()
def user() -> User:
    return User(user_id="u1")


class TestValidateAction:
    def test_clean_action(self, user: User) -> None:
        assert validate_action(_action(), Policy(), user) == []

    def test_blocked_venue(self, user: User) -> None:
        violations = validate_action(_action(), Policy(blocked_venues=("aave_v3",)), user)
        assert violations == ["Action uses blocked venue: aave_v3"]

    def test_non_allowed_venue(self, user: User) -> None:
        violations = validate_action(_action(), Policy(allowed_venues=("compound",)), user)
        assert violations == ["Action uses non-allowed venue: aave_v3"]

    def test_venue_matched_by_chain_key(self, user: User) -> None:
        action = Action(
            ActionType.REPAY, "USDC", 1.0, "aave_v3", route_info={"venue_key": "ethereum:aave"}
        )
        assert validate_action(action, Policy(allowed_venues=("ethereum:aave",)), user) == []
        assert validate_action(action, Policy(blocked_venues=("ethereum:aave",)), user) == [
            "Action uses blocked venue: aave_v3"
        ]

    def test_blocked_and_non_allowed_asset(self, user: User) -> None:
        policy = Policy(blocked_assets=("ETH",), allowed_assets=("BTC",))
        violations = validate_action(_action(), policy, user)
        assert "Action uses blocked asset: ETH" in violations
        assert "Action uses non-allowed asset: ETH" in violations

    @pytest.mark.parametrize(
        ("action_type", "flag", "message"),
        [
            (ActionType.HEDGE, "hedge_allowed", "Hedging not allowed by policy"),
            (ActionType.MIGRATE, "migration_allowed", "Position migration not allowed by policy"),
            (ActionType.REPAY, "partial_repay_allowed", "Partial repayment not allowed by policy"),
            (
                ActionType.ADD_COLLATERAL,
                "collateral_add_allowed",
                "Adding collateral not allowed by policy",
            ),
        ],
    )
    def test_type_gates(
        self, user: User, action_type: ActionType, flag: str, message: str
    ) -> None:
        policy = replace(Policy(migration_allowed=True), **{flag: False})
        assert validate_action(_action(action_type), policy, user) == [message]

    def test_migration_blocked_by_default(self, user: User) -> None:
        violations = validate_action(_action(ActionType.MIGRATE), Policy(), user)
        assert violations == ["Position migration not allowed by policy"]


class TestValidatePlan:
    def test_valid_and_auto_approved(self, user: User) -> None:
        result = validate_plan(_plan(_action()), Policy(), user)
        assert result.valid
        assert result.approved
        assert result.violations == ()

    def test_cost_over_incident_limit(self, user: User) -> None:
        result = validate_plan(_plan(_action(), cost=25.0), Policy(), user)
        assert not result.valid
        assert not result.approved
        assert any("exceeds per-incident limit" in v for v in result.violations)

    def test_low_confidence_blocks_auto_approval(self, user: User) -> None:
        result = validate_plan(_plan(_action(), confidence=0.6), Policy(), user)
        assert not result["valid"]
        assert any("below auto-approval threshold" in v for v in result["violations"])

    def test_auto_mode_ignores_confidence(self, user: User) -> None:
        policy = Policy(approval_mode=ApprovalMode.AUTO)
        result = validate_plan(_plan(_action(), confidence=0.1), policy, user)
        assert result.valid and result.approved

    def test_manual_mode_is_valid_but_not_approved(self, user: User) -> None:
        policy = Policy(approval_mode=ApprovalMode.MANUAL)
        result = validate_plan(_plan(_action(), confidence=0.1), policy, user)
        assert result.valid
        assert not result.approved
        assert result.violations == ()

    def test_violations_accumulate(self, user: User) -> None:
        policy = Policy(hedge_allowed=False, blocked_assets=("ETH",))
        plan = _plan(_action(ActionType.HEDGE), _action(), cost=30.0, confidence=0.5)
        result = validate_plan(plan, policy, user)
        assert len(result.violations) == 5

    def test_inputs_not_mutated(self, user: User) -> None:
        policy = Policy(blocked_venues=("aave_v3",))
        plan = _plan(_action())
        before = (plan.to_dict(), policy.to_dict(), user.to_dict())
        validate_plan(plan, policy, user)
        assert (plan.to_dict(), policy.to_dict(), user.to_dict()) == before

    def test_empty_plan_is_valid(self, user: User) -> None:
        result = validate_plan(_plan(cost=0.0, confidence=1.0), Policy(), user)
        assert result.valid and result.approved
