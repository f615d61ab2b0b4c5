"""Decision pipeline services."""
from .cost_model import CostModel
from .market_model import MarketModel
from .orchestrator import GuardContext, Orchestrator, build_context
from .plan_optimizer import PlanOptimizer
from .policy_validator import validate_action, validate_plan
from .risk_predictor import AssessParams, RiskPredictor

__all__ = [
    "AssessParams",
    "CostModel",
    "GuardContext",
    "MarketModel",
    "Orchestrator",
    "PlanOptimizer",
    "RiskPredictor",
    "build_context",
    "validate_action",
    "validate_plan",
]
