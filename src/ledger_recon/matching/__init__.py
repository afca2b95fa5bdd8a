"""Cross-connector reconciliation matching."""

from .engine import MatchPassResult, MatchPlan, ReconciliationMatcher, plan_matches
from .strategies import OppositeSignRule, SameSignRule, SignRule, create_sign_rule

__all__ = [
    "MatchPassResult",
    "MatchPlan",
    "ReconciliationMatcher",
    "plan_matches",
    "OppositeSignRule",
    "SameSignRule",
    "SignRule",
    "create_sign_rule",
]
