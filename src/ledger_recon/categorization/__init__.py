"""Rule-based categorization against a chart of accounts."""

from .mapper import CategorizationResult, CategoryMapper, categorize
from .rules import (
    FileRuleSource,
    RuleSource,
    StaticRuleSource,
    build_chart,
    default_chart,
    load_chart,
    normalize_text,
    pattern_matches,
)

__all__ = [
    "CategorizationResult",
    "CategoryMapper",
    "categorize",
    "FileRuleSource",
    "RuleSource",
    "StaticRuleSource",
    "build_chart",
    "default_chart",
    "load_chart",
    "normalize_text",
    "pattern_matches",
]
