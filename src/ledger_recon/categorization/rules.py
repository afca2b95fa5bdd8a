"""
Chart of accounts loading and rule pattern matching.

A chart can come from the built-in default, a YAML file or a CSV file.
Rule sources are re-read at the start of every mapper pass, so editing the
rules file takes effect on the next run without a restart.

YAML layout::

    categories:
      - id: utilities
        name: Utilities
        parent_id: expenses
        rules: [electric, "re:^pg&e\\b"]
    rules:                      # optional, evaluated before per-category rules
      - {pattern: "aws*", category_id: cloud_infrastructure}
    raw_category_map:
      doorloop: {"Utilities": utilities}

CSV layout: columns ``category_id, name, parent_id, pattern`` with one row
per rule (``pattern`` may be blank for a category without rules).
"""

from abc import ABC, abstractmethod
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Optional
import logging
import re

import pandas as pd
import yaml

from ..models.transaction import CategoryRule, ChartOfAccounts, COACategory
from ..utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

REGEX_PREFIX = "re:"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# category id -> (name, parent, keyword rules, vendor category per source)
_DEFAULT_CATEGORIES: list[tuple[str, str, Optional[str], list[str], dict[str, str]]] = [
    ("income", "Income", None, [], {}),
    ("expenses", "Expenses", None, [], {}),
    (
        "rent",
        "Rent",
        "income",
        ["rent", "lease payment"],
        {"doorloop": "Rent Income", "mercury": "Rental Income"},
    ),
    (
        "maintenance",
        "Maintenance",
        "expenses",
        ["repair", "repairs", "maintenance", "home depot", "lowes", "lowe s"],
        {"doorloop": "Repairs & Maintenance", "mercury": "Maintenance Expense"},
    ),
    (
        "utilities",
        "Utilities",
        "expenses",
        ["utility", "utilities", "electric", "energy", "gas", "water"],
        {"doorloop": "Utilities", "mercury": "Utility Payments"},
    ),
    (
        "insurance",
        "Insurance",
        "expenses",
        ["insurance"],
        {"doorloop": "Insurance", "mercury": "Insurance Expense"},
    ),
    (
        "taxes",
        "Taxes",
        "expenses",
        ["tax", "taxes"],
        {"doorloop": "Property Taxes", "mercury": "Tax Payment"},
    ),
    (
        "mortgage",
        "Mortgage",
        "expenses",
        ["mortgage", "loan payment"],
        {"doorloop": "Mortgage Payment", "mercury": "Loan Payment"},
    ),
    (
        "supplies",
        "Supplies",
        "expenses",
        ["supply", "supplies", "office", "staples", "amazon"],
        {"doorloop": "Office Supplies", "mercury": "Supplies"},
    ),
    (
        "cleaning",
        "Cleaning",
        "expenses",
        ["clean", "cleaning"],
        {"doorloop": "Cleaning", "mercury": "Cleaning Services"},
    ),
    (
        "marketing",
        "Marketing",
        "expenses",
        ["marketing", "advertising", "facebook", "google ads"],
        {"doorloop": "Marketing", "mercury": "Advertising"},
    ),
    (
        "other",
        "Other",
        "expenses",
        [],
        {"doorloop": "Other Expenses", "mercury": "Other"},
    ),
]


def normalize_text(value: str) -> str:
    """Lowercase and collapse every run of non-alphanumerics to one space."""
    return _NON_ALNUM.sub(" ", value.lower()).strip()


def pattern_matches(pattern: str, description: str) -> bool:
    """
    Test a rule pattern against a transaction description.

    Patterns starting with ``re:`` are regular expressions searched in the
    lowercased description. Patterns containing ``*`` or ``?`` are globs
    matched against the normalized description. Anything else is a keyword
    or phrase matched on word boundaries.
    """
    if pattern.startswith(REGEX_PREFIX):
        return re.search(pattern[len(REGEX_PREFIX):], description.lower()) is not None

    normalized = normalize_text(description)
    if "*" in pattern or "?" in pattern:
        return fnmatchcase(normalized, pattern.lower())

    keyword = normalize_text(pattern)
    if not keyword:
        return False
    return f" {keyword} " in f" {normalized} "


def _validate_pattern(pattern: str) -> None:
    if pattern.startswith(REGEX_PREFIX):
        try:
            re.compile(pattern[len(REGEX_PREFIX):])
        except re.error as e:
            raise ConfigurationError(f"Invalid rule regex {pattern!r}: {e}") from e
    elif not pattern.strip():
        raise ConfigurationError("Empty rule pattern")


def build_chart(
    categories: list[COACategory],
    extra_rules: Optional[list[CategoryRule]] = None,
    raw_category_map: Optional[dict[str, dict[str, str]]] = None,
) -> ChartOfAccounts:
    """
    Assemble and validate a chart of accounts.

    Rule order is ``extra_rules`` first, then each category's own rules in
    category order.

    Raises:
        ConfigurationError: On unknown parents, rules targeting non-leaf
            categories, or invalid patterns
    """
    chart = ChartOfAccounts(categories={c.id: c for c in categories})
    if len(chart.categories) != len(categories):
        raise ConfigurationError("Duplicate category ids in chart of accounts")

    for category in categories:
        if category.parent_id is not None and category.parent_id not in chart.categories:
            raise ConfigurationError(
                f"Category {category.id} has unknown parent {category.parent_id}"
            )

    rules = list(extra_rules or [])
    for category in categories:
        rules.extend(category.matching_rules)
    for rule in rules:
        _validate_pattern(rule.pattern)
        if not chart.is_leaf(rule.category_id):
            raise ConfigurationError(
                f"Rule {rule.pattern!r} targets {rule.category_id}, which is not a leaf category"
            )
    chart.rules = rules

    for source, mapping in (raw_category_map or {}).items():
        for raw, category_id in mapping.items():
            if not chart.is_leaf(category_id):
                raise ConfigurationError(
                    f"Vendor category {source}:{raw!r} maps to unknown or non-leaf {category_id}"
                )
    chart.raw_category_map = {s: dict(m) for s, m in (raw_category_map or {}).items()}
    return chart


def default_chart() -> ChartOfAccounts:
    """Built-in chart for rental property bookkeeping."""
    categories = []
    raw_map: dict[str, dict[str, str]] = {}
    for category_id, name, parent_id, keywords, vendor_names in _DEFAULT_CATEGORIES:
        categories.append(
            COACategory(
                id=category_id,
                name=name,
                parent_id=parent_id,
                matching_rules=[CategoryRule(k, category_id) for k in keywords],
            )
        )
        for source, vendor_name in vendor_names.items():
            raw_map.setdefault(source, {})[vendor_name] = category_id
    return build_chart(categories, raw_category_map=raw_map)


def _chart_from_yaml(data: dict[str, Any]) -> ChartOfAccounts:
    categories = []
    for entry in data.get("categories") or []:
        category_id = str(entry["id"])
        categories.append(
            COACategory(
                id=category_id,
                name=str(entry.get("name") or category_id),
                parent_id=entry.get("parent_id"),
                matching_rules=[CategoryRule(str(p), category_id) for p in entry.get("rules") or []],
            )
        )
    extra_rules = [
        CategoryRule(str(r["pattern"]), str(r["category_id"])) for r in data.get("rules") or []
    ]
    return build_chart(categories, extra_rules, data.get("raw_category_map") or {})


def _chart_from_csv(path: Path) -> ChartOfAccounts:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    missing = {"category_id", "name"} - set(df.columns)
    if missing:
        raise ConfigurationError(f"Rules CSV {path} missing columns: {sorted(missing)}")

    categories: dict[str, COACategory] = {}
    for _, row in df.iterrows():
        category_id = row["category_id"].strip()
        if not category_id:
            continue
        category = categories.get(category_id)
        if category is None:
            category = COACategory(
                id=category_id,
                name=row["name"].strip() or category_id,
                parent_id=(row.get("parent_id") or "").strip() or None,
            )
            categories[category_id] = category
        pattern = (row.get("pattern") or "").strip()
        if pattern:
            category.matching_rules.append(CategoryRule(pattern, category_id))
    return build_chart(list(categories.values()))


def load_chart(path: Path) -> ChartOfAccounts:
    """
    Load a chart of accounts from a YAML or CSV file.

    Args:
        path: Path to a ``.yaml``/``.yml`` or ``.csv`` file

    Returns:
        Validated ChartOfAccounts

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    if not path.exists():
        raise ConfigurationError(f"Rules file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ConfigurationError(f"Rules file {path} must contain a mapping")
            chart = _chart_from_yaml(data)
        elif suffix == ".csv":
            chart = _chart_from_csv(path)
        else:
            raise ConfigurationError(f"Unsupported rules file type: {path.suffix}")
    except (KeyError, TypeError, yaml.YAMLError, pd.errors.ParserError) as e:
        raise ConfigurationError(f"Invalid rules file {path}: {e}") from e

    logger.debug(f"Loaded {len(chart.categories)} categories and {len(chart.rules)} rules from {path}")
    return chart


class RuleSource(ABC):
    """Supplies the current chart of accounts."""

    @abstractmethod
    def load(self) -> ChartOfAccounts:
        pass


class StaticRuleSource(RuleSource):
    """A fixed chart, e.g. the built-in default or one built in code."""

    def __init__(self, chart: Optional[ChartOfAccounts] = None):
        self.chart = chart or default_chart()

    def load(self) -> ChartOfAccounts:
        return self.chart


class FileRuleSource(RuleSource):
    """Chart read from disk on every ``load()``."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> ChartOfAccounts:
        return load_chart(self.path)
