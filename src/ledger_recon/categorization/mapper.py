"""Assigns chart-of-accounts categories to canonical transactions."""

from dataclasses import dataclass
from typing import Iterable, Optional
import logging

from ..models.transaction import CanonicalTransaction, CategorySource, ChartOfAccounts
from ..store.base import LedgerStore
from ..utils.exceptions import ValidationError
from .rules import RuleSource, StaticRuleSource, pattern_matches

logger = logging.getLogger(__name__)

_MANUAL_CAS_ATTEMPTS = 3


def _vendor_category(txn: CanonicalTransaction, chart: ChartOfAccounts) -> Optional[str]:
    raw = txn.raw_category
    if not raw:
        return None

    mapped = chart.raw_category_map.get(txn.source, {}).get(raw)
    if mapped is not None and chart.is_leaf(mapped):
        return mapped

    # A vendor category spelled exactly like one of our leaves
    by_name = [c.id for c in chart.leaves() if c.name.casefold() == raw.casefold()]
    if len(by_name) == 1:
        return by_name[0]
    return None


def categorize(
    txn: CanonicalTransaction, chart: ChartOfAccounts
) -> Optional[tuple[str, CategorySource]]:
    """
    Decide a transaction's category.

    The first rule whose pattern matches the description wins. Without a
    rule match, the vendor's own category is used when it maps to exactly
    one leaf. Otherwise the transaction needs manual categorization.

    Args:
        txn: Transaction to categorize
        chart: Chart of accounts with its ordered rules

    Returns:
        (category_id, source) or None when no category applies
    """
    for rule in chart.rules:
        if pattern_matches(rule.pattern, txn.description):
            return rule.category_id, CategorySource.RULE

    vendor = _vendor_category(txn, chart)
    if vendor is not None:
        return vendor, CategorySource.VENDOR
    return None


@dataclass
class CategorizationResult:
    """Counters from one mapper pass."""

    examined: int = 0
    categorized: int = 0
    changed: int = 0
    needs_categorization: int = 0
    conflicts: int = 0


class CategoryMapper:
    """Runs categorization passes against the ledger store."""

    def __init__(self, store: LedgerStore, rule_source: Optional[RuleSource] = None):
        self.store = store
        self.rule_source = rule_source or StaticRuleSource()

    def run_pass(self, canonical_ids: Optional[Iterable[str]] = None) -> CategorizationResult:
        """
        Categorize uncategorized transactions.

        Args:
            canonical_ids: Restrict the pass to these transactions (e.g. the
                ones created by the current run); all uncategorized when None

        Returns:
            CategorizationResult for the pass
        """
        chart = self.rule_source.load()
        result = CategorizationResult()

        for txn in self.store.query(uncategorized=True, canonical_ids=canonical_ids):
            result.examined += 1
            decision = categorize(txn, chart)
            if decision is None:
                result.needs_categorization += 1
                continue
            category_id, source = decision
            if self.store.compare_and_set_category(txn.canonical_id, None, category_id, source):
                result.categorized += 1
            else:
                # Categorized concurrently, most likely by an operator
                result.conflicts += 1

        logger.info(
            f"Categorization pass: {result.categorized} categorized, "
            f"{result.needs_categorization} need categorization"
        )
        return result

    def recategorize(self) -> CategorizationResult:
        """
        Re-apply the current rules to every non-manual transaction.

        Used after the rules change. Manual overrides are never touched; a
        transaction whose rule no longer matches goes back to uncategorized.
        """
        chart = self.rule_source.load()
        result = CategorizationResult()

        for txn in self.store.query():
            if txn.category_source == CategorySource.MANUAL:
                continue
            result.examined += 1
            decision = categorize(txn, chart)
            new_id, new_source = decision if decision else (None, None)

            if new_id is None:
                result.needs_categorization += 1
            else:
                result.categorized += 1
            if new_id == txn.category_id and new_source == txn.category_source:
                continue

            if self.store.compare_and_set_category(
                txn.canonical_id, txn.category_id, new_id, new_source
            ):
                result.changed += 1
            else:
                result.conflicts += 1

        logger.info(
            f"Recategorization: {result.changed} changed, "
            f"{result.needs_categorization} need categorization"
        )
        return result

    def set_manual_category(self, canonical_id: str, category_id: str) -> CanonicalTransaction:
        """
        Apply an operator's category choice.

        Raises:
            ValidationError: If the transaction is unknown or the category is
                not a leaf of the current chart
        """
        chart = self.rule_source.load()
        if not chart.is_leaf(category_id):
            raise ValidationError(f"{category_id} is not a leaf category")

        for _ in range(_MANUAL_CAS_ATTEMPTS):
            txn = self.store.get(canonical_id)
            if txn is None:
                raise ValidationError(f"Unknown transaction {canonical_id}")
            if self.store.compare_and_set_category(
                canonical_id, txn.category_id, category_id, CategorySource.MANUAL
            ):
                logger.info(f"Manually categorized {canonical_id} as {category_id}")
                updated = self.store.get(canonical_id)
                assert updated is not None
                return updated

        raise ValidationError(
            f"Could not categorize {canonical_id}: it kept changing concurrently"
        )

    def needs_categorization(self) -> list[CanonicalTransaction]:
        return self.store.query(uncategorized=True)
