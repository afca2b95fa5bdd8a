"""
Reconciliation matcher.

Pairs unmatched transactions across configured connector pairs. Within one
amount bucket, candidate edges are processed from the nearest date distance
outwards. At each distance an edge is accepted only when neither endpoint
has any other live edge at that distance; otherwise every transaction
involved in the tie is parked for review instead of guessing.
"""

from bisect import bisect_left, bisect_right
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
import logging

from ..config import LedgerReconConfig, MatchPairConfig
from ..models.transaction import CanonicalTransaction, MatchStatus
from ..store.base import LedgerStore, MatchTransition
from ..utils.exceptions import ConfigurationError, MatchConflict, ValidationError
from .strategies import MatchKey, SignRule, create_sign_rule

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (MatchStatus.UNMATCHED, MatchStatus.PENDING_REVIEW)


@dataclass
class MatchPlan:
    """Decisions for one connector pair, computed without touching the store."""

    pairs: list[tuple[str, str]] = field(default_factory=list)
    ambiguous: list[str] = field(default_factory=list)


@dataclass
class MatchPassResult:
    """Counters from one matcher pass over all configured pairs."""

    matched_pairs: int = 0
    pending_review: int = 0
    conflicts: int = 0
    per_pair: dict[str, MatchPlan] = field(default_factory=dict)


def plan_matches(
    left: list[CanonicalTransaction],
    right: list[CanonicalTransaction],
    sign_rule: SignRule,
    tolerance_days: int,
) -> MatchPlan:
    """
    Decide matches between two sides of a connector pair.

    Pure and deterministic: the result depends only on the inputs, not on
    their order.

    Args:
        left: Unmatched transactions from the left connector
        right: Unmatched transactions from the right connector
        sign_rule: How the two sides' amounts relate
        tolerance_days: Maximum posted-date difference for a candidate

    Returns:
        MatchPlan with (left_id, right_id) pairs and ambiguous ids
    """
    left_buckets: dict[MatchKey, list[CanonicalTransaction]] = defaultdict(list)
    right_buckets: dict[MatchKey, list[CanonicalTransaction]] = defaultdict(list)
    for txn in left:
        left_buckets[sign_rule.left_key(txn)].append(txn)
    for txn in right:
        right_buckets[sign_rule.right_key(txn)].append(txn)

    plan = MatchPlan()
    window = timedelta(days=tolerance_days)

    for key in sorted(left_buckets.keys() & right_buckets.keys()):
        lefts = sorted(left_buckets[key], key=lambda t: (t.posted_date, t.canonical_id))
        rights = sorted(right_buckets[key], key=lambda t: (t.posted_date, t.canonical_id))
        right_dates = [t.posted_date for t in rights]

        # distance -> [(left_id, right_id)]
        edges: dict[int, list[tuple[str, str]]] = defaultdict(list)
        for l_txn in lefts:
            lo = bisect_left(right_dates, l_txn.posted_date - window)
            hi = bisect_right(right_dates, l_txn.posted_date + window)
            for r_txn in rights[lo:hi]:
                distance = abs((r_txn.posted_date - l_txn.posted_date).days)
                edges[distance].append((l_txn.canonical_id, r_txn.canonical_id))

        settled: set[str] = set()
        for distance in sorted(edges):
            live = [(l, r) for l, r in edges[distance] if l not in settled and r not in settled]
            degree = Counter(node for edge in live for node in edge)
            tied: set[str] = set()
            for l_id, r_id in live:
                if degree[l_id] == 1 and degree[r_id] == 1:
                    plan.pairs.append((l_id, r_id))
                else:
                    tied.update((l_id, r_id))
            settled.update(node for edge in live for node in edge)
            plan.ambiguous.extend(sorted(tied))

    plan.pairs.sort()
    plan.ambiguous.sort()
    return plan


class ReconciliationMatcher:
    """
    Applies match plans to the ledger store.

    Every state change goes through the store's compare-and-set, so a pass
    running concurrently with another pass or with an operator override
    never double-claims a transaction.
    """

    def __init__(self, store: LedgerStore, config: LedgerReconConfig):
        """
        Initialize the matcher.

        Args:
            store: Ledger store
            config: Application configuration (match pairs and tolerance)
        """
        self.store = store
        self.config = config
        self.pairs = self._build_pairs()

    def _build_pairs(self) -> list[tuple[MatchPairConfig, SignRule, int]]:
        pairs = []
        for pair in self.config.matching.pairs:
            if pair.left == pair.right:
                raise ConfigurationError(f"Match pair {pair.name} pairs {pair.left} with itself")
            tolerance = self.config.tolerance_for(pair)
            if tolerance < 0:
                raise ConfigurationError(f"Match pair {pair.name} has a negative tolerance")
            pairs.append((pair, create_sign_rule(pair.sign_rule), tolerance))
        return pairs

    def plan(self, pair: MatchPairConfig) -> MatchPlan:
        """Compute the plan for one configured pair from current store state."""
        for configured, sign_rule, tolerance in self.pairs:
            if configured.name == pair.name:
                break
        else:
            raise ConfigurationError(f"Unknown match pair: {pair.name}")

        left = self.store.query(source=pair.left, match_status=MatchStatus.UNMATCHED)
        right = self.store.query(source=pair.right, match_status=MatchStatus.UNMATCHED)
        return plan_matches(left, right, sign_rule, tolerance)

    def run_pass(self) -> MatchPassResult:
        """
        Run one matching pass over every configured pair.

        Pairs are processed in configuration order; a transaction matched by
        an earlier pair is no longer a candidate for later ones.
        """
        start_time = datetime.now()
        result = MatchPassResult()

        for pair, _, _ in self.pairs:
            plan = self.plan(pair)
            result.per_pair[pair.name] = plan

            for left_id, right_id in plan.pairs:
                applied = self.store.compare_and_set_match(
                    [
                        MatchTransition(left_id, MatchStatus.UNMATCHED, None, MatchStatus.MATCHED, right_id),
                        MatchTransition(right_id, MatchStatus.UNMATCHED, None, MatchStatus.MATCHED, left_id),
                    ]
                )
                if applied:
                    result.matched_pairs += 1
                else:
                    result.conflicts += 1

            for canonical_id in plan.ambiguous:
                applied = self.store.compare_and_set_match(
                    [
                        MatchTransition(
                            canonical_id,
                            MatchStatus.UNMATCHED,
                            None,
                            MatchStatus.PENDING_REVIEW,
                            None,
                        )
                    ]
                )
                if applied:
                    result.pending_review += 1
                else:
                    result.conflicts += 1

            logger.debug(
                f"Pair {pair.name}: {len(plan.pairs)} matches planned, "
                f"{len(plan.ambiguous)} ambiguous"
            )

        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"Matching pass complete in {elapsed:.2f}s: {result.matched_pairs} matched, "
            f"{result.pending_review} pending review, {result.conflicts} conflicts"
        )
        return result

    def manual_match(self, first_id: str, second_id: str) -> None:
        """
        Match two transactions on an operator's instruction.

        Both must come from different connectors and be unmatched or pending
        review.

        Raises:
            ValidationError: If the pair is not eligible
            MatchConflict: If either transaction changed concurrently
        """
        first = self._require(first_id)
        second = self._require(second_id)
        if first.source == second.source:
            raise ValidationError("Cannot match two transactions from the same connector")
        for txn in (first, second):
            if txn.match_status not in _OPEN_STATUSES:
                raise ValidationError(
                    f"{txn.canonical_id} is already {txn.match_status.value}"
                )
        if first.currency != second.currency:
            raise ValidationError("Cannot match transactions in different currencies")

        applied = self.store.compare_and_set_match(
            [
                MatchTransition(
                    first_id, first.match_status, first.matched_transaction_id,
                    MatchStatus.MATCHED, second_id,
                ),
                MatchTransition(
                    second_id, second.match_status, second.matched_transaction_id,
                    MatchStatus.MATCHED, first_id,
                ),
            ]
        )
        if not applied:
            raise MatchConflict(f"{first_id} or {second_id} changed while matching")
        logger.info(f"Manually matched {first_id} <-> {second_id}")

    def manual_unmatch(self, canonical_id: str) -> Optional[str]:
        """
        Break a match on an operator's instruction.

        Both sides go to pending review so neither is re-matched automatically.

        Returns:
            The former partner's id

        Raises:
            ValidationError: If the transaction is not matched
            MatchConflict: If either side changed concurrently
        """
        txn = self._require(canonical_id)
        if txn.match_status != MatchStatus.MATCHED or txn.matched_transaction_id is None:
            raise ValidationError(f"{canonical_id} is not matched")

        partner_id = txn.matched_transaction_id
        applied = self.store.compare_and_set_match(
            [
                MatchTransition(
                    canonical_id, MatchStatus.MATCHED, partner_id,
                    MatchStatus.PENDING_REVIEW, None,
                ),
                MatchTransition(
                    partner_id, MatchStatus.MATCHED, canonical_id,
                    MatchStatus.PENDING_REVIEW, None,
                ),
            ]
        )
        if not applied:
            raise MatchConflict(f"{canonical_id} changed while unmatching")
        logger.info(f"Manually unmatched {canonical_id} <-> {partner_id}")
        return partner_id

    def _require(self, canonical_id: str) -> CanonicalTransaction:
        txn = self.store.get(canonical_id)
        if txn is None:
            raise ValidationError(f"Unknown transaction {canonical_id}")
        return txn
