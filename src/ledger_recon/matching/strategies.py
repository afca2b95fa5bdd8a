"""
Sign rules for pairing transactions across two connectors.

Each configured connector pair declares how the two sides record the same
economic event. A sign rule turns a transaction into a match key; two
transactions can only be candidates when their keys are equal.
"""

from abc import ABC, abstractmethod

from ..models.transaction import CanonicalTransaction
from ..utils.exceptions import ConfigurationError

MatchKey = tuple[str, int]


class SignRule(ABC):
    """Abstract base class for sign rules."""

    name: str = ""

    def left_key(self, txn: CanonicalTransaction) -> MatchKey:
        """Match key for a transaction from the pair's left connector."""
        return (txn.currency, txn.amount)

    @abstractmethod
    def right_key(self, txn: CanonicalTransaction) -> MatchKey:
        """Match key for a transaction from the pair's right connector."""
        pass

    @abstractmethod
    def describe(self) -> str:
        pass


class SameSignRule(SignRule):
    """
    Both sides carry the same canonical sign.

    The normal case: a bank outflow and the ledger's expense entry for it are
    both outflows once canonicalized.
    """

    name = "same"

    def right_key(self, txn: CanonicalTransaction) -> MatchKey:
        return (txn.currency, txn.amount)

    def describe(self) -> str:
        return "equal signed amount"


class OppositeSignRule(SignRule):
    """
    One side is the mirror image of the other.

    Used for transfers between two of our own accounts, where the outflow on
    one side is the inflow on the other.
    """

    name = "opposite"

    def right_key(self, txn: CanonicalTransaction) -> MatchKey:
        return (txn.currency, -txn.amount)

    def describe(self) -> str:
        return "equal magnitude, opposite sign"


_SIGN_RULES: dict[str, type[SignRule]] = {
    SameSignRule.name: SameSignRule,
    OppositeSignRule.name: OppositeSignRule,
}


def create_sign_rule(name: str) -> SignRule:
    """
    Build a sign rule by its configured name.

    Raises:
        ConfigurationError: If the name is unknown
    """
    rule_cls = _SIGN_RULES.get(name)
    if rule_cls is None:
        raise ConfigurationError(
            f"Unknown sign rule {name!r}; expected one of {sorted(_SIGN_RULES)}"
        )
    return rule_cls()
