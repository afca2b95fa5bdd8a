"""Canonicalization of raw connector records."""

from .dedup import Canonicalizer, PageIngestResult, canonical_id
from .money import currency_exponent, parse_decimal, to_major_units, to_minor_units

__all__ = [
    "Canonicalizer",
    "PageIngestResult",
    "canonical_id",
    "currency_exponent",
    "parse_decimal",
    "to_major_units",
    "to_minor_units",
]
