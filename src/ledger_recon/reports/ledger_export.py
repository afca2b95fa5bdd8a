"""CSV export of the canonical ledger."""

from pathlib import Path
import logging

import pandas as pd

from ..canonical.money import to_major_units
from ..models.transaction import CanonicalTransaction
from ..utils.exceptions import ReportGenerationError

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = [
    "canonical_id",
    "source",
    "external_id",
    "posted_date",
    "amount",
    "amount_minor",
    "currency",
    "description",
    "posted",
    "category_id",
    "category_source",
    "match_status",
    "matched_transaction_id",
    "push_status",
    "push_attempts",
]


def ledger_frame(transactions: list[CanonicalTransaction]) -> pd.DataFrame:
    """Flatten canonical transactions into a DataFrame with LEDGER_COLUMNS."""
    records = [
        {
            "canonical_id": t.canonical_id,
            "source": t.source,
            "external_id": t.external_id,
            "posted_date": t.posted_date.isoformat(),
            "amount": str(to_major_units(t.amount, t.currency)),
            "amount_minor": t.amount,
            "currency": t.currency,
            "description": t.description,
            "posted": t.posted,
            "category_id": t.category_id,
            "category_source": t.category_source.value if t.category_source else None,
            "match_status": t.match_status.value,
            "matched_transaction_id": t.matched_transaction_id,
            "push_status": t.push_status.value,
            "push_attempts": t.push_attempts,
        }
        for t in transactions
    ]
    return pd.DataFrame.from_records(records, columns=LEDGER_COLUMNS)


def export_ledger_csv(
    transactions: list[CanonicalTransaction], output_path: Path
) -> Path:
    """
    Write the ledger to a CSV file.

    Args:
        transactions: Transactions to export, in the order given
        output_path: Destination file

    Returns:
        Path to the written file

    Raises:
        ReportGenerationError: If the file cannot be written
    """
    df = ledger_frame(transactions)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False)
    except OSError as e:
        raise ReportGenerationError(f"Could not write ledger export {output_path}: {e}") from e
    logger.info(f"Exported {len(df)} transactions to {output_path}")
    return output_path
