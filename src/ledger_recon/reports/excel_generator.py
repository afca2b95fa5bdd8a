"""
Excel report generator for reconciliation runs.
Creates a multi-sheet workbook describing one run and the ledger state after it.
"""

from pathlib import Path
from typing import Any, Optional
import logging

from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.worksheet.worksheet import Worksheet

from ..canonical.money import to_major_units
from ..config import LedgerReconConfig, SheetConfig
from ..models.transaction import (
    CanonicalTransaction,
    MatchStatus,
    PushStatus,
    ReconciliationRun,
)
from ..store.base import LedgerStore
from ..utils.exceptions import ReportGenerationError

logger = logging.getLogger(__name__)

# Style definitions
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True)
MATCH_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
REVIEW_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
UNMATCHED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)

TRANSACTION_HEADERS = [
    "Canonical ID",
    "Source",
    "External ID",
    "Posted Date",
    "Amount",
    "Currency",
    "Description",
    "Category",
    "Match Status",
    "Push Status",
]


def _amount(txn: CanonicalTransaction) -> float:
    return float(to_major_units(txn.amount, txn.currency))


def _transaction_row(txn: CanonicalTransaction) -> list[Any]:
    return [
        txn.canonical_id,
        txn.source,
        txn.external_id,
        txn.posted_date,
        _amount(txn),
        txn.currency,
        txn.description,
        txn.category_id or "",
        txn.match_status.value,
        txn.push_status.value,
    ]


class ExcelReportGenerator:
    """Generates Excel reconciliation reports with multiple sheets."""

    def __init__(self, config: LedgerReconConfig):
        """
        Initialize the report generator.

        Args:
            config: Application configuration
        """
        self.config = config
        self.output_config = config.output.excel
        self.sheet_config = config.output.sheets

    def default_filename(self, run: ReconciliationRun) -> str:
        return self.output_config.filename_template.format(
            run_id=run.id[:8], date=run.started_at.strftime("%Y%m%d")
        )

    def generate_report(
        self, run: ReconciliationRun, store: LedgerStore, output_path: Path
    ) -> Path:
        """
        Generate the report for a run.

        Args:
            run: Run to summarize
            store: Ledger store the run wrote to
            output_path: Path for output file

        Returns:
            Path to generated report

        Raises:
            ReportGenerationError: If the workbook cannot be written
        """
        logger.info(f"Generating Excel report: {output_path}")

        wb = Workbook()
        if wb.active:
            wb.remove(wb.active)

        sheets = self.sheet_config
        if sheets.summary.enabled:
            self._create_summary_sheet(wb, sheets.summary, run)
        if sheets.matched.enabled:
            self._create_matched_sheet(wb, sheets.matched, store)
        if sheets.unmatched.enabled:
            self._create_transaction_sheet(
                wb, sheets.unmatched,
                store.query(match_status=MatchStatus.UNMATCHED), UNMATCHED_FILL,
            )
        if sheets.pending_review.enabled:
            self._create_transaction_sheet(
                wb, sheets.pending_review,
                store.query(match_status=MatchStatus.PENDING_REVIEW), REVIEW_FILL,
            )
        if sheets.needs_categorization.enabled:
            self._create_transaction_sheet(
                wb, sheets.needs_categorization, store.query(uncategorized=True), REVIEW_FILL
            )
        if sheets.stuck_pushes.enabled:
            self._create_stuck_sheet(wb, sheets.stuck_pushes, store)

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            wb.save(output_path)
        except OSError as e:
            raise ReportGenerationError(f"Could not write report {output_path}: {e}") from e
        logger.info(f"Report saved: {output_path}")

        return output_path

    def _create_summary_sheet(
        self, wb: Workbook, sheet: SheetConfig, run: ReconciliationRun
    ) -> None:
        """Create the summary sheet with key metrics."""
        ws = wb.create_sheet(sheet.name)

        ws["A1"] = "Reconciliation Run Summary"
        ws["A1"].font = Font(size=16, bold=True)
        ws.merge_cells("A1:D1")

        duration = run.duration_seconds
        run_info = [
            ("Run ID:", run.id),
            ("Started:", run.started_at.strftime("%Y-%m-%d %H:%M:%S %Z")),
            ("Completed:", run.completed_at.strftime("%Y-%m-%d %H:%M:%S %Z") if run.completed_at else ""),
            ("Duration:", f"{duration:.2f} seconds" if duration is not None else ""),
            ("Status:", run.overall_status.value),
            ("Cancelled:", "yes" if run.cancelled else "no"),
            ("", ""),
            ("Matched Pairs (this run):", run.matched_pairs),
            ("Categorized (this run):", run.categorized_count),
            ("Unmatched:", run.unmatched_count),
            ("Pending Review:", run.pending_review_count),
            ("Needs Categorization:", run.needs_categorization_count),
        ]
        for i, (label, value) in enumerate(run_info, start=3):
            ws[f"A{i}"] = label
            ws[f"B{i}"] = value

        row = len(run_info) + 4
        ws[f"A{row}"] = "Connectors"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1

        headers = ["Connector", "Status", "Pages", "Fetched", "New", "Updated",
                   "Duplicates", "Failed", "Error"]
        rows = [
            [name, r.status.value, r.pages, r.fetched, r.imported, r.updated,
             r.skipped_duplicate, r.failed, r.error or ""]
            for name, r in run.per_connector_result.items()
        ]
        self._write_table(ws, headers, rows, start_row=row)

        ws.column_dimensions["A"].width = 30
        ws.column_dimensions["B"].width = 40

    def _create_matched_sheet(self, wb: Workbook, sheet: SheetConfig, store: LedgerStore) -> None:
        """Create the matched pairs sheet, one row per pair."""
        ws = wb.create_sheet(sheet.name)

        matched = {t.canonical_id: t for t in store.query(match_status=MatchStatus.MATCHED)}
        rows = []
        for txn in matched.values():
            partner = matched.get(txn.matched_transaction_id or "")
            # Emit each pair once, from its lower id
            if partner is None or txn.canonical_id > partner.canonical_id:
                continue
            rows.append(
                [
                    txn.source, txn.external_id, txn.posted_date, _amount(txn), txn.description,
                    partner.source, partner.external_id, partner.posted_date, _amount(partner),
                    partner.description,
                    abs((partner.posted_date - txn.posted_date).days),
                ]
            )

        headers = [
            "Source A", "External ID A", "Date A", "Amount A", "Description A",
            "Source B", "External ID B", "Date B", "Amount B", "Description B",
            "Date Variance (Days)",
        ]
        self._write_table(ws, headers, rows, fill=MATCH_FILL)
        self._auto_fit_columns(ws)

    def _create_transaction_sheet(
        self,
        wb: Workbook,
        sheet: SheetConfig,
        transactions: list[CanonicalTransaction],
        fill: PatternFill,
    ) -> None:
        ws = wb.create_sheet(sheet.name)
        self._write_table(ws, TRANSACTION_HEADERS, [_transaction_row(t) for t in transactions], fill=fill)
        self._auto_fit_columns(ws)

    def _create_stuck_sheet(self, wb: Workbook, sheet: SheetConfig, store: LedgerStore) -> None:
        ws = wb.create_sheet(sheet.name)
        rows = [
            _transaction_row(t) + [t.push_attempts, t.push_error or ""]
            for t in store.query(push_status=PushStatus.FAILED)
        ]
        self._write_table(ws, TRANSACTION_HEADERS + ["Attempts", "Last Error"], rows, fill=UNMATCHED_FILL)
        self._auto_fit_columns(ws)

    def _write_table(
        self,
        ws: Worksheet,
        headers: list[str],
        rows: list[list[Any]],
        start_row: int = 1,
        fill: Optional[PatternFill] = None,
    ) -> None:
        for col, header in enumerate(headers, start=1):
            cell = ws.cell(row=start_row, column=col, value=header)
            cell.fill = HEADER_FILL
            cell.font = HEADER_FONT
            cell.border = THIN_BORDER

        for row_num, row_data in enumerate(rows, start=start_row + 1):
            for col, value in enumerate(row_data, start=1):
                cell = ws.cell(row=row_num, column=col, value=value)
                cell.border = THIN_BORDER
                if fill is not None:
                    cell.fill = fill

    def _auto_fit_columns(self, ws: Worksheet) -> None:
        """Auto-fit column widths based on content."""
        for column_cells in ws.columns:
            column = column_cells[0].column_letter
            max_length = max(
                (len(str(cell.value)) for cell in column_cells if cell.value is not None),
                default=0,
            )
            ws.column_dimensions[column].width = min(max_length + 2, 50)
