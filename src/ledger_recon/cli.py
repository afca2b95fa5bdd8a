"""
Command-line interface for the ledger sync and reconciliation engine.
"""

from pathlib import Path
from typing import Callable, Optional
import logging
import sys

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .canonical.money import to_major_units
from .config import generate_default_config, load_config
from .models.transaction import CanonicalTransaction, ReconciliationRun, RunStatus
from .reports.excel_generator import ExcelReportGenerator
from .reports.ledger_export import export_ledger_csv
from .service import LedgerReconService
from .utils.exceptions import LedgerReconError
from .utils.logging_config import parse_level, setup_logging

console = Console()


def _common_options(func: Callable) -> Callable:
    """Attach the --config and --verbose options every command takes."""
    func = click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")(func)
    func = click.option(
        "-c",
        "--config",
        type=click.Path(exists=True, path_type=Path),
        help="Path to configuration file (YAML)",
    )(func)
    return func


def _build_service(config: Optional[Path], verbose: bool) -> LedgerReconService:
    """Load environment, configuration and logging, then wire the service."""
    load_dotenv()
    app_config = load_config(config)
    level = logging.DEBUG if verbose else parse_level(app_config.logging.level)
    log_file = Path(app_config.logging.file) if app_config.logging.file else None
    setup_logging(level, log_file=log_file, log_format=app_config.logging.format)
    return LedgerReconService(app_config)


def _fail(e: Exception, verbose: bool) -> None:
    console.print(f"[red]Error: {e}[/red]")
    if verbose:
        console.print_exception()
    sys.exit(1)


def _format_amount(txn: CanonicalTransaction) -> str:
    return f"{to_major_units(txn.amount, txn.currency):,} {txn.currency}"


def _truncate(text: str, width: int = 40) -> str:
    return text[:width] + "..." if len(text) > width else text


def _display_transactions(title: str, transactions: list[CanonicalTransaction], limit: int) -> None:
    table = Table(title=title)
    table.add_column("Canonical ID")
    table.add_column("Source")
    table.add_column("Date")
    table.add_column("Amount", justify="right")
    table.add_column("Description")
    table.add_column("Category")
    table.add_column("Match")

    for txn in transactions[:limit]:
        table.add_row(
            txn.canonical_id,
            txn.source,
            str(txn.posted_date),
            _format_amount(txn),
            _truncate(txn.description),
            txn.category_id or "-",
            txn.match_status.value,
        )

    console.print(table)
    if len(transactions) > limit:
        console.print(f"\n... and {len(transactions) - limit} more transactions")
    console.print(f"\nTotal transactions: {len(transactions)}")


def _display_run(run: ReconciliationRun) -> None:
    """Display a run summary in the console."""
    table = Table(title=f"Run {run.id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    duration = run.duration_seconds
    table.add_row("Status", run.overall_status.value)
    table.add_row("Started", run.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    table.add_row("Duration", f"{duration:.2f}s" if duration is not None else "-")
    table.add_row("Cancelled", "yes" if run.cancelled else "no")
    table.add_row("Matched Pairs", str(run.matched_pairs))
    table.add_row("Categorized", str(run.categorized_count))
    table.add_row("Unmatched", str(run.unmatched_count))
    table.add_row("Pending Review", str(run.pending_review_count))
    table.add_row("Needs Categorization", str(run.needs_categorization_count))
    console.print(table)

    if run.per_connector_result:
        connectors = Table(title="Connectors")
        for column in ("Connector", "Status", "Pages", "Fetched", "New", "Updated",
                       "Duplicate", "Failed", "Error"):
            connectors.add_column(column)
        for name, r in run.per_connector_result.items():
            style = "green" if r.succeeded else "red"
            connectors.add_row(
                name, f"[{style}]{r.status.value}[/{style}]", str(r.pages), str(r.fetched),
                str(r.imported), str(r.updated), str(r.skipped_duplicate), str(r.failed),
                _truncate(r.error or "-", 60),
            )
        console.print(connectors)


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Multi-source ledger sync and reconciliation engine."""
    pass


@main.command()
@_common_options
@click.option("-o", "--report", type=click.Path(path_type=Path), help="Also write an Excel report")
def sync(config: Optional[Path], verbose: bool, report: Optional[Path]):
    """Fetch from every connector, categorize and reconcile."""
    try:
        service = _build_service(config, verbose)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Syncing connectors...", total=None)
            run = service.run_now()
            progress.update(task, completed=True)

        _display_run(run)

        if report is not None:
            path = ExcelReportGenerator(service.config).generate_report(run, service.store, report)
            console.print(f"\n[green]Report generated: {path}[/green]")
        service.close()
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    if run.overall_status == RunStatus.FAILED:
        sys.exit(1)


@main.command()
@_common_options
def push(config: Optional[Path], verbose: bool):
    """Push reconciled transactions to the system of record."""
    try:
        service = _build_service(config, verbose)
        result = service.push()
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    console.print(
        f"Pushed: {result.pushed}, already present: {result.already_in_target}, "
        f"covered by a match: {result.covered_by_partner}, "
        f"retry later: {result.retry_later}, stuck: {result.stuck}"
    )
    if result.aborted:
        console.print(f"[red]Push aborted: {result.error}[/red]")
        sys.exit(1)


@main.command()
@_common_options
@click.option("-n", "--limit", type=int, default=20, show_default=True)
def runs(config: Optional[Path], verbose: bool, limit: int):
    """List recent reconciliation runs."""
    try:
        service = _build_service(config, verbose)
        history = service.list_runs(limit)
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    table = Table(title="Reconciliation Runs")
    for column in ("Run ID", "Started", "Status", "Matched", "Unmatched", "Review", "Uncategorized"):
        table.add_column(column)
    for run in history:
        table.add_row(
            run.id,
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            run.overall_status.value,
            str(run.matched_pairs),
            str(run.unmatched_count),
            str(run.pending_review_count),
            str(run.needs_categorization_count),
        )
    console.print(table)


@main.command("show-run")
@click.argument("run_id")
@_common_options
def show_run(run_id: str, config: Optional[Path], verbose: bool):
    """Show one run's summary and per-connector results."""
    try:
        service = _build_service(config, verbose)
        run = service.get_run(run_id)
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    if run is None:
        console.print(f"[red]Unknown run: {run_id}[/red]")
        sys.exit(1)
    _display_run(run)


@main.command()
@_common_options
def status(config: Optional[Path], verbose: bool):
    """Show each connector's cursor and last run outcome."""
    try:
        service = _build_service(config, verbose)
        cursors = service.connector_status()
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    table = Table(title="Connector Status")
    for column in ("Connector", "Last Status", "Consecutive Failures", "Cursor", "Updated", "Last Error"):
        table.add_column(column)
    for cursor in cursors:
        table.add_row(
            cursor.connector,
            cursor.last_run_status.value if cursor.last_run_status else "-",
            str(cursor.consecutive_failures),
            cursor.last_synced_cursor_token or "-",
            cursor.updated_at.strftime("%Y-%m-%d %H:%M:%S") if cursor.updated_at else "-",
            _truncate(cursor.last_error or "-", 60),
        )
    console.print(table)


@main.command()
@_common_options
@click.option("--source", help="Only show transactions from this connector")
@click.option("-n", "--limit", type=int, default=50, show_default=True)
def unmatched(config: Optional[Path], verbose: bool, source: Optional[str], limit: int):
    """List unmatched transactions."""
    try:
        service = _build_service(config, verbose)
        _display_transactions("Unmatched Transactions", service.unmatched(source), limit)
    except LedgerReconError as e:
        _fail(e, verbose)


@main.command("pending-review")
@_common_options
@click.option("-n", "--limit", type=int, default=50, show_default=True)
def pending_review(config: Optional[Path], verbose: bool, limit: int):
    """List transactions with ambiguous matches awaiting review."""
    try:
        service = _build_service(config, verbose)
        _display_transactions("Pending Review", service.pending_review(), limit)
    except LedgerReconError as e:
        _fail(e, verbose)


@main.command("needs-categorization")
@_common_options
@click.option("-n", "--limit", type=int, default=50, show_default=True)
def needs_categorization(config: Optional[Path], verbose: bool, limit: int):
    """List transactions no rule could categorize."""
    try:
        service = _build_service(config, verbose)
        _display_transactions("Needs Categorization", service.needs_categorization(), limit)
    except LedgerReconError as e:
        _fail(e, verbose)


@main.command()
@_common_options
@click.option("--connector", help="Only show failures from this connector")
@click.option("--run-id", help="Only show failures from this run")
def failures(config: Optional[Path], verbose: bool, connector: Optional[str], run_id: Optional[str]):
    """List records that could not be ingested."""
    try:
        service = _build_service(config, verbose)
        items = service.item_failures(connector=connector, run_id=run_id)
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    table = Table(title="Item Failures")
    for column in ("Recorded", "Run", "Connector", "External ID", "Error"):
        table.add_column(column)
    for item in items:
        table.add_row(
            item.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
            item.run_id[:8],
            item.connector,
            item.external_id or "-",
            _truncate(item.error, 60),
        )
    console.print(table)


@main.command()
@click.argument("first_id")
@click.argument("second_id")
@_common_options
def match(first_id: str, second_id: str, config: Optional[Path], verbose: bool):
    """Manually match two transactions."""
    try:
        service = _build_service(config, verbose)
        service.manual_match(first_id, second_id)
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(f"[green]Matched {first_id} <-> {second_id}[/green]")


@main.command()
@click.argument("canonical_id")
@_common_options
def unmatch(canonical_id: str, config: Optional[Path], verbose: bool):
    """Break a match; both sides go to pending review."""
    try:
        service = _build_service(config, verbose)
        partner = service.manual_unmatch(canonical_id)
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(f"[green]Unmatched {canonical_id} from {partner}[/green]")


@main.command()
@click.argument("canonical_id")
@click.argument("category_id")
@_common_options
def categorize(canonical_id: str, category_id: str, config: Optional[Path], verbose: bool):
    """Manually set a transaction's category."""
    try:
        service = _build_service(config, verbose)
        service.set_category(canonical_id, category_id)
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(f"[green]{canonical_id} categorized as {category_id}[/green]")


@main.command()
@_common_options
def recategorize(config: Optional[Path], verbose: bool):
    """Re-apply the current rules to every non-manual transaction."""
    try:
        service = _build_service(config, verbose)
        result = service.recategorize()
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(
        f"Changed: {result.changed}, categorized: {result.categorized}, "
        f"needs categorization: {result.needs_categorization}"
    )


@main.command()
@_common_options
@click.option("-n", "--limit", type=int, default=50, show_default=True)
def stuck(config: Optional[Path], verbose: bool, limit: int):
    """List transactions whose push retries were exhausted."""
    try:
        service = _build_service(config, verbose)
        items = service.stuck_pushes()
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    table = Table(title="Stuck Pushes")
    for column in ("Canonical ID", "Source", "Date", "Amount", "Attempts", "Last Error"):
        table.add_column(column)
    for txn in items[:limit]:
        table.add_row(
            txn.canonical_id,
            txn.source,
            str(txn.posted_date),
            _format_amount(txn),
            str(txn.push_attempts),
            _truncate(txn.push_error or "-", 60),
        )
    console.print(table)


@main.command()
@click.argument("canonical_id")
@_common_options
def requeue(canonical_id: str, config: Optional[Path], verbose: bool):
    """Return a stuck transaction to the push queue."""
    try:
        service = _build_service(config, verbose)
        service.requeue(canonical_id)
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(f"[green]Requeued {canonical_id}[/green]")


@main.command()
@click.argument("run_id", required=False)
@_common_options
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Output Excel file path")
def report(run_id: Optional[str], config: Optional[Path], verbose: bool, output: Optional[Path]):
    """Write an Excel report for a run (the latest when RUN_ID is omitted)."""
    try:
        service = _build_service(config, verbose)
        if run_id is None:
            latest = service.list_runs(1)
            run = latest[0] if latest else None
        else:
            run = service.get_run(run_id)
        if run is None:
            console.print("[red]No such run[/red]")
            sys.exit(1)

        generator = ExcelReportGenerator(service.config)
        path = generator.generate_report(
            run, service.store, output or Path(generator.default_filename(run))
        )
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(f"[green]Report generated: {path}[/green]")


@main.command("export-csv")
@_common_options
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=Path("ledger.csv"), show_default=True
)
def export_csv(config: Optional[Path], verbose: bool, output: Path):
    """Export the whole canonical ledger to CSV."""
    try:
        service = _build_service(config, verbose)
        path = export_ledger_csv(service.store.query(), output)
    except LedgerReconError as e:
        _fail(e, verbose)
        return
    console.print(f"[green]Ledger exported: {path}[/green]")


@main.command("test-connections")
@_common_options
def test_connections(config: Optional[Path], verbose: bool):
    """Check credentials and reachability of every enabled connector."""
    try:
        service = _build_service(config, verbose)
        results = service.test_connections()
    except LedgerReconError as e:
        _fail(e, verbose)
        return

    table = Table(title="Connections")
    table.add_column("Connector")
    table.add_column("Status")
    table.add_column("Detail")
    for name, (ok, message) in results.items():
        table.add_row(name, "[green]ok[/green]" if ok else "[red]failed[/red]", message)
    console.print(table)
    if not all(ok for ok, _ in results.values()):
        sys.exit(1)


@main.command("init-config")
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=Path("config.yaml")
)
def init_config(output: Path):
    """Generate a sample configuration file."""
    generate_default_config(output)
    console.print(f"[green]Configuration file generated: {output}[/green]")


if __name__ == "__main__":
    main()
