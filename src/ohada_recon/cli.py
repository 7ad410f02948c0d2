"""
Command-line interface for the OHADA bank reconciliation engine.
"""

from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional
import logging
import sys

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import ReconConfig, generate_default_config, load_config
from .matching.classifier import UnmatchedRecord
from .metrics.aggregator import MetricsAggregator
from .models.metrics import MetricsReport
from .models.reconciliation import Reconciliation
from .models.suggestion import Suggestion
from .service import ReconciliationService
from .snapshot import header_arguments, load_snapshot
from .utils.exceptions import ReconciliationError, SnapshotLoadError
from .utils.logging_config import level_from_name, setup_logging

console = Console()

MAX_ROWS = 20


@click.group()
@click.version_option(version="0.1.0")
def main():
    """OHADA Bank Reconciliation Engine."""
    pass


@main.command()
@click.argument("snapshot", type=click.Path(exists=True, path_type=Path))
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option("--actor", default="cli", show_default=True, help="User recorded on the run")
@click.option(
    "--date-window", type=int, default=None, help="Override the matching date window in days"
)
@click.option(
    "--auto-apply", is_flag=True, help="Apply EXCELLENT single suggestions automatically"
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def match(
    snapshot: Path,
    config: Optional[Path],
    actor: str,
    date_window: Optional[int],
    auto_apply: bool,
    verbose: bool,
):
    """
    Run transaction matching on a reconciliation snapshot.

    SNAPSHOT: YAML/JSON file with a reconciliation header, bank transactions
    and ledger entries
    """
    try:
        recon_config = load_config(config)
        _setup_logging(recon_config, verbose)

        if date_window is not None:
            recon_config.matching.date_window_days = date_window
        if auto_apply:
            recon_config.matching.auto_apply.enabled = True

        data = load_snapshot(snapshot)
        if not data.reconciliation:
            raise SnapshotLoadError("Snapshot has no reconciliation header")

        service = ReconciliationService(config=recon_config)
        service.store.add_bank_transactions(data.bank_transactions)
        service.store.add_gl_entries(data.gl_entries)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Creating reconciliation...", total=None)
            reconciliation = service.create_reconciliation(
                **header_arguments(data.reconciliation), actor=actor
            )
            for item in data.pending_items:
                service.add_pending_item(reconciliation.id, item)
            progress.update(task, completed=True)

            task = progress.add_task("Matching transactions...", total=None)
            result = service.run_matching(reconciliation.id, actor=actor)
            progress.update(task, completed=True)

        _display_reconciliation(service.get_reconciliation(reconciliation.id))
        _display_suggestions(result.suggestions)
        _display_unmatched(result.unmatched)

        for message in data.skipped:
            console.print(f"[yellow]Skipped {message}[/yellow]")
        for skipped in result.skipped:
            console.print(f"[yellow]Skipped {skipped.side.value} {skipped.record_id}: {skipped.reason}[/yellow]")
        for message in result.messages:
            console.print(f"[yellow]{message}[/yellow]")
        console.print(
            f"\n{len(result.suggestions)} suggestion(s) in {result.duration_seconds:.2f}s"
        )

    except ReconciliationError as e:
        console.print(f"[red]Error: {e}[/red]")
        if verbose:
            console.print_exception()
        sys.exit(1)


@main.command()
@click.argument("history", type=click.Path(exists=True, path_type=Path))
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="First day")
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Last day")
@click.option("--company", default=None, help="Restrict to one company")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def metrics(
    history: Path,
    config: Optional[Path],
    start: Optional[datetime],
    end: Optional[datetime],
    company: Optional[str],
    verbose: bool,
):
    """
    Compute matching quality metrics from a suggestion history.

    HISTORY: YAML/JSON file with suggestions and, optionally, match runs
    """
    try:
        recon_config = load_config(config)
        _setup_logging(recon_config, verbose)

        data = load_snapshot(history)
        start_date, end_date = _metrics_period(data, start, end)

        report = MetricsAggregator(recon_config).compute(
            data.suggestions, start_date, end_date, company, data.runs
        )
        _display_metrics(report)

    except ReconciliationError as e:
        console.print(f"[red]Error: {e}[/red]")
        if verbose:
            console.print_exception()
        sys.exit(1)


@main.command("init-config")
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=Path("config.yaml")
)
def init_config(output: Path):
    """Generate a sample configuration file."""
    generate_default_config(output)
    console.print(f"[green]Configuration file generated: {output}[/green]")


def _setup_logging(config: ReconConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else level_from_name(config.logging.level)
    log_file = Path(config.logging.file) if config.logging.file else None
    setup_logging(level, log_file, config.logging.format)


def _metrics_period(data, start: Optional[datetime], end: Optional[datetime]) -> tuple[date, date]:
    """Period from the options, then the history file, then the suggestion dates."""
    created = sorted(s.created_at.date() for s in data.suggestions)

    def resolve(option: Optional[datetime], key: str, fallback: date) -> date:
        if option is not None:
            return option.date()
        value = data.period.get(key)
        if value:
            return value if isinstance(value, date) else date.fromisoformat(str(value))
        return fallback

    today = date.today()
    try:
        return (
            resolve(start, "start", created[0] if created else today),
            resolve(end, "end", created[-1] if created else today),
        )
    except ValueError as e:
        raise SnapshotLoadError(f"Invalid period in history file: {e}") from e


def _amount(value: Optional[Decimal]) -> str:
    return "-" if value is None else f"{value:,.2f}"


def _display_reconciliation(reconciliation: Reconciliation) -> None:
    """Display the reconciliation statement in console."""
    table = Table(title=f"Reconciliation {reconciliation.bank_account_number} "
                        f"({reconciliation.period_start} - {reconciliation.period_end})")
    table.add_column("Line", style="cyan")
    table.add_column("Amount", justify="right")

    table.add_row("Statement balance", _amount(reconciliation.statement_balance))
    table.add_row("+ Cheques issued not cashed", _amount(reconciliation.cheques_issued_not_cashed))
    table.add_row("- Deposits in transit", _amount(reconciliation.deposits_in_transit))
    table.add_row("+ Bank errors", _amount(reconciliation.bank_errors))
    table.add_row("Adjusted bank balance", _amount(reconciliation.adjusted_bank_balance))
    table.add_row("Book balance", _amount(reconciliation.book_balance))
    table.add_row("+ Credits not recorded", _amount(reconciliation.credits_not_recorded))
    table.add_row("- Debits not recorded", _amount(reconciliation.debits_not_recorded))
    table.add_row("- Bank fees not recorded", _amount(reconciliation.bank_fees_not_recorded))
    table.add_row("+ Book errors", _amount(reconciliation.book_errors))
    table.add_row("Adjusted book balance", _amount(reconciliation.adjusted_book_balance))
    style = "green" if reconciliation.is_balanced else "red"
    table.add_row("Difference", f"[{style}]{_amount(reconciliation.difference)}[/{style}]")

    console.print(table)


def _display_suggestions(suggestions: list[Suggestion]) -> None:
    """Display match suggestions in console."""
    if not suggestions:
        console.print("\n[yellow]No suggestions generated[/yellow]")
        return

    table = Table(title="Match Suggestions")
    table.add_column("Band")
    table.add_column("Score", justify="right")
    table.add_column("Type")
    table.add_column("Bank")
    table.add_column("Ledger")
    table.add_column("Variance", justify="right")
    table.add_column("Status")
    table.add_column("Reason")

    for suggestion in suggestions[:MAX_ROWS]:
        table.add_row(
            suggestion.confidence_band.name if suggestion.confidence_band else "-",
            f"{suggestion.confidence_score:.2f}",
            suggestion.match_type.name,
            ", ".join(suggestion.bank_transaction_ids),
            ", ".join(suggestion.gl_entry_ids),
            _amount(suggestion.amount_variance),
            suggestion.status.value,
            (
                suggestion.matching_reason[:50] + "..."
                if len(suggestion.matching_reason) > 50
                else suggestion.matching_reason
            ),
        )

    console.print(table)

    if len(suggestions) > MAX_ROWS:
        console.print(f"\n... and {len(suggestions) - MAX_ROWS} more suggestions")


def _display_unmatched(unmatched: list[UnmatchedRecord]) -> None:
    """Display unmatched records with their proposed pending item type."""
    if not unmatched:
        return

    table = Table(title="Unmatched Records")
    table.add_column("Side")
    table.add_column("Record")
    table.add_column("Date")
    table.add_column("Amount", justify="right")
    table.add_column("Proposed type")
    table.add_column("Confidence", justify="right")

    for record in unmatched[:MAX_ROWS]:
        table.add_row(
            record.side.value,
            record.record_id,
            str(record.record_date),
            _amount(record.amount),
            record.proposed_type.display_name,
            f"{record.confidence}%",
        )

    console.print(table)

    if len(unmatched) > MAX_ROWS:
        console.print(f"\n... and {len(unmatched) - MAX_ROWS} more records")


def _display_metrics(report: MetricsReport) -> None:
    """Display a metrics report in console."""
    summary = report.global_metrics
    table = Table(title=f"Matching Metrics {report.start_date} - {report.end_date}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Analyses", str(summary.total_analyses))
    table.add_row("Transactions analysed", str(summary.total_transactions_analyzed))
    table.add_row("Suggestions generated", str(summary.total_generated))
    table.add_row("Applied", str(summary.total_applied))
    table.add_row("Rejected", str(summary.total_rejected))
    table.add_row("Pending", str(summary.total_pending))
    table.add_row("Expired", str(summary.total_expired))
    table.add_row("Precision", f"{summary.precision_rate}%")
    table.add_row("Average confidence", f"{summary.average_confidence}")
    if summary.average_run_seconds is not None:
        table.add_row("Average run time", f"{summary.average_run_seconds:.2f}s")
    console.print(table)

    if report.confidence_breakdown:
        bands = Table(title="Confidence Bands")
        bands.add_column("Band")
        bands.add_column("Range")
        bands.add_column("Count", justify="right")
        bands.add_column("Applied", justify="right")
        bands.add_column("Rejected", justify="right")
        bands.add_column("Application rate", justify="right")
        for metric in report.confidence_breakdown:
            bands.add_row(
                metric.key,
                metric.score_range or "-",
                str(metric.count),
                str(metric.applied),
                str(metric.rejected),
                f"{metric.application_rate}%",
            )
        console.print(bands)

    if report.top_rejection_reasons:
        reasons = Table(title="Top Rejection Reasons")
        reasons.add_column("Reason")
        reasons.add_column("Count", justify="right")
        reasons.add_column("Share", justify="right")
        reasons.add_column("Priority")
        reasons.add_column("Suggested action")
        for reason in report.top_rejection_reasons:
            reasons.add_row(
                reason.reason,
                str(reason.count),
                f"{reason.share}%",
                reason.priority,
                reason.suggested_action,
            )
        console.print(reasons)

    console.print("\n[bold]Recommendations[/bold]")
    for recommendation in report.recommendations:
        console.print(f"  - {recommendation}")


if __name__ == "__main__":
    main()
