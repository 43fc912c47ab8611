"""
CLI interface for AI Spend Meter.

Provides command-line access to ingestion, spend summaries and pricing state.
"""

import logging
import sys
import time
from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_spend_meter.config.loader import AppConfig, StoreConfig, default_config_yaml, load_config
from ai_spend_meter.core.aggregation import AggregationEngine, Period, SessionLevel, SessionUsage, SpendSummary
from ai_spend_meter.core.ingestion import IngestionReport
from ai_spend_meter.core.token_counter import TokenCounts
from ai_spend_meter.service import AccessDeniedError, SpendMeterService
from ai_spend_meter.storage.repository import StoreError, UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = Path.home() / ".ai-spend-meter" / "config.yaml"

_CONFIG_ERRORS = (FileNotFoundError, ValueError, yaml.YAMLError)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the usage database path"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """AI Spend Meter CLI."""
    ctx.obj = {"config": config, "db": db, "verbose": verbose}
    if ctx.invoked_subcommand is None:
        console.print("AI Spend Meter - Use --help to see available commands")


def _load(ctx: typer.Context) -> AppConfig:
    """Load configuration, apply CLI overrides and set up logging."""
    options = ctx.obj or {}
    try:
        config = load_config(options.get("config"))
    except _CONFIG_ERRORS as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if options.get("db"):
        config = replace(config, store=StoreConfig(path=options["db"]))

    level = "DEBUG" if options.get("verbose") else config.logging.level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    return config


def _open_repository(config: AppConfig) -> UsageRepository:
    repository = UsageRepository(config.db_path)
    repository.initialize_schema()
    return repository


@app.command()
def init(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file"
    ),
):
    """Write a default configuration file and initialize the database."""
    config_path = Path((ctx.obj or {}).get("config") or DEFAULT_CONFIG_PATH)
    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/] {config_path} (use --force to overwrite)")
    else:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(default_config_yaml(), encoding="utf-8")
        console.print(f"[green]✓[/] Wrote configuration to {config_path}")

    config = _load(ctx)
    try:
        _open_repository(config)
    except StoreError as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Database initialized at {config.db_path}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def ingest(
    ctx: typer.Context,
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Skip the remote pricing fetch; use cached or bundled prices"
    ),
):
    """Ingest new log content once and report what changed."""
    config = _load(ctx)
    service = SpendMeterService(config)
    try:
        if not offline:
            service.resolver.load()
        future = service.start(watch=False, refresh_pricing=False)
        report = future.result()
    except (StoreError, AccessDeniedError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.stop()

    _display_report(report)
    console.print(f"Pricing source: [bold]{service.current_pricing_provenance().value}[/]")
    sys.exit(EXIT_CODE_OK)


@app.command()
def summary(
    ctx: typer.Context,
    period: Optional[str] = typer.Option(
        None,
        "--period",
        "-p",
        help="Show the model breakdown for one period: today, thisWeek or thisMonth"
    ),
):
    """Show spend for today, this week and this month."""
    config = _load(ctx)
    selected = None
    if period is not None:
        try:
            selected = Period(period)
        except ValueError:
            valid = [p.value for p in Period]
            console.print(f"[red]Unknown period:[/] {period} (expected one of {valid})")
            sys.exit(EXIT_CODE_FAIL)

    try:
        engine = AggregationEngine(_open_repository(config))
        summaries = engine.summarize_all()
        session = _session_usage(engine, config)
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if all(s.record_count == 0 for s in summaries.values()):
        console.print("\n[bold yellow]No usage recorded yet[/]")
        console.print("\nRun `ai-spend-meter ingest` to read your session logs.\n")
        sys.exit(EXIT_CODE_OK)

    table = Table(title="AI Spend")
    table.add_column("Period")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Records", justify="right")
    for item in summaries.values():
        table.add_row(
            _period_label(item.period),
            _format_currency(item.total_cost),
            _format_tokens(item.total_tokens),
            str(item.record_count),
        )
    console.print(table)
    _display_session(session)

    _display_breakdown(summaries[selected or Period.THIS_MONTH])
    sys.exit(EXIT_CODE_OK)


@app.command()
def history(
    ctx: typer.Context,
    by: str = typer.Option(
        "day",
        "--by",
        help="Bucket size: hour, day or month"
    ),
    year: Optional[int] = typer.Option(None, "--year", help="Year to show"),
    month: Optional[int] = typer.Option(None, "--month", help="Month to show (1-12)"),
    day: Optional[int] = typer.Option(None, "--day", help="Day of month to show"),
):
    """Show spend over time: hours of a day, days of a month or months of a year."""
    config = _load(ctx)
    today = date.today()
    try:
        target = date(year or today.year, month or today.month, day or (today.day if not (year or month) else 1))
    except ValueError as e:
        console.print(f"[red]Invalid date:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        engine = AggregationEngine(_open_repository(config))
        if by == "hour":
            values = engine.hourly_spend(target)
            labels = [f"{hour:02d}:00" for hour in range(24)]
            title = f"Hourly spend {target.isoformat()}"
        elif by == "day":
            values = engine.daily_spend(target.year, target.month)
            labels = [date(target.year, target.month, d).isoformat() for d in range(1, len(values) + 1)]
            title = f"Daily spend {target.year}-{target.month:02d}"
        elif by == "month":
            values = engine.monthly_spend(target.year)
            labels = [f"{target.year}-{m:02d}" for m in range(1, 13)]
            title = f"Monthly spend {target.year}"
        else:
            console.print(f"[red]Unknown bucket size:[/] {by} (expected hour, day or month)")
            sys.exit(EXIT_CODE_FAIL)
        earliest = engine.earliest_data_date()
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=title)
    table.add_column("When")
    table.add_column("Cost", justify="right")
    for label, value in zip(labels, values):
        if value:
            table.add_row(label, _format_currency(value))
    console.print(table)
    console.print(f"Total: [bold]{_format_currency(sum(values))}[/]")
    if earliest is not None:
        console.print(f"[dim]Data available since {earliest.isoformat()}[/]")
    sys.exit(EXIT_CODE_OK)


@app.command()
def pricing(
    ctx: typer.Context,
    refresh: bool = typer.Option(
        False,
        "--refresh",
        help="Fetch the remote pricing document now"
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Show unit prices for one model"
    ),
):
    """Show which pricing source is active."""
    config = _load(ctx)
    service = SpendMeterService(config)
    provenance = service.resolver.load() if refresh else service.resolver.load_offline()
    table_snapshot = service.resolver.snapshot()

    console.print(f"Pricing source: [bold]{provenance.value}[/] ({len(table_snapshot)} models)")
    if table_snapshot.fetched_at is not None:
        console.print(f"Fetched at: {table_snapshot.fetched_at.isoformat()}")

    if model is not None:
        entry = table_snapshot.lookup(model)
        if entry is None:
            console.print(f"[yellow]No pricing for model {model}[/]")
            sys.exit(EXIT_CODE_FAIL)
        table = Table(title=model)
        table.add_column("Category")
        table.add_column("USD per 1M tokens", justify="right")
        table.add_row("input", _format_unit_price(entry.input_cost_per_token))
        table.add_row("output", _format_unit_price(entry.output_cost_per_token))
        table.add_row("cache write", _format_unit_price(entry.cache_creation_cost_per_token))
        table.add_row("cache read", _format_unit_price(entry.cache_read_cost_per_token))
        console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation"
    ),
):
    """Clear all stored usage and re-ingest every log from scratch."""
    config = _load(ctx)
    if not yes and not typer.confirm("Delete all stored usage and re-read every log?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_OK)

    service = SpendMeterService(config)
    try:
        service.start(watch=False, refresh_pricing=False, initial_scan=False)
        report = service.reset()
    except (StoreError, AccessDeniedError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.stop()

    console.print("[green]✓[/] Usage store reset")
    _display_report(report)
    sys.exit(EXIT_CODE_OK)


@app.command()
def watch(
    ctx: typer.Context,
    interval: float = typer.Option(
        30.0,
        "--interval",
        "-i",
        help="Seconds between printed summaries"
    ),
):
    """Watch the log directories and print spend as it changes."""
    config = _load(ctx)
    service = SpendMeterService(config)
    try:
        service.start()
    except (StoreError, AccessDeniedError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Watching {', '.join(config.log_directories)} (Ctrl-C to stop)")
    try:
        while True:
            today = service.summarize(Period.TODAY)
            month = service.summarize(Period.THIS_MONTH)
            console.print(
                f"today {_format_currency(today.total_cost)} | "
                f"month {_format_currency(month.total_cost)} | "
                f"{service.record_count()} records | "
                f"pricing {service.current_pricing_provenance().value}"
            )
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("Stopping")
    finally:
        service.stop()
    sys.exit(EXIT_CODE_OK)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_unit_price(per_token: Optional[Decimal]) -> str:
    if per_token is None:
        return "-"
    return f"{per_token * 1_000_000:,.2f}"


def _format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def _period_label(period: Period) -> str:
    return {
        Period.TODAY: "Today",
        Period.THIS_WEEK: "This week",
        Period.THIS_MONTH: "This month",
    }[period]


def _display_breakdown(item: SpendSummary) -> None:
    """Per-model table for one period."""
    if not item.per_model:
        return
    table = Table(title=f"{_period_label(item.period)} by model")
    table.add_column("Model")
    table.add_column("Cost", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cached", justify="right")
    for spend in item.per_model:
        tokens: TokenCounts = spend.tokens
        cost = "unpriced" if spend.unpriced_count == spend.record_count else _format_currency(spend.cost)
        table.add_row(
            spend.model,
            cost,
            _format_tokens(tokens.input),
            _format_tokens(tokens.output),
            _format_tokens(tokens.cached),
        )
    console.print(table)
    if item.has_unpriced:
        console.print(f"[yellow]{item.unpriced_count} record(s) have no known price and are not included in cost[/]")


def _session_usage(engine: AggregationEngine, config: AppConfig) -> SessionUsage:
    return engine.session_usage(
        token_limit=config.session.token_limit,
        window_hours=config.session.window_hours,
        warning_ratio=config.session.warning_threshold,
        critical_ratio=config.session.critical_threshold,
    )


_LEVEL_STYLES = {
    SessionLevel.NORMAL: "green",
    SessionLevel.WARNING: "yellow",
    SessionLevel.CRITICAL: "red",
}


def _display_session(usage: SessionUsage) -> None:
    hours = usage.window.total_seconds() / 3600
    style = _LEVEL_STYLES[usage.level]
    console.print(
        f"Session (last {hours:g}h): [{style}]{_format_tokens(usage.tokens_used)} / "
        f"{_format_tokens(usage.token_limit)} tokens ({usage.ratio:.0%}, {usage.level.value})[/]"
    )


def _display_report(report: IngestionReport) -> None:
    console.print(
        f"Read {report.files_read} file(s): {report.inserted} new record(s), "
        f"{report.duplicates} duplicate(s), {report.rejected} rejected"
    )
    if report.malformed:
        console.print(f"[yellow]{report.malformed} malformed line(s) skipped[/]")
    if report.files_failed:
        console.print(f"[yellow]{report.files_failed} file(s) could not be read[/]")
    if report.unpriced:
        console.print(f"[yellow]{report.unpriced} record(s) stored without a price[/]")


if __name__ == "__main__":
    app()
