"""
CLI interface for the directory assistant.

Provides command-line access to the assistant and its admin operations.
"""

import asyncio
import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from directory_assistant.config.loader import AssistantConfig, load_assistant_config
from directory_assistant.core.assistant import AssistantService
from directory_assistant.core.guardrails import AssistantError
from directory_assistant.demo.seed_demo_data import seed_demo_data
from directory_assistant.storage.repository import (
    SettingsRepository,
    initialize_schema,
)

app = typer.Typer()
settings_app = typer.Typer(help="Show or change the assistant settings.")
app.add_typer(settings_app, name="settings")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _config(ctx: typer.Context) -> AssistantConfig:
    return ctx.obj["config"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the YAML service configuration"
    )
):
    """Directory Assistant CLI."""
    try:
        config = load_assistant_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)]
    )
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Directory Assistant - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Check whether the assistant is enabled."""
    config = _config(ctx)
    try:
        settings = SettingsRepository(config.db_path).get_settings()
    except sqlite3.OperationalError:
        console.print("[yellow]Database not initialized.[/] Run `directory-assistant init`.")
        sys.exit(EXIT_CODE_PASS)
    state = "[green]enabled[/]" if settings.enabled else "[red]disabled[/]"
    console.print(f"Assistant is {state} (model {config.provider.model})")


@app.command()
def init(ctx: typer.Context):
    """Initialize the assistant database."""
    try:
        initialize_schema(_config(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Load a small demo directory into the marketplace tables."""
    seed_demo_data(_config(ctx).db_path)
    console.print("[green]✓[/] Demo directory data inserted")


@app.command()
def ask(
    ctx: typer.Context,
    question: str = typer.Argument(..., help="Question for the assistant"),
    identifier: str = typer.Option(
        "cli",
        "--identifier",
        "-i",
        help="Requester identifier used for rate limiting"
    )
):
    """Ask the assistant a question."""
    service = AssistantService.from_config(_config(ctx))

    async def _ask():
        try:
            return await service.ask(question, identifier)
        finally:
            await service.close()

    try:
        result = asyncio.run(_ask())
    except AssistantError as e:
        console.print(f"[yellow]{str(e)}[/]")
        sys.exit(EXIT_CODE_FAIL)

    console.print(result.answer)
    console.print(f"[dim]usage id: {result.usage_id} ({result.source.value})[/]")


@app.command()
def feedback(
    ctx: typer.Context,
    usage_id: str = typer.Argument(..., help="Usage id printed with the answer"),
    useful: bool = typer.Option(True, "--useful/--not-useful", help="Was the answer useful?")
):
    """Attach feedback to an answer."""
    service = AssistantService.from_config(_config(ctx))
    if asyncio.run(service.submit_feedback(usage_id, useful)):
        console.print("[green]✓[/] Feedback recorded")
    else:
        console.print(f"[red]No answer found with usage id {usage_id}[/]")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(
    ctx: typer.Context,
    period: str = typer.Option(
        "today",
        "--period",
        "-p",
        help="Reporting period: today, week or month"
    )
):
    """Show usage and spend for a period."""
    service = AssistantService.from_config(_config(ctx))
    try:
        result = service.get_stats(period)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Assistant usage ({result.period})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Questions", f"{result.total_questions:,}")
    table.add_row("Cost", _format_currency(result.total_cost_usd))
    table.add_row("Avg latency", f"{result.avg_latency_ms:,.0f} ms")
    table.add_row("Input tokens", f"{result.total_input_tokens:,}")
    table.add_row("Output tokens", f"{result.total_output_tokens:,}")
    table.add_row("Unique users", f"{result.unique_identifiers:,}")
    console.print(table)

    if result.top_questions:
        console.print("\n[bold]Top questions[/bold]")
        for question, frequency in result.top_questions:
            console.print(f"  {frequency:>4}  {question}")


@settings_app.command("show")
def settings_show(ctx: typer.Context):
    """Print the active settings."""
    db_path = _config(ctx).db_path
    initialize_schema(db_path)
    settings = SettingsRepository(db_path).get_settings()
    table = Table(title="Assistant settings")
    table.add_column("Setting")
    table.add_column("Value")
    for name, value in vars(settings).items():
        table.add_row(name, str(value))
    console.print(table)


@settings_app.command("set")
def settings_set(
    ctx: typer.Context,
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled"),
    daily_budget: Optional[float] = typer.Option(None, "--daily-budget"),
    monthly_budget: Optional[float] = typer.Option(None, "--monthly-budget"),
    per_minute: Optional[int] = typer.Option(None, "--per-minute"),
    per_hour: Optional[int] = typer.Option(None, "--per-hour"),
    per_day: Optional[int] = typer.Option(None, "--per-day"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns"),
    welcome: Optional[str] = typer.Option(None, "--welcome")
):
    """Update assistant settings in place."""
    partial = {
        key: value
        for key, value in {
            "enabled": enabled,
            "daily_budget_usd": daily_budget,
            "monthly_budget_usd": monthly_budget,
            "rate_limit_per_minute": per_minute,
            "rate_limit_per_hour": per_hour,
            "rate_limit_per_day": per_day,
            "max_tokens_per_question": max_tokens,
            "max_conversation_turns": max_turns,
            "welcome_message": welcome,
        }.items()
        if value is not None
    }
    if not partial:
        console.print("[yellow]Nothing to update[/]")
        sys.exit(EXIT_CODE_PASS)

    db_path = _config(ctx).db_path
    try:
        initialize_schema(db_path)
        SettingsRepository(db_path).update_settings(partial)
    except ValueError as e:
        console.print(f"[red]Invalid settings:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Updated: {', '.join(sorted(partial))}")


def _format_currency(amount: float) -> str:
    """Format spend with enough precision for sub-cent costs."""
    return f"${abs(amount):,.4f}"


if __name__ == "__main__":
    app()
