"""
CLI interface for the AI credit meter.

Operator access to balances, grants, refunds, the ledger and usage stats.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_meter.config.loader import DEFAULT_CONFIG, MeterConfig, load_meter_config
from ai_credit_meter.config.logs import configure_logging
from ai_credit_meter.core.charging import Caller, ChargeCoordinator
from ai_credit_meter.core.errors import InsufficientCredits
from ai_credit_meter.storage.db import DEFAULT_DB_PATH
from ai_credit_meter.storage.repository import BalanceStore, get_usage_stats, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Populated by the callback before any command runs
_state = {"db_path": DEFAULT_DB_PATH, "config": DEFAULT_CONFIG}


def _coordinator() -> ChargeCoordinator:
    config: MeterConfig = _state["config"]
    return config.charge_coordinator(BalanceStore(_state["db_path"]))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """AI Credit Meter CLI."""
    configure_logging(logging.DEBUG if verbose else logging.WARNING)
    _state["db_path"] = db
    if config:
        try:
            _state["config"] = load_meter_config(config)
        except (OSError, ValueError) as e:
            console.print(f"[red]Error loading config:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        _state["config"] = DEFAULT_CONFIG
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the credit meter database."""
    try:
        initialize_schema(_state["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(user_id: str = typer.Argument(..., help="Registered user id")):
    """Show a user's credit balance."""
    credits = _coordinator().get_balance(user_id)
    console.print(f"{user_id}: [bold]{credits}[/] credits")


@app.command()
def grant(
    user_id: str = typer.Argument(..., help="Registered user id"),
    amount: int = typer.Argument(..., help="Credits to grant"),
    source: str = typer.Option("promotional", "--source", "-s", help="purchase, signup_bonus, promotional or refund"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Ledger description"),
    idempotency_key: Optional[str] = typer.Option(None, "--idempotency-key", "-k", help="Apply at most once per key"),
):
    """Grant credits to a user."""
    try:
        new_balance = _coordinator().grant(
            user_id, amount, source, description=description, idempotency_key=idempotency_key
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Granted {amount} credits to {user_id}. Balance: {new_balance}")


@app.command()
def charge(
    user_id: str = typer.Argument(..., help="Registered user id"),
    feature: str = typer.Argument(..., help="Metered feature"),
):
    """Charge a user for one use of a feature."""
    try:
        result = _coordinator().charge(Caller.registered(user_id), feature)
    except InsufficientCredits as e:
        console.print(f"[red]Insufficient credits:[/] need {e.required}, have {e.available}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] Charged {result.credits_used} credits for {feature}. "
        f"Balance: {result.remaining_balance}"
    )


@app.command()
def refund(
    user_id: str = typer.Argument(..., help="Registered user id"),
    amount: int = typer.Argument(..., help="Credits to refund"),
    reason: str = typer.Option("manual refund", "--reason", "-r", help="Why the credits are returned"),
):
    """Refund credits to a user."""
    try:
        new_balance = _coordinator().refund(user_id, amount, reason)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Refunded {amount} credits to {user_id}. Balance: {new_balance}")


@app.command()
def ledger(
    user_id: str = typer.Argument(..., help="Registered user id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
):
    """Show a user's most recent ledger entries."""
    store = BalanceStore(_state["db_path"])
    entries = store.list_transactions(user_id, limit=limit)
    if not entries:
        console.print(f"\n[bold yellow]No transactions found for {user_id}[/]\n")
        return

    table = Table(title=f"Ledger for {user_id}")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Description")
    for entry in entries:
        style = "red" if entry.amount < 0 else "green"
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.type.value,
            f"[{style}]{entry.amount:+d}[/]",
            entry.description,
        )
    console.print(table)
    console.print(f"Balance: [bold]{store.get_balance(user_id)}[/]  Ledger sum: {store.ledger_sum(user_id)}")


@app.command()
def costs():
    """Show feature costs and credit packages."""
    policy = _state["config"].policy

    features = Table(title="Feature costs")
    features.add_column("Feature")
    features.add_column("Credits", justify="right")
    for name, cost in sorted(policy.feature_costs.items()):
        features.add_row(name, str(cost))
    features.add_row("[dim](any other feature)[/]", str(policy.default_cost))
    console.print(features)

    packages = Table(title="Credit packages")
    packages.add_column("Package")
    packages.add_column("Name")
    packages.add_column("Credits", justify="right")
    packages.add_column("Price", justify="right")
    for package in policy.packages.values():
        packages.add_row(
            package.package_id,
            package.name,
            str(package.credits),
            _format_cents(package.price_cents),
        )
    console.print(packages)


@app.command()
def usage(
    days: int = typer.Option(30, "--days", help="Look-back window in days"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter to one feature"),
):
    """Summarize AI usage telemetry."""
    stats = get_usage_stats(days=days, endpoint=feature, db_path=_state["db_path"])
    if stats["total_requests"] == 0:
        console.print("\n[bold yellow]No AI usage recorded in this period[/]\n")
        return

    console.print(f"\n[bold]AI usage, last {days} days[/bold]")
    console.print("-" * 40)
    console.print(f"Requests: {stats['total_requests']:,}")
    console.print(f"Tokens: {stats['total_tokens']:,}")
    console.print(f"Cost: ${stats['total_cost_usd']:,.4f}")


def _format_cents(cents: int) -> str:
    return f"${cents / 100:,.2f}"


if __name__ == "__main__":
    app()
