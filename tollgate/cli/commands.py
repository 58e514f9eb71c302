"""Operator commands for Tollgate: keys, accounts, usage reports, reconciliation.

Usage:
    tollgate issue-key --account-id 7 --name "CI runner"
    tollgate disable-key --key-id 12
    tollgate list-keys --account-id 7
    tollgate account --account-id 7
    tollgate usage --account-id 7 --period week
    tollgate reconcile --limit 500
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tollgate.cli.client import (
    PERIODS,
    account_profile,
    disable_key,
    issue_key,
    list_keys,
    usage_stats,
)

console = Console()


def issue_key_command(
    account_id: int = typer.Option(..., "--account-id", help="Account that will own the key."),
    name: str = typer.Option("Default Key", "--name", help="Display name for the key."),
) -> None:
    """Issue a new API key.  The raw key is printed exactly once."""
    try:
        raw_key, api_key = issue_key(account_id, name)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print(
        Panel(
            f"[bold]{raw_key}[/bold]\n\n"
            f"id: {api_key.id}   prefix: {api_key.key_prefix}   account: {account_id}\n"
            "[dim]Store this key now. It cannot be shown again.[/dim]",
            title=f"API key '{name}'",
        )
    )


def disable_key_command(
    key_id: int = typer.Option(..., "--key-id", help="Id of the key to disable."),
) -> None:
    """Disable an API key and evict it from the key cache."""
    try:
        api_key = disable_key(key_id)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    console.print(f"Disabled key {api_key.id} ({api_key.key_prefix}…).")


def list_keys_command(
    account_id: int = typer.Option(..., "--account-id", help="Account whose keys to list."),
) -> None:
    """List an account's API keys by id and display prefix."""
    try:
        keys = list_keys(account_id)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    if not keys:
        console.print(f"[dim]Account {account_id} has no API keys.[/dim]")
        return

    table = Table(title=f"API keys for account {account_id}")
    for column in ("ID", "Prefix", "Name", "Active", "Last used"):
        table.add_column(column)
    for key in keys:
        table.add_row(
            str(key.id),
            key.key_prefix,
            key.name,
            "yes" if key.active else "[red]no[/red]",
            key.last_used_at.isoformat(timespec="seconds") if key.last_used_at else "never",
        )
    console.print(table)


def account_command(
    account_id: int = typer.Option(..., "--account-id", help="Account to show."),
) -> None:
    """Show an account's balance and plan."""
    try:
        profile = account_profile(account_id)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    quota = profile["monthly_quota"]
    console.print(
        Panel(
            f"balance: [bold]{profile['balance']:.6f}[/bold]\n"
            f"plan: {profile['plan_name']}   "
            f"rate limit: {profile['rate_limit_per_minute']}/min   "
            f"monthly quota: {quota if quota is not None else 'none'}",
            title=f"Account {profile['id']} ({profile['name']})",
        )
    )


def usage_command(
    account_id: int = typer.Option(..., "--account-id", help="Account to report on."),
    period: str = typer.Option("month", "--period", help="day | week | month | all"),
) -> None:
    """Show usage totals and a per-day/model breakdown for an account."""
    if period not in PERIODS:
        console.print(f"[red]Unknown period '{period}'. Use one of: {', '.join(PERIODS)}[/red]")
        raise typer.Exit(code=2)

    report = usage_stats(account_id, period)
    summary = report["summary"]

    console.print(
        f"[bold]Account {account_id}[/bold] ({period}): "
        f"{summary['total_requests']} requests, "
        f"{summary['total_tokens']} tokens, "
        f"cost {summary['total_cost']:.6f}"
    )
    if not report["stats"]:
        console.print("[dim]No usage recorded in this period.[/dim]")
        return

    table = Table()
    for column in ("Date", "Model", "Provider", "Requests", "Tokens", "Cost"):
        table.add_column(column)
    for row in report["stats"]:
        table.add_row(
            row["date"],
            row["model"],
            row["provider"],
            str(row["total_requests"]),
            str(row["total_tokens"]),
            f"{row['total_cost']:.6f}",
        )
    console.print(table)


def reconcile_command(
    limit: int = typer.Option(100, "--limit", help="Maximum outbox rows to replay."),
) -> None:
    """Replay unbilled usage from the outbox once."""
    from tollgate.billing.pricing import DEFAULT_PRICING  # noqa: PLC0415
    from tollgate.billing.reconcile import run_reconciliation  # noqa: PLC0415
    from tollgate.config import settings  # noqa: PLC0415

    counts = asyncio.run(run_reconciliation(settings, DEFAULT_PRICING, limit))
    console.print(
        f"Replayed {counts['replayed']}, failed {counts['failed']}, skipped {counts['skipped']}."
    )
