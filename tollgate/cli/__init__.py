"""Tollgate CLI: operate keys, accounts, usage reports and billing reconciliation.

Entry point registered in pyproject.toml:
    tollgate = "tollgate.cli:app"

Commands:
    tollgate issue-key    : issue an API key for an account
    tollgate disable-key  : deactivate a key and evict it from the cache
    tollgate list-keys    : list an account's keys (id, prefix, status)
    tollgate account      : balance and plan of an account
    tollgate usage        : usage summary and breakdown for an account
    tollgate reconcile    : replay the unbilled usage outbox once
"""

import typer

from tollgate.cli.commands import (
    account_command,
    disable_key_command,
    issue_key_command,
    list_keys_command,
    reconcile_command,
    usage_command,
)

app = typer.Typer(
    name="tollgate",
    help="Tollgate CLI: operate the metering proxy",
    no_args_is_help=True,
)

app.command("issue-key")(issue_key_command)
app.command("disable-key")(disable_key_command)
app.command("list-keys")(list_keys_command)
app.command("account")(account_command)
app.command("usage")(usage_command)
app.command("reconcile")(reconcile_command)
