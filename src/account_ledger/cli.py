"""CLI entry point for the account ledger."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import click

from .core.errors import LedgerError


def _run(config: str | None, action: Callable[[Any], Awaitable[Any]]) -> Any:
    """Open the app, run *action* against it, and release clients."""
    from .main import close_app, open_app
    from .observability.logger import new_operation_id

    async def _main() -> Any:
        new_operation_id()
        app = await open_app(config_path=config)
        try:
            return await action(app)
        finally:
            await close_app(app)

    try:
        return asyncio.run(_main())
    except LedgerError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc


config_option = click.option(
    "--config", default=None, help="Config file path (TOML)",
)


@click.group()
def main() -> None:
    """Event-sourced account ledger."""


@main.command()
@config_option
@click.option("--owner", "owner_ref", required=True, help="Owning identity reference")
@click.option("--contact", required=True, help="Contact identifier")
def create(config: str | None, owner_ref: str, contact: str) -> None:
    """Open an account."""
    account = _run(config, lambda app: app.ledger.create_account(owner_ref, contact))
    click.echo(account.model_dump_json())


@main.command()
@config_option
@click.argument("account_id")
def get(config: str | None, account_id: str) -> None:
    """Show the current state of an account."""
    account = _run(config, lambda app: app.ledger.get_account(account_id))
    if account is None:
        raise click.ClickException(f"Account not found: {account_id}")
    click.echo(account.model_dump_json())


@main.command("list")
@config_option
@click.option("--page-size", default=None, type=int, help="Entries per page")
@click.option("--cursor", default=None, help="Cursor from a previous page")
def list_accounts(config: str | None, page_size: int | None, cursor: str | None) -> None:
    """List accounts, one page at a time."""
    page = _run(config, lambda app: app.ledger.list_accounts(page_size, cursor))
    click.echo(page.model_dump_json())


@main.command()
@config_option
@click.argument("account_id")
@click.argument("amount", type=int)
@click.option("--attempts", default=5, type=int, help="Attempts on version conflict")
def credit(config: str | None, account_id: str, amount: int, attempts: int) -> None:
    """Add tokens to an account."""
    from .ledger import retry_on_conflict

    account = _run(config, lambda app: retry_on_conflict(
        lambda: app.ledger.credit_account(account_id, amount), max_attempts=attempts,
    ))
    click.echo(account.model_dump_json())


@main.command()
@config_option
@click.argument("account_id")
@click.argument("amount", type=int)
@click.option("--attempts", default=5, type=int, help="Attempts on version conflict")
def debit(config: str | None, account_id: str, amount: int, attempts: int) -> None:
    """Remove tokens from an account."""
    from .ledger import retry_on_conflict

    account = _run(config, lambda app: retry_on_conflict(
        lambda: app.ledger.debit_account(account_id, amount), max_attempts=attempts,
    ))
    click.echo(account.model_dump_json())


@main.command()
@config_option
@click.option("--once", is_flag=True, help="Forward a single batch and exit")
def forward(config: str | None, once: bool) -> None:
    """Republish committed ledger events on the event bus."""
    from .main import run_forwarder

    try:
        consumed = asyncio.run(run_forwarder(config_path=config, once=once))
    except LedgerError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc
    if once:
        click.echo(json.dumps({"consumed": consumed}))


if __name__ == "__main__":
    main()
