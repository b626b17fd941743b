from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime, time
from decimal import Decimal
import sys

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table
import typer

from monzo_sync.adapters.clients.monzo import MonzoClient, Transaction
from monzo_sync.adapters.clients.monzo_auth import MonzoAuthClient, run_authorization
from monzo_sync.adapters.clients.token_store import TokenStore, load_grant, save_grant
from monzo_sync.adapters.db.facade import DB
from monzo_sync.config import Settings, load_settings
from monzo_sync.errors import MonzoSyncError, Unauthorized
from monzo_sync.tools.sync.reconciler import Reconciler
from monzo_sync.tools.sync.sync_tool import SyncReport, SyncScheduler, SyncWindow

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="monzo-sync: mirror Monzo accounts, pots and transactions into SQLite.",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Configure log output before any command runs."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


@contextmanager
def _exit_on_error() -> Iterator[None]:
    try:
        yield
    except MonzoSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _auth_client(settings: Settings) -> MonzoAuthClient:
    return MonzoAuthClient(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        redirect_uri=settings.redirect_uri,
    )


def _token_store(settings: Settings) -> TokenStore:
    auth_client = _auth_client(settings)
    return TokenStore(
        load_grant(settings.token_path),
        refresher=auth_client.refresh,
        on_refresh=lambda grant: save_grant(settings.token_path, grant),
    )


def _open_db(settings: Settings) -> DB:
    db = DB(settings.database_url, pool_size=settings.pool_size)
    db.migrate()
    return db


def _parse_day(value: str | None, option: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(
            f"expected YYYY-MM-DD, got {value!r}", param_hint=option
        ) from None


def _explicit_window(since: str | None, until: str | None) -> SyncWindow | None:
    since_day = _parse_day(since, "--since")
    until_day = _parse_day(until, "--until")
    if since_day is None:
        if until_day is not None:
            raise typer.BadParameter("--until requires --since", param_hint="--until")
        return None
    start = datetime.combine(since_day, time.min, tzinfo=UTC)
    end = (
        datetime.combine(until_day, time.min, tzinfo=UTC)
        if until_day is not None
        else datetime.now(UTC)
    )
    try:
        return SyncWindow(start, end)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--since") from None


# ISO 4217 minor units where they differ from two
MINOR_UNITS = {
    "BHD": 3,
    "BIF": 0,
    "CLP": 0,
    "DJF": 0,
    "GNF": 0,
    "IQD": 3,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KMF": 0,
    "KRW": 0,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "PYG": 0,
    "RWF": 0,
    "TND": 3,
    "UGX": 0,
    "UYI": 0,
    "VND": 0,
    "VUV": 0,
    "XAF": 0,
    "XOF": 0,
    "XPF": 0,
}


def format_minor(amount: int, currency: str) -> str:
    """Render an amount in minor units, e.g. ``-1250 GBP`` as ``-12.50 GBP``."""
    exponent = MINOR_UNITS.get(currency.upper(), 2)
    value = Decimal(amount).scaleb(-exponent)
    return f"{value:,.{exponent}f} {currency}"


def _describe(txn: Transaction, pot_name: str) -> str:
    # Notes win; pot transfers otherwise show the pot instead of its id
    if txn.notes:
        return txn.notes
    if pot_name:
        return f"Pot:{pot_name}"
    return txn.description


def _render_transactions(report: SyncReport) -> None:
    rows = [(txn, acct) for acct in report.accounts for txn in acct.transactions]
    if not rows:
        return
    rows.sort(key=lambda row: row[0].created)

    table = Table(title="Transactions")
    table.add_column("Date")
    table.add_column("Account")
    table.add_column("Pot")
    table.add_column("Credit", justify="right")
    table.add_column("Debit", justify="right")
    table.add_column("Local", justify="right")
    table.add_column("Merchant")
    table.add_column("Description")
    for txn, acct in rows:
        amount = format_minor(txn.amount, txn.currency)
        local = (
            f"({format_minor(txn.local_amount, txn.local_currency)})"
            if txn.local_currency != txn.currency
            else ""
        )
        merchant = txn.expanded_merchant
        pot_name = acct.pot_name(txn.id)
        table.add_row(
            f"{txn.created:%Y-%m-%d}",
            escape(acct.account_name or acct.account_id),
            escape(pot_name),
            amount if txn.amount >= 0 else "",
            amount if txn.amount < 0 else "",
            local,
            escape(merchant.name) if merchant is not None else "",
            escape(_describe(txn, pot_name)),
        )
    console.print(table)


def _render_report(report: SyncReport) -> None:
    table = Table(title="Sync report")
    table.add_column("Account")
    table.add_column("State")
    table.add_column("Window")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Placeholders", justify="right")
    for acct in report.accounts:
        window = (
            f"{acct.window.since:%Y-%m-%d %H:%M} → {acct.window.until:%Y-%m-%d %H:%M}"
            if acct.window is not None
            else "-"
        )
        state = "cancelled" if acct.cancelled else str(acct.state)
        table.add_row(
            acct.account_id,
            state,
            window,
            str(acct.created),
            str(acct.updated),
            str(acct.skipped),
            str(acct.placeholders),
        )
    console.print(table)

    _render_transactions(report)

    for account_id, error in report.errors.items():
        console.print(f"[red]{account_id}: {error}[/red]")
    for error in report.enrichment_errors:
        console.print(f"[yellow]enrichment: {error}[/yellow]")


@app.command("update")
def update(
    since: str | None = typer.Option(
        None, help="Start of an explicit window (YYYY-MM-DD, inclusive)"
    ),
    until: str | None = typer.Option(
        None, help="End of an explicit window (YYYY-MM-DD, exclusive)"
    ),
    account: list[str] | None = typer.Option(  # noqa: B008
        None, "--account", "-a", help="Only sync these account ids"
    ),
    no_enrich: bool = typer.Option(
        False, "--no-enrich", help="Skip the category and merchant enrichment step"
    ),
) -> None:
    """Fetch new transactions and reconcile them into the local database."""
    window = _explicit_window(since, until)
    with _exit_on_error():
        settings = load_settings()
        db = _open_db(settings)
        token_store = _token_store(settings)
        scheduler = SyncScheduler(
            MonzoClient(token_store),
            db,
            Reconciler(db, settings.category_overrides),
            token_store,
            start_date=settings.start_date,
            window_days=settings.window_days,
            history_days=settings.history_days,
        )
        report = scheduler.run_sync(
            account_selector=account or None,
            explicit_window=window,
            enrich=not no_enrich,
        )

    _render_report(report)
    if not report.success:
        raise typer.Exit(1)


@app.command("balances")
def balances() -> None:
    """Show live balances for open accounts and their pots."""
    with _exit_on_error():
        settings = load_settings()
        client = MonzoClient(_token_store(settings))

        table = Table(title="Balances")
        table.add_column("Account / pot")
        table.add_column("Balance", justify="right")
        table.add_column("Spent today", justify="right")
        totals: dict[str, int] = {}
        for account in client.list_accounts():
            if account.closed:
                continue
            balance = client.get_balance(account.id)
            totals[balance.currency] = totals.get(balance.currency, 0) + balance.balance
            table.add_row(
                escape(account.description or account.id),
                format_minor(balance.balance, balance.currency),
                format_minor(balance.spend_today, balance.currency),
            )
            for pot in client.list_pots(account.id):
                if pot.deleted:
                    continue
                totals[pot.currency] = totals.get(pot.currency, 0) + pot.balance
                table.add_row(
                    f"  {escape(pot.name)}", format_minor(pot.balance, pot.currency), ""
                )

        table.add_section()
        for currency, total in sorted(totals.items()):
            table.add_row("Total", format_minor(total, currency), "")

    console.print(table)


@app.command("auth")
def auth(
    timeout: float = typer.Option(
        300, help="Seconds to wait for the browser redirect"
    ),
) -> None:
    """Authorise with Monzo in the browser and store the access token."""
    with _exit_on_error():
        settings = load_settings()
        typer.echo("Opening the Monzo login page in your browser...")
        grant = run_authorization(
            _auth_client(settings),
            redirect_uri=settings.redirect_uri,
            timeout_seconds=timeout,
        )
        who = MonzoClient(TokenStore(grant)).whoami()
        if not who.authenticated:
            raise Unauthorized("Monzo did not accept the new access token.")
        save_grant(settings.token_path, grant)

    typer.echo(f"Authenticated as {who.user_id}")
    typer.echo(f"Access token saved to {settings.token_path}")
    typer.echo(
        "Approve the login in the Monzo app, then run `monzo-sync update` "
        "within 5 minutes to fetch your full transaction history."
    )


@app.command("reset")
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation"),
) -> None:
    """Drop every table and rebuild the schema. All synced data is lost."""
    with _exit_on_error():
        settings = load_settings()
        if not yes:
            typer.confirm(
                f"This deletes all data in {settings.database_url}. Continue?",
                abort=True,
            )
        DB(settings.database_url, pool_size=settings.pool_size).reset()
    typer.echo("Database reset.")


def main() -> None:
    app()
