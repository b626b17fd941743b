from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
import enum
import threading

import loguru
from loguru import logger

from monzo_sync.adapters.clients.monzo import (
    Account,
    Merchant,
    MonzoClient,
    Transaction,
)
from monzo_sync.adapters.clients.token_store import (
    DEFAULT_HISTORY_DAYS,
    TokenStore,
    utcnow,
)
from monzo_sync.adapters.db.facade import DB
from monzo_sync.errors import (
    IntegrityViolation,
    MonzoSyncError,
    RemoteRejected,
    RemoteUnavailable,
    Unauthorized,
    WindowRejected,
)
from monzo_sync.tools.sync.reconciler import Reconciler, ReconcileResult

DEFAULT_WINDOW_DAYS = 30

AccountSelector = Collection[str] | Callable[[Account], bool] | None

# Failures that stay scoped to one account pass.
ISOLATED_ERRORS = (
    WindowRejected,
    RemoteUnavailable,
    RemoteRejected,
    IntegrityViolation,
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class SyncWindow:
    """Half-open creation-time range ``[since, until)`` in UTC."""

    since: datetime
    until: datetime

    def __post_init__(self) -> None:
        since = _as_utc(self.since)
        until = _as_utc(self.until)
        if since > until:
            raise ValueError(f"Window starts after it ends: {since} > {until}")
        object.__setattr__(self, "since", since)
        object.__setattr__(self, "until", until)

    @classmethod
    def from_dates(cls, since: date, until: date) -> SyncWindow:
        """Window covering whole days ``since`` up to but excluding ``until``."""
        return cls(
            datetime.combine(since, time.min, tzinfo=UTC),
            datetime.combine(until, time.min, tzinfo=UTC),
        )

    def contains(self, value: datetime) -> bool:
        return self.since <= _as_utc(value) < self.until

    def chunks(self, days: int) -> list[SyncWindow]:
        """Split into consecutive windows of at most ``days`` days."""
        if days <= 0:
            raise ValueError(f"days must be positive, got {days}")
        step = timedelta(days=days)
        pieces: list[SyncWindow] = []
        start = self.since
        while start < self.until:
            end = min(start + step, self.until)
            pieces.append(SyncWindow(start, end))
            start = end
        return pieces


class PassState(enum.StrEnum):
    IDLE = "idle"
    WINDOW_COMPUTED = "window_computed"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(slots=True)
class AccountReport:
    account_id: str
    account_name: str = ""
    state: PassState = PassState.IDLE
    window: SyncWindow | None = None
    created: int = 0
    updated: int = 0
    skipped: int = 0
    placeholders: int = 0
    pot_links: dict[str, str] = field(default_factory=dict)
    pot_names: dict[str, str] = field(default_factory=dict)
    transactions: list[Transaction] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.state is PassState.COMMITTED

    def pot_name(self, transaction_id: str) -> str:
        """Name of the pot a written transaction was linked to, or ""."""
        pot_id = self.pot_links.get(transaction_id)
        if pot_id is None:
            return ""
        return self.pot_names.get(pot_id, "")

    def apply(self, result: ReconcileResult) -> None:
        self.created = result.created
        self.updated = result.updated
        self.skipped = result.skipped
        self.placeholders = result.placeholders_created
        self.pot_links = dict(result.pot_links)
        self.transactions = list(result.written)


@dataclass(slots=True)
class SyncReport:
    """Outcome of one ``run_sync`` call."""

    accounts: list[AccountReport] = field(default_factory=list)
    enrichment_errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """True when every selected account committed.

        Enrichment errors do not count against success.
        """
        return not self.cancelled and all(acct.success for acct in self.accounts)

    @property
    def created(self) -> int:
        return sum(acct.created for acct in self.accounts)

    @property
    def updated(self) -> int:
        return sum(acct.updated for acct in self.accounts)

    @property
    def skipped(self) -> int:
        return sum(acct.skipped for acct in self.accounts)

    @property
    def errors(self) -> dict[str, str]:
        return {
            acct.account_id: acct.error
            for acct in self.accounts
            if acct.error is not None
        }

    def for_account(self, account_id: str) -> AccountReport | None:
        for acct in self.accounts:
            if acct.account_id == account_id:
                return acct
        return None


class SyncLogger:
    """Handles all logging for SyncScheduler with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def run_start(self, account_count: int) -> None:
        self._logger.bind(accounts=account_count).info(
            "Starting sync for {} accounts", account_count
        )

    def pass_start(self, account_id: str, window: SyncWindow) -> None:
        self._logger.bind(
            account_id=account_id,
            since=window.since.isoformat(),
            until=window.until.isoformat(),
        ).info(
            "Syncing {} from {} to {}",
            account_id,
            window.since.isoformat(),
            window.until.isoformat(),
        )

    def fetched(self, account_id: str, pot_count: int, txn_count: int) -> None:
        self._logger.bind(account_id=account_id, pots=pot_count, txns=txn_count).info(
            "Fetched {} pots and {} transactions for {}",
            pot_count,
            txn_count,
            account_id,
        )

    def pass_failed(self, account_id: str, state: PassState, error: Exception) -> None:
        self._logger.bind(account_id=account_id, state=str(state)).error(
            "Sync failed for {} while {}: {}", account_id, state, error
        )

    def watermark_advanced(self, account_id: str, until: datetime) -> None:
        self._logger.bind(account_id=account_id, until=until.isoformat()).info(
            "Watermark for {} advanced to {}", account_id, until.isoformat()
        )

    def cancelled(self, remaining: int) -> None:
        self._logger.bind(remaining=remaining).warning(
            "Sync cancelled; {} accounts not processed", remaining
        )

    def enrichment_failed(self, what: str, error: Exception) -> None:
        self._logger.bind(what=what).warning(
            "Enrichment of {} failed: {}", what, error
        )


class SyncScheduler:
    """Drives one reconciliation pass per account over a computed window.

    Accounts are processed sequentially. Each pass fetches everything for its
    window before writing anything, commits in one transaction, and only then
    advances that account's watermark.
    """

    def __init__(
        self,
        client: MonzoClient,
        db: DB,
        reconciler: Reconciler,
        token_store: TokenStore,
        *,
        start_date: date | None = None,
        window_days: int = DEFAULT_WINDOW_DAYS,
        history_days: int = DEFAULT_HISTORY_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._db = db
        self._reconciler = reconciler
        self._token_store = token_store
        self._start_date = start_date
        self._window_days = window_days
        self._history_days = history_days
        self._clock = clock
        self._logger = SyncLogger()

    def default_window(self, account_id: str, now: datetime) -> SyncWindow:
        """``[watermark or start date or now - history, now)``."""
        since = self._db.get_watermark(account_id)
        if since is None and self._start_date is not None:
            since = datetime.combine(self._start_date, time.min, tzinfo=UTC)
        if since is None:
            since = now - timedelta(days=self._history_days)
        return SyncWindow(min(_as_utc(since), _as_utc(now)), now)

    def check_window(self, window: SyncWindow, now: datetime) -> None:
        """Raise WindowRejected if the current grant cannot read ``window``."""
        grant = self._token_store.grant
        if grant is None:
            raise Unauthorized("No access token stored. Run `monzo-sync auth` first.")
        if not grant.permits_window(
            window.since, now, history_days=self._history_days
        ):
            raise WindowRejected(
                f"Window starting {window.since.isoformat()} is older than the "
                f"{self._history_days} days Monzo allows outside the post-auth "
                "grace period. Re-run `monzo-sync auth` and sync straight away "
                "to fetch full history.",
                since=window.since,
                until=window.until,
            )

    def run_sync(
        self,
        account_selector: AccountSelector = None,
        explicit_window: SyncWindow | None = None,
        cancel: threading.Event | None = None,
        *,
        enrich: bool = True,
    ) -> SyncReport:
        """Sync the selected accounts.

        Args:
            account_selector: None for every open account, a collection of
                account ids, or a predicate over accounts.
            explicit_window: Fetch exactly this window instead of the
                watermark-derived one.
            cancel: Checked between account passes; once set, remaining
                accounts are reported as cancelled.
            enrich: Fetch the category set and placeholder merchants after
                the passes.

        Raises:
            Unauthorized: The token is missing or cannot be refreshed. This
                aborts the whole run.
        """
        now = self._clock()
        accounts = _select_accounts(self._client.list_accounts(), account_selector)
        self._logger.run_start(len(accounts))

        report = SyncReport()
        for index, account in enumerate(accounts):
            if cancel is not None and cancel.is_set():
                remaining = accounts[index:]
                report.accounts.extend(
                    AccountReport(account_id=acct.id, cancelled=True)
                    for acct in remaining
                )
                report.cancelled = True
                self._logger.cancelled(len(remaining))
                break
            report.accounts.append(self._run_pass(account, explicit_window, now))

        if enrich and not report.cancelled:
            self._enrich(report)
        return report

    def _run_pass(
        self,
        account: Account,
        explicit_window: SyncWindow | None,
        now: datetime,
    ) -> AccountReport:
        acct = AccountReport(account_id=account.id, account_name=account.description)
        try:
            window = explicit_window or self.default_window(account.id, now)
            acct.window = window
            acct.state = PassState.WINDOW_COMPUTED
            self._logger.pass_start(account.id, window)
            self.check_window(window, now)

            acct.state = PassState.FETCHING
            pots = self._client.list_pots(account.id)
            acct.pot_names = {pot.id: pot.name for pot in pots}
            transactions = self._fetch_window(account.id, window)
            self._logger.fetched(account.id, len(pots), len(transactions))

            acct.state = PassState.RECONCILING
            result = self._reconciler.reconcile(account, pots, transactions)
        except ISOLATED_ERRORS as e:
            self._logger.pass_failed(account.id, acct.state, e)
            acct.state = PassState.FAILED
            acct.error = str(e)
            return acct

        acct.state = PassState.COMMITTED
        acct.apply(result)
        self._advance_watermark(account.id, window.until)
        return acct

    def _fetch_window(self, account_id: str, window: SyncWindow) -> list[Transaction]:
        transactions: list[Transaction] = []
        for chunk in window.chunks(self._window_days):
            transactions.extend(
                self._client.list_transactions(account_id, chunk.since, chunk.until)
            )
        return transactions

    def _advance_watermark(self, account_id: str, until: datetime) -> None:
        current = self._db.get_watermark(account_id)
        # An explicit backfill window never moves the watermark backwards
        if current is not None and current >= until:
            return
        self._db.set_watermark(account_id, until)
        self._logger.watermark_advanced(account_id, until)

    def _enrich(self, report: SyncReport) -> None:
        try:
            self._reconciler.enrich_categories(self._client.get_category_set())
        except MonzoSyncError as e:
            self._logger.enrichment_failed("categories", e)
            report.enrichment_errors.append(f"categories: {e}")

        merchants: list[Merchant] = []
        for merchant_id in self._db.list_placeholder_merchant_ids():
            try:
                merchants.append(self._client.get_merchant(merchant_id))
            except RemoteRejected as e:
                # Not retried on later runs
                self._db.record_merchant_lookup_failure(merchant_id, e.status)
                self._logger.enrichment_failed(f"merchant {merchant_id}", e)
                report.enrichment_errors.append(f"merchant {merchant_id}: {e}")
            except MonzoSyncError as e:
                self._logger.enrichment_failed(f"merchant {merchant_id}", e)
                report.enrichment_errors.append(f"merchant {merchant_id}: {e}")
        if not merchants:
            return
        try:
            self._reconciler.enrich_merchants(merchants)
        except MonzoSyncError as e:
            self._logger.enrichment_failed("merchants", e)
            report.enrichment_errors.append(f"merchants: {e}")


def _select_accounts(
    accounts: list[Account], selector: AccountSelector
) -> list[Account]:
    if selector is None:
        return [acct for acct in accounts if not acct.closed]
    if callable(selector):
        return [acct for acct in accounts if selector(acct)]
    wanted = {selector} if isinstance(selector, str) else set(selector)
    return [acct for acct in accounts if acct.id in wanted]
