from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import loguru
from loguru import logger

from monzo_sync.adapters.clients.monzo import (
    Account,
    Category,
    Merchant,
    Pot,
    Transaction,
)
from monzo_sync.adapters.db.facade import DB, StoreBatch
from monzo_sync.adapters.db.models import UpsertOutcome


@dataclass(slots=True)
class ReconcileResult:
    """What one account pass wrote."""

    account_id: str
    account_outcome: UpsertOutcome | None = None
    pots_written: int = 0
    created: int = 0
    updated: int = 0
    skipped_stale: int = 0
    skipped_zero_amount: int = 0
    duplicates_collapsed: int = 0
    merchants_written: int = 0
    placeholder_categories: list[str] = field(default_factory=list)
    placeholder_merchants: list[str] = field(default_factory=list)
    # created or updated in this pass, in creation order
    written: list[Transaction] = field(default_factory=list)
    # transaction id -> pot id; best-effort, never persisted as a foreign key
    pot_links: dict[str, str] = field(default_factory=dict)

    @property
    def skipped(self) -> int:
        return self.skipped_stale + self.skipped_zero_amount

    @property
    def placeholders_created(self) -> int:
        return len(self.placeholder_categories) + len(self.placeholder_merchants)


@dataclass(slots=True)
class EnrichResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome is UpsertOutcome.CREATED:
            self.created += 1
        elif outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1


class ReconcileLogger:
    """Handles all logging for Reconciler with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def pass_start(self, account_id: str, pot_count: int, txn_count: int) -> None:
        self._logger.bind(account_id=account_id, pots=pot_count, txns=txn_count).info(
            "Reconciling account {}: {} pots, {} transactions",
            account_id,
            pot_count,
            txn_count,
        )

    def duplicates(self, account_id: str, count: int) -> None:
        self._logger.bind(account_id=account_id, count=count).warning(
            "Collapsed {} duplicate transaction ids in batch for {}",
            count,
            account_id,
        )

    def placeholder(self, kind: str, entity_id: str) -> None:
        self._logger.bind(kind=kind, entity_id=entity_id).debug(
            "Created placeholder {} {}", kind, entity_id
        )

    def pass_complete(self, result: ReconcileResult) -> None:
        self._logger.bind(
            account_id=result.account_id,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            placeholders=result.placeholders_created,
        ).info(
            "Reconciled {}: {} created, {} updated, {} skipped, {} placeholders",
            result.account_id,
            result.created,
            result.updated,
            result.skipped,
            result.placeholders_created,
        )

    def enrich_complete(self, kind: str, result: EnrichResult) -> None:
        self._logger.bind(kind=kind).info(
            "Enriched {}: {} created, {} updated, {} unchanged",
            kind,
            result.created,
            result.updated,
            result.unchanged,
        )


def infer_pot_for_transaction(
    transaction: Transaction, pots: Sequence[Pot]
) -> Pot | None:
    """Guess which pot a transaction moved money to or from.

    The API exposes no pot reference on transactions. Pot transfers carry the
    pot id as their description, so a literal match is the only signal
    available. This is lossy: a transfer with any other description is not
    linked, and the result must never be stored as a foreign key.
    """
    description = transaction.description
    if not description:
        return None
    for pot in pots:
        if pot.id == description:
            return pot
    return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _is_newer(incoming: datetime | None, stored: datetime | None) -> bool:
    """True when an incoming ``updated`` should replace the stored row."""
    if incoming is None:
        return False
    if stored is None:
        return True
    return _as_utc(incoming) > _as_utc(stored)


def collapse_duplicates(
    transactions: Iterable[Transaction],
) -> tuple[list[Transaction], int]:
    """Keep one transaction per id, ordered by creation time.

    Within the batch the last occurrence wins, where "last" means latest
    ``created``, then latest fetch position.
    """
    indexed = sorted(
        enumerate(transactions), key=lambda pair: (_as_utc(pair[1].created), pair[0])
    )
    winners: dict[str, tuple[int, Transaction]] = {}
    for position, txn in indexed:
        winners[txn.id] = (position, txn)
    ordered = sorted(
        winners.values(), key=lambda pair: (_as_utc(pair[1].created), pair[0])
    )
    return [txn for _, txn in ordered], len(indexed) - len(winners)


def _account_values(account: Account) -> dict[str, Any]:
    return {
        "closed": account.closed,
        "created": account.created,
        "description": account.description,
        "owner_type": account.owner_type,
        "account_number": account.account_number,
        "sort_code": account.sort_code,
        "currency": account.currency,
        "country_code": account.country_code,
    }


def _pot_values(pot: Pot) -> dict[str, Any]:
    return {
        "name": pot.name,
        "balance": pot.balance,
        "currency": pot.currency,
        "deleted": pot.deleted,
        "pot_type": pot.pot_type,
    }


def _transaction_values(txn: Transaction) -> dict[str, Any]:
    return {
        "account_id": txn.account_id,
        "merchant_id": txn.merchant_id,
        "amount": txn.amount,
        "currency": txn.currency,
        "local_amount": txn.local_amount,
        "local_currency": txn.local_currency,
        "created": txn.created,
        "description": txn.description,
        "notes": txn.notes,
        "settled": txn.settled,
        "updated": txn.updated,
        "category_id": txn.category,
    }


class Reconciler:
    """Merges fetched Monzo entities into the local store.

    All writes for one account pass go through a single StoreBatch, so the
    pass either commits entirely or leaves no trace.
    """

    def __init__(
        self,
        db: DB,
        category_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self._db = db
        self._overrides = {
            key.lower(): value for key, value in (category_overrides or {}).items()
        }
        self._logger = ReconcileLogger()

    def category_name(self, category_id: str, remote_name: str = "") -> str:
        """Display name for a category: local override first, then remote."""
        return self._overrides.get(category_id.lower(), remote_name)

    def reconcile(
        self,
        account: Account,
        fetched_pots: Sequence[Pot],
        fetched_transactions: Iterable[Transaction],
    ) -> ReconcileResult:
        transactions, duplicate_count = collapse_duplicates(fetched_transactions)
        result = ReconcileResult(
            account_id=account.id, duplicates_collapsed=duplicate_count
        )
        self._logger.pass_start(account.id, len(fetched_pots), len(transactions))
        if duplicate_count:
            self._logger.duplicates(account.id, duplicate_count)

        with self._db.batch() as batch:
            # Parents first so every transaction's account already exists.
            result.account_outcome = batch.upsert_account(
                account.id, _account_values(account)
            )
            for pot in fetched_pots:
                batch.upsert_pot(pot.id, _pot_values(pot))
                result.pots_written += 1

            for txn in transactions:
                self._reconcile_transaction(batch, txn, fetched_pots, result)

        self._logger.pass_complete(result)
        return result

    def _reconcile_transaction(
        self,
        batch: StoreBatch,
        txn: Transaction,
        pots: Sequence[Pot],
        result: ReconcileResult,
    ) -> None:
        if txn.amount == 0:
            # Card verification holds carry no money
            result.skipped_zero_amount += 1
            return

        if batch.has_transaction(txn.id) and not _is_newer(
            txn.updated, batch.transaction_updated(txn.id)
        ):
            result.skipped_stale += 1
            return

        self._resolve_category(batch, txn.category, result)
        self._resolve_merchant(batch, txn, result)

        outcome = batch.upsert_transaction(txn.id, _transaction_values(txn))
        if outcome is UpsertOutcome.CREATED:
            result.created += 1
        elif outcome is UpsertOutcome.UPDATED:
            result.updated += 1
        else:
            result.skipped_stale += 1
            return
        result.written.append(txn)

        pot = infer_pot_for_transaction(txn, pots)
        if pot is not None:
            result.pot_links[txn.id] = pot.id

    def _resolve_category(
        self, batch: StoreBatch, category_id: str, result: ReconcileResult
    ) -> None:
        if batch.ensure_category_placeholder(
            category_id, name=self.category_name(category_id)
        ):
            result.placeholder_categories.append(category_id)
            self._logger.placeholder("category", category_id)

    def _resolve_merchant(
        self, batch: StoreBatch, txn: Transaction, result: ReconcileResult
    ) -> None:
        merchant_id = txn.merchant_id
        if merchant_id is None:
            return

        expanded = txn.expanded_merchant
        if expanded is not None:
            if not batch.has_merchant(merchant_id) or batch.merchant_is_placeholder(
                merchant_id
            ):
                batch.upsert_merchant(
                    merchant_id,
                    {"name": expanded.name, "category": expanded.category},
                )
                result.merchants_written += 1
            return

        if batch.ensure_merchant_placeholder(merchant_id):
            result.placeholder_merchants.append(merchant_id)
            self._logger.placeholder("merchant", merchant_id)

    def enrich_categories(self, categories: Iterable[Category]) -> EnrichResult:
        """Write full category names. Transaction foreign keys are untouched."""
        result = EnrichResult()
        with self._db.batch() as batch:
            for category in categories:
                name = self.category_name(category.id, category.name)
                result.record(batch.upsert_category(category.id, {"name": name}))
        self._logger.enrich_complete("categories", result)
        return result

    def enrich_merchants(self, merchants: Iterable[Merchant]) -> EnrichResult:
        """Fill in placeholder merchants. Enriched merchants are never rewritten."""
        result = EnrichResult()
        with self._db.batch() as batch:
            for merchant in merchants:
                known = batch.has_merchant(merchant.id)
                if known and not batch.merchant_is_placeholder(merchant.id):
                    result.unchanged += 1
                    continue
                result.record(
                    batch.upsert_merchant(
                        merchant.id,
                        {"name": merchant.name, "category": merchant.category},
                    )
                )
        self._logger.enrich_complete("merchants", result)
        return result
