from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from monzo_sync.adapters.clients.monzo import (
    Account,
    Category,
    Merchant,
    Pot,
    Transaction,
)
from monzo_sync.adapters.db.facade import DB
from monzo_sync.errors import IntegrityViolation
from monzo_sync.tools.sync.reconciler import (
    Reconciler,
    collapse_duplicates,
    infer_pot_for_transaction,
)

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)

# Helper functions


def create_account(account_id: str = "acc_1", *, closed: bool = False) -> Account:
    return Account(
        id=account_id,
        closed=closed,
        created=datetime(2020, 1, 1, tzinfo=UTC),
        description="user_1",
        owner_type="personal",
        currency="GBP",
        country_code="GB",
        account_number="12345678",
        sort_code="040004",
    )


def create_pot(pot_id: str = "pot_1", *, balance: int = 15000) -> Pot:
    return Pot(
        id=pot_id,
        name="Holiday",
        balance=balance,
        currency="GBP",
        deleted=False,
        pot_type="flexible_savings",
    )


def create_transaction(
    txn_id: str = "tx_1",
    *,
    account_id: str = "acc_1",
    amount: int = -1250,
    created: datetime = T0,
    updated: datetime | None = T0,
    category: str = "groceries",
    merchant: Merchant | str | None = None,
    description: str = "TESCO STORES",
    notes: str | None = None,
) -> Transaction:
    return Transaction(
        id=txn_id,
        account_id=account_id,
        amount=amount,
        currency="GBP",
        local_amount=amount,
        local_currency="GBP",
        created=created,
        description=description,
        notes=notes,
        updated=updated,
        category=category,
        merchant=merchant,
    )


def create_reconciler(
    db: DB, overrides: dict[str, str] | None = None
) -> Reconciler:
    return Reconciler(db, overrides)


class TestPlaceholderScenario:
    def test_unseen_category_gets_placeholder_then_enriched(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        txn = create_transaction(category="cat_123")

        # act
        result = reconciler.reconcile(create_account(), [], [txn])

        # assert
        assert result.created == 1
        assert result.placeholder_categories == ["cat_123"]
        category = db.get_category("cat_123")
        assert category is not None
        assert category.name == ""
        stored = db.get_transaction("tx_1")
        assert stored is not None
        assert stored.category_id == "cat_123"

        # act
        enriched = reconciler.enrich_categories(
            [Category(id="cat_123", name="Groceries")]
        )

        # assert
        assert enriched.updated == 1
        category = db.get_category("cat_123")
        assert category is not None
        assert category.name == "Groceries"
        stored = db.get_transaction("tx_1")
        assert stored is not None
        assert stored.category_id == "cat_123"
        assert db.count_rows()["transactions"] == 1

    def test_override_names_placeholder_and_beats_remote_name(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db, {"CAT_123": "Food shop"})

        # act
        reconciler.reconcile(
            create_account(), [], [create_transaction(category="cat_123")]
        )
        placeholder = db.get_category("cat_123")
        reconciler.enrich_categories([Category(id="cat_123", name="Groceries")])
        enriched = db.get_category("cat_123")

        # assert
        assert placeholder is not None
        assert placeholder.name == "Food shop"
        assert enriched is not None
        assert enriched.name == "Food shop"


class TestIdempotence:
    def test_same_batch_twice_changes_nothing(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        pots = [create_pot()]
        txns = [
            create_transaction("tx_1", merchant="merch_1"),
            create_transaction(
                "tx_2",
                created=T0 + timedelta(hours=1),
                merchant=Merchant(id="merch_2", name="Pret", category="eating_out"),
                category="eating_out",
            ),
        ]

        # act
        first = reconciler.reconcile(create_account(), pots, txns)
        counts_after_first = db.count_rows()
        second = reconciler.reconcile(create_account(), pots, txns)

        # assert
        assert (first.created, first.updated) == (2, 0)
        assert [txn.id for txn in first.written] == ["tx_1", "tx_2"]
        assert (second.created, second.updated, second.skipped) == (0, 0, 2)
        assert second.written == []
        assert second.placeholders_created == 0
        assert db.count_rows() == counts_after_first
        assert counts_after_first == {
            "accounts": 1,
            "pots": 1,
            "merchants": 2,
            "categories": 2,
            "transactions": 2,
        }


class TestUpdateByRecency:
    def test_older_update_does_not_overwrite(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        newer = create_transaction(updated=T0 + timedelta(days=2), notes="split")
        older = create_transaction(updated=T0 + timedelta(days=1), notes="stale")
        reconciler.reconcile(create_account(), [], [newer])

        # act
        result = reconciler.reconcile(create_account(), [], [older])

        # assert
        assert result.skipped_stale == 1
        stored = db.get_transaction("tx_1")
        assert stored is not None
        assert stored.notes == "split"

    def test_newer_update_overwrites(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(create_account(), [], [create_transaction()])
        edited = create_transaction(
            updated=T0 + timedelta(days=1), notes="dinner", category="eating_out"
        )

        # act
        result = reconciler.reconcile(create_account(), [], [edited])

        # assert
        assert result.updated == 1
        stored = db.get_transaction("tx_1")
        assert stored is not None
        assert stored.notes == "dinner"
        assert stored.category_id == "eating_out"

    def test_stored_without_updated_accepts_any_update(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(create_account(), [], [create_transaction(updated=None)])

        # act
        result = reconciler.reconcile(
            create_account(), [], [create_transaction(notes="later")]
        )

        # assert
        assert result.updated == 1

    def test_both_without_updated_is_skipped(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(create_account(), [], [create_transaction(updated=None)])

        # act
        result = reconciler.reconcile(
            create_account(), [], [create_transaction(updated=None, notes="x")]
        )

        # assert
        assert result.skipped_stale == 1
        stored = db.get_transaction("tx_1")
        assert stored is not None
        assert stored.notes is None


class TestReconcileRules:
    def test_zero_amount_skipped(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)

        # act
        result = reconciler.reconcile(
            create_account(), [], [create_transaction(amount=0)]
        )

        # assert
        assert result.skipped_zero_amount == 1
        assert result.created == 0
        assert db.get_transaction("tx_1") is None

    def test_pots_overwritten_each_pass(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(create_account(), [create_pot(balance=100)], [])

        # act
        reconciler.reconcile(create_account(), [create_pot(balance=250)], [])

        # assert
        pots = db.list_pots()
        assert [(p.id, p.balance, p.pot_type) for p in pots] == [
            ("pot_1", 250, "flexible_savings")
        ]

    def test_account_closed_flag_refreshed(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(create_account(), [], [])

        # act
        reconciler.reconcile(create_account(closed=True), [], [])

        # assert
        assert db.list_accounts()[0].closed is True

    def test_merchant_id_only_creates_placeholder(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)

        # act
        result = reconciler.reconcile(
            create_account(), [], [create_transaction(merchant="merch_1")]
        )

        # assert
        assert result.placeholder_merchants == ["merch_1"]
        assert db.list_placeholder_merchant_ids() == ["merch_1"]

    def test_expanded_merchant_replaces_placeholder_only(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(
            create_account(), [], [create_transaction("tx_1", merchant="merch_1")]
        )
        expanded = Merchant(id="merch_1", name="Tesco", category="groceries")
        renamed = Merchant(id="merch_1", name="Tesco Express", category="groceries")

        # act
        reconciler.reconcile(
            create_account(), [], [create_transaction("tx_2", merchant=expanded)]
        )
        reconciler.reconcile(
            create_account(), [], [create_transaction("tx_3", merchant=renamed)]
        )

        # assert
        merchant = db.get_merchant("merch_1")
        assert merchant is not None
        assert merchant.name == "Tesco"
        assert db.list_placeholder_merchant_ids() == []

    def test_enrich_merchants_skips_enriched_rows(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        reconciler.reconcile(
            create_account(),
            [],
            [
                create_transaction("tx_1", merchant="merch_1"),
                create_transaction(
                    "tx_2", merchant=Merchant(id="merch_2", name="Pret", category="")
                ),
            ],
        )

        # act
        result = reconciler.enrich_merchants(
            [
                Merchant(id="merch_1", name="Tesco", category="groceries"),
                Merchant(id="merch_2", name="Pret A Manger", category="eating_out"),
            ]
        )

        # assert
        assert (result.updated, result.unchanged) == (1, 1)
        merch_1 = db.get_merchant("merch_1")
        merch_2 = db.get_merchant("merch_2")
        assert merch_1 is not None and merch_1.name == "Tesco"
        assert merch_2 is not None and merch_2.name == "Pret"

    def test_integrity_violation_rolls_back_whole_pass(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        txns = [
            create_transaction("tx_1"),
            create_transaction("tx_2", account_id="acc_other"),
        ]

        # act / assert
        with pytest.raises(IntegrityViolation):
            reconciler.reconcile(create_account(), [create_pot()], txns)

        assert db.count_rows() == {
            "accounts": 0,
            "pots": 0,
            "merchants": 0,
            "categories": 0,
            "transactions": 0,
        }

    def test_pot_links_reported_not_stored(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        transfer = create_transaction("tx_pot", description="pot_1", amount=-5000)

        # act
        result = reconciler.reconcile(create_account(), [create_pot()], [transfer])

        # assert
        assert result.pot_links == {"tx_pot": "pot_1"}


class TestCollapseDuplicates:
    def test_last_fetched_wins_on_equal_created(self) -> None:
        # input
        txns = [
            create_transaction("tx_1", notes="first"),
            create_transaction("tx_2", created=T0 - timedelta(hours=1)),
            create_transaction("tx_1", notes="second"),
        ]

        # act
        collapsed, dropped = collapse_duplicates(txns)

        # assert
        assert dropped == 1
        assert [t.id for t in collapsed] == ["tx_2", "tx_1"]
        assert collapsed[1].notes == "second"

    def test_later_created_wins_regardless_of_fetch_order(self) -> None:
        # input
        txns = [
            create_transaction("tx_1", created=T0 + timedelta(minutes=5), notes="late"),
            create_transaction("tx_1", created=T0, notes="early"),
        ]

        # act
        collapsed, _ = collapse_duplicates(txns)

        # assert
        assert [t.notes for t in collapsed] == ["late"]

    def test_reconcile_writes_winning_duplicate(self, db: DB) -> None:
        # setup
        reconciler = create_reconciler(db)
        txns = [
            create_transaction("tx_1", notes="first"),
            create_transaction("tx_1", notes="second"),
        ]

        # act
        result = reconciler.reconcile(create_account(), [], txns)

        # assert
        assert result.duplicates_collapsed == 1
        assert result.created == 1
        stored = db.get_transaction("tx_1")
        assert stored is not None
        assert stored.notes == "second"


class TestInferPot:
    def test_description_equal_to_pot_id_matches(self) -> None:
        # input
        pots = [create_pot("pot_1"), create_pot("pot_2")]
        txn = create_transaction(description="pot_2")

        # act
        pot = infer_pot_for_transaction(txn, pots)

        # assert
        assert pot is not None
        assert pot.id == "pot_2"

    def test_other_description_does_not_match(self) -> None:
        # input
        txn = create_transaction(description="Transfer to Holiday pot")

        # assert
        assert infer_pot_for_transaction(txn, [create_pot("pot_1")]) is None
