from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Connection, MetaData, create_engine, event, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from monzo_sync.adapters.db.models import (
    Account,
    Base,
    Category,
    Merchant,
    MerchantLookupFailure,
    Pot,
    SyncWatermark,
    Transaction,
    UpsertOutcome,
    from_db_time,
    to_db_time,
)
from monzo_sync.errors import IntegrityViolation

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

M = TypeVar("M", bound=Base)


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///") or ":memory:" in url


def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class StoreBatch:
    """Upsert primitives bound to one session, so one account pass commits
    or rolls back as a unit.

    Every write is flushed immediately; a foreign-key failure surfaces at the
    offending call instead of at commit time.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def _merge(
        self, model: type[M], pk: str, values: Mapping[str, Any]
    ) -> UpsertOutcome:
        row = self._session.get(model, pk)
        if row is None:
            self._session.add(model(id=pk, **values))
            self._session.flush()
            return UpsertOutcome.CREATED

        changed = False
        for key, value in values.items():
            if getattr(row, key) != value:
                setattr(row, key, value)
                changed = True
        if not changed:
            return UpsertOutcome.UNCHANGED
        self._session.flush()
        return UpsertOutcome.UPDATED

    def upsert_account(
        self, account_id: str, values: Mapping[str, Any]
    ) -> UpsertOutcome:
        return self._merge(Account, account_id, _normalize_times(values))

    def upsert_pot(self, pot_id: str, values: Mapping[str, Any]) -> UpsertOutcome:
        return self._merge(Pot, pot_id, values)

    def upsert_merchant(
        self, merchant_id: str, values: Mapping[str, Any]
    ) -> UpsertOutcome:
        return self._merge(Merchant, merchant_id, values)

    def upsert_category(
        self, category_id: str, values: Mapping[str, Any]
    ) -> UpsertOutcome:
        return self._merge(Category, category_id, values)

    def upsert_transaction(
        self, transaction_id: str, values: Mapping[str, Any]
    ) -> UpsertOutcome:
        return self._merge(Transaction, transaction_id, _normalize_times(values))

    def ensure_merchant_placeholder(self, merchant_id: str) -> bool:
        """Insert an empty merchant row unless one exists. True if inserted."""
        if self.has_merchant(merchant_id):
            return False
        self._session.add(Merchant(id=merchant_id, name="", category=""))
        self._session.flush()
        return True

    def ensure_category_placeholder(self, category_id: str, name: str = "") -> bool:
        """Insert a category row with ``name`` unless one exists. True if inserted."""
        if self.has_category(category_id):
            return False
        self._session.add(Category(id=category_id, name=name))
        self._session.flush()
        return True

    def has_merchant(self, merchant_id: str) -> bool:
        return self._session.get(Merchant, merchant_id) is not None

    def has_category(self, category_id: str) -> bool:
        return self._session.get(Category, category_id) is not None

    def merchant_is_placeholder(self, merchant_id: str) -> bool:
        merchant = self._session.get(Merchant, merchant_id)
        return merchant is not None and merchant.is_placeholder

    def has_transaction(self, transaction_id: str) -> bool:
        return self._session.get(Transaction, transaction_id) is not None

    def transaction_updated(self, transaction_id: str) -> datetime | None:
        """Return the stored ``updated`` timestamp (UTC) of a transaction."""
        txn = self._session.get(Transaction, transaction_id)
        if txn is None:
            return None
        return from_db_time(txn.updated)


def _normalize_times(values: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: to_db_time(value) if isinstance(value, datetime) else value
        for key, value in values.items()
    }


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str, pool_size: int = 4) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///monzo.db")
            pool_size: Maximum number of pooled connections. In-memory
                databases always share a single connection.
        """
        self._url = url
        if _is_memory_url(url):
            self._engine = create_engine(
                url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(
                url,
                echo=False,
                connect_args={"check_same_thread": False},
                pool_size=pool_size,
                max_overflow=0,
            )
        event.listen(self._engine, "connect", _enable_foreign_keys)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def url(self) -> str:
        return self._url

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise IntegrityViolation(f"Write rejected by the database: {e.orig}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def batch(self) -> Iterator[StoreBatch]:
        """Open a StoreBatch; commits on clean exit, rolls back on any error."""
        with self.session() as session:
            yield StoreBatch(session)

    # Schema -----------------------------------------------------------------

    def _alembic_config(self, connection: Connection) -> Config:
        cfg = Config()
        cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
        cfg.set_main_option("sqlalchemy.url", self._url)
        cfg.attributes["connection"] = connection
        return cfg

    def migrate(self, revision: str = "head") -> None:
        """Apply migrations up to ``revision``."""
        with self._engine.begin() as connection:
            command.upgrade(self._alembic_config(connection), revision)

    def current_revision(self) -> str | None:
        with self._engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()

    def reset(self) -> None:
        """Drop every table (including alembic bookkeeping) and re-migrate.

        Destructive. Only the explicitly confirmed ``reset`` command calls it.
        """
        with self._engine.begin() as connection:
            existing = MetaData()
            existing.reflect(bind=connection)
            existing.drop_all(bind=connection)
        self.migrate()

    # Watermarks -------------------------------------------------------------

    def get_watermark(self, account_id: str) -> datetime | None:
        with self.session() as session:  # type: Session
            mark = session.get(SyncWatermark, account_id)
            if mark is None:
                return None
            return from_db_time(mark.synced_until)

    def set_watermark(self, account_id: str, synced_until: datetime) -> None:
        with self.session() as session:  # type: Session
            mark = session.get(SyncWatermark, account_id)
            now = to_db_time(datetime.now(UTC))
            until = to_db_time(synced_until)
            if mark is None:
                session.add(
                    SyncWatermark(
                        account_id=account_id,
                        synced_until=until,
                        updated_at=now,
                    )
                )
            else:
                mark.synced_until = until  # type: ignore[assignment]
                mark.updated_at = now  # type: ignore[assignment]

    # Reads ------------------------------------------------------------------

    def _get(self, model: type[M], pk: str) -> M | None:
        with self.session() as session:  # type: Session
            row = session.get(model, pk)
            if row is not None:
                session.expunge(row)
            return row

    def _list(self, model: type[M]) -> list[M]:
        with self.session() as session:  # type: Session
            stmt = select(model).order_by(model.id)  # type: ignore[attr-defined]
            rows = list(session.scalars(stmt))
            for row in rows:
                session.expunge(row)
            return rows

    def list_accounts(self) -> list[Account]:
        return self._list(Account)

    def list_pots(self) -> list[Pot]:
        return self._list(Pot)

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        return self._get(Transaction, transaction_id)

    def get_category(self, category_id: str) -> Category | None:
        return self._get(Category, category_id)

    def get_merchant(self, merchant_id: str) -> Merchant | None:
        return self._get(Merchant, merchant_id)

    def list_transactions(self, account_id: str | None = None) -> list[Transaction]:
        with self.session() as session:  # type: Session
            stmt = select(Transaction).order_by(Transaction.created, Transaction.id)
            if account_id is not None:
                stmt = stmt.where(Transaction.account_id == account_id)
            rows = list(session.scalars(stmt))
            for row in rows:
                session.expunge(row)
            return rows

    def list_placeholder_category_ids(self) -> list[str]:
        with self.session() as session:  # type: Session
            stmt = select(Category.id).where(Category.name == "").order_by(Category.id)
            return list(session.scalars(stmt))

    def list_placeholder_merchant_ids(
        self, *, include_failed: bool = False
    ) -> list[str]:
        """Ids of merchants still missing a name.

        Merchants whose lookup was rejected earlier are left out unless
        ``include_failed`` is set.
        """
        with self.session() as session:  # type: Session
            stmt = (
                select(Merchant.id)
                .where((Merchant.name.is_(None)) | (Merchant.name == ""))
                .order_by(Merchant.id)
            )
            if not include_failed:
                failed = select(MerchantLookupFailure.merchant_id)
                stmt = stmt.where(Merchant.id.not_in(failed))
            return list(session.scalars(stmt))

    def record_merchant_lookup_failure(self, merchant_id: str, status: int) -> None:
        with self.session() as session:  # type: Session
            failure = session.get(MerchantLookupFailure, merchant_id)
            now = to_db_time(datetime.now(UTC))
            if failure is None:
                session.add(
                    MerchantLookupFailure(
                        merchant_id=merchant_id, status=status, failed_at=now
                    )
                )
            else:
                failure.status = status
                failure.failed_at = now  # type: ignore[assignment]

    def count_rows(self) -> dict[str, int]:
        """Row counts per entity table."""
        counts: dict[str, int] = {}
        with self.session() as session:  # type: Session
            for model in (Account, Pot, Merchant, Category, Transaction):
                counts[model.__tablename__] = session.scalar(
                    select(func.count()).select_from(model)
                ) or 0
        return counts
