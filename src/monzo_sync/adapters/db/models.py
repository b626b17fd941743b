from __future__ import annotations

from datetime import UTC, datetime
import enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class UpsertOutcome(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def to_db_time(value: datetime | None) -> datetime | None:
    """Normalize a datetime to the naive UTC form stored in SQLite."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def from_db_time(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    closed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    owner_type: Mapped[str] = mapped_column(Text, nullable=False)
    account_number: Mapped[str] = mapped_column(Text, nullable=False)
    sort_code: Mapped[str] = mapped_column(Text, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    country_code: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=""
    )

    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", back_populates="account"
    )


class Pot(Base):
    """Pot balance snapshot. Pots never own transaction rows."""

    __tablename__ = "pots"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    pot_type: Mapped[str] = mapped_column(Text, nullable=False, server_default="")


class Merchant(Base):
    """Merchant model. A row with an empty name is a placeholder."""

    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)

    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", back_populates="merchant"
    )

    @property
    def is_placeholder(self) -> bool:
        return not self.name


class Category(Base):
    """Category model. A row with an empty name is a placeholder."""

    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)

    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", back_populates="category"
    )

    @property
    def is_placeholder(self) -> bool:
        return not self.name


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    account_id: Mapped[str] = mapped_column(
        Text, ForeignKey("accounts.id"), nullable=False
    )
    merchant_id: Mapped[str | None] = mapped_column(
        Text, ForeignKey("merchants.id"), nullable=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    local_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    local_currency: Mapped[str] = mapped_column(Text, nullable=False)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    settled: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    category_id: Mapped[str] = mapped_column(
        Text, ForeignKey("categories.id"), nullable=False
    )

    account: Mapped[Account] = relationship("Account", back_populates="transactions")
    merchant: Mapped[Merchant | None] = relationship(
        "Merchant", back_populates="transactions"
    )
    category: Mapped[Category] = relationship(
        "Category", back_populates="transactions"
    )


class SyncWatermark(Base):
    """End of the last committed sync window for one account."""

    __tablename__ = "sync_watermarks"

    account_id: Mapped[str] = mapped_column(
        Text, ForeignKey("accounts.id"), primary_key=True
    )
    synced_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class MerchantLookupFailure(Base):
    """A placeholder merchant the API refused to resolve.

    Enrichment skips these so a permanently missing merchant is reported once.
    """

    __tablename__ = "merchant_lookup_failures"

    merchant_id: Mapped[str] = mapped_column(
        Text, ForeignKey("merchants.id"), primary_key=True
    )
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
