from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from database import Base


class TransactionDirection(str, Enum):
    income = "income"
    expense = "expense"


class RecurrenceFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite drops offsets on the way in, so values are normalised to UTC on
    write and come back as aware UTC datetimes. Naive inputs are taken as UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MinorUnits(TypeDecorator):
    """Money as a ``Decimal`` stored as an integer count of cents.

    Amounts finer than a cent are rejected instead of rounded.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        cents = Decimal(value).scaleb(2)
        if cents != cents.to_integral_value():
            raise ValueError(f"Amount {value} has more than two decimal places")
        return int(cents)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value).scaleb(-2)


MONEY = MinorUnits()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )
    recurrences: Mapped[list["Recurrence"]] = relationship(
        "Recurrence", back_populates="account"
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("name", name="uq_tag_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(512))
    # Hierarchy is kept as plain ids; TagService walks it explicitly.
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tags.id"))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


recurrence_tags = Table(
    "recurrence_tags",
    Base.metadata,
    Column("recurrence_id", Integer, ForeignKey("recurrences.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    value_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    amount: Mapped[Decimal] = mapped_column("amount_cents", MONEY, nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        SAEnum(TransactionDirection), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    recurrence_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurrences.id")
    )

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    recurrence: Mapped[Optional["Recurrence"]] = relationship(
        "Recurrence", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurrence_id", "value_date", name="uq_txn_recurrence_occurrence"
        ),
        Index("ix_transactions_account_date", "account_id", "value_date"),
        Index(
            "ix_transactions_account_direction_date",
            "account_id",
            "direction",
            "value_date",
        ),
        Index("ix_transactions_recurrence", "recurrence_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )

    @property
    def tag_ids(self) -> set[int]:
        return {tag.id for tag in self.tags}


class Recurrence(Base, TimestampMixin):
    __tablename__ = "recurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    frequency: Mapped[RecurrenceFrequency] = mapped_column(
        SAEnum(RecurrenceFrequency), nullable=False
    )
    # Template applied to every generated transaction.
    direction: Mapped[TransactionDirection] = mapped_column(
        SAEnum(TransactionDirection), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column("amount_cents", MONEY, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    # Upper bound of the last expansion that was materialized.
    materialized_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="recurrences")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurrence"
    )
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary="recurrence_tags")

    __table_args__ = (
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_recurrence_end_after_start",
        ),
        CheckConstraint("amount_cents >= 0", name="ck_recurrence_amount_positive"),
        Index("ix_recurrences_account_start", "account_id", "start_date"),
    )

    @property
    def tag_ids(self) -> set[int]:
        return {tag.id for tag in self.tags}
