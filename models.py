from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from money import Money


class Classification(str, Enum):
    income = "income"
    expense = "expense"


class AccountStatus(str, Enum):
    draft = "draft"
    active = "active"
    disabled = "disabled"
    pending_deletion = "pending_deletion"


MATCHABLE_ACCOUNT_STATUSES = (AccountStatus.draft, AccountStatus.active)


class TransactionKind(str, Enum):
    standard = "standard"
    transfer = "transfer"
    funds_movement = "funds_movement"
    one_time = "one_time"
    cc_payment = "cc_payment"
    loan_payment = "loan_payment"


# Kinds left out of income statement totals.
BUDGET_EXCLUDED_KINDS = (
    TransactionKind.funds_movement,
    TransactionKind.one_time,
    TransactionKind.cc_payment,
)


class OffsetStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Family(Base, TimestampMixin):
    __tablename__ = "families"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="family"
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(ForeignKey("families.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[AccountStatus] = mapped_column(
        SAEnum(AccountStatus), nullable=False, default=AccountStatus.active
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    family: Mapped["Family"] = relationship("Family", back_populates="accounts")
    entries: Mapped[list["Entry"]] = relationship("Entry", back_populates="account")

    __table_args__ = (Index("ix_accounts_family_status", "family_id", "status"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(ForeignKey("families.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id"
    )

    __table_args__ = (
        UniqueConstraint("family_id", "name", name="uq_category_family_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False, default=TransactionKind.standard
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))

    category: Mapped[Optional["Category"]] = relationship("Category")
    entry: Mapped["Entry"] = relationship(
        "Entry",
        back_populates="transaction",
        uselist=False,
        cascade="all, delete-orphan",
    )

    # An expense can carry several offsets; an offset backs one expense.
    offsets_as_expense: Mapped[list["Offset"]] = relationship(
        "Offset",
        foreign_keys="Offset.expense_transaction_id",
        back_populates="expense_transaction",
        cascade="all, delete-orphan",
    )
    offset_as_offset: Mapped[Optional["Offset"]] = relationship(
        "Offset",
        foreign_keys="Offset.offset_transaction_id",
        back_populates="offset_transaction",
        uselist=False,
        cascade="all, delete-orphan",
    )
    rejected_offsets_as_expense: Mapped[list["RejectedOffset"]] = relationship(
        "RejectedOffset",
        foreign_keys="RejectedOffset.expense_transaction_id",
        cascade="all, delete-orphan",
    )
    rejected_offsets_as_offset: Mapped[list["RejectedOffset"]] = relationship(
        "RejectedOffset",
        foreign_keys="RejectedOffset.offset_transaction_id",
        cascade="all, delete-orphan",
    )


class Entry(Base, TimestampMixin):
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # positive = outflow (expense), negative = inflow (income, refund)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    excluded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="entries")
    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="entry"
    )

    __table_args__ = (
        Index("ix_entries_account_date", "account_id", "date"),
        Index("ix_entries_date_currency", "date", "currency"),
    )

    @property
    def amount_money(self) -> Money:
        return Money.from_cents(self.amount_cents, self.currency)


class ExchangeRate(Base, TimestampMixin):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_micros: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "date", "from_currency", "to_currency", name="uq_exchange_rate_pair_date"
        ),
    )


class Offset(Base, TimestampMixin):
    __tablename__ = "offsets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    offset_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[OffsetStatus] = mapped_column(
        SAEnum(OffsetStatus), nullable=False, default=OffsetStatus.pending
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    expense_transaction: Mapped["Transaction"] = relationship(
        "Transaction",
        foreign_keys=[expense_transaction_id],
        back_populates="offsets_as_expense",
    )
    offset_transaction: Mapped["Transaction"] = relationship(
        "Transaction",
        foreign_keys=[offset_transaction_id],
        back_populates="offset_as_offset",
    )

    __table_args__ = (
        UniqueConstraint(
            "expense_transaction_id",
            "offset_transaction_id",
            name="uq_offsets_expense_offset",
        ),
        # a refund can back only one expense
        UniqueConstraint("offset_transaction_id", name="uq_offsets_offset_transaction"),
        Index("ix_offsets_status", "status"),
    )

    @property
    def expense_amount(self) -> Money:
        return abs(self.expense_transaction.entry.amount_money)

    @property
    def offset_amount(self) -> Money:
        return abs(self.offset_transaction.entry.amount_money)

    @property
    def category(self) -> Optional[Category]:
        return self.expense_transaction.category

    @property
    def date(self) -> date:
        return self.expense_transaction.entry.date

    @property
    def account_ids(self) -> list[int]:
        ids: list[int] = []
        for txn in (self.expense_transaction, self.offset_transaction):
            if txn is not None and txn.entry is not None:
                if txn.entry.account_id not in ids:
                    ids.append(txn.entry.account_id)
        return ids

    @property
    def outcome(self) -> "OffsetOutcome":
        if self.status == OffsetStatus.confirmed:
            return Confirmed(self)
        return Pending(self)


class RejectedOffset(Base, TimestampMixin):
    __tablename__ = "rejected_offsets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    offset_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "expense_transaction_id",
            "offset_transaction_id",
            name="uq_rejected_offsets_pair",
        ),
    )


@dataclass(frozen=True)
class Pending:
    offset: Offset


@dataclass(frozen=True)
class Confirmed:
    offset: Offset


@dataclass(frozen=True)
class Rejected:
    """The link is gone; the pair now lives in the rejection ledger."""

    rejected_offset: RejectedOffset


OffsetOutcome = Union[Pending, Confirmed, Rejected]
