from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from sqlalchemy import Select, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import Settings, get_settings
from fx_rates import ExchangeRateService
from models import (
    Account,
    Confirmed,
    Entry,
    Offset,
    OffsetOutcome,
    OffsetStatus,
    Rejected,
    RejectedOffset,
    Transaction,
)
from money import Money
from scheduler import ResyncScheduler, get_resync_scheduler
from schemas import OffsetIn, OffsetMatchIn, OffsetUpdateIn


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OffsetViolation:
    code: str
    message: str


class OffsetValidationError(ValueError):
    def __init__(self, violations: Iterable[OffsetViolation]) -> None:
        self.violations = list(violations)
        super().__init__("; ".join(v.message for v in self.violations))

    @property
    def codes(self) -> list[str]:
        return [v.code for v in self.violations]


class OffsetConflictError(OffsetValidationError):
    """Raised when the storage layer rejects a write on a uniqueness constraint."""


class OffsetNotFound(ValueError):
    pass


def family_transaction_ids(family_id: int) -> Select:
    return (
        select(Transaction.id)
        .join(Entry, Entry.transaction_id == Transaction.id)
        .join(Account, Account.id == Entry.account_id)
        .where(Account.family_id == family_id)
    )


def get_family_transaction(
    session: Session, family_id: int, transaction_id: int
) -> Transaction:
    txn = session.scalar(
        select(Transaction)
        .join(Entry, Entry.transaction_id == Transaction.id)
        .join(Account, Account.id == Entry.account_id)
        .options(joinedload(Transaction.entry).joinedload(Entry.account))
        .where(Transaction.id == transaction_id, Account.family_id == family_id)
    )
    if not txn:
        raise OffsetNotFound("Transaction not found")
    return txn


class OffsetValidator:
    """Checks every offset-link invariant and reports all failures at once.

    The uniqueness checks here only see committed state; the unique indexes
    on ``offsets`` remain the final word under concurrent writes.
    """

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        settings = settings or get_settings()
        self.pending_max_days = settings.pending_max_days
        self.confirmed_max_days = settings.confirmed_max_days

    def max_days_for(self, status: OffsetStatus) -> int:
        if status == OffsetStatus.confirmed:
            return self.confirmed_max_days
        return self.pending_max_days

    def violations(
        self,
        expense: Transaction,
        offset: Transaction,
        status: OffsetStatus,
        *,
        offset_id: Optional[int] = None,
    ) -> list[OffsetViolation]:
        found: list[OffsetViolation] = []

        duplicate = select(Offset.id).where(
            Offset.expense_transaction_id == expense.id,
            Offset.offset_transaction_id == offset.id,
        )
        used = select(Offset.id).where(Offset.offset_transaction_id == offset.id)
        if offset_id is not None:
            duplicate = duplicate.where(Offset.id != offset_id)
            used = used.where(Offset.id != offset_id)
        if self.session.scalar(select(duplicate.exists())):
            found.append(
                OffsetViolation(
                    "duplicate_pair",
                    "Expense transaction has already been linked to this offset",
                )
            )
        if self.session.scalar(select(used.exists())):
            found.append(
                OffsetViolation(
                    "offset_already_used",
                    "Offset transaction is already linked to an expense",
                )
            )

        expense_entry = expense.entry
        offset_entry = offset.entry

        if expense_entry.amount_cents <= 0:
            found.append(
                OffsetViolation(
                    "expense_not_positive",
                    "Expense transaction must be an expense (positive amount)",
                )
            )
        if offset_entry.amount_cents >= 0:
            found.append(
                OffsetViolation(
                    "offset_not_negative",
                    "Offset transaction must be an income/refund (negative amount)",
                )
            )

        if not (
            expense.category_id == offset.category_id
            or expense.category_id is None
            or offset.category_id is None
        ):
            found.append(
                OffsetViolation(
                    "category_mismatch",
                    "Offset must have the same category as the expense or be uncategorized",
                )
            )

        max_days = self.max_days_for(status)
        if abs((expense_entry.date - offset_entry.date).days) > max_days:
            found.append(
                OffsetViolation("date_out_of_range", f"Must be within {max_days} days")
            )

        if expense_entry.account.family_id != offset_entry.account.family_id:
            found.append(OffsetViolation("family_mismatch", "Must be from same family"))

        return found

    def validate(
        self,
        expense: Transaction,
        offset: Transaction,
        status: OffsetStatus,
        *,
        offset_id: Optional[int] = None,
    ) -> None:
        found = self.violations(expense, offset, status, offset_id=offset_id)
        if found:
            raise OffsetValidationError(found)


class RejectedOffsetService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _find(
        self, expense_transaction_id: int, offset_transaction_id: int
    ) -> Optional[RejectedOffset]:
        return self.session.scalar(
            select(RejectedOffset).where(
                RejectedOffset.expense_transaction_id == expense_transaction_id,
                RejectedOffset.offset_transaction_id == offset_transaction_id,
            )
        )

    def find_or_create(
        self, expense_transaction_id: int, offset_transaction_id: int
    ) -> RejectedOffset:
        """Flushes but does not commit; callers own the transaction."""
        existing = self._find(expense_transaction_id, offset_transaction_id)
        if existing:
            return existing
        rejected = RejectedOffset(
            expense_transaction_id=expense_transaction_id,
            offset_transaction_id=offset_transaction_id,
        )
        self.session.add(rejected)
        self.session.flush()
        return rejected

    def reject(
        self, expense_transaction_id: int, offset_transaction_id: int
    ) -> RejectedOffset:
        get_family_transaction(self.session, self.family_id, expense_transaction_id)
        get_family_transaction(self.session, self.family_id, offset_transaction_id)
        try:
            rejected = self.find_or_create(
                expense_transaction_id, offset_transaction_id
            )
            self.session.commit()
        except IntegrityError:
            # a concurrent writer recorded the same pair first
            self.session.rollback()
            rejected = self._find(expense_transaction_id, offset_transaction_id)
            if rejected is None:
                raise
        logger.info(
            f"offset_pair_rejected: expense={expense_transaction_id} "
            f"offset={offset_transaction_id}"
        )
        return rejected

    def is_rejected(
        self, expense_transaction_id: int, offset_transaction_id: int
    ) -> bool:
        return self._find(expense_transaction_id, offset_transaction_id) is not None

    def rejected_pairs(self) -> set[tuple[int, int]]:
        rows = self.session.execute(
            select(
                RejectedOffset.expense_transaction_id,
                RejectedOffset.offset_transaction_id,
            ).where(
                RejectedOffset.expense_transaction_id.in_(
                    family_transaction_ids(self.family_id)
                )
            )
        ).all()
        return {(int(r[0]), int(r[1])) for r in rows}


class OffsetService:
    def __init__(
        self,
        session: Session,
        family_id: int,
        *,
        resync: Optional[ResyncScheduler] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.family_id = family_id
        self.resync = resync or get_resync_scheduler()
        self.validator = OffsetValidator(session, settings)
        self.ledger = RejectedOffsetService(session, family_id)
        self.fx = ExchangeRateService(session)

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(f"offset_conflict: family_id={self.family_id} error={exc.orig}")
            raise OffsetConflictError(
                [
                    OffsetViolation(
                        "conflict",
                        "Offset conflicts with a concurrent change; reload and try again",
                    )
                ]
            ) from exc
        except Exception:
            self.session.rollback()
            raise

    def _transaction(self, transaction_id: int) -> Transaction:
        return get_family_transaction(self.session, self.family_id, transaction_id)

    def _expire_links(self, *transactions: Transaction) -> None:
        for txn in transactions:
            self.session.expire(
                txn,
                [
                    "offsets_as_expense",
                    "offset_as_offset",
                    "rejected_offsets_as_expense",
                    "rejected_offsets_as_offset",
                ],
            )

    @staticmethod
    def _account_ids(*transactions: Transaction) -> list[int]:
        return list(dict.fromkeys(txn.entry.account_id for txn in transactions))

    def get(self, offset_id: int) -> Offset:
        offset = self.session.scalar(
            select(Offset).where(
                Offset.id == offset_id,
                Offset.expense_transaction_id.in_(
                    family_transaction_ids(self.family_id)
                ),
            )
        )
        if not offset:
            raise OffsetNotFound("Offset not found")
        return offset

    def offsets_for_expense(
        self, expense_transaction_id: int, *, status: Optional[OffsetStatus] = None
    ) -> list[Offset]:
        self._transaction(expense_transaction_id)
        stmt = select(Offset).where(
            Offset.expense_transaction_id == expense_transaction_id
        )
        if status is not None:
            stmt = stmt.where(Offset.status == status)
        return self.session.scalars(stmt.order_by(Offset.id)).all()

    def _create(
        self,
        expense: Transaction,
        offset_txn: Transaction,
        status: OffsetStatus,
        notes: Optional[str],
    ) -> Offset:
        with self._atomic():
            self.validator.validate(expense, offset_txn, status)
            # ids only: assigning the one-to-one relationship would orphan a
            # concurrently committed link instead of hitting the unique index
            offset = Offset(
                expense_transaction_id=expense.id,
                offset_transaction_id=offset_txn.id,
                status=status,
                notes=notes,
            )
            self.session.add(offset)
            self.session.flush()
        self._expire_links(expense, offset_txn)
        logger.info(
            f"offset_created: id={offset.id} expense={expense.id} "
            f"offset={offset_txn.id} status={status.value}"
        )
        self.resync.schedule_many(self._account_ids(expense, offset_txn))
        return offset

    def create(self, data: OffsetIn) -> Offset:
        expense = self._transaction(data.expense_transaction_id)
        offset_txn = self._transaction(data.offset_transaction_id)
        return self._create(expense, offset_txn, data.status, data.notes)

    def link_match(self, anchor_transaction_id: int, data: OffsetMatchIn) -> Offset:
        """Confirm a suggested match; the anchor's sign decides which side it is."""
        anchor = self._transaction(anchor_transaction_id)
        matched = self._transaction(data.matched_transaction_id)
        if anchor.entry.amount_cents > 0:
            expense, offset_txn = anchor, matched
        else:
            expense, offset_txn = matched, anchor
        return self._create(expense, offset_txn, OffsetStatus.confirmed, data.notes)

    def _confirm(self, offset: Offset) -> None:
        self.validator.validate(
            offset.expense_transaction,
            offset.offset_transaction,
            OffsetStatus.confirmed,
            offset_id=offset.id,
        )
        offset.status = OffsetStatus.confirmed

    def _reject(self, offset: Offset) -> RejectedOffset:
        rejected = self.ledger.find_or_create(
            offset.expense_transaction_id, offset.offset_transaction_id
        )
        self.session.delete(offset)
        self.session.flush()
        return rejected

    def confirm(self, offset_id: int) -> Confirmed:
        offset = self.get(offset_id)
        if offset.status == OffsetStatus.confirmed:
            return Confirmed(offset)
        account_ids = offset.account_ids
        with self._atomic():
            self._confirm(offset)
            self.session.flush()
        logger.info(f"offset_confirmed: id={offset.id}")
        self.resync.schedule_many(account_ids)
        return Confirmed(offset)

    def reject(self, offset_id: int) -> Rejected:
        offset = self.get(offset_id)
        transactions = (offset.expense_transaction, offset.offset_transaction)
        with self._atomic():
            rejected = self._reject(offset)
        self._expire_links(*transactions)
        logger.info(
            f"offset_rejected: id={offset_id} expense={rejected.expense_transaction_id} "
            f"offset={rejected.offset_transaction_id}"
        )
        self.resync.schedule_many(self._account_ids(*transactions))
        return Rejected(rejected)

    def update(self, offset_id: int, data: OffsetUpdateIn) -> OffsetOutcome:
        offset = self.get(offset_id)
        transactions = (offset.expense_transaction, offset.offset_transaction)
        with self._atomic():
            if data.status == "rejected":
                outcome: OffsetOutcome = Rejected(self._reject(offset))
            else:
                if data.status == "confirmed" and offset.status != OffsetStatus.confirmed:
                    self._confirm(offset)
                if data.notes is not None:
                    offset.notes = data.notes
                self.session.flush()
                outcome = offset.outcome
        self._expire_links(*transactions)
        logger.info(f"offset_updated: id={offset_id} outcome={type(outcome).__name__}")
        self.resync.schedule_many(self._account_ids(*transactions))
        return outcome

    def update_notes(self, offset_id: int, notes: Optional[str]) -> Offset:
        offset = self.get(offset_id)
        with self._atomic():
            offset.notes = notes
        return offset

    def destroy(self, offset_id: int) -> None:
        offset = self.get(offset_id)
        transactions = (offset.expense_transaction, offset.offset_transaction)
        with self._atomic():
            self.session.delete(offset)
        self._expire_links(*transactions)
        logger.info(f"offset_destroyed: id={offset_id}")
        self.resync.schedule_many(self._account_ids(*transactions))

    def total_offset_amount(self, expense_transaction_id: int) -> Money:
        expense_entry = self._transaction(expense_transaction_id).entry
        total = Money.zero(expense_entry.currency)
        if expense_entry.amount_cents <= 0:
            return total

        rows = self.session.execute(
            select(Entry.amount_cents, Entry.currency, Entry.date)
            .join(Offset, Offset.offset_transaction_id == Entry.transaction_id)
            .where(
                Offset.expense_transaction_id == expense_transaction_id,
                Offset.status == OffsetStatus.confirmed,
            )
        ).all()
        for row in rows:
            amount = abs(Money.from_cents(row.amount_cents, row.currency))
            total += self.fx.convert(amount, row.date, expense_entry.currency)
        return total

    def net_expense_amount(self, expense_transaction_id: int) -> Money:
        expense_entry = self._transaction(expense_transaction_id).entry
        if expense_entry.amount_cents <= 0:
            return expense_entry.amount_money
        return expense_entry.amount_money - self.total_offset_amount(
            expense_transaction_id
        )

    def link_net_amount(self, offset_id: int) -> Money:
        """Expense amount less this one link's offset, in the expense currency."""
        offset = self.get(offset_id)
        expense_entry = offset.expense_transaction.entry
        offset_entry = offset.offset_transaction.entry
        refund = self.fx.convert(
            offset_entry.amount_money, offset_entry.date, expense_entry.currency
        )
        return expense_entry.amount_money + refund

    def has_offsets(self, transaction_id: int) -> bool:
        self._transaction(transaction_id)
        return bool(
            self.session.scalar(
                select(
                    exists().where(
                        Offset.expense_transaction_id == transaction_id,
                        Offset.status == OffsetStatus.confirmed,
                    )
                )
            )
        )

    def is_offset(self, transaction_id: int) -> bool:
        self._transaction(transaction_id)
        return bool(
            self.session.scalar(
                select(
                    exists().where(
                        Offset.offset_transaction_id == transaction_id,
                        Offset.status == OffsetStatus.confirmed,
                    )
                )
            )
        )
