"""Offset match suggestions.

Candidates are built in stages: two parameterized selects load the eligible
expense side and refund side for a family, a windowed pairing step joins them
on date proximity, and a chain of pair filters drops everything that cannot
be linked. The survivors are ranked closest date first, then largest refund.
Nothing here writes to the database.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    MATCHABLE_ACCOUNT_STATUSES,
    Account,
    Entry,
    Offset,
    Transaction,
    TransactionKind,
)
from money import Money
from services import RejectedOffsetService, family_transaction_ids, get_family_transaction


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchableEntry:
    transaction_id: int
    date: date
    amount_cents: int
    currency: str
    category_id: Optional[int]


@dataclass(frozen=True)
class OffsetCandidate:
    expense_transaction_id: int
    offset_transaction_id: int
    date_diff: int
    offset_amount: Money
    expense_amount: Money


PairStage = Callable[[MatchableEntry, MatchableEntry], bool]


def same_currency(expense: MatchableEntry, offset: MatchableEntry) -> bool:
    return expense.currency == offset.currency


def refund_within_expense(expense: MatchableEntry, offset: MatchableEntry) -> bool:
    return -offset.amount_cents <= expense.amount_cents


def compatible_category(expense: MatchableEntry, offset: MatchableEntry) -> bool:
    return (
        expense.category_id == offset.category_id
        or expense.category_id is None
        or offset.category_id is None
    )


def pair_not_in(pairs: set[tuple[int, int]]) -> PairStage:
    def stage(expense: MatchableEntry, offset: MatchableEntry) -> bool:
        return (expense.transaction_id, offset.transaction_id) not in pairs

    return stage


def offset_not_in(transaction_ids: set[int]) -> PairStage:
    def stage(expense: MatchableEntry, offset: MatchableEntry) -> bool:
        return offset.transaction_id not in transaction_ids

    return stage


def rank_key(candidate: OffsetCandidate) -> tuple[int, object]:
    return (candidate.date_diff, -candidate.offset_amount.amount)


class OffsetMatcher:
    pair_stages: tuple[PairStage, ...] = (
        same_currency,
        refund_within_expense,
        compatible_category,
    )

    def __init__(
        self, session: Session, family_id: int, date_window: Optional[int] = None
    ) -> None:
        if date_window is None:
            date_window = get_settings().match_window_days
        if date_window < 0:
            raise ValueError("Date window must not be negative")
        self.session = session
        self.family_id = family_id
        self.date_window = date_window
        self.ledger = RejectedOffsetService(session, family_id)

    def _eligible(
        self,
        *,
        expenses: bool,
        transaction_id: Optional[int] = None,
        around: Optional[date] = None,
    ) -> list[MatchableEntry]:
        stmt = (
            select(
                Transaction.id,
                Entry.date,
                Entry.amount_cents,
                Entry.currency,
                Transaction.category_id,
            )
            .join(Entry, Entry.transaction_id == Transaction.id)
            .join(Account, Account.id == Entry.account_id)
            .where(
                Account.family_id == self.family_id,
                Account.status.in_(MATCHABLE_ACCOUNT_STATUSES),
                Transaction.kind == TransactionKind.standard,
                Entry.excluded.is_(False),
                Entry.amount_cents > 0 if expenses else Entry.amount_cents < 0,
            )
        )
        if transaction_id is not None:
            stmt = stmt.where(Transaction.id == transaction_id)
        if around is not None:
            window = timedelta(days=self.date_window)
            stmt = stmt.where(Entry.date.between(around - window, around + window))
        stmt = stmt.order_by(Transaction.id)
        return [MatchableEntry(*row) for row in self.session.execute(stmt).all()]

    def _sides(
        self,
        expense_transaction_id: Optional[int],
        offset_transaction_id: Optional[int],
    ) -> tuple[list[MatchableEntry], list[MatchableEntry]]:
        if expense_transaction_id is not None:
            expenses = self._eligible(expenses=True, transaction_id=expense_transaction_id)
            if not expenses:
                return [], []
            offsets = self._eligible(
                expenses=False,
                transaction_id=offset_transaction_id,
                around=expenses[0].date,
            )
            return expenses, offsets
        if offset_transaction_id is not None:
            offsets = self._eligible(expenses=False, transaction_id=offset_transaction_id)
            if not offsets:
                return [], []
            expenses = self._eligible(expenses=True, around=offsets[0].date)
            return expenses, offsets
        return self._eligible(expenses=True), self._eligible(expenses=False)

    def _pairs(
        self, expenses: list[MatchableEntry], offsets: list[MatchableEntry]
    ) -> Iterator[tuple[MatchableEntry, MatchableEntry]]:
        window = timedelta(days=self.date_window)
        by_date = sorted(offsets, key=lambda o: (o.date, o.transaction_id))
        dates = [o.date for o in by_date]
        for expense in expenses:
            lo = bisect.bisect_left(dates, expense.date - window)
            hi = bisect.bisect_right(dates, expense.date + window)
            for offset in by_date[lo:hi]:
                yield expense, offset

    def _link_stages(self) -> tuple[PairStage, ...]:
        rows = self.session.execute(
            select(Offset.expense_transaction_id, Offset.offset_transaction_id).where(
                Offset.offset_transaction_id.in_(family_transaction_ids(self.family_id))
            )
        ).all()
        linked = {(int(r[0]), int(r[1])) for r in rows}
        used = {pair[1] for pair in linked}
        return (
            pair_not_in(linked),
            offset_not_in(used),
            pair_not_in(self.ledger.rejected_pairs()),
        )

    def candidates(
        self,
        *,
        expense_transaction_id: Optional[int] = None,
        offset_transaction_id: Optional[int] = None,
    ) -> list[OffsetCandidate]:
        expenses, offsets = self._sides(expense_transaction_id, offset_transaction_id)
        if not expenses or not offsets:
            return []

        stream: Iterable[tuple[MatchableEntry, MatchableEntry]] = self._pairs(
            expenses, offsets
        )
        for stage in self.pair_stages + self._link_stages():
            stream = filter(lambda pair, stage=stage: stage(*pair), stream)

        candidates = [
            OffsetCandidate(
                expense_transaction_id=expense.transaction_id,
                offset_transaction_id=offset.transaction_id,
                date_diff=abs((expense.date - offset.date).days),
                offset_amount=Money.from_cents(-offset.amount_cents, offset.currency),
                expense_amount=Money.from_cents(expense.amount_cents, expense.currency),
            )
            for expense, offset in stream
        ]
        # id order first so ties on both rank keys stay deterministic
        candidates.sort(
            key=lambda c: (c.expense_transaction_id, c.offset_transaction_id)
        )
        candidates.sort(key=rank_key)
        logger.debug(
            f"offset_candidates: family_id={self.family_id} window={self.date_window} "
            f"count={len(candidates)}"
        )
        return candidates

    def offset_candidates_for(self, expense_transaction_id: int) -> list[OffsetCandidate]:
        txn = get_family_transaction(self.session, self.family_id, expense_transaction_id)
        if txn.entry.amount_cents <= 0:
            return []
        return self.candidates(expense_transaction_id=expense_transaction_id)

    def expense_candidates_for(self, offset_transaction_id: int) -> list[OffsetCandidate]:
        txn = get_family_transaction(self.session, self.family_id, offset_transaction_id)
        if txn.entry.amount_cents >= 0:
            return []
        return self.candidates(offset_transaction_id=offset_transaction_id)
