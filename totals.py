from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import Select, and_, case, func, select
from sqlalchemy.orm import Session, aliased

from fx_rates import RATE_SCALE
from models import (
    BUDGET_EXCLUDED_KINDS,
    Account,
    Category,
    Classification,
    Entry,
    ExchangeRate,
    Family,
    Offset,
    OffsetStatus,
    Transaction,
)
from money import Money


logger = logging.getLogger(__name__)

# amounts are summed as cents * rate micros, exact integers until the end
_TOTAL_SCALE = Decimal(100 * RATE_SCALE)


@dataclass(frozen=True)
class TotalsRow:
    parent_category_id: Optional[int]
    category_id: Optional[int]
    classification: Classification
    total: Money
    transactions_count: int


def family_transactions_scope(
    family_id: int, start: Optional[date] = None, end: Optional[date] = None
) -> Select:
    stmt = (
        select(Transaction.id)
        .join(Entry, Entry.transaction_id == Transaction.id)
        .join(Account, Account.id == Entry.account_id)
        .where(Account.family_id == family_id)
    )
    if start is not None:
        stmt = stmt.where(Entry.date >= start)
    if end is not None:
        stmt = stmt.where(Entry.date <= end)
    return stmt


def _rate_join(rate: type[ExchangeRate], entry: type[Entry], target_currency: str):
    return and_(
        rate.date == entry.date,
        rate.from_currency == entry.currency,
        rate.to_currency == target_currency,
    )


def _converted(rate: type[ExchangeRate], cents):
    return cents * func.coalesce(rate.rate_micros, RATE_SCALE)


class IncomeStatementTotals:
    """Per-category income and expense totals net of confirmed offsets.

    A refund consumed by a confirmed offset never counts as income; its
    converted magnitude is deducted from the expense it backs instead, using
    the refund's own date and currency for the rate lookup.
    """

    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _offset_deductions(self, target_currency: str):
        offset_entry = aliased(Entry)
        offset_rate = aliased(ExchangeRate)
        return (
            select(
                Offset.expense_transaction_id.label("expense_transaction_id"),
                func.sum(
                    _converted(offset_rate, func.abs(offset_entry.amount_cents))
                ).label("total_offset"),
                func.sum(
                    case(
                        (
                            and_(
                                offset_rate.id.is_(None),
                                offset_entry.currency != target_currency,
                            ),
                            1,
                        ),
                        else_=0,
                    )
                ).label("fallback_rates"),
            )
            .join(offset_entry, offset_entry.transaction_id == Offset.offset_transaction_id)
            .outerjoin(offset_rate, _rate_join(offset_rate, offset_entry, target_currency))
            .where(Offset.status == OffsetStatus.confirmed)
            .group_by(Offset.expense_transaction_id)
            .subquery("offset_deductions")
        )

    def _statement(self, transactions_scope: Select, target_currency: str) -> Select:
        rate = aliased(ExchangeRate)
        deductions = self._offset_deductions(target_currency)
        consumed = (
            select(Offset.id)
            .where(
                Offset.offset_transaction_id == Transaction.id,
                Offset.status == OffsetStatus.confirmed,
            )
            .exists()
        )

        is_income = Entry.amount_cents < 0
        classification = case(
            (is_income, Classification.income.value),
            else_=Classification.expense.value,
        )
        converted = _converted(rate, Entry.amount_cents)
        signed = case(
            (is_income, converted),
            else_=converted - func.coalesce(deductions.c.total_offset, 0),
        )
        missing_rate = case(
            (and_(rate.id.is_(None), Entry.currency != target_currency), 1),
            else_=0,
        )

        return (
            select(
                Category.id.label("category_id"),
                Category.parent_id.label("parent_category_id"),
                classification.label("classification"),
                func.abs(func.sum(signed)).label("total"),
                func.count(Entry.id).label("transactions_count"),
                func.sum(missing_rate).label("fallback_rates"),
                func.sum(func.coalesce(deductions.c.fallback_rates, 0)).label(
                    "offset_fallback_rates"
                ),
            )
            .select_from(Entry)
            .join(Transaction, Transaction.id == Entry.transaction_id)
            .join(Account, Account.id == Entry.account_id)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .outerjoin(rate, _rate_join(rate, Entry, target_currency))
            .outerjoin(
                deductions, deductions.c.expense_transaction_id == Transaction.id
            )
            .where(
                Account.family_id == self.family_id,
                Transaction.id.in_(transactions_scope.correlate(None)),
                Transaction.kind.not_in(BUDGET_EXCLUDED_KINDS),
                Entry.excluded.is_(False),
                ~consumed,
            )
            .group_by(Category.id, Category.parent_id, classification)
            .order_by(classification, Category.id)
        )

    def call(
        self, transactions_scope: Select, target_currency: Optional[str] = None
    ) -> list[TotalsRow]:
        if target_currency is None:
            family = self.session.get(Family, self.family_id)
            if not family:
                raise ValueError("Family not found")
            target_currency = family.currency
        target_currency = target_currency.upper()

        rows = self.session.execute(
            self._statement(transactions_scope, target_currency)
        ).all()

        fallback_rates = sum(
            int(row.fallback_rates or 0) + int(row.offset_fallback_rates or 0)
            for row in rows
        )
        if fallback_rates:
            logger.warning(
                f"fx_rate_missing: family_id={self.family_id} target={target_currency} "
                f"entries={fallback_rates} fallback_rate=1"
            )

        return [
            TotalsRow(
                parent_category_id=row.parent_category_id,
                category_id=row.category_id,
                classification=Classification(row.classification),
                total=Money(Decimal(int(row.total or 0)) / _TOTAL_SCALE, target_currency),
                transactions_count=int(row.transactions_count),
            )
            for row in rows
        ]
