import os

os.environ.setdefault("OFFSETS_DATABASE_URL", "sqlite:///:memory:")

from datetime import date
from typing import Optional

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from database import Base, create_ledger_engine, make_sessionmaker
from models import (
    Account,
    AccountStatus,
    Category,
    Entry,
    ExchangeRate,
    Family,
    Transaction,
    TransactionKind,
)
from scheduler import ResyncScheduler


def make_session() -> Session:
    engine = create_ledger_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


class LedgerBuilder:
    def __init__(self, session: Session) -> None:
        self.session = session

    def family(self, name: str = "Dylan", currency: str = "USD") -> Family:
        family = Family(name=name, currency=currency)
        self.session.add(family)
        self.session.commit()
        return family

    def account(
        self,
        family: Family,
        *,
        name: str = "Checking",
        currency: str = "USD",
        status: AccountStatus = AccountStatus.active,
    ) -> Account:
        account = Account(
            family_id=family.id, name=name, currency=currency, status=status
        )
        self.session.add(account)
        self.session.commit()
        return account

    def category(
        self, family: Family, name: str, parent: Optional[Category] = None
    ) -> Category:
        category = Category(
            family_id=family.id, name=name, parent_id=parent.id if parent else None
        )
        self.session.add(category)
        self.session.commit()
        return category

    def txn(
        self,
        account: Account,
        amount_cents: int,
        on: date,
        *,
        category: Optional[Category] = None,
        currency: Optional[str] = None,
        kind: TransactionKind = TransactionKind.standard,
        excluded: bool = False,
        name: str = "Entry",
    ) -> Transaction:
        txn = Transaction(kind=kind, category_id=category.id if category else None)
        self.session.add(txn)
        self.session.flush()
        entry = Entry(
            account_id=account.id,
            transaction_id=txn.id,
            name=name,
            date=on,
            amount_cents=amount_cents,
            currency=currency or account.currency,
            excluded=excluded,
        )
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def rate(self, on: date, from_currency: str, to_currency: str, rate_micros: int):
        rate = ExchangeRate(
            date=on,
            from_currency=from_currency,
            to_currency=to_currency,
            rate_micros=rate_micros,
        )
        self.session.add(rate)
        self.session.commit()
        return rate


@pytest.fixture
def session() -> Session:
    session = make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ledger(session: Session) -> LedgerBuilder:
    return LedgerBuilder(session)


@pytest.fixture
def resync() -> ResyncScheduler:
    # never started: queued jobs stay pending and can be inspected
    return ResyncScheduler(BackgroundScheduler(timezone="UTC"), job=lambda _id: None)


@pytest.fixture
def queued_accounts(resync: ResyncScheduler):
    def collect() -> set[int]:
        return {job.args[0] for job in resync.scheduler.get_jobs()}

    return collect
