import logging
from functools import lru_cache
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import configure_logging, get_settings
from database import session_scope
from models import Account, Entry


configure_logging()
logger = logging.getLogger(__name__)


def recompute_account_balance(session: Session, account_id: int) -> Optional[int]:
    account = session.get(Account, account_id)
    if not account:
        return None
    # entries are signed as outflows, so the balance is their negated sum
    outflow = int(
        session.execute(
            select(func.coalesce(func.sum(Entry.amount_cents), 0)).where(
                Entry.account_id == account_id
            )
        ).scalar_one()
        or 0
    )
    account.balance_cents = -outflow
    return account.balance_cents


def sync_account_balance(account_id: int) -> None:
    with session_scope() as session:
        balance = recompute_account_balance(session, account_id)
    if balance is None:
        logger.info(f"account_resync: account_id={account_id} skipped=missing")
        return
    logger.info(f"account_resync: account_id={account_id} balance_cents={balance}")


class ResyncScheduler:
    def __init__(
        self,
        scheduler: Optional[BackgroundScheduler] = None,
        job: Callable[[int], None] = sync_account_balance,
    ) -> None:
        if scheduler is None:
            settings = get_settings()
            scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.scheduler = scheduler
        self.job = job

    def schedule_resync(self, account_id: int) -> None:
        try:
            # one queued resync per account; the job recomputes from scratch
            self.scheduler.add_job(
                self.job,
                args=[account_id],
                id=f"account_resync_{account_id}",
                replace_existing=True,
                misfire_grace_time=None,
            )
        except Exception:
            logger.exception(f"account_resync_enqueue_failed: account_id={account_id}")
            return
        logger.debug(f"account_resync_scheduled: account_id={account_id}")

    def schedule_many(self, account_ids: Iterable[int]) -> None:
        for account_id in dict.fromkeys(account_ids):
            self.schedule_resync(account_id)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Resync scheduler started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Resync scheduler stopped")


@lru_cache(maxsize=1)
def get_resync_scheduler() -> ResyncScheduler:
    """Process-wide scheduler, started on first use."""
    resync = ResyncScheduler()
    resync.start()
    return resync
