from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    # offset links and the rejection ledger cascade from transactions
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def create_ledger_engine(url: Optional[str] = None) -> Engine:
    url = url or get_settings().database_url
    if not _is_sqlite(url):
        return create_engine(url, pool_pre_ping=True)
    ledger_engine = create_engine(url, connect_args={"check_same_thread": False})
    event.listen(ledger_engine, "connect", enable_sqlite_pragmas)
    return ledger_engine


def make_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = create_ledger_engine()
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for background jobs: commit on success, roll back on error."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
