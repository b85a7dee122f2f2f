"""
Record store engine and session lifecycle

One engine per process, built from the configured database_url. SQLite gets
foreign keys switched on so booking -> quota transaction links are checked.
"""
from contextlib import contextmanager
from typing import Generator, Optional
import logging

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from lessonbook.config import get_config
from lessonbook import db_models  # noqa: F401  (registers tables on the metadata)

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    """Create an engine for a SQLAlchemy URL"""
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def get_engine() -> Engine:
    """Engine of the configured record store, created on first use"""
    global _engine
    if _engine is None:
        _engine = build_engine(get_config().database_url)
        logger.info(f"Record store engine created: {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def init_database() -> None:
    """Create bookings, user_quotas and quota_transactions if missing"""
    SQLModel.metadata.create_all(get_engine())
    logger.info(f"Record store ready: {', '.join(sorted(SQLModel.metadata.tables))}")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Unit of work for one facade call

    Commits on success and rolls back on error. Loaded rows stay readable
    after the block so facade results can be returned to route handlers.

    Usage:
        with get_session() as session:
            quota = QuotaLedger(session).get_balance(user_id)
    """
    session = Session(get_engine(), expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_database() -> None:
    """Dispose of the engine and its pooled connections"""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Record store connections closed")
