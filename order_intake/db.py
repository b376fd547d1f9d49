import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from .logging_config import get_logger

log = get_logger(__name__)

DB_USER = os.getenv("DB_USER", "app")
DB_PASS = os.getenv("DB_PASS", "app")
DB_NAME = os.getenv("DB_NAME", "appdb")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_SCHEMA = os.getenv("DB_SCHEMA", "shop")

DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_LOCK_TIMEOUT_MS = int(os.getenv("DB_LOCK_TIMEOUT_MS", "5000"))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "15000"))

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)


def _enable_sqlite_locking(engine: Engine) -> None:
    """
    SQLite has no row locks. Open every transaction with BEGIN IMMEDIATE so
    the write lock is taken before the first read, which serializes order
    creation the same way FOR UPDATE does on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str = DATABASE_URL) -> Engine:
    """
    Create the bounded connection pool shared by every request.
    PostgreSQL sessions get search_path plus lock/statement timeouts, so a
    stuck row lock surfaces as an error instead of hanging the worker.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": DB_POOL_TIMEOUT},
        )
        _enable_sqlite_locking(engine)
        return engine

    options = (
        f"-csearch_path={DB_SCHEMA},public "
        f"-clock_timeout={DB_LOCK_TIMEOUT_MS} "
        f"-cstatement_timeout={DB_STATEMENT_TIMEOUT_MS}"
    )
    return create_engine(
        url,
        connect_args={"options": options},
        pool_pre_ping=True,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_timeout=DB_POOL_TIMEOUT,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """
    Ensure the schema exists, then create tables (idempotent).
    Called once at application startup.
    """
    if engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{DB_SCHEMA}"'))
    from .models import Base  # noqa

    Base.metadata.create_all(bind=engine)


@contextmanager
def transaction(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Check out one pooled connection for the duration of a transaction.
    Commits when the block exits cleanly; otherwise rolls back and re-raises
    the original error. A failed rollback is logged and never replaces it.
    The session (and its connection) is released on every path.
    """
    s = session_factory()
    try:
        yield s
        s.commit()
    except BaseException:
        try:
            s.rollback()
            log.warning("transaction.rolled_back")
        except Exception:
            log.error("transaction.rollback_failed", exc_info=True)
        raise
    finally:
        s.close()


engine = build_engine()
SessionLocal = build_session_factory(engine)
