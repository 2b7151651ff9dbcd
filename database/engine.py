"""
Score Store Engine.

============================================================
EPOCH SCORE PERSISTENCE
============================================================

One process-wide SQLAlchemy engine backs the validator
score table. Epoch writes go through transaction_scope(),
which either commits the whole epoch or nothing.

PostgreSQL (psycopg2) is the production store. SQLite is
the zero-setup default and what the tests use.

============================================================
"""

import os
import logging
from typing import Dict, Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, inspect, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.pool import QueuePool

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# =============================================================
# DECLARATIVE BASE
# =============================================================

Base = declarative_base()

SCORES_TABLE = "validator_epoch_scores"
REQUIRED_TABLES = [SCORES_TABLE]

# =============================================================
# ENGINE
# =============================================================

DEFAULT_DATABASE_URL = "sqlite:///stake_scoring.db"

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """
    Resolve the score store URL.

    DATABASE_URL_SYNC wins over DATABASE_URL. An asyncpg URL is
    rewritten to the psycopg2 driver since the store is synchronous.
    """
    url = os.getenv("DATABASE_URL_SYNC") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        url = url.replace("postgresql+asyncpg", "postgresql+psycopg2", 1)

    if not url:
        logger.warning(f"No database URL configured, falling back to {DEFAULT_DATABASE_URL}")
        url = DEFAULT_DATABASE_URL

    return url


def _redact(url: str) -> str:
    return url.split("@")[-1]


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Build the process engine, or return the one already built.

    Pool sizing only applies to server databases; SQLite keeps
    the dialect default pool.
    """
    global _engine

    if _engine is not None:
        return _engine

    url = database_url or get_database_url()
    logger.info(f"Opening score store at {_redact(url)}")

    if url.startswith("sqlite"):
        _engine = create_engine(url, echo=echo, future=True)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
            echo=echo,
            future=True,
        )

    @event.listens_for(_engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Score store connection opened")

    return _engine


def configure_database(database_url: str, echo: bool = False) -> Engine:
    """Replace the process engine with one bound to database_url."""
    reset_database()
    return create_database_engine(database_url=database_url, echo=echo)


def reset_database() -> None:
    """Dispose the engine so the next call rebuilds it."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> Engine:
    return create_database_engine()


def get_session() -> Session:
    """
    Open a bare session.

    The caller owns commit and close; transaction_scope() is
    the normal entry point.
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory()


# =============================================================
# TRANSACTIONS
# =============================================================

@contextmanager
def transaction_scope() -> Generator[Session, None, None]:
    """
    Run a block in one transaction.

    Commits when the block exits cleanly. Any exception rolls the
    whole transaction back and surfaces as DatabasePersistenceError,
    so a failed epoch write never leaves a partial epoch behind.

    Usage:
        with transaction_scope() as session:
            ValidatorScoreRepository(session).upsert_epoch(epoch, records)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except DatabasePersistenceError as e:
        session.rollback()
        logger.error(f"Score store write rejected, rolled back: {e}")
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Score store error, rolled back: {e}")
        raise DatabasePersistenceError(f"Transaction failed: {e}") from e
    except Exception as e:
        session.rollback()
        logger.error(f"Unexpected error inside transaction, rolled back: {e}")
        raise DatabasePersistenceError(f"Transaction failed: {e}") from e
    finally:
        session.close()


# =============================================================
# INITIALIZATION
# =============================================================

def initialize_database() -> None:
    """
    Prepare the score store for a run.

    Checks connectivity, creates missing tables and confirms the
    score table is present. Any failure aborts the run.
    """
    engine = get_engine()

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except OperationalError as e:
        logger.critical(f"Score store unreachable: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e

    # Registers the ORM tables on Base
    from stake_scoring import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.critical(f"Creating score tables failed: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}") from e

    missing = [t for t in REQUIRED_TABLES if t not in inspect(engine).get_table_names()]
    if missing:
        raise DatabaseInitializationError(f"Missing tables: {', '.join(missing)}")

    logger.info(f"Score store ready ({', '.join(REQUIRED_TABLES)})")


def get_table_row_counts() -> Dict[str, int]:
    """Row count per required table, -1 when a table cannot be read."""
    counts: Dict[str, int] = {}

    with get_engine().connect() as conn:
        for table in REQUIRED_TABLES:
            try:
                counts[table] = conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()
            except SQLAlchemyError:
                counts[table] = -1

    return counts


# =============================================================
# EXCEPTIONS
# =============================================================

class DatabasePersistenceError(Exception):
    """Score store read or write failed."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Score store is unreachable."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Score tables could not be created or verified."""
    pass


class PersistenceValidationError(DatabasePersistenceError):
    """A record set was rejected before anything was written."""
    pass


__all__ = [
    "Base",
    "SCORES_TABLE",
    "REQUIRED_TABLES",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "configure_database",
    "reset_database",
    "get_engine",
    "get_session",
    "transaction_scope",
    "initialize_database",
    "get_table_row_counts",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "PersistenceValidationError",
]
