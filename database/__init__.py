"""
Database Package.

Engine, sessions and transactions for the validator score
store. See database.engine.
"""

from .engine import (
    Base,
    SCORES_TABLE,
    REQUIRED_TABLES,
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_database_engine,
    configure_database,
    reset_database,
    get_engine,
    get_session,
    transaction_scope,
    initialize_database,
    get_table_row_counts,
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
    PersistenceValidationError,
)


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
