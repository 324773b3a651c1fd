"""Database connection manager for SQLite."""

import sqlite3
from contextlib import contextmanager

from consult_lifecycle import config

from .schema import SCHEMA

BUSY_TIMEOUT_MS = 5000


def get_connection() -> sqlite3.Connection:
    """Get a database connection with row factory enabled."""
    conn = sqlite3.connect(config.LIFECYCLE_DB_PATH, timeout=BUSY_TIMEOUT_MS / 1000)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    return conn


@contextmanager
def transaction():
    """Yield a connection inside a write transaction.

    BEGIN IMMEDIATE takes the database write lock up front so two writers
    cannot both read the same snapshot and then commit. Everything is rolled
    back if the block raises.
    """
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_database() -> None:
    """Initialize the database with schema."""
    conn = get_connection()
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()
