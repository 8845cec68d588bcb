"""
Database connection management.

Provides SQLite connections for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "zenlock.db"

# Seconds a connection waits on a locked database before failing
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection and hold the write lock for one all-or-nothing unit.

    ``BEGIN IMMEDIATE`` takes the write lock up front so a read-then-write
    sequence cannot be interleaved with another writer.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
