"""
Centralized SQLite access.

The engine only persists one thing: the opaque printer settings blob
(see core/settings_store.py). This module provides a context manager that enforces:

  - busy_timeout=10000  (wait up to 10s for locks instead of failing)
  - Proper cleanup on exceptions (conn.close() in finally)
  - Optional row_factory for dict-style row access

Usage:
    from elegoo_bridge.core.db_utils import get_db

    with get_db(path) as conn:
        conn.execute("SELECT ...")
        conn.commit()
"""

import sqlite3
from contextlib import contextmanager


@contextmanager
def get_db(db_path: str, row_factory=None):
    """Yield a sqlite3 connection with busy_timeout and guaranteed cleanup.

    Args:
        db_path: SQLite database file path.
        row_factory: Optional row factory (e.g. sqlite3.Row) for dict-style access.
    """
    conn = sqlite3.connect(db_path, timeout=10)
    conn.execute("PRAGMA busy_timeout=10000")
    if row_factory is not None:
        conn.row_factory = row_factory
    try:
        yield conn
    finally:
        conn.close()
