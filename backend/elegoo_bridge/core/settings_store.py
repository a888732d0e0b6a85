"""
Printer settings store — opaque key/value blob persisted in SQLite.

The dashboard saves its print settings (layer height, exposure times, ...)
here. The engine reads and writes the blob but never interprets it.
"""

import json
import logging
import threading
from typing import Any, Dict

from elegoo_bridge.core.db_utils import get_db

log = logging.getLogger(__name__)

DEFAULT_KEY = "printer_settings"


class SettingsStore:
    """JSON blobs keyed by name in a single `settings_blobs` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._ensure_table()

    def _ensure_table(self):
        with get_db(self.db_path) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS settings_blobs ("
                " key TEXT PRIMARY KEY,"
                " value TEXT NOT NULL,"
                " updated_at TEXT DEFAULT (datetime('now')))"
            )
            conn.commit()

    def load(self, key: str = DEFAULT_KEY) -> Dict[str, Any]:
        """Return the stored blob, or {} if nothing was saved or it is unreadable."""
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT value FROM settings_blobs WHERE key = ?", (key,)).fetchone()
        if not row:
            return {}
        try:
            value = json.loads(row[0])
        except json.JSONDecodeError as e:
            log.warning(f"Stored settings '{key}' are not valid JSON, ignoring: {e}")
            return {}
        return value if isinstance(value, dict) else {}

    def save(self, value: Dict[str, Any], key: str = DEFAULT_KEY) -> None:
        blob = json.dumps(value)
        with self._lock, get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO settings_blobs (key, value, updated_at) VALUES (?, ?, datetime('now'))"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, blob),
            )
            conn.commit()
        log.info(f"Saved settings '{key}' ({len(blob)} bytes)")
