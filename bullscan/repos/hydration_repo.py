"""Hydration marks — "last hydrated calendar date" per symbol and scope.

Used purely as a same-day freshness gate. Best-effort: storage failures
are logged and read as "not hydrated".
"""

import logging
import sqlite3
from typing import Optional

from bullscan.repos.db import get_connection

logger = logging.getLogger("bullscan.store")

DAILY_SCOPE = "daily"


class HydrationRepo:
    """Data access layer for the ``hydration_marks`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def get_mark(self, symbol: str, scope: str) -> Optional[str]:
        """Return the ISO date *symbol* was last hydrated for *scope*."""
        try:
            conn = get_connection(self._db_path)
            try:
                row = conn.execute(
                    "SELECT hydrated_on FROM hydration_marks "
                    "WHERE symbol = ? AND scope = ?",
                    (symbol, scope),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("Hydration mark read failed for %s/%s: %s", symbol, scope, exc)
            return None
        return row["hydrated_on"] if row else None

    def set_mark(self, symbol: str, scope: str, hydrated_on: str) -> None:
        """Record that *symbol* was hydrated for *scope* on *hydrated_on*."""
        try:
            conn = get_connection(self._db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO hydration_marks (symbol, scope, hydrated_on)
                    VALUES (?, ?, ?)
                    ON CONFLICT (symbol, scope) DO UPDATE SET
                        hydrated_on = excluded.hydrated_on
                    """,
                    (symbol, scope, hydrated_on),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning(
                "Hydration mark write failed for %s/%s: %s", symbol, scope, exc
            )
