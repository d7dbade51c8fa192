"""
Progress ledger
SQLite-backed, append-only record of items already handled so runs can resume
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Set
import logging

logger = logging.getLogger(__name__)


class ProgressLedger:
    """Processed-item ledger"""

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: SQLite database file path
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()

    def _initialize_db(self):
        """Create tables if needed"""
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row

        cursor = self.conn.cursor()

        # One row per record() call; duplicates are allowed
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processed_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_key TEXT NOT NULL,
                outcome TEXT,
                recorded_at TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_item_key
            ON processed_items(item_key)
        """)

        self.conn.commit()
        logger.info(f"Ledger opened: {self.db_path}")

    def load(self) -> Set[str]:
        """
        All previously recorded keys

        Returns:
            Set of item keys (empty for a new ledger)
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT DISTINCT item_key FROM processed_items")
        keys = {row['item_key'] for row in cursor.fetchall()}
        logger.info(f"Ledger loaded: {len(keys)} processed item(s)")
        return keys

    def contains(self, key: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT 1 FROM processed_items WHERE item_key = ? LIMIT 1",
            (key,)
        )
        return cursor.fetchone() is not None

    def record(self, key: str, outcome: Optional[str] = None):
        """
        Append a key durably (committed immediately)

        Args:
            key: Item key (path or name, see ledger_key)
            outcome: Outcome label stored alongside for auditing
        """
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO processed_items (item_key, outcome, recorded_at)
            VALUES (?, ?, ?)
        """, (key, outcome, datetime.now().isoformat()))
        self.conn.commit()
        logger.debug(f"Ledger record: {key} -> {outcome}")

    def get_statistics(self) -> Dict:
        """Row counts per outcome label"""
        cursor = self.conn.cursor()

        stats = {}

        cursor.execute("""
            SELECT outcome, COUNT(*) as count
            FROM processed_items
            GROUP BY outcome
        """)
        stats['by_outcome'] = {row['outcome']: row['count'] for row in cursor.fetchall()}

        cursor.execute("SELECT COUNT(DISTINCT item_key) as total FROM processed_items")
        stats['total_items'] = cursor.fetchone()['total']

        cursor.execute("SELECT MAX(recorded_at) as last FROM processed_items")
        stats['last_recorded'] = cursor.fetchone()['last']

        return stats

    def close(self):
        """Close the connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Ledger closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
