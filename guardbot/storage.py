"""
Tracker Database Module
Persists trust streaks and offense windows in SQLite so escalation survives restarts.
The in-memory trackers stay authoritative: every failure here is logged and swallowed.
"""
import logging
import sqlite3
from typing import Dict, Tuple

from guardbot.models import OffenseRecord, TrustRecord

logger = logging.getLogger(__name__)


class TrackerStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_db_connection(self):
        """Get a database connection with WAL mode and concurrent access optimizations."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def init_db(self) -> None:
        """Create the tracker tables if they don't exist."""
        try:
            conn = self.get_db_connection()
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS trust_records (
                    group_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    streak INTEGER NOT NULL DEFAULT 0,
                    trusted INTEGER NOT NULL DEFAULT 0,
                    last_updated REAL NOT NULL,
                    PRIMARY KEY (group_id, user_id)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS offense_records (
                    user_id INTEGER PRIMARY KEY,
                    count INTEGER NOT NULL,
                    window_started_at REAL NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_trust_last_updated ON trust_records(last_updated)"
            )
            conn.commit()
            conn.close()
            logger.info(f"Tracker database ready at {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize tracker database: {e}")

    # ==================== Trust ====================

    def save_trust_record(self, group_id: int, user_id: int, record: TrustRecord) -> bool:
        try:
            conn = self.get_db_connection()
            conn.execute("""
                INSERT INTO trust_records (group_id, user_id, streak, trusted, last_updated)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(group_id, user_id) DO UPDATE SET
                    streak = excluded.streak,
                    trusted = excluded.trusted,
                    last_updated = excluded.last_updated
            """, (group_id, user_id, record.streak, int(record.trusted), record.last_updated))
            conn.commit()
            conn.close()
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to save trust record for {group_id}:{user_id}: {e}")
            return False

    def delete_trust_record(self, group_id: int, user_id: int) -> bool:
        try:
            conn = self.get_db_connection()
            conn.execute(
                "DELETE FROM trust_records WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            )
            conn.commit()
            conn.close()
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to delete trust record for {group_id}:{user_id}: {e}")
            return False

    def load_trust_records(self) -> Dict[Tuple[int, int], TrustRecord]:
        try:
            conn = self.get_db_connection()
            cursor = conn.cursor()
            cursor.execute("SELECT group_id, user_id, streak, trusted, last_updated FROM trust_records")
            rows = cursor.fetchall()
            conn.close()
        except sqlite3.Error as e:
            logger.error(f"Failed to load trust records: {e}")
            return {}

        return {
            (row[0], row[1]): TrustRecord(streak=row[2], trusted=bool(row[3]), last_updated=row[4])
            for row in rows
        }

    # ==================== Offenses ====================

    def save_offense_record(self, user_id: int, record: OffenseRecord) -> bool:
        try:
            conn = self.get_db_connection()
            conn.execute("""
                INSERT INTO offense_records (user_id, count, window_started_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    count = excluded.count,
                    window_started_at = excluded.window_started_at
            """, (user_id, record.count, record.window_started_at))
            conn.commit()
            conn.close()
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to save offense record for {user_id}: {e}")
            return False

    def delete_offense_record(self, user_id: int) -> bool:
        try:
            conn = self.get_db_connection()
            conn.execute("DELETE FROM offense_records WHERE user_id = ?", (user_id,))
            conn.commit()
            conn.close()
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to delete offense record for {user_id}: {e}")
            return False

    def load_offense_records(self) -> Dict[int, OffenseRecord]:
        try:
            conn = self.get_db_connection()
            cursor = conn.cursor()
            cursor.execute("SELECT user_id, count, window_started_at FROM offense_records")
            rows = cursor.fetchall()
            conn.close()
        except sqlite3.Error as e:
            logger.error(f"Failed to load offense records: {e}")
            return {}

        return {row[0]: OffenseRecord(count=row[1], window_started_at=row[2]) for row in rows}
