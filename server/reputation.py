"""Reputation tracking for the marketplace.

SQLite-backed integer score per user. The score is what a reputation
soul-bound token carries on-chain.
"""

import sqlite3
import threading
import time


class ReputationManager:
    """SQLite-backed reputation tracker."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS reputation (
                user_id TEXT PRIMARY KEY,
                score INTEGER NOT NULL DEFAULT 0,
                updated_at REAL NOT NULL
            )
        """)
        self.db.commit()

    def get(self, user_id: str) -> dict:
        """Reputation for a user. Unknown users score 0."""
        with self._lock:
            row = self.db.execute(
                "SELECT score, updated_at FROM reputation WHERE user_id = ?", (user_id,)
            ).fetchone()
        if not row:
            return {"userId": user_id, "score": 0, "updatedAt": time.time()}
        return {"userId": user_id, "score": row["score"], "updatedAt": row["updated_at"]}

    def adjust(self, user_id: str, delta: int) -> dict:
        """Add *delta* (may be negative) to a user's score, creating it if needed."""
        now = time.time()
        with self._lock:
            self.db.execute(
                "INSERT INTO reputation (user_id, score, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET score = score + excluded.score, updated_at = excluded.updated_at",
                (user_id, delta, now),
            )
            self.db.commit()
        return self.get(user_id)

    def close(self):
        self.db.close()
