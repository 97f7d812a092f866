import json
import sqlite3
import time
from pathlib import Path

import services.util as u
import services.logger as log

l = log.get_logger()


class MessageStore:
    """Keeps the raw payload of every inbound platform message.

    Platforms embed at most one level of a quoted message; the store lets a
    driver look up the full payload of the quoted message (and therefore the
    message *it* quotes) by id.
    """

    def __init__(self, db_path: Path | str | None = None, max_age: float = 7 * 24 * 3600):
        self._db_path = str(db_path) if db_path is not None else str(Path(u.get_data_path()) / "messages.db")
        self._max_age = max_age
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path)
        return self._conn

    def _init_db(self):
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS native_messages (
                platform TEXT,
                chat_id TEXT,
                message_id TEXT,
                payload TEXT,
                stored_at REAL,
                PRIMARY KEY (platform, chat_id, message_id)
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_stored_at ON native_messages (stored_at)")
        conn.commit()

    def save(self, platform: str, chat_id: str, message_id: str, payload: dict):
        """Store *payload*; failures are logged, never raised."""
        try:
            conn = self._get_conn()
            conn.execute("""
                INSERT OR REPLACE INTO native_messages (platform, chat_id, message_id, payload, stored_at)
                VALUES (?, ?, ?, ?, ?)
            """, (platform, str(chat_id), str(message_id), json.dumps(payload, default=str), time.time()))
            conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            l.error(f"Failed to store message {platform}/{chat_id}/{message_id}: {e}")

    def load(self, platform: str, chat_id: str, message_id: str) -> dict | None:
        cursor = self._get_conn().execute("""
            SELECT payload FROM native_messages
            WHERE platform = ? AND chat_id = ? AND message_id = ?
        """, (platform, str(chat_id), str(message_id)))
        row = cursor.fetchone()
        return json.loads(row[0]) if row else None

    def prune(self) -> int:
        """Delete payloads older than ``max_age`` seconds; returns the count removed."""
        conn = self._get_conn()
        cursor = conn.execute(
            "DELETE FROM native_messages WHERE stored_at < ?", (time.time() - self._max_age,)
        )
        conn.commit()
        if cursor.rowcount:
            l.debug(f"Pruned {cursor.rowcount} stored message(s)")
        return cursor.rowcount

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None
