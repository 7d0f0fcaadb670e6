# presence_server/db_async.py

import aiosqlite
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)


class Database:
    """
    Asynchronous wrapper for the SQLite message history.

    Messages are stored before they are pushed so a conversation can be
    backfilled later. Nothing here re-delivers a message to a recipient that
    was offline when it was sent.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn = None

    async def connect(self):
        try:
            self._conn = await aiosqlite.connect(self.db_path)
            # Enable row factory to get results as dictionaries
            self._conn.row_factory = aiosqlite.Row
            logger.info("Database connection to %s successful.", self.db_path)
            await self._initialize_schema()
        except Exception:
            logger.error("Error connecting to database %s", self.db_path, exc_info=True)
            raise

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("Database connection closed.")

    async def _initialize_schema(self):
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_pair
            ON messages (sender_id, recipient_id, created_at)
        """)
        await self._conn.commit()

    async def store_message(self, sender_id: str, recipient_id: str, text: str) -> Dict[str, Any]:
        """Stores a direct message and returns it as a JSON-ready dict."""
        message = {
            "id": str(uuid.uuid4()),
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "text": text,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._conn.execute(
            "INSERT INTO messages (id, sender_id, recipient_id, text, created_at) VALUES (?, ?, ?, ?, ?)",
            (message["id"], sender_id, recipient_id, text, message["created_at"])
        )
        await self._conn.commit()
        return message

    async def get_conversation(self, user_a: str, user_b: str, limit: int = 200) -> List[Dict[str, Any]]:
        """Returns the latest ``limit`` messages between two users, oldest first."""
        cursor = await self._conn.execute(
            """
            SELECT id, sender_id, recipient_id, text, created_at FROM messages
            WHERE (sender_id = ? AND recipient_id = ?) OR (sender_id = ? AND recipient_id = ?)
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (user_a, user_b, user_b, user_a, limit)
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in reversed(rows)]
