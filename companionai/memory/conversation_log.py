"""Durable conversation log and companion records.

Architectural role:
    The system of record for chat transcripts shown to users. Unlike the
    history store, which only feeds prompts, every row here is a user-visible
    message. Companion (persona) records live in the same database because the
    chat endpoint resolves them on every request.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from companionai.errors import ConversationLogError
from companionai.memory.models import Companion, MessageRecord


logger = logging.getLogger(__name__)


MESSAGE_ROLES = ("user", "system")


class ConversationLog:
    """SQLite-based append-only message log."""

    def __init__(self, db_path: str):
        """
        Initialize conversation log.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        try:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS companions (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        instructions TEXT NOT NULL,
                        seed TEXT NOT NULL,
                        user_id TEXT,
                        created_at TIMESTAMP NOT NULL
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        companion_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        role TEXT NOT NULL CHECK(role IN ('user', 'system')),
                        user_id TEXT NOT NULL,
                        created_at TIMESTAMP NOT NULL,
                        FOREIGN KEY (companion_id) REFERENCES companions(id)
                    )
                """)

                cursor.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_companion ON messages(companion_id, created_at)"
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ConversationLogError(f"failed to initialize conversation log: {e}") from e

        logger.info("Conversation log initialized at %s", self.db_path)

    # =========================================================
    # Companions
    # =========================================================

    def add_companion(
        self,
        name: str,
        instructions: str,
        seed: str,
        description: str = "",
        user_id: Optional[str] = None,
        companion_id: Optional[str] = None,
    ) -> Companion:
        """
        Register a companion.

        Args:
            name: Display name, also used as the speaker cue in prompts
            instructions: Persona instructions placed first in every prompt
            seed: Example dialogue written once into each new memory stream
            description: Optional short description
            user_id: Owner of the record
            companion_id: Explicit id; a UUID is generated when omitted

        Returns:
            Created Companion
        """
        companion = Companion(
            id=companion_id or str(uuid.uuid4()),
            name=name,
            instructions=instructions,
            seed=seed,
            description=description,
            user_id=user_id,
            created_at=datetime.now(),
        )

        try:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO companions (id, name, description, instructions, seed, user_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        companion.id,
                        companion.name,
                        companion.description,
                        companion.instructions,
                        companion.seed,
                        companion.user_id,
                        companion.created_at.isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ConversationLogError(f"failed to add companion {companion.id}: {e}") from e

        logger.info("Created companion %s (%s)", companion.id, companion.name)
        return companion

    def get_companion(self, companion_id: str) -> Optional[Companion]:
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM companions WHERE id = ?", (companion_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ConversationLogError(f"failed to read companion {companion_id}: {e}") from e

        if not row:
            return None

        return Companion(
            id=row["id"],
            name=row["name"],
            instructions=row["instructions"],
            seed=row["seed"],
            description=row["description"],
            user_id=row["user_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # =========================================================
    # Messages
    # =========================================================

    def append_message(
        self,
        companion_id: str,
        content: str,
        role: str,
        user_id: str,
    ) -> MessageRecord:
        """
        Append one message to a companion's log.

        Args:
            companion_id: Companion the conversation belongs to
            content: Message text
            role: "user" or "system" (companion reply)
            user_id: Author / conversation owner

        Returns:
            Stored MessageRecord
        """
        if role not in MESSAGE_ROLES:
            raise ValueError(f"role must be one of {MESSAGE_ROLES}, got {role!r}")

        now = datetime.now()

        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO messages (companion_id, content, role, user_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (companion_id, content, role, user_id, now.isoformat()),
                )
                conn.commit()
                message_id = cursor.lastrowid
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ConversationLogError(f"failed to append message for {companion_id}: {e}") from e

        return MessageRecord(
            id=message_id,
            companion_id=companion_id,
            content=content,
            role=role,
            user_id=user_id,
            created_at=now,
        )

    def list_messages(self, companion_id: str, user_id: Optional[str] = None) -> List[MessageRecord]:
        """Messages of a companion in ascending time order, optionally for one user."""
        sql = "SELECT * FROM messages WHERE companion_id = ?"
        params: tuple = (companion_id,)
        if user_id is not None:
            sql += " AND user_id = ?"
            params = (companion_id, user_id)
        sql += " ORDER BY created_at ASC, id ASC"

        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ConversationLogError(f"failed to list messages for {companion_id}: {e}") from e

        return [
            MessageRecord(
                id=row["id"],
                companion_id=row["companion_id"],
                content=row["content"],
                role=row["role"],
                user_id=row["user_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def count_messages(self, companion_id: str) -> int:
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE companion_id = ?", (companion_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise ConversationLogError(f"failed to count messages for {companion_id}: {e}") from e
        return int(row[0])
