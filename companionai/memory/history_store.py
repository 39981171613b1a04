"""Time-ordered, append-only utterance store keyed by companion stream.

Architectural role:
    Short-term conversational memory. Each `CompanionKey` owns a sorted-set-like
    sequence of utterances (member = text, score = timestamp or seed rank) that
    the pipeline reads as a bounded recency window.

Storage model:
    One SQLite table, one row per entry. Rows are ordered by `(score, id)`, so
    entries sharing a score keep insertion order and identical texts are kept
    as separate entries.

Ordering rules:
    - Live writes use wall-clock milliseconds, clamped to never go below the
      key's current maximum score.
    - Seed lines use ranks 0..n-1 and therefore sort before every live write.

Concurrency:
    Connections are opened per call. `seed` and `write` run inside
    `BEGIN IMMEDIATE` transactions, which makes "seed if absent" atomic across
    threads and processes sharing the database file.

Error handling:
    `sqlite3.Error` is wrapped in `HistoryStoreError`.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional

from companionai.errors import HistoryStoreError
from companionai.memory.models import CompanionKey, HistoryEntry


logger = logging.getLogger(__name__)


DEFAULT_RECENT_LIMIT = 30
LOCK_TIMEOUT_SECONDS = 30.0


class HistoryStore:
    """SQLite-backed sorted-set store for per-companion chat history."""

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        """
        Initialize the store and create the schema if needed.

        Args:
            db_path: SQLite database file.
            clock: Seconds-since-epoch source used for live-write scores.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly.
        return sqlite3.connect(
            self.db_path,
            timeout=LOCK_TIMEOUT_SECONDS,
            isolation_level=None,
        )

    @contextmanager
    def _transaction(self):
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise HistoryStoreError(f"history transaction failed: {e}") from e
        finally:
            conn.close()

    def _init_db(self):
        try:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS history (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        key TEXT NOT NULL,
                        score REAL NOT NULL,
                        member TEXT NOT NULL
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_history_key_score ON history(key, score, id)"
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"failed to initialize history store: {e}") from e
        logger.info("History store initialized at %s", self.db_path)

    # =========================================================
    # Writes
    # =========================================================

    def write(self, key: CompanionKey, text: str) -> float:
        """Append one utterance with a write-time score.

        Args:
            key: Memory stream identity.
            text: Utterance text.

        Returns:
            The score assigned to the entry.
        """
        storage_key = key.storage_key()
        now_ms = self._clock() * 1000.0

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT MAX(score) FROM history WHERE key = ?", (storage_key,)
            ).fetchone()
            current_max = row[0] if row and row[0] is not None else None
            score = now_ms if current_max is None else max(now_ms, current_max)

            conn.execute(
                "INSERT INTO history (key, score, member) VALUES (?, ?, ?)",
                (storage_key, score, text),
            )

        return score

    def seed(self, key: CompanionKey, content: str, delimiter: str = "\n") -> bool:
        """Seed an empty stream with example dialogue, at most once.

        Args:
            key: Memory stream identity.
            content: Seed transcript.
            delimiter: Separator between transcript lines.

        Returns:
            `True` when lines were written, `False` when the stream already had
            history ("already seeded") or the transcript had no lines.
        """
        storage_key = key.storage_key()
        lines = [line for line in (content or "").split(delimiter) if line.strip()]

        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM history WHERE key = ? LIMIT 1", (storage_key,)
            ).fetchone()
            if exists:
                logger.info("User already has chat history: %s", storage_key)
                return False

            if not lines:
                return False

            conn.executemany(
                "INSERT INTO history (key, score, member) VALUES (?, ?, ?)",
                [(storage_key, float(rank), line) for rank, line in enumerate(lines)],
            )

        logger.info("Seeded %d lines for %s", len(lines), storage_key)
        return True

    # =========================================================
    # Reads
    # =========================================================

    def exists(self, key: CompanionKey) -> bool:
        row = self._fetch_one(
            "SELECT 1 FROM history WHERE key = ? LIMIT 1", (key.storage_key(),)
        )
        return row is not None

    def read_recent(self, key: CompanionKey, limit: int = DEFAULT_RECENT_LIMIT) -> List[str]:
        """Return the last `limit` utterances, oldest-first.

        Unknown keys return an empty list.
        """
        if limit <= 0:
            return []

        rows = self._fetch_all(
            """
            SELECT member FROM (
                SELECT id, score, member FROM history
                WHERE key = ?
                ORDER BY score DESC, id DESC
                LIMIT ?
            )
            ORDER BY score ASC, id ASC
            """,
            (key.storage_key(), limit),
        )
        return [row[0] for row in rows]

    def range_by_score(
        self,
        key: CompanionKey,
        min_score: float = float("-inf"),
        max_score: Optional[float] = None,
    ) -> List[HistoryEntry]:
        """Return entries with `min_score <= score <= max_score`, ascending."""
        if max_score is None:
            max_score = float("inf")

        rows = self._fetch_all(
            """
            SELECT member, score FROM history
            WHERE key = ? AND score >= ? AND score <= ?
            ORDER BY score ASC, id ASC
            """,
            (key.storage_key(), min_score, max_score),
        )
        return [HistoryEntry(text=row[0], score=row[1]) for row in rows]

    def _fetch_one(self, sql: str, params: tuple):
        try:
            conn = self._get_connection()
            try:
                return conn.execute(sql, params).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"history read failed: {e}") from e

    def _fetch_all(self, sql: str, params: tuple):
        try:
            conn = self._get_connection()
            try:
                return conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"history read failed: {e}") from e
