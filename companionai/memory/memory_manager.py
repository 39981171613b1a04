"""Unified async facade over the history store and the vector index.

Architectural role:
    Owns exactly one `HistoryStore` and one `VectorIndex` and exposes the four
    memory operations the chat pipeline needs: write, read recent, seed and
    semantic search.

Lifecycle:
    - The HTTP app factory builds one manager and injects it into the pipeline.
    - `MemoryManager.get_instance()` is kept for callers without a composition
      root (CLI, scripts). Construction is guarded by a lock so concurrent first
      callers share one fully-initialised instance.
    - The instance lives for the rest of the process.

Validation:
    Every operation rejects an incomplete `CompanionKey` (missing user id) by
    logging and returning an empty result instead of raising.

Concurrency:
    Store and index calls are blocking; they run in `asyncio.to_thread`. Both
    clients hold no per-call state, so sharing them across tasks is safe.
"""

import asyncio
import logging
import threading
from typing import List, Optional

from companionai.config import Settings
from companionai.memory.history_store import HistoryStore
from companionai.memory.models import CompanionKey, SimilarityDocument
from companionai.memory.vector_index import SentenceTransformerEmbedder, VectorIndex


logger = logging.getLogger(__name__)


class MemoryManager:
    """Facade over short-term (history) and long-term (vector) memory."""

    _instance: Optional["MemoryManager"] = None
    _instance_lock = threading.Lock()

    def __init__(
        self,
        history: HistoryStore,
        vector_index: VectorIndex,
        history_limit: int = 30,
        search_k: int = 3,
    ):
        self.history = history
        self.vector_index = vector_index
        self.history_limit = history_limit
        self.search_k = search_k

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryManager":
        return cls(
            history=HistoryStore(settings.history_db_path),
            vector_index=VectorIndex(
                settings.vector_store_dir,
                embedder=SentenceTransformerEmbedder(settings.embed_model),
            ),
            history_limit=settings.history_limit,
            search_k=settings.vector_search_k,
        )

    @classmethod
    def get_instance(cls, settings: Optional[Settings] = None) -> "MemoryManager":
        """Return the process-wide manager, creating it on first use.

        Args:
            settings: Used only by the call that performs construction.

        Returns:
            The shared `MemoryManager`.

        Edge cases:
            Construction failures propagate and leave no partial instance, so
            the next caller retries.
        """
        instance = cls._instance
        if instance is not None:
            return instance

        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls.from_settings(settings or Settings.from_env())
                logger.info("MemoryManager initialized")
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._instance_lock:
            cls._instance = None

    # =========================================================
    # History
    # =========================================================

    @staticmethod
    def _valid_key(companion_key: CompanionKey) -> bool:
        if companion_key is None or not companion_key.is_complete():
            logger.warning("Companion key set incorrectly: %r", companion_key)
            return False
        return True

    async def write_to_history(self, text: str, companion_key: CompanionKey) -> Optional[float]:
        """Append `text` to the stream; returns its score, or `None` for a bad key."""
        if not self._valid_key(companion_key):
            return None
        return await asyncio.to_thread(self.history.write, companion_key, text)

    async def read_latest_history(self, companion_key: CompanionKey) -> List[str]:
        """Recency window, oldest-first; `[]` for a bad or unknown key."""
        if not self._valid_key(companion_key):
            return []
        return await asyncio.to_thread(
            self.history.read_recent, companion_key, self.history_limit
        )

    async def seed_chat_history(
        self,
        seed_content: str,
        delimiter: str,
        companion_key: CompanionKey,
    ) -> bool:
        """Seed an empty stream once; `False` when already seeded or key is bad."""
        if not self._valid_key(companion_key):
            return False
        return await asyncio.to_thread(
            self.history.seed, companion_key, seed_content, delimiter
        )

    # =========================================================
    # Semantic search
    # =========================================================

    async def vector_search(
        self,
        recent_chat_history: str,
        companion_file_name: str,
    ) -> List[SimilarityDocument]:
        return await asyncio.to_thread(
            self.vector_index.search,
            recent_chat_history,
            self.search_k,
            companion_file_name,
        )
