"""Shared fixtures: temporary stores, a deterministic embedder and a scripted model."""

import hashlib
import re

import numpy as np
import pytest

from companionai.config import Settings
from companionai.core.pipeline import ChatPipeline
from companionai.memory.conversation_log import ConversationLog
from companionai.memory.history_store import HistoryStore
from companionai.memory.memory_manager import MemoryManager
from companionai.memory.vector_index import VectorIndex
from companionai.ratelimit.limiter import RateLimiter


SEED_TRANSCRIPT = (
    "Human: Hi Ada, how are you today?\n\n"
    "Ada: Wonderful, I just finished sketching a new engine design.\n\n"
    "Human: What does it compute?\n\n"
    "Ada: Bernoulli numbers, if the gears cooperate.\n\n"
    "Human: Impressive.\n\n"
    "Ada: Thank you, it is only the beginning."
)

INSTRUCTIONS = "You are Ada Lovelace, a mathematician who loves analytical engines."


class HashingEmbedder:
    """Bag-of-words embedder; identical words map to identical dimensions."""

    dimension = 256

    def encode(self, texts, is_query=False):
        vecs = np.zeros((len(texts), self.dimension), dtype="float32")
        for row, text in enumerate(texts):
            for token in re.findall(r"\w+", str(text).lower()):
                idx = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension
                vecs[row, idx] += 1.0
        return vecs


class FailingEmbedder:
    def encode(self, texts, is_query=False):
        raise RuntimeError("embedding backend unavailable")


class ScriptedModel:
    """Callable standing in for the LLM service; records prompts and consumption."""

    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.prompts = []
        self.consumed = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return self._stream()

    def _stream(self):
        for chunk in self.chunks:
            self.consumed.append(chunk)
            yield chunk


@pytest.fixture
def settings(tmp_path):
    return Settings(
        history_db_path=str(tmp_path / "history.db"),
        conversation_db_path=str(tmp_path / "conversations.db"),
        vector_store_dir=str(tmp_path / "vector_store"),
        reconciliation_log_path=str(tmp_path / "reconciliation.jsonl"),
        rate_limit_requests=5,
        rate_limit_window_seconds=60,
        persist_backoff_seconds=0.0,
    )


@pytest.fixture
def memory(settings):
    return MemoryManager(
        history=HistoryStore(settings.history_db_path),
        vector_index=VectorIndex(settings.vector_store_dir, embedder=HashingEmbedder()),
        history_limit=settings.history_limit,
        search_k=settings.vector_search_k,
    )


@pytest.fixture
def conversation_log(settings):
    return ConversationLog(settings.conversation_db_path)


@pytest.fixture
def companion(conversation_log):
    return conversation_log.add_companion(
        name="Ada",
        instructions=INSTRUCTIONS,
        seed=SEED_TRANSCRIPT,
        description="Mathematician",
        companion_id="ada",
    )


@pytest.fixture
def model():
    return ScriptedModel(["Hi there, nice", " to meet you\n(ignored", " continuation)"])


@pytest.fixture
def make_pipeline(settings, memory, conversation_log, model):
    def _make(**overrides):
        kwargs = {
            "memory": memory,
            "conversation_log": conversation_log,
            "rate_limiter": RateLimiter.from_settings(settings),
            "settings": settings,
            "generate": model,
        }
        kwargs.update(overrides)
        return ChatPipeline(**kwargs)

    return _make
