"""Tests for the memory manager facade and its singleton lifecycle."""

import asyncio
import threading
import time

from companionai.memory.memory_manager import MemoryManager
from companionai.memory.models import CompanionKey


class TestMemoryManager:

    def test_incomplete_key_is_rejected_without_raising(self, memory):
        key = CompanionKey(companion_name="ada", model_name="llama2-13b", user_id=None)

        async def run():
            written = await memory.write_to_history("hello", key)
            seeded = await memory.seed_chat_history("a\nb", "\n", key)
            recent = await memory.read_latest_history(key)
            return written, seeded, recent

        written, seeded, recent = asyncio.run(run())

        assert written is None
        assert seeded is False
        assert recent == []
        assert memory.history.exists(key) is False

    def test_round_trip_through_facade(self, memory):
        key = CompanionKey(companion_name="ada", model_name="llama2-13b", user_id="u1")

        async def run():
            await memory.seed_chat_history("s1\n\ns2", "\n\n", key)
            await memory.write_to_history("User: Hello", key)
            return await memory.read_latest_history(key)

        assert asyncio.run(run()) == ["s1", "s2", "User: Hello"]

    def test_vector_search_uses_configured_k(self, memory):
        memory.vector_index.add_documents([f"fact number {i}" for i in range(6)], "ada.txt")

        results = asyncio.run(memory.vector_search("fact number", "ada.txt"))

        assert len(results) == memory.search_k


class TestSingleton:

    def teardown_method(self):
        MemoryManager.reset_instance()

    def test_concurrent_first_use_builds_one_instance(self, monkeypatch, memory, settings):
        calls = []

        def slow_build(cls, _settings):
            calls.append(1)
            time.sleep(0.05)
            return memory

        monkeypatch.setattr(MemoryManager, "from_settings", classmethod(slow_build))

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(MemoryManager.get_instance(settings)))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len(results) == 8
        assert all(r is memory for r in results)

    def test_failed_construction_leaves_no_instance(self, monkeypatch, memory, settings):
        def broken(cls, _settings):
            raise RuntimeError("index unavailable")

        monkeypatch.setattr(MemoryManager, "from_settings", classmethod(broken))

        try:
            MemoryManager.get_instance(settings)
        except RuntimeError:
            pass

        monkeypatch.setattr(MemoryManager, "from_settings", classmethod(lambda cls, s: memory))
        assert MemoryManager.get_instance(settings) is memory
