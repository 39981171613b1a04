"""Tests for the chat pipeline: ordering, degradation and persistence."""

import asyncio
import json

import pytest

from companionai.core.pipeline import ChatState, Identity
from companionai.errors import (
    AuthorizationError,
    ConversationLogError,
    HistoryStoreError,
    ModelInvocationError,
    NotFoundError,
    RateLimitedError,
)
from companionai.memory.models import CompanionKey
from companionai.ratelimit.limiter import RateLimiter

from conftest import SEED_TRANSCRIPT, ScriptedModel


URL = "http://testserver/api/chat/ada"
ALICE = Identity(user_id="u1", display_name="Alice")


def run_turn(pipeline, prompt="Hello", identity=ALICE, chat_id="ada"):
    async def _run():
        turn = await pipeline.handle(chat_id, prompt, identity, URL)
        body = b""
        async for chunk in pipeline.stream_response(turn):
            body += chunk
        return turn, body

    return asyncio.run(_run())


def history_of(memory, user_id="u1"):
    key = CompanionKey(companion_name="ada", model_name="llama2-13b", user_id=user_id)
    return memory.history.read_recent(key, 100)


SEED_LINES = SEED_TRANSCRIPT.split("\n\n")


class TestChatTurn:

    def test_first_message_seeds_then_records_turn_and_reply(
        self, make_pipeline, memory, conversation_log, companion, model
    ):
        turn, body = run_turn(make_pipeline())

        assert turn.response == "Hi there nice to meet you"
        assert body == b"Hi there nice to meet you"
        assert turn.state == ChatState.DONE
        assert turn.seeded is True
        assert turn.persisted is True
        assert history_of(memory) == SEED_LINES + ["User: Hello", "Hi there nice to meet you"]

        messages = conversation_log.list_messages("ada", "u1")
        assert [(m.role, m.content) for m in messages] == [
            ("user", "Hello"),
            ("system", "Hi there nice to meet you"),
        ]

    def test_model_stream_is_not_read_past_first_line(self, make_pipeline, companion, model):
        run_turn(make_pipeline())

        assert " continuation)" not in model.consumed

    def test_second_message_does_not_reseed(self, make_pipeline, memory, companion):
        pipeline = make_pipeline()
        run_turn(pipeline, "Hello")
        turn, _ = run_turn(pipeline, "Again")

        assert turn.seeded is False
        lines = history_of(memory)
        assert lines.count(SEED_LINES[0]) == 1
        assert lines[-2:] == ["User: Again", "Hi there nice to meet you"]

    def test_prompt_contains_recent_history_and_cue(self, make_pipeline, companion, model):
        run_turn(make_pipeline())

        prompt = model.prompts[0]
        assert prompt.startswith(companion.instructions)
        assert prompt.index(SEED_LINES[0]) < prompt.index("User: Hello")
        assert prompt.endswith("User: Hello\nAda:")

    def test_retrieved_documents_enter_prompt(self, make_pipeline, memory, companion, model):
        memory.vector_index.add_documents(
            ["Ada designed an engine that computes Bernoulli numbers."], companion.file_name
        )

        turn, _ = run_turn(make_pipeline(), "Tell me about Bernoulli numbers")

        assert [doc.content for doc in turn.context] == [
            "Ada designed an engine that computes Bernoulli numbers."
        ]
        assert "Ada designed an engine that computes Bernoulli numbers." in model.prompts[0]

    def test_users_have_separate_histories(self, make_pipeline, memory, companion):
        pipeline = make_pipeline()
        run_turn(pipeline, "Hello", identity=ALICE)
        run_turn(pipeline, "Howdy", identity=Identity(user_id="u2", display_name="Bob"))

        assert "User: Howdy" not in history_of(memory, "u1")
        assert history_of(memory, "u2")[:len(SEED_LINES)] == SEED_LINES


class TestAdmission:

    def test_missing_identity_is_rejected_without_side_effects(
        self, make_pipeline, memory, conversation_log, companion, model
    ):
        with pytest.raises(AuthorizationError):
            run_turn(make_pipeline(), identity=Identity(user_id="u1", display_name=None))

        assert conversation_log.count_messages("ada") == 0
        assert history_of(memory) == []
        assert model.prompts == []

    def test_rate_limited_request_has_no_side_effects(
        self, make_pipeline, memory, conversation_log, companion, model
    ):
        pipeline = make_pipeline(rate_limiter=RateLimiter(max_requests=1, window_seconds=60))
        run_turn(pipeline, "Hello")

        with pytest.raises(RateLimitedError) as exc_info:
            run_turn(pipeline, "Again")

        assert exc_info.value.retry_after > 0
        assert conversation_log.count_messages("ada") == 2
        assert "User: Again" not in history_of(memory)
        assert len(model.prompts) == 1

    def test_unknown_companion(self, make_pipeline, conversation_log, companion):
        with pytest.raises(NotFoundError):
            run_turn(make_pipeline(), chat_id="nobody")

        assert conversation_log.count_messages("ada") == 0


class TestDegradation:

    def test_vector_search_failure_still_replies(self, make_pipeline, memory, companion, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(memory.vector_index, "search", broken)

        turn, body = run_turn(make_pipeline())

        assert turn.context == []
        assert body == b"Hi there nice to meet you"

    def test_model_failure_yields_empty_unpersisted_reply(
        self, make_pipeline, memory, conversation_log, companion
    ):
        def failing_model(prompt):
            raise ModelInvocationError("local", "connection refused")

        turn, body = run_turn(make_pipeline(generate=failing_model))

        assert body == b""
        assert turn.persisted is False
        assert history_of(memory)[-1] == "User: Hello"
        assert [m.role for m in conversation_log.list_messages("ada", "u1")] == ["user"]

    def test_model_failure_mid_stream(self, make_pipeline, companion):
        def flaky(prompt):
            yield "partial"
            raise ModelInvocationError("local", "stream dropped")

        turn, body = run_turn(make_pipeline(generate=flaky))

        assert body == b""
        assert turn.response == ""


class TestConcurrency:

    def test_concurrent_first_messages_seed_once(self, make_pipeline, memory, companion):
        pipeline = make_pipeline()

        async def both():
            return await asyncio.gather(
                pipeline.handle("ada", "First", ALICE, URL),
                pipeline.handle("ada", "Second", ALICE, URL),
            )

        turns = asyncio.run(both())

        assert sum(turn.seeded for turn in turns) == 1
        lines = history_of(memory)
        for seed_line in SEED_LINES:
            assert lines.count(seed_line) == 1
        assert lines[:len(SEED_LINES)] == SEED_LINES
        assert "User: First" in lines and "User: Second" in lines


class TestPersistence:

    def _flaky_log(self, conversation_log, monkeypatch, failures):
        original = conversation_log.append_message
        calls = {"system": 0}

        def append(companion_id, content, role, user_id):
            if role == "system":
                calls["system"] += 1
                if calls["system"] <= failures:
                    raise ConversationLogError("database is locked")
            return original(companion_id, content, role, user_id)

        monkeypatch.setattr(conversation_log, "append_message", append)
        return calls

    def test_log_write_is_retried(self, make_pipeline, conversation_log, companion, settings, monkeypatch):
        calls = self._flaky_log(conversation_log, monkeypatch, failures=2)

        turn, _ = run_turn(make_pipeline())

        assert calls["system"] == 3
        assert turn.persisted is True
        assert [m.role for m in conversation_log.list_messages("ada", "u1")] == ["user", "system"]

    def test_permanent_log_failure_is_recorded_for_reconciliation(
        self, make_pipeline, memory, conversation_log, companion, settings, monkeypatch, tmp_path
    ):
        calls = self._flaky_log(conversation_log, monkeypatch, failures=100)

        turn, body = run_turn(make_pipeline())

        assert calls["system"] == settings.persist_retry_attempts
        assert turn.persisted is False
        assert body == b"Hi there nice to meet you"
        assert history_of(memory)[-1] == "Hi there nice to meet you"

        with open(settings.reconciliation_log_path, encoding="utf-8") as f:
            records = [json.loads(line) for line in f]
        assert len(records) == 1
        assert records[0]["step"] == "conversation_log"
        assert records[0]["storage_key"] == "ada-llama2-13b-u1"
        assert records[0]["content"] == "Hi there nice to meet you"

    def test_user_turn_history_failure_is_recorded_for_reconciliation(
        self, make_pipeline, memory, conversation_log, companion, settings, model, monkeypatch
    ):
        original = memory.history.write

        def write(key, text):
            if text.startswith("User: "):
                raise HistoryStoreError("disk I/O error")
            return original(key, text)

        monkeypatch.setattr(memory.history, "write", write)

        with pytest.raises(HistoryStoreError):
            run_turn(make_pipeline())

        assert [m.role for m in conversation_log.list_messages("ada", "u1")] == ["user"]
        assert model.prompts == []

        with open(settings.reconciliation_log_path, encoding="utf-8") as f:
            records = [json.loads(line) for line in f]
        assert len(records) == 1
        assert records[0]["step"] == "history_store_user_turn"
        assert records[0]["storage_key"] == "ada-llama2-13b-u1"
        assert records[0]["content"] == "Hello"


class TestShortReplies:

    def test_single_character_reply_is_not_persisted(self, make_pipeline, memory, conversation_log, companion):
        turn, body = run_turn(make_pipeline(generate=ScriptedModel(["k\nmore"])))

        assert body == b"k"
        assert turn.persisted is False
        assert history_of(memory)[-1] == "User: Hello"
