"""Per-request chat orchestration.

Architectural role:
    Turns one inbound chat message into one companion reply. Owns admission
    control, memory reads and writes, semantic retrieval, prompt assembly, model
    invocation, response post-processing and persistence.

Control-flow model:
    1. Admission: identity check, then rate limiting. No side effects on failure.
    2. Companion lookup; the user turn goes to the durable conversation log.
    3. History load; an empty stream is seeded with the companion's transcript.
    4. The user turn is appended to history (always after seed lines).
    5. Recent window re-read and used as the vector-search query.
    6. Prompt assembly and model invocation.
    7. Post-processing, then persistence of the reply to history and the log.
    8. The reply is handed to the caller as a byte stream.

Error handling strategy:
    - `AuthorizationError`, `RateLimitedError`, `NotFoundError` abort the request.
    - Vector-search and model failures are logged as `DegradedRetrievalError`
      and replaced by empty content.
    - A reply that reaches only one of history/log is logged as a
      `PersistenceInconsistency` and appended to the reconciliation file; the
      durable-log write is retried first.
    - A user turn that reached the durable log but not history is recorded the
      same way before the `HistoryStoreError` propagates.

Cancellation:
    Persistence runs under `asyncio.shield` and completes before the first
    byte is streamed, so a client disconnect cannot leave the history store
    ahead of the durable log.
"""

import asyncio
import functools
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Iterable, List, Optional

from companionai.config import Settings
from companionai.errors import (
    AuthorizationError,
    ConversationLogError,
    DegradedRetrievalError,
    HistoryStoreError,
    NotFoundError,
    PersistenceInconsistency,
    RateLimitedError,
)
from companionai.llm.service import generate_completion
from companionai.memory.conversation_log import ConversationLog
from companionai.memory.memory_manager import MemoryManager
from companionai.memory.models import Companion, CompanionKey, SimilarityDocument
from companionai.prompting.prompt_builder import fit_companion_prompt
from companionai.prompting.response_filter import ResponsePolicy
from companionai.ratelimit.limiter import RateLimiter


logger = logging.getLogger(__name__)


USER_PREFIX = "User: "


class ChatState(str, Enum):
    ADMITTED = "admitted"
    HISTORY_RECORDED = "history_recorded"
    HISTORY_LOADED = "history_loaded"
    SEEDED = "seeded"
    CONTEXT_RETRIEVED = "context_retrieved"
    PROMPT_ASSEMBLED = "prompt_assembled"
    MODEL_INVOKED = "model_invoked"
    PERSISTED = "persisted"
    RESPONSE_STREAMING = "response_streaming"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as supplied by the identity provider."""

    user_id: Optional[str]
    display_name: Optional[str]

    def is_complete(self) -> bool:
        return bool(self.user_id) and bool(self.display_name)


@dataclass
class ChatTurn:
    """Mutable record of one request moving through the pipeline."""

    chat_id: str
    prompt: str
    identity: Identity
    state: ChatState = ChatState.ADMITTED
    companion: Optional[Companion] = None
    companion_key: Optional[CompanionKey] = None
    seeded: bool = False
    context: List[SimilarityDocument] = field(default_factory=list)
    model_prompt: str = ""
    response: str = ""
    persisted: bool = False


class ChatPipeline:
    """Companion chat request handler."""

    def __init__(
        self,
        memory: MemoryManager,
        conversation_log: ConversationLog,
        rate_limiter: RateLimiter,
        settings: Settings,
        generate: Optional[Callable[[str], Iterable[str]]] = None,
        policy: Optional[ResponsePolicy] = None,
    ):
        """
        Args:
            memory: Shared memory facade.
            conversation_log: Durable message log and companion lookup.
            rate_limiter: Admission control.
            settings: Process settings.
            generate: `prompt -> iterable of text chunks`. Defaults to the
                configured LLM provider.
            policy: Response post-processing; defaults to settings.
        """
        self.memory = memory
        self.conversation_log = conversation_log
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.generate = generate or functools.partial(generate_completion, settings=settings)
        self.policy = policy or ResponsePolicy.from_settings(settings)

    def _advance(self, turn: ChatTurn, state: ChatState) -> None:
        turn.state = state
        logger.debug("chat=%s user=%s state=%s", turn.chat_id, turn.identity.user_id, state.value)

    # =========================================================
    # Entry point
    # =========================================================

    async def handle(self, chat_id: str, prompt: str, identity: Identity, request_url: str) -> ChatTurn:
        """Run one chat request up to (not including) streaming.

        Args:
            chat_id: Companion id from the request path.
            prompt: User message.
            identity: Caller identity.
            request_url: Request target; part of the rate-limit identifier.

        Returns:
            `ChatTurn` in state `PERSISTED` (or `MODEL_INVOKED` when the reply
            was too short to persist); pass it to `stream_response`.

        Raises:
            AuthorizationError, RateLimitedError, NotFoundError: fatal request errors.
            HistoryStoreError, ConversationLogError: store failures before generation.
        """
        turn = ChatTurn(chat_id=chat_id, prompt=prompt, identity=identity)
        try:
            await self._run(turn, request_url)
        except Exception:
            self._advance(turn, ChatState.FAILED)
            raise
        return turn

    async def _run(self, turn: ChatTurn, request_url: str) -> None:
        identity = turn.identity

        if identity is None or not identity.is_complete():
            raise AuthorizationError("Unauthorized")

        identifier = f"{request_url}-{identity.user_id}"
        decision = self.rate_limiter.admit(identifier)
        if not decision.allowed:
            raise RateLimitedError(identifier, decision.retry_after(self.rate_limiter.now()))
        self._advance(turn, ChatState.ADMITTED)

        companion = await asyncio.to_thread(self.conversation_log.get_companion, turn.chat_id)
        if companion is None:
            raise NotFoundError(f"Companion not found: {turn.chat_id}")
        turn.companion = companion

        await asyncio.to_thread(
            self.conversation_log.append_message,
            companion.id,
            turn.prompt,
            "user",
            identity.user_id,
        )
        self._advance(turn, ChatState.HISTORY_RECORDED)

        key = CompanionKey(
            companion_name=companion.id,
            model_name=self.settings.companion_model_key,
            user_id=identity.user_id,
        )
        turn.companion_key = key

        records = await self.memory.read_latest_history(key)
        self._advance(turn, ChatState.HISTORY_LOADED)

        if not records:
            turn.seeded = await self.memory.seed_chat_history(
                companion.seed, self.settings.seed_delimiter, key
            )
            self._advance(turn, ChatState.SEEDED)

        try:
            await self.memory.write_to_history(USER_PREFIX + turn.prompt, key)
        except HistoryStoreError as e:
            # The durable log already holds this turn.
            self._record_inconsistency(
                PersistenceInconsistency(key.storage_key(), turn.prompt, "history_store_user_turn", e)
            )
            raise

        recent = await self.memory.read_latest_history(key)
        recent_chat_history = "\n".join(recent)
        turn.context = await self._retrieve_context(recent_chat_history, companion)
        self._advance(turn, ChatState.CONTEXT_RETRIEVED)

        turn.model_prompt = fit_companion_prompt(
            companion_name=companion.name,
            instructions=companion.instructions,
            relevant_history=[doc.content for doc in turn.context],
            recent_history=recent,
            token_budget=self.settings.prompt_token_budget,
        )
        self._advance(turn, ChatState.PROMPT_ASSEMBLED)

        turn.response = (await asyncio.to_thread(self._generate_reply, turn.model_prompt)).strip()
        self._advance(turn, ChatState.MODEL_INVOKED)

        if len(turn.response) > 1:
            turn.persisted = await asyncio.shield(self._persist_reply(turn))
            self._advance(turn, ChatState.PERSISTED)
        else:
            logger.info("Empty reply for chat=%s; nothing persisted", turn.chat_id)

    # =========================================================
    # Degradable steps
    # =========================================================

    async def _retrieve_context(self, recent_chat_history: str, companion: Companion) -> List[SimilarityDocument]:
        try:
            docs = await self.memory.vector_search(recent_chat_history, companion.file_name)
        except Exception as e:
            logger.warning("%s", DegradedRetrievalError("vector_search", e))
            return []
        return list(docs or [])

    def _generate_reply(self, prompt: str) -> str:
        """Blocking: invoke the model and post-process its output."""
        try:
            return self.policy.collect(self.generate(prompt))
        except Exception as e:
            logger.warning("%s", DegradedRetrievalError("model", e))
            return ""

    # =========================================================
    # Persistence
    # =========================================================

    async def _persist_reply(self, turn: ChatTurn) -> bool:
        """Write the reply to history, then to the durable log (with retries)."""
        key = turn.companion_key
        companion = turn.companion
        response = turn.response
        consistent = True

        try:
            await self.memory.write_to_history(response, key)
        except HistoryStoreError as e:
            consistent = False
            self._record_inconsistency(
                PersistenceInconsistency(key.storage_key(), response, "history_store", e)
            )

        attempts = max(1, self.settings.persist_retry_attempts)
        last_error = None
        for attempt in range(attempts):
            try:
                await asyncio.to_thread(
                    self.conversation_log.append_message,
                    companion.id,
                    response,
                    "system",
                    turn.identity.user_id,
                )
                last_error = None
                break
            except ConversationLogError as e:
                last_error = e
                logger.warning(
                    "Conversation log write failed (attempt %d/%d) for %s: %s",
                    attempt + 1,
                    attempts,
                    key.storage_key(),
                    e,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self.settings.persist_backoff_seconds * (2 ** attempt))

        if last_error is not None:
            consistent = False
            self._record_inconsistency(
                PersistenceInconsistency(key.storage_key(), response, "conversation_log", last_error)
            )

        return consistent

    def _record_inconsistency(self, err: PersistenceInconsistency) -> None:
        logger.error(
            "Persistence inconsistency step=%s key=%s content=%r error=%r",
            err.step,
            err.storage_key,
            err.content,
            err.cause,
        )

        record = {**err.as_record(), "recorded_at": datetime.now().isoformat()}
        path = self.settings.reconciliation_log_path
        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError:
            logger.exception("Failed to append reconciliation record to %s", path)

    # =========================================================
    # Streaming
    # =========================================================

    async def stream_response(self, turn: ChatTurn) -> AsyncIterator[bytes]:
        """Yield the (already persisted) reply as UTF-8 bytes."""
        self._advance(turn, ChatState.RESPONSE_STREAMING)
        if turn.response:
            yield turn.response.encode("utf-8")
        self._advance(turn, ChatState.DONE)
