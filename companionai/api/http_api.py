"""
HTTP API adapter for the CompanionAI chat pipeline.

Architectural role:
- Expose the companion chat endpoint and the chat transcript endpoint.
- Resolve caller identity from headers set by the upstream identity provider.
- Delegate all chat work to `companionai.core.pipeline.ChatPipeline`.
- Map pipeline errors to HTTP statuses.

Endpoint responsibilities:
- `POST /api/chat/{chat_id}`: run one chat turn, stream the reply as plain text.
- `GET /api/chat/{chat_id}`: companion summary plus the caller's messages.
- `GET /health`: liveness probe.

Identity contract:
- `X-User-Id`: stable user identifier.
- `X-User-Name`: display name.
Both are required for chat; a missing value yields HTTP 401.

Error handling strategy:
- `AuthorizationError` -> 401, `NotFoundError` -> 404,
  `RateLimitedError` -> 429 with `Retry-After`.
- Any other failure is logged server-side and returned as a bare
  `500 Internal Error` without internals.

Composition root:
- `create_app()` builds settings, memory manager, conversation log, rate limiter
  and pipeline once at startup. Tests pass a ready pipeline instead.
"""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from companionai.config import Settings
from companionai.core.pipeline import ChatPipeline, Identity
from companionai.errors import AuthorizationError, CompanionAIError, NotFoundError, RateLimitedError
from companionai.logging_config import setup_logging
from companionai.memory.conversation_log import ConversationLog
from companionai.memory.memory_manager import MemoryManager
from companionai.ratelimit.limiter import RateLimiter


logger = logging.getLogger(__name__)


USER_ID_HEADER = "X-User-Id"
USER_NAME_HEADER = "X-User-Name"


# ============================================================
# Request Schema
# ============================================================

class ChatRequest(BaseModel):
    """Body of `POST /api/chat/{chat_id}`."""
    prompt: str


# ============================================================
# Composition
# ============================================================

def build_pipeline(settings: Settings) -> ChatPipeline:
    """Wire production collaborators for one process."""
    return ChatPipeline(
        memory=MemoryManager.get_instance(settings),
        conversation_log=ConversationLog(settings.conversation_db_path),
        rate_limiter=RateLimiter.from_settings(settings),
        settings=settings,
    )


def _identity_from(request: Request) -> Identity:
    return Identity(
        user_id=(request.headers.get(USER_ID_HEADER) or "").strip() or None,
        display_name=(request.headers.get(USER_NAME_HEADER) or "").strip() or None,
    )


def _error_response(error: CompanionAIError) -> PlainTextResponse:
    if isinstance(error, AuthorizationError):
        return PlainTextResponse("Unauthorized", status_code=401)
    if isinstance(error, NotFoundError):
        return PlainTextResponse("Companion not found", status_code=404)
    if isinstance(error, RateLimitedError):
        return PlainTextResponse(
            "Rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, math.ceil(error.retry_after)))},
        )
    logger.error("Unhandled service error: %r", error)
    return PlainTextResponse("Internal Error", status_code=500)


def create_app(settings: Optional[Settings] = None, pipeline: Optional[ChatPipeline] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Process settings; read from the environment when omitted.
        pipeline: Pre-built pipeline. When omitted it is built on startup.

    Returns:
        Configured `FastAPI` instance.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "pipeline", None) is None:
            setup_logging(settings)
            app.state.pipeline = await asyncio.to_thread(build_pipeline, settings)
        yield

    app = FastAPI(title="CompanionAI", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline

    # ============================================================
    # Chat
    # ============================================================

    @app.post("/api/chat/{chat_id}")
    async def chat(chat_id: str, body: ChatRequest, request: Request):
        """
        Run one companion chat turn.

        Request lifecycle:
        1. Resolve identity from headers.
        2. Delegate to `ChatPipeline.handle` (admission, memory, retrieval,
           generation, persistence).
        3. Stream the single-line reply as `text/plain`.
        """
        pipeline: ChatPipeline = request.app.state.pipeline
        try:
            turn = await pipeline.handle(
                chat_id,
                body.prompt,
                _identity_from(request),
                str(request.url),
            )
        except CompanionAIError as e:
            return _error_response(e)
        except Exception:
            logger.exception("[CHAT_POST] chat_id=%s", chat_id)
            return PlainTextResponse("Internal Error", status_code=500)

        return StreamingResponse(
            pipeline.stream_response(turn),
            media_type="text/plain; charset=utf-8",
        )

    @app.get("/api/chat/{chat_id}")
    async def chat_history(chat_id: str, request: Request):
        """
        Return the companion summary and the caller's messages, oldest first.

        Response formatting:
        - `companion`: `id`, `name`, `description`
        - `messages[]`: `id`, `content`, `role`, `created_at`
        - `message_count`: total messages of the companion across users
        """
        pipeline: ChatPipeline = request.app.state.pipeline
        identity = _identity_from(request)
        try:
            if not identity.user_id:
                raise AuthorizationError("Unauthorized")

            log = pipeline.conversation_log
            companion = await asyncio.to_thread(log.get_companion, chat_id)
            if companion is None:
                raise NotFoundError(f"Companion not found: {chat_id}")

            messages = await asyncio.to_thread(log.list_messages, chat_id, identity.user_id)
            message_count = await asyncio.to_thread(log.count_messages, chat_id)
        except CompanionAIError as e:
            return _error_response(e)
        except Exception:
            logger.exception("[CHAT_GET] chat_id=%s", chat_id)
            return PlainTextResponse("Internal Error", status_code=500)

        return {
            "companion": {
                "id": companion.id,
                "name": companion.name,
                "description": companion.description,
            },
            "messages": [
                {
                    "id": message.id,
                    "content": message.content,
                    "role": message.role,
                    "created_at": message.created_at.isoformat(),
                }
                for message in messages
            ],
            "message_count": message_count,
        }

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
