"""Prompt-to-payload adapter for LLM invocation.

Architectural role:
    Provides the canonical text-generation entrypoint used by the chat pipeline.
    Bridges prompt construction (`companionai.prompting`) to transport
    (`companionai.llm.client`).

Model call flow:
    prompt -> payload construction -> `client.send_request(...)` -> text deltas.

Token behavior:
    `max_tokens` comes from settings; prompt budgeting happens upstream in the
    prompt builder.
"""

from typing import Iterator

from companionai.config import Settings
from companionai.llm.client import send_request


def build_payload(prompt: str, settings: Settings) -> dict:
    """Wrap a fully assembled prompt into a chat-completions payload.

    The persona prompt already carries all instructions, so it is sent as a
    single user message without a separate system message.
    """
    return {
        "model": settings.model_name,
        "messages": [
            {"role": "user", "content": prompt},
        ],
        "max_tokens": settings.llm_max_tokens,
        "temperature": settings.llm_temperature,
    }


def generate_completion(prompt: str, settings: Settings) -> Iterator[str]:
    """Invoke the configured model and return its streamed text deltas.

    Raises:
        ModelInvocationError: Propagated from the transport layer.
    """
    return send_request(
        build_payload(prompt, settings),
        settings.provider,
        timeout=settings.llm_timeout_seconds,
    )
