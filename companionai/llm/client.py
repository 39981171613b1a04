"""Provider-specific transport client for LLM requests.

Architectural role:
    Executes HTTP requests against the configured model provider and yields the
    generated text as a sequence of string deltas.

Model invocation flow:
    `service.generate_completion` -> `send_request(payload, provider, ...)` ->
    provider branch (OpenAI-compatible SSE stream / Anthropic messages) ->
    text deltas.

Retry behavior:
    No retry loop is implemented. Each HTTP call is attempted once.

Failure handling model:
    Every transport or payload failure is raised as `ModelInvocationError`
    carrying a sanitized message. Callers decide whether that is fatal; the chat
    pipeline treats it as a degraded (empty) response.
"""

import json
import logging
from typing import Iterator

import requests

from companionai.errors import ModelInvocationError
from companionai.llm.provider_config import ANTHROPIC_VERSION, PROVIDERS, load_key


logger = logging.getLogger(__name__)


def _http_error(provider_name: str, err: requests.exceptions.RequestException) -> ModelInvocationError:
    """Build a provider-labeled error without exposing raw response bodies."""
    status_code = None
    if getattr(err, "response", None) is not None:
        status_code = getattr(err.response, "status_code", None)
    message = f"HTTP ERROR ({status_code})" if status_code else "HTTP ERROR"
    return ModelInvocationError(provider_name, message, status_code=status_code)


def _extract_delta(data: dict):
    """Pull the text delta out of the common OpenAI-compatible chunk shapes."""
    if "choices" in data and data["choices"]:
        choice = data["choices"][0]

        if "delta" in choice and choice["delta"].get("content"):
            return choice["delta"]["content"]
        if "message" in choice and choice["message"].get("content"):
            return choice["message"]["content"]
        if choice.get("text"):
            return choice["text"]

    elif "message" in data and isinstance(data["message"], dict):
        return data["message"].get("content")

    return None


def _stream_openai_compatible(url: str, headers: dict, payload: dict, provider: str, timeout: float) -> Iterator[str]:
    """Yield incremental text deltas from an OpenAI-compatible SSE stream.

    Closing the generator early closes the HTTP response, so a consumer that
    stops at the first line does not keep the connection open.
    """
    try:
        with requests.post(url, headers=headers, json=payload, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            response.encoding = "utf-8"

            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue

                if line.startswith("data: "):
                    line = line[6:]

                if line.strip() == "[DONE]":
                    break

                try:
                    data = json.loads(line)
                except ValueError:
                    continue

                delta = _extract_delta(data)
                if delta:
                    yield delta

    except requests.exceptions.RequestException as err:
        raise _http_error(provider, err) from err


def _send_anthropic(url: str, api_key: str, payload: dict, timeout: float) -> Iterator[str]:
    headers = {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
        "Content-Type": "application/json",
    }

    messages = [
        {"role": msg["role"], "content": msg.get("content", "")}
        for msg in payload.get("messages", [])
        if isinstance(msg, dict) and msg.get("role") in ("user", "assistant")
    ]

    anthropic_payload = {
        "model": payload.get("model"),
        "max_tokens": payload.get("max_tokens", 1024),
        "messages": messages,
    }
    if "temperature" in payload:
        anthropic_payload["temperature"] = payload["temperature"]

    try:
        response = requests.post(url, headers=headers, json=anthropic_payload, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.RequestException as err:
        raise _http_error("anthropic", err) from err

    try:
        text = data["content"][0]["text"]
    except (KeyError, IndexError, TypeError) as err:
        raise ModelInvocationError("anthropic", "unexpected response payload") from err

    yield text


def send_request(payload: dict, provider: str, timeout: float = 120.0) -> Iterator[str]:
    """Send one generation request and return an iterator of text deltas.

    Args:
        payload: OpenAI-style chat payload (`model`, `messages`, sampling params).
        provider: Key of `PROVIDERS`.
        timeout: Per-request timeout in seconds.

    Returns:
        Iterator of text chunks. The HTTP request is issued lazily on first
        iteration.

    Raises:
        ModelInvocationError: Unknown provider, missing key, HTTP or payload
            failure. HTTP and payload failures surface on first iteration.
    """
    endpoint = PROVIDERS.get(provider)
    if endpoint is None:
        raise ModelInvocationError(provider or "provider", "INVALID PROVIDER")

    api_key = load_key(endpoint)
    if endpoint.requires_key and not api_key:
        raise ModelInvocationError(provider, "KEY FILE NOT FOUND")

    logger.debug("Generation request provider=%s model=%s", provider, payload.get("model"))

    if provider == "anthropic":
        return _send_anthropic(endpoint.url, api_key, payload, timeout)

    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    return _stream_openai_compatible(endpoint.url, headers, {**payload, "stream": True}, provider, timeout)
