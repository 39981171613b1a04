"""Runtime settings for the CompanionAI service.

Architectural role:
    Centralizes environment-driven configuration consumed by the memory layer,
    the rate limiter, the LLM adapter and the HTTP/CLI entrypoints.

Resolution:
    Values are read from the process environment after `load_dotenv()`, so a
    local `.env` file can provide defaults during development. `Settings` is
    frozen; tests build their own instance via `Settings(...)` or
    `dataclasses.replace(...)`.

Determinism:
    Deterministic for a fixed process environment. `from_env()` re-reads the
    environment on every call.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


RATE_LIMIT_ALGORITHMS = ("fixed", "sliding")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


_DELIMITER_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\"}


def _unescape_delimiter(value: str) -> str:
    """Expand `\\n`, `\\t`, `\\r` and `\\\\` so a delimiter fits on one .env line.

    Any other character, including non-ASCII text, is kept as written.
    """
    out = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value) and value[i + 1] in _DELIMITER_ESCAPES:
            out.append(_DELIMITER_ESCAPES[value[i + 1]])
            i += 2
            continue
        out.append(char)
        i += 1
    return "".join(out)


@dataclass(frozen=True)
class Settings:
    """Process configuration.

    Relevant environment variables:
        - `HISTORY_DB_PATH`, `CONVERSATION_DB_PATH`, `VECTOR_STORE_DIR`
        - `EMBED_MODEL`
        - `HISTORY_LIMIT`, `SEED_DELIMITER`, `VECTOR_SEARCH_K`
        - `RATE_LIMIT_REQUESTS`, `RATE_LIMIT_WINDOW_SECONDS`, `RATE_LIMIT_ALGORITHM`
        - `PROVIDER`, `MODEL_NAME`, `COMPANION_MODEL_KEY`, `LLM_TIMEOUT_SECONDS`
        - `LLM_MAX_TOKENS`, `LLM_TEMPERATURE`
        - `PROMPT_TOKEN_BUDGET`
        - `STRIP_COMMAS`, `FIRST_LINE_ONLY`
        - `PERSIST_RETRY_ATTEMPTS`, `PERSIST_BACKOFF_SECONDS`
        - `RECONCILIATION_LOG_PATH`
        - `LOG_LEVEL`
    """

    history_db_path: str = "data/history.db"
    conversation_db_path: str = "data/conversations.db"
    vector_store_dir: str = "vector_store"
    embed_model: str = "intfloat/multilingual-e5-small"

    history_limit: int = 30
    seed_delimiter: str = "\n\n"
    vector_search_k: int = 3

    rate_limit_requests: int = 10
    rate_limit_window_seconds: float = 10.0
    rate_limit_algorithm: str = "sliding"

    provider: str = "local"
    model_name: str = "llama-2-13b-chat"
    # Model segment of the history key; kept separate so switching backends
    # does not orphan existing memory streams.
    companion_model_key: str = "llama2-13b"
    llm_timeout_seconds: float = 120.0
    llm_max_tokens: int = 2048
    llm_temperature: float = 0.75

    prompt_token_budget: int = 3500

    strip_commas: bool = True
    first_line_only: bool = True

    persist_retry_attempts: int = 3
    persist_backoff_seconds: float = 0.2
    reconciliation_log_path: str = "data/reconciliation.jsonl"

    log_level: str = "INFO"

    def __post_init__(self):
        if self.rate_limit_algorithm not in RATE_LIMIT_ALGORITHMS:
            raise ValueError(
                f"RATE_LIMIT_ALGORITHM must be one of {RATE_LIMIT_ALGORITHMS}, "
                f"got {self.rate_limit_algorithm!r}"
            )
        if self.rate_limit_requests < 1:
            raise ValueError("RATE_LIMIT_REQUESTS must be at least 1")
        if self.rate_limit_window_seconds <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be positive")
        if self.history_limit < 1:
            raise ValueError("HISTORY_LIMIT must be at least 1")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        defaults = cls()
        delimiter = os.getenv("SEED_DELIMITER")
        if delimiter is not None:
            delimiter = _unescape_delimiter(delimiter)

        return cls(
            history_db_path=os.getenv("HISTORY_DB_PATH", defaults.history_db_path),
            conversation_db_path=os.getenv("CONVERSATION_DB_PATH", defaults.conversation_db_path),
            vector_store_dir=os.getenv("VECTOR_STORE_DIR", defaults.vector_store_dir),
            embed_model=os.getenv("EMBED_MODEL", defaults.embed_model),
            history_limit=int(os.getenv("HISTORY_LIMIT", defaults.history_limit)),
            seed_delimiter=delimiter or defaults.seed_delimiter,
            vector_search_k=int(os.getenv("VECTOR_SEARCH_K", defaults.vector_search_k)),
            rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", defaults.rate_limit_requests)),
            rate_limit_window_seconds=float(
                os.getenv("RATE_LIMIT_WINDOW_SECONDS", defaults.rate_limit_window_seconds)
            ),
            rate_limit_algorithm=os.getenv(
                "RATE_LIMIT_ALGORITHM", defaults.rate_limit_algorithm
            ).strip().lower(),
            provider=os.getenv("PROVIDER", defaults.provider).strip().lower(),
            model_name=os.getenv("MODEL_NAME", defaults.model_name),
            companion_model_key=os.getenv("COMPANION_MODEL_KEY", defaults.companion_model_key),
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", defaults.llm_timeout_seconds)),
            llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", defaults.llm_max_tokens)),
            llm_temperature=float(os.getenv("LLM_TEMPERATURE", defaults.llm_temperature)),
            prompt_token_budget=int(os.getenv("PROMPT_TOKEN_BUDGET", defaults.prompt_token_budget)),
            strip_commas=_env_bool("STRIP_COMMAS", defaults.strip_commas),
            first_line_only=_env_bool("FIRST_LINE_ONLY", defaults.first_line_only),
            persist_retry_attempts=int(
                os.getenv("PERSIST_RETRY_ATTEMPTS", defaults.persist_retry_attempts)
            ),
            persist_backoff_seconds=float(
                os.getenv("PERSIST_BACKOFF_SECONDS", defaults.persist_backoff_seconds)
            ),
            reconciliation_log_path=os.getenv(
                "RECONCILIATION_LOG_PATH", defaults.reconciliation_log_path
            ),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )
