"""Error taxonomy shared by the memory layer, the pipeline and the API adapter.

Fatal errors (`AuthorizationError`, `RateLimitedError`, `NotFoundError`) abort a
request and are mapped to HTTP statuses by `companionai.api.http_api`.
`DegradedRetrievalError` and `PersistenceInconsistency` are never surfaced to
callers: the pipeline logs them and continues with substitute content.
"""


class CompanionAIError(Exception):
    """Base class for all service errors."""

    status_code = 500


class AuthorizationError(CompanionAIError):
    """Identity is missing or incomplete."""

    status_code = 401


class RateLimitedError(CompanionAIError):
    """The caller exceeded its request budget for the current window."""

    status_code = 429

    def __init__(self, identifier: str, retry_after: float = 0.0):
        super().__init__(f"Rate limit exceeded for {identifier}")
        self.identifier = identifier
        self.retry_after = max(0.0, float(retry_after))


class NotFoundError(CompanionAIError):
    """The referenced companion/conversation does not exist."""

    status_code = 404


class DegradedRetrievalError(CompanionAIError):
    """Semantic search or model call failed; the request continues without it."""

    def __init__(self, stage: str, cause: Exception | None = None):
        super().__init__(f"{stage} degraded: {cause!r}")
        self.stage = stage
        self.cause = cause


class PersistenceInconsistency(CompanionAIError):
    """History store and durable conversation log disagree about one turn."""

    def __init__(self, storage_key: str, content: str, step: str, cause: Exception | None = None):
        super().__init__(f"persistence inconsistency at step={step} key={storage_key}")
        self.storage_key = storage_key
        self.content = content
        self.step = step
        self.cause = cause

    def as_record(self) -> dict:
        return {
            "storage_key": self.storage_key,
            "content": self.content,
            "step": self.step,
            "error": repr(self.cause) if self.cause else None,
        }


class HistoryStoreError(CompanionAIError):
    """The history store could not complete a read or write."""


class ConversationLogError(CompanionAIError):
    """The durable conversation log could not complete a read or write."""


class ModelInvocationError(CompanionAIError):
    """The text-generation backend failed or returned an unusable payload."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider.upper()}: {message}")
        self.provider = provider
        self.upstream_status = status_code
