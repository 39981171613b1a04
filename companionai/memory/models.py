"""Value types shared across the memory subsystem."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CompanionKey:
    """Identity of one memory stream: (companion, model, user).

    Used only for lookup/grouping; never owns a storage handle.
    """

    companion_name: str
    model_name: str
    user_id: Optional[str]

    def is_complete(self) -> bool:
        return bool(self.companion_name) and bool(self.model_name) and bool(self.user_id)

    def storage_key(self) -> str:
        return f"{self.companion_name}-{self.model_name}-{self.user_id}"


@dataclass(frozen=True)
class HistoryEntry:
    """One stored utterance. `score` is a millisecond timestamp or a seed rank."""

    text: str
    score: float


@dataclass(frozen=True)
class SimilarityDocument:
    """One vector-search hit, best-first within a result list."""

    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    score: float = 0.0

    @property
    def source_file(self) -> Optional[str]:
        return self.metadata.get("source_file")


@dataclass(frozen=True)
class Companion:
    """Persona record consumed by the chat pipeline."""

    id: str
    name: str
    instructions: str
    seed: str
    description: str = ""
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def file_name(self) -> str:
        # Documents for a companion are ingested under this namespace.
        return f"{self.id}.txt"


@dataclass(frozen=True)
class MessageRecord:
    """A row of the durable conversation log."""

    id: int
    companion_id: str
    content: str
    role: str
    user_id: str
    created_at: datetime
