"""Post-processing policy for raw model output.

The companion model is expected to produce exactly one conversational turn.
The default policy removes commas (the chat model over-produces them) and
keeps only the first line. Both steps discard output irreversibly, so they are
switchable through settings (`STRIP_COMMAS`, `FIRST_LINE_ONLY`).
"""

from dataclasses import dataclass
from typing import Iterable

from companionai.config import Settings


@dataclass(frozen=True)
class ResponsePolicy:
    strip_commas: bool = True
    first_line_only: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResponsePolicy":
        return cls(strip_commas=settings.strip_commas, first_line_only=settings.first_line_only)

    def apply(self, text: str) -> str:
        """Normalize a complete response string."""
        cleaned = text or ""
        if self.strip_commas:
            cleaned = cleaned.replace(",", "")
        if self.first_line_only:
            cleaned = cleaned.split("\n")[0]
        return cleaned

    def collect(self, chunks: Iterable[str]) -> str:
        """Consume a token stream and return the post-processed response.

        With `first_line_only`, consumption stops at the first newline and the
        rest of the stream is never read. The iterator is closed either way.
        """
        parts = []
        try:
            for chunk in chunks:
                if not chunk:
                    continue
                chunk = str(chunk)
                if self.first_line_only and "\n" in chunk:
                    parts.append(chunk.split("\n", 1)[0])
                    break
                parts.append(chunk)
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()

        return self.apply("".join(parts))
