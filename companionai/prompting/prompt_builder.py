"""Companion prompt assembly.

This module only builds prompt strings from already retrieved inputs. Memory
reads, vector search and model invocation happen in `companionai.core`.

Design constraints:
    - Deterministic construction for identical inputs.
    - No hidden side effects (no I/O, no global state mutation).

Prompt component order (fixed):
    1) Persona instructions
    2) Generation constraint (no speaker-name prefix)
    3) Retrieved companion context, newline-joined, best-first
    4) Recent conversation, oldest-first
    5) Speaker cue (`"<companion name>:"`)

Budget fitting (`fit_companion_prompt`) sheds retrieved context first, then
the oldest history lines. Text is cut only as a last resort, keeping the
instructions at the head and the latest line plus cue at the tail.
"""

import logging
from typing import Iterable, List


logger = logging.getLogger(__name__)


CHARS_PER_TOKEN_ESTIMATE = 4
TRUNCATION_MARKER = "\n\n[...]\n\n"
MIN_TAIL_CHARS = 32


def build_generation_constraint(companion_name: str) -> str:
    return (
        "ONLY generate plain sentences without prefix of who is speaking. "
        f"DO NOT use {companion_name}: prefix."
    )


def build_companion_prompt(
    companion_name: str,
    instructions: str,
    relevant_history: Iterable[str],
    recent_history: List[str],
) -> str:
    """Build the full prompt for the companion's next line.

    Args:
        companion_name: Display name of the companion; used in the constraint and cue.
        instructions: Persona instructions.
        relevant_history: Retrieved document contents, best-first.
        recent_history: Recency window, oldest-first.

    Returns:
        Prompt string ending with the speaker cue.

    Edge cases:
        - Blank retrieved entries are dropped; an empty context keeps its header.
        - Empty recent history still produces the cue.
    """
    relevant_block = "\n".join(
        str(doc).strip() for doc in relevant_history if doc and str(doc).strip()
    )
    recent_block = "\n".join(recent_history)

    return (
        f"{instructions.strip()}\n\n"
        f"{build_generation_constraint(companion_name)}\n\n"
        f"Below are relevant details about {companion_name}'s past and the conversation you are in.\n"
        f"{relevant_block}\n\n\n"
        f"{recent_block}\n"
        f"{companion_name}:"
    )


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, len(str(text)) // CHARS_PER_TOKEN_ESTIMATE)


def fit_companion_prompt(
    companion_name: str,
    instructions: str,
    relevant_history: List[str],
    recent_history: List[str],
    token_budget: int,
) -> str:
    """Build the companion prompt and fit it into `token_budget`.

    Sections are shed in order of least importance: retrieved documents from
    the lowest-ranked up, then the oldest recent lines (the latest line is
    always kept). Only if that is not enough is the text cut, with the head
    sized to keep the full instructions block.
    """
    relevant = list(relevant_history)
    recent = list(recent_history)

    prompt = build_companion_prompt(companion_name, instructions, relevant, recent)
    while estimate_tokens(prompt) > token_budget and (relevant or len(recent) > 1):
        if relevant:
            relevant.pop()
        else:
            recent.pop(0)
        prompt = build_companion_prompt(companion_name, instructions, relevant, recent)

    if len(relevant) < len(relevant_history) or len(recent) < len(recent_history):
        logger.info(
            "Prompt fitted to budget=%d: dropped %d retrieved docs, %d history lines",
            token_budget,
            len(relevant_history) - len(relevant),
            len(recent_history) - len(recent),
        )

    head_chars = len(instructions.strip()) + len(build_generation_constraint(companion_name)) + 4
    return enforce_token_budget(prompt, token_budget, min_head_chars=head_chars)


def enforce_token_budget(prompt: str, token_budget: int, min_head_chars: int = 0) -> str:
    """Trim prompts that exceed the token budget estimate.

    Args:
        prompt: Full prompt text.
        token_budget: Maximum estimated tokens.
        min_head_chars: Characters at the start that should survive trimming
            (the instructions block). The tail always keeps room for the cue.

    Returns:
        Original prompt if within budget, otherwise head + marker + tail.

    Important behavior:
        - Preserves both head (instructions) and tail (latest history and cue).
        - Logs a warning when truncation occurs.
    """
    if not prompt:
        return ""

    token_estimate = estimate_tokens(prompt)
    if token_estimate <= token_budget:
        return prompt

    max_chars = token_budget * CHARS_PER_TOKEN_ESTIMATE

    if max_chars <= len(TRUNCATION_MARKER) + MIN_TAIL_CHARS:
        # Too small to keep both ends; the cue at the tail matters most.
        trimmed = prompt[-max_chars:]
    else:
        head_budget = max(int(max_chars * 0.35), min_head_chars)
        head_budget = min(head_budget, max_chars - len(TRUNCATION_MARKER) - MIN_TAIL_CHARS)
        tail_budget = max_chars - head_budget - len(TRUNCATION_MARKER)
        head = prompt[:head_budget].rstrip()
        tail = prompt[-tail_budget:].lstrip()
        trimmed = f"{head}{TRUNCATION_MARKER}{tail}"

    logger.warning(
        "Prompt exceeded budget and was truncated: est_tokens=%d -> est_tokens=%d (budget=%d)",
        token_estimate,
        estimate_tokens(trimmed),
        token_budget,
    )
    return trimmed
