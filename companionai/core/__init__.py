"""Core orchestration package.

Architectural role:
    Exposes the per-request chat pipeline that sits between the API/CLI
    entrypoints and the memory, rate-limiting, prompting and LLM layers.

Composition:
    - `pipeline`: state-tracked control flow for one chat turn.
"""
