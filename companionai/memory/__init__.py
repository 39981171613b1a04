"""Memory subsystem package.

Architectural role:
    Groups the stateful memory components used by the chat pipeline:
    - `models`: companion key and record value types.
    - `history_store`: time-ordered short-term conversation memory.
    - `embedding_model`: shared embedding model bootstrap.
    - `vector_index`: companion-scoped semantic document search.
    - `conversation_log`: durable message log and companion records.
    - `memory_manager`: async facade over history and vector memory.
"""
