"""Companion document ingestion for semantic retrieval.

Architectural role:
    Converts local text files into normalized chunks and pushes them into a
    companion's namespace of the vector index. The chat pipeline never writes
    to the index; this module is the only writer.

Pipeline summary:
    1. Read a UTF-8 text/markdown file.
    2. Clean whitespace and chunk by paragraphs under a word cap.
    3. Forward chunks to `VectorIndex.add_documents(...)` under
       `"<companion_id>.txt"`.
"""

import logging
import os
import re
from datetime import datetime

from companionai.memory.vector_index import VectorIndex


logger = logging.getLogger(__name__)


SUPPORTED_EXTENSIONS = {".txt", ".md"}


def clean_text(text):
    """Normalize whitespace and collapse repeated blank lines."""
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def semantic_chunk_text(text, max_words=300):
    """Chunk prose text into paragraph groups bounded by word count.

    Args:
        text: Cleaned prose text.
        max_words: Soft maximum words per chunk.

    Returns:
        List of chunk strings preserving paragraph order.

    Chunking strategy:
        Paragraph-first accumulation; when adding a paragraph would exceed the cap,
        a new chunk starts. A single paragraph longer than the cap stays whole.
    """
    paragraphs = re.split(r"\n\s*\n", text)

    chunks = []
    current_chunk = []
    current_length = 0

    for para in paragraphs:
        word_count = len(para.split())

        if word_count == 0:
            continue

        if current_length + word_count <= max_words:
            current_chunk.append(para)
            current_length += word_count
        else:
            if current_chunk:
                chunks.append("\n\n".join(current_chunk))
            current_chunk = [para]
            current_length = word_count

    if current_chunk:
        chunks.append("\n\n".join(current_chunk))

    return chunks


def ingest_file(filepath, companion_id, vector_index: VectorIndex, max_words=300):
    """Ingest one text file into a companion's document namespace.

    Args:
        filepath: Path to a `.txt`/`.md` file.
        companion_id: Companion whose namespace receives the chunks.
        vector_index: Target index.
        max_words: Chunk size cap.

    Returns:
        Number of chunks stored.

    Raises:
        FileNotFoundError: Missing input file.
        ValueError: Unsupported extension.
    """
    filepath = os.path.abspath(filepath)

    if not os.path.exists(filepath):
        raise FileNotFoundError(filepath)

    ext = os.path.splitext(filepath)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported file format: {ext or '<none>'}")

    with open(filepath, "r", encoding="utf-8") as f:
        raw_text = f.read()

    chunks = semantic_chunk_text(clean_text(raw_text), max_words=max_words)
    if not chunks:
        logger.info("No chunks generated from %s", filepath)
        return 0

    metadata = {
        "source": os.path.basename(filepath),
        "ingested_at": datetime.now().isoformat(timespec="seconds"),
    }

    stored = vector_index.add_documents(chunks, f"{companion_id}.txt", metadata=metadata)
    logger.info("%d chunks stored for companion %s", stored, companion_id)
    return stored
