"""Companion-scoped semantic document index.

Architectural role:
    Long-term memory for companions. Documents describing a companion (backstory,
    past conversations, notes) are embedded into a FAISS index under a namespace
    named after the companion's document file. The chat pipeline queries that
    namespace with the recent conversation window.

Storage layout:
    `<store_dir>/<namespace>/index.faiss` plus `<store_dir>/<namespace>/meta.json`.
    Row `i` of the index corresponds to entry `i` of the metadata list.

Ranking:
    Inner product over L2-normalised embeddings (cosine similarity). Results are
    returned best-first and capped at `k`.

Failure model:
    `search` never raises. Missing namespaces, embedding failures and FAISS
    errors are logged and turned into an empty result so callers can continue
    without semantic context. `add_documents` raises; ingestion is an operator
    action and should fail loudly.
"""

import json
import logging
import os
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

import faiss
import numpy as np

from companionai.errors import DegradedRetrievalError
from companionai.memory.embedding_model import DEFAULT_EMBED_MODEL, get_model
from companionai.memory.models import SimilarityDocument


logger = logging.getLogger(__name__)


INDEX_FILE_NAME = "index.faiss"
META_FILE_NAME = "meta.json"


class SentenceTransformerEmbedder:
    """E5-style embedder using `query:` / `passage:` prefixes."""

    def __init__(self, model_name: str = DEFAULT_EMBED_MODEL, model_loader: Callable = get_model):
        self.model_name = model_name
        self._model_loader = model_loader

    def encode(self, texts: Sequence[str], is_query: bool = False) -> np.ndarray:
        prefix = "query: " if is_query else "passage: "
        model = self._model_loader(self.model_name)
        vecs = model.encode([prefix + str(t).strip() for t in texts])
        return np.asarray(vecs, dtype="float32")


def namespace_dir_name(source_file: str) -> str:
    """Map a source file name to a filesystem-safe namespace directory name."""
    name = os.path.basename(str(source_file or "").strip())
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name)
    if not name or name in (".", ".."):
        raise ValueError(f"invalid source file name: {source_file!r}")
    return name


def atomic_json_save(path, data):
    """Persist JSON data atomically via temporary file replacement."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


class VectorIndex:
    """FAISS-backed nearest-neighbour search scoped by source file."""

    def __init__(self, store_dir: str, embedder=None):
        """
        Args:
            store_dir: Root directory holding one subdirectory per namespace.
            embedder: Object exposing `encode(texts, is_query)`.
                Defaults to the shared sentence-transformer model.
        """
        self.store_dir = store_dir
        self.embedder = embedder or SentenceTransformerEmbedder()
        self._write_lock = threading.Lock()
        os.makedirs(self.store_dir, exist_ok=True)

    def _paths(self, source_file: str):
        ns_dir = os.path.join(self.store_dir, namespace_dir_name(source_file))
        return ns_dir, os.path.join(ns_dir, INDEX_FILE_NAME), os.path.join(ns_dir, META_FILE_NAME)

    def _embed(self, texts: Sequence[str], is_query: bool) -> np.ndarray:
        vecs = np.array(self.embedder.encode(list(texts), is_query=is_query), dtype="float32")
        if vecs.ndim == 1:
            vecs = vecs.reshape(1, -1)
        faiss.normalize_L2(vecs)
        return vecs

    def _load(self, source_file: str):
        _, index_path, meta_path = self._paths(source_file)
        if not os.path.exists(index_path):
            return None, []

        index = faiss.read_index(index_path)
        meta: List[Dict[str, Any]] = []
        if os.path.exists(meta_path):
            with open(meta_path, "r", encoding="utf-8") as f:
                meta = json.load(f)
        return index, meta

    def count(self, source_file: str) -> int:
        index, _ = self._load(source_file)
        return 0 if index is None else int(index.ntotal)

    # =========================================================
    # Query
    # =========================================================

    def search(self, query_text: str, k: int, source_file: str) -> List[SimilarityDocument]:
        """Return at most `k` documents of `source_file`, best-first.

        Args:
            query_text: Free text; embedded at call time.
            k: Maximum number of documents.
            source_file: Namespace filter (companion document file).

        Returns:
            Ranked `SimilarityDocument` list; empty on any failure.
        """
        if not query_text or not query_text.strip() or k <= 0:
            return []

        try:
            index, meta = self._load(source_file)
            if index is None or index.ntotal == 0:
                return []

            vec = self._embed([query_text], is_query=True)
            scores, indices = index.search(vec, min(k, index.ntotal))

            results = []
            for rank, idx in enumerate(indices[0]):
                if idx < 0 or idx >= len(meta):
                    continue
                entry = meta[idx]
                metadata = {key: value for key, value in entry.items() if key != "text"}
                if metadata.get("source_file") != source_file:
                    continue
                results.append(SimilarityDocument(
                    content=entry.get("text", ""),
                    metadata=metadata,
                    score=float(scores[0][rank]),
                ))

            results.sort(key=lambda doc: doc.score, reverse=True)
            return results[:k]

        except Exception as e:
            err = DegradedRetrievalError("vector_search", e)
            logger.warning("Error in similarity search for %s: %s", source_file, err)
            return []

    # =========================================================
    # Ingestion
    # =========================================================

    def add_documents(
        self,
        texts: Sequence[str],
        source_file: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Embed and append documents to the `source_file` namespace.

        Args:
            texts: Passages to index; blank entries are skipped.
            source_file: Namespace the passages belong to.
            metadata: Extra metadata merged into every entry.

        Returns:
            Number of passages added.

        Raises:
            ValueError: When the existing index has a different dimension.
        """
        clean = [str(t).strip() for t in texts if t and str(t).strip()]
        if not clean:
            return 0

        vecs = self._embed(clean, is_query=False)
        ns_dir, index_path, meta_path = self._paths(source_file)

        with self._write_lock:
            os.makedirs(ns_dir, exist_ok=True)
            index, meta = self._load(source_file)
            if index is None:
                index = faiss.IndexFlatIP(vecs.shape[1])
            elif index.d != vecs.shape[1]:
                raise ValueError(
                    f"embedding dimension {vecs.shape[1]} does not match index dimension {index.d}"
                )

            index.add(vecs)
            for text in clean:
                meta.append({**(metadata or {}), "text": text, "source_file": source_file})

            tmp_index = index_path + ".tmp"
            faiss.write_index(index, tmp_index)
            os.replace(tmp_index, index_path)
            atomic_json_save(meta_path, meta)

        logger.info("Indexed %d passages into %s", len(clean), source_file)
        return len(clean)
