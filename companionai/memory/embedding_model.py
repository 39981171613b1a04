"""Embedding model bootstrap for the vector index.

Architectural role:
    Provides one shared `SentenceTransformer` instance per model name. The loader
    decides CPU vs CUDA execution once and reuses the initialized model across
    subsequent calls.

Design intent:
    - Keep embedding initialization centralized and lazy, so importing the
      memory package never loads model weights.
    - Apply a conservative VRAM gate before enabling GPU execution.
"""

import logging
import os
import threading

DEFAULT_EMBED_MODEL = "intfloat/multilingual-e5-small"

logger = logging.getLogger(__name__)

_models = {}
_models_lock = threading.Lock()


def has_enough_vram(min_required_mb: int = 800) -> bool:
    """Return whether enough free GPU memory is available for embeddings.

    Args:
        min_required_mb: Minimum required free VRAM in megabytes.

    Returns:
        `True` when CUDA is available and free VRAM exceeds the threshold.
    """
    import torch

    if not torch.cuda.is_available():
        return False

    free_mem, total_mem = torch.cuda.mem_get_info()
    free_mb = free_mem / 1024 / 1024

    logger.info("Free VRAM: %.0f MB", free_mb)

    return free_mb > min_required_mb


def get_model(model_name: str = DEFAULT_EMBED_MODEL):
    """Load and cache the shared embedding model instance.

    Args:
        model_name: Hugging Face model identifier.

    Returns:
        A `SentenceTransformer` instance configured for CUDA or CPU.

    Behavior:
        - Cached per model name; concurrent first callers load it once.
        - Enables CUDA only when `has_enough_vram()` returns `True`.
        - Forces CPU mode by setting `CUDA_VISIBLE_DEVICES=""` otherwise.
    """
    model = _models.get(model_name)
    if model is not None:
        return model

    with _models_lock:
        model = _models.get(model_name)
        if model is not None:
            return model

        logger.info("Loading embedding model %s", model_name)

        try:
            use_gpu = has_enough_vram()
        except Exception:
            use_gpu = False

        if not use_gpu:
            logger.info("Insufficient VRAM detected. Forcing CPU mode.")
            os.environ["CUDA_VISIBLE_DEVICES"] = ""

        from sentence_transformers import SentenceTransformer

        device = "cuda" if use_gpu else "cpu"
        model = SentenceTransformer(model_name, device=device)
        logger.info("Embeddings loaded on %s", device.upper())

        _models[model_name] = model
        return model
