"""
Tessera Embeddings -- ONNX-based query embeddings for vector search.

Provides:
- embed_query(text) -> 384-dim normalized vector, or None without a model
- embed_texts(texts) -> list of vectors for index building
- LRU cache for repeated queries

Uses bge-small-en-v1.5 via ONNX Runtime + tokenizers. There is no
hash fallback: a missing model means callers degrade to FTS5/keyword
search instead of matching against meaningless vectors.
"""

import hashlib
import logging
import os
import time as _time_module
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from tessera import config

__all__ = [
    "embed_query",
    "embed_texts",
    "get_embedding_info",
    "reset_embedding_state",
]

logger = logging.getLogger("tessera.embeddings")

_EMBEDDING_MODEL_NAME = "bge-small-en-v1.5"
_ONNX_DEFAULT_DIR = "~/.cache/tessera/models/bge-small-en-v1.5-onnx"

_EMBEDDING_MODEL = None  # (tokenizer, session)
_EMBEDDING_CACHE: OrderedDict = OrderedDict()
_EMBEDDING_CACHE_MAX = 512

# Circuit breaker: stop retrying after 3 failed loads, retry after cooldown
_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300
_LOAD_ATTEMPTS = 0
_FIRST_FAILURE_TIME: float = 0.0


def reset_embedding_state() -> None:
    """Drop the loaded model, cache, and circuit breaker.

    Tests call this after toggling TESSERA_SKIP_EMBEDDINGS.
    """
    global _EMBEDDING_MODEL, _LOAD_ATTEMPTS, _FIRST_FAILURE_TIME
    _EMBEDDING_MODEL = None
    _LOAD_ATTEMPTS = 0
    _FIRST_FAILURE_TIME = 0.0
    _EMBEDDING_CACHE.clear()


def _check_onnx_runtime() -> bool:
    try:
        import onnxruntime  # noqa: F401
        import tokenizers  # noqa: F401
    except ImportError:
        return False
    return True


def _get_onnx_model_dir() -> Optional[Path]:
    """Model directory holding model.onnx + tokenizer.json (env override first)."""
    for candidate in (config.onnx_model_dir(), os.path.expanduser(_ONNX_DEFAULT_DIR)):
        if candidate and (Path(candidate) / "model.onnx").exists():
            return Path(candidate)
    return None


def _get_embedding_model():
    """Lazy-load the ONNX model, honoring the circuit breaker."""
    global _EMBEDDING_MODEL, _LOAD_ATTEMPTS, _FIRST_FAILURE_TIME
    if _EMBEDDING_MODEL is not None:
        return _EMBEDDING_MODEL

    if config.skip_embeddings():
        logger.info("Skipping embedding model load (TESSERA_SKIP_EMBEDDINGS=1)")
        return None

    if _LOAD_ATTEMPTS >= _MAX_LOAD_ATTEMPTS:
        if _FIRST_FAILURE_TIME > 0 and (_time_module.monotonic() - _FIRST_FAILURE_TIME) >= _CIRCUIT_BREAKER_COOLDOWN_S:
            _LOAD_ATTEMPTS = 0
            _FIRST_FAILURE_TIME = 0.0
            logger.info("Circuit breaker cooldown expired, retrying model load")
        else:
            return None
    _LOAD_ATTEMPTS += 1
    if _LOAD_ATTEMPTS == 1:
        _FIRST_FAILURE_TIME = _time_module.monotonic()

    model_dir = _get_onnx_model_dir()
    if model_dir is None or not _check_onnx_runtime():
        logger.warning(
            "No embedding model available (attempt %d/%d, onnx runtime: %s, model dir: %s); "
            "search will use full-text matching only",
            _LOAD_ATTEMPTS, _MAX_LOAD_ATTEMPTS, _check_onnx_runtime(), model_dir,
        )
        return None

    try:
        import onnxruntime as ort
        from tokenizers import Tokenizer

        tokenizer = Tokenizer.from_file(str(model_dir / "tokenizer.json"))
        tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
        tokenizer.enable_truncation(max_length=512)
        sess_opts = ort.SessionOptions()
        sess_opts.log_severity_level = 4
        sess_opts.enable_cpu_mem_arena = False
        session = ort.InferenceSession(
            str(model_dir / "model.onnx"),
            sess_options=sess_opts,
            providers=["CPUExecutionProvider"],
        )
    except Exception as e:
        logger.warning("Failed to load ONNX model (attempt %d): %s", _LOAD_ATTEMPTS, e)
        return None

    _EMBEDDING_MODEL = (tokenizer, session)
    _LOAD_ATTEMPTS = 0
    _FIRST_FAILURE_TIME = 0.0
    logger.info("Loaded ONNX embedding model from %s", model_dir)
    return _EMBEDDING_MODEL


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Encode texts with mean pooling; returns L2-normalized rows."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    if "token_type_ids" in {i.name for i in session.get_inputs()}:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        summed = np.sum(embeddings * mask_expanded, axis=1)
        counts = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = summed / counts
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


def embed_query(text: str) -> Optional[List[float]]:
    """Embed one query. Returns None when no model can be loaded or inference fails."""
    if not text:
        return None
    cache_key = hashlib.md5(text.encode()).hexdigest()
    if cache_key in _EMBEDDING_CACHE:
        _EMBEDDING_CACHE.move_to_end(cache_key)
        return _EMBEDDING_CACHE[cache_key]

    model = _get_embedding_model()
    if model is None:
        return None
    tokenizer, session = model
    try:
        result = _onnx_encode(tokenizer, session, [text])[0].tolist()
    except Exception as e:
        logger.warning("Query embedding failed, search will use full-text matching: %s", e)
        return None

    _EMBEDDING_CACHE[cache_key] = result
    while len(_EMBEDDING_CACHE) > _EMBEDDING_CACHE_MAX:
        _EMBEDDING_CACHE.popitem(last=False)
    return result


def embed_texts(texts: List[str], batch_size: int = 32) -> Optional[List[List[float]]]:
    """Embed many texts for indexing. Returns None when no model can be loaded or inference fails."""
    if not texts:
        return []
    model = _get_embedding_model()
    if model is None:
        return None
    tokenizer, session = model
    vectors: List[List[float]] = []
    try:
        for i in range(0, len(texts), batch_size):
            vectors.extend(_onnx_encode(tokenizer, session, texts[i : i + batch_size]).tolist())
    except Exception as e:
        logger.warning("Batch embedding failed for %d texts: %s", len(texts), e)
        return None
    return vectors


def get_embedding_info() -> Dict[str, Any]:
    """Describe the embedding backend for status output."""
    has_onnx = _check_onnx_runtime()
    model_dir = _get_onnx_model_dir()
    return {
        "model": _EMBEDDING_MODEL_NAME,
        "model_loaded": _EMBEDDING_MODEL is not None,
        "onnx_available": has_onnx,
        "onnx_model_dir": str(model_dir) if model_dir else None,
        "skipped": config.skip_embeddings(),
        "dimension": config.embedding_dim(),
        "cache_size": len(_EMBEDDING_CACHE),
    }
