"""
Tessera configuration -- environment-driven settings.

All knobs are read lazily from the environment so tests (and hooks that
set variables per-invocation) see the current value:

    TESSERA_HOME             data directory (default ~/.tessera)
    TESSERA_DB_PATH          database file override
    TESSERA_EMBEDDING_DIM    vector dimension (default 384)
    TESSERA_ONNX_MODEL_DIR   embedding model directory override
    TESSERA_SKIP_EMBEDDINGS  "1" disables model loading
    TESSERA_LOG_LEVEL        CLI log level (default WARNING)
"""

import os
from pathlib import Path

DEFAULT_EMBEDDING_DIM = 384
MAX_EMBEDDING_DIM = 4096


def home_dir() -> Path:
    """Return the Tessera data directory."""
    return Path(os.environ.get("TESSERA_HOME", str(Path.home() / ".tessera")))


def db_path() -> Path:
    override = os.environ.get("TESSERA_DB_PATH")
    if override:
        return Path(override).expanduser()
    return home_dir() / "tessera.db"


def embedding_dim() -> int:
    """Vector dimension for new indexes, clamped to [1, MAX_EMBEDDING_DIM]."""
    raw = os.environ.get("TESSERA_EMBEDDING_DIM", "")
    try:
        dim = int(raw) if raw else DEFAULT_EMBEDDING_DIM
    except ValueError:
        return DEFAULT_EMBEDDING_DIM
    return max(1, min(dim, MAX_EMBEDDING_DIM))


def onnx_model_dir() -> str:
    return os.environ.get("TESSERA_ONNX_MODEL_DIR", "")


def skip_embeddings() -> bool:
    return os.environ.get("TESSERA_SKIP_EMBEDDINGS") == "1"


def log_level() -> str:
    return os.environ.get("TESSERA_LOG_LEVEL", "WARNING").upper()
