"""Tessera test configuration."""
import os
import sys
import time
import pytest
from pathlib import Path

# Ensure tessera package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

TEST_DIM = 4


@pytest.fixture
def tmp_tessera_dir(tmp_path):
    """Create a temporary Tessera home directory for testing."""
    home = tmp_path / ".tessera"
    home.mkdir()
    old = {k: os.environ.get(k) for k in ("TESSERA_HOME", "TESSERA_DB_PATH", "TESSERA_SKIP_EMBEDDINGS")}
    os.environ["TESSERA_HOME"] = str(home)
    os.environ.pop("TESSERA_DB_PATH", None)
    # Never load a real model in tests
    os.environ["TESSERA_SKIP_EMBEDDINGS"] = "1"
    yield home
    for key, value in old.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture(autouse=True)
def _reset_embeddings_after_test():
    """Reset embedding circuit-breaker after every test to prevent state leaks."""
    yield
    from tessera.embeddings import reset_embedding_state
    reset_embedding_state()


@pytest.fixture
def store(tmp_tessera_dir):
    """Create a fresh 4-dim NoteStore for testing."""
    from tessera.sqlite_store import NoteStore
    s = NoteStore(db_path=tmp_tessera_dir / "test.db", embedding_dim=TEST_DIM)
    yield s
    s.close()


@pytest.fixture
def now():
    return time.time()


@pytest.fixture
def add_note(store, now):
    """Insert a note chunk: add_note(path, title, text, vec=None, **fields)."""
    from tessera.models import NoteRecord

    def _add(path, title, text="", vec=None, **fields):
        fields.setdefault("modified", now)
        rec = NoteRecord(path=path, title=title, text=text or title, **fields)
        return store.insert_note(rec, vec)

    return _add
