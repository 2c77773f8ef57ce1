"""
Tessera SQLite Store -- note chunks, vectors, and full-text index in one file.

The store is the storage collaborator of the search core: it owns the
schema, the connection, and every write. Search functions only read.

Layout:
    vault_notes      one row per chunk (chunk_id 0 = root / full document)
    vault_notes_vec  sqlite-vec vec0 table keyed by note_id (L2 distance)
    vault_notes_fts  FTS5 index over (path, title, text), trigger-synced

When sqlite-vec cannot be loaded, vectors are kept as float32 BLOBs and
KNN runs as a numpy brute-force scan. The kind of vector table already on
disk decides what a connection uses: BLOB vectors move into vec0 once the
extension loads, and a vec0 table opened without it disables vector reads.
When FTS5 is missing, keyword search falls back to LIKE.

Usage:
    store = NoteStore()
    store.insert_note(NoteRecord(path="a.md", title="A", text="..."), embedding)
    hits = store.knn(query_vec, k=10)
"""

import json
import logging
import sqlite3
import struct
import threading
import time as _time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from tessera import config
from tessera.models import IndexReport, IndexStatus, NoData, NoteRecord, parse_tags

logger = logging.getLogger("tessera.sqlite_store")

SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# SQLite retry -- handles multi-process write contention on a shared db.
# WAL mode + busy_timeout handle most cases; this retries with exponential
# backoff before surfacing the error. Writes only.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


NOTE_COLUMNS = (
    "n.id, n.path, n.title, n.chunk_heading, n.text, n.domain, n.workstream, "
    "n.tags, n.content_type, n.confidence, n.modified"
)

_RECORD_COLUMNS = (
    "id, path, title, tags, domain, workstream, agent, chunk_id, chunk_heading, "
    "text, modified, content_hash, content_type, review_by, confidence, access_count"
)


def _row_to_record(row: Sequence) -> NoteRecord:
    return NoteRecord(
        id=row[0], path=row[1], title=row[2], tags=parse_tags(row[3]),
        domain=row[4] or "", workstream=row[5] or "", agent=row[6], chunk_id=row[7],
        chunk_heading=row[8], text=row[9], modified=row[10], content_hash=row[11],
        content_type=row[12] or "note", review_by=row[13] or "", confidence=row[14],
        access_count=row[15] or 0,
    )


_INSERT_NOTE_SQL = """
    INSERT INTO vault_notes (path, title, tags, domain, workstream, agent, chunk_id,
        chunk_heading, text, modified, content_hash, content_type, review_by,
        confidence, access_count)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class NoteStore:
    """SQLite-backed note store with sqlite-vec KNN and FTS5 keyword search.

    Reads are lock-free and may run from several threads. Writes are
    serialized behind a single coarse lock.
    """

    def __init__(self, db_path=None, embedding_dim: Optional[int] = None):
        self.db_path = Path(db_path) if db_path else config.db_path()
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.embedding_dim = embedding_dim or config.embedding_dim()

        self._lock = threading.Lock()
        self._vec_loaded = False
        # "vec0", "blob", or "" when the stored table needs an extension we lack
        self._vec_table = ""
        self.fts_available = False
        self._conn = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with optimal settings."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=30,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA cache_size=-16000")  # 16MB cache
        conn.execute("PRAGMA busy_timeout=30000")

        # Try to load sqlite-vec extension
        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._vec_loaded = True
        except (ImportError, AttributeError, sqlite3.Error) as e:
            logger.warning("sqlite-vec not available, falling back to brute-force KNN: %s", e)
            self._vec_loaded = False

        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        c = self._conn

        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS vault_notes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL,
                title TEXT NOT NULL,
                tags TEXT DEFAULT '[]',
                domain TEXT DEFAULT '',
                workstream TEXT DEFAULT '',
                agent TEXT,
                chunk_id INTEGER NOT NULL,
                chunk_heading TEXT NOT NULL,
                text TEXT NOT NULL,
                modified REAL NOT NULL,
                content_hash TEXT NOT NULL,
                content_type TEXT DEFAULT 'note',
                review_by TEXT DEFAULT '',
                confidence REAL DEFAULT 0.5,
                access_count INTEGER DEFAULT 0
            )
        """)

        for col in ("path", "content_hash", "content_type", "domain", "workstream"):
            c.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_vault_notes_{col}
                ON vault_notes({col})
            """)
        # Keyword, fuzzy, and recent-note queries filter on chunk_id=0 and sort by modified
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_vault_notes_chunk0_modified
            ON vault_notes(chunk_id, modified DESC)
        """)

        dim_row = c.execute("SELECT value FROM schema_meta WHERE key = 'embedding_dim'").fetchone()
        if dim_row is None:
            c.execute(
                "INSERT INTO schema_meta (key, value) VALUES ('embedding_dim', ?)",
                (str(self.embedding_dim),),
            )
        elif int(dim_row[0]) != self.embedding_dim:
            logger.warning("Index was built with %s-dim vectors; using stored dimension instead of %d",
                           dim_row[0], self.embedding_dim)
            self.embedding_dim = int(dim_row[0])
        c.execute(
            "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )

        self._vec_table = self._init_vec_table()

        # FTS5 full-text index (content-synced, stores tokens only)
        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS vault_notes_fts USING fts5(
                    path, title, text,
                    content='vault_notes', content_rowid='id'
                )
            """)
            self.fts_available = True
        except sqlite3.Error as e:
            logger.warning("FTS5 not available, keyword search will use LIKE: %s", e)
            self.fts_available = False

        if self.fts_available:
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS vault_notes_ai AFTER INSERT ON vault_notes BEGIN
                    INSERT INTO vault_notes_fts(rowid, path, title, text)
                    VALUES (new.id, new.path, new.title, new.text);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS vault_notes_ad AFTER DELETE ON vault_notes BEGIN
                    INSERT INTO vault_notes_fts(vault_notes_fts, rowid, path, title, text)
                    VALUES ('delete', old.id, old.path, old.title, old.text);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS vault_notes_au AFTER UPDATE OF path, title, text ON vault_notes BEGIN
                    INSERT INTO vault_notes_fts(vault_notes_fts, rowid, path, title, text)
                    VALUES ('delete', old.id, old.path, old.title, old.text);
                    INSERT INTO vault_notes_fts(rowid, path, title, text)
                    VALUES (new.id, new.path, new.title, new.text);
                END
            """)

        c.commit()

    def _create_vec0(self) -> None:
        self._conn.execute(f"""
            CREATE VIRTUAL TABLE vault_notes_vec USING vec0(
                note_id INTEGER PRIMARY KEY,
                embedding float[{self.embedding_dim}]
            )
        """)

    def _init_vec_table(self) -> str:
        """Create or adopt vault_notes_vec and return the kind that is usable.

        The stored table wins over the current connection's capabilities:
        a BLOB table is upgraded to vec0 once sqlite-vec loads, and a vec0
        table opened without the extension is left untouched and unused.
        """
        c = self._conn
        row = c.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = 'vault_notes_vec'"
        ).fetchone()

        if row is None:
            if self._vec_loaded:
                try:
                    self._create_vec0()
                    return "vec0"
                except sqlite3.Error as e:
                    logger.warning("Failed to create vec table, using brute-force KNN: %s", e)
            c.execute("""
                CREATE TABLE vault_notes_vec (
                    note_id INTEGER PRIMARY KEY,
                    embedding BLOB NOT NULL
                )
            """)
            return "blob"

        if "using vec0" in (row[0] or "").lower():
            if self._vec_loaded:
                return "vec0"
            logger.warning("Index stores vectors in sqlite-vec but the extension is unavailable; "
                           "vector search is disabled for this connection")
            return ""

        if self._vec_loaded:
            return self._upgrade_blob_vectors()
        return "blob"

    def _upgrade_blob_vectors(self) -> str:
        """Move brute-force BLOB vectors into a vec0 table. Keeps BLOBs on failure."""
        c = self._conn
        rows = c.execute("SELECT note_id, embedding FROM vault_notes_vec").fetchall()
        c.execute("SAVEPOINT vec_upgrade")
        try:
            c.execute("DROP TABLE vault_notes_vec")
            self._create_vec0()
            c.executemany("INSERT INTO vault_notes_vec (note_id, embedding) VALUES (?, ?)", rows)
        except sqlite3.Error as e:
            c.execute("ROLLBACK TO vec_upgrade")
            c.execute("RELEASE vec_upgrade")
            logger.warning("Could not move vectors into sqlite-vec, keeping brute-force KNN: %s", e)
            return "blob"
        c.execute("RELEASE vec_upgrade")
        logger.info("Moved %d vectors into sqlite-vec", len(rows))
        return "vec0"

    # ------------------------------------------------------------------
    # Capability flags
    # ------------------------------------------------------------------

    @property
    def vec_available(self) -> bool:
        """True when KNN runs inside sqlite-vec rather than brute-force."""
        return self._vec_table == "vec0"

    @property
    def vectors_readable(self) -> bool:
        """False when the stored vector table needs sqlite-vec and it is not loaded."""
        return self._vec_table != ""

    def has_vectors(self) -> bool:
        if not self.vectors_readable:
            return False
        row = self._conn.execute("SELECT COUNT(*) FROM vault_notes_vec").fetchone()
        return bool(row and row[0] > 0)

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def read(self, sql: str, params: Sequence = ()) -> List[tuple]:
        """Run a read-only query and return all rows. Errors propagate."""
        return self._conn.execute(sql, tuple(params)).fetchall()

    def knn(self, query_vec: Sequence[float], k: int) -> List[Tuple[int, float]]:
        """K nearest chunks by L2 distance, ascending: [(note_id, distance), ...]."""
        if k <= 0:
            return []
        if len(query_vec) != self.embedding_dim:
            raise ValueError(
                f"query vector has {len(query_vec)} dimensions, index expects {self.embedding_dim}"
            )
        if not self.vectors_readable:
            return []

        if self.vec_available:
            rows = self._conn.execute(
                "SELECT note_id, distance FROM vault_notes_vec WHERE embedding MATCH ? AND k = ? ORDER BY distance",
                (serialize_f32(query_vec), k),
            ).fetchall()
            return [(int(note_id), float(distance)) for note_id, distance in rows]

        rows = self._conn.execute("SELECT note_id, embedding FROM vault_notes_vec").fetchall()
        if not rows:
            return []
        ids = np.array([r[0] for r in rows], dtype=np.int64)
        matrix = np.vstack([np.frombuffer(r[1], dtype=np.float32) for r in rows])
        query = np.asarray(query_vec, dtype=np.float32)
        distances = np.linalg.norm(matrix - query, axis=1)
        order = np.argsort(distances, kind="stable")[:k]
        return [(int(ids[i]), float(distances[i])) for i in order]

    def note_count(self) -> int:
        """Number of distinct notes (root chunks)."""
        return self._conn.execute("SELECT COUNT(*) FROM vault_notes WHERE chunk_id = 0").fetchone()[0]

    def chunk_count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM vault_notes").fetchone()[0]

    def get_note(self, path: str) -> Optional[NoteRecord]:
        """Return the root chunk of a note, or None."""
        row = self._conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM vault_notes WHERE path = ? AND chunk_id = 0",
            (path,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def recent_notes(self, limit: int = 10) -> List[NoteRecord]:
        """Root chunks of the most recently modified notes, newest first.

        Private notes (_PRIVATE/) are never returned. A non-positive
        limit means 10.
        """
        if limit <= 0:
            limit = 10
        rows = self._conn.execute(
            f"""SELECT {_RECORD_COLUMNS} FROM vault_notes
                WHERE chunk_id = 0 AND path NOT LIKE '\\_PRIVATE/%' ESCAPE '\\'
                ORDER BY modified DESC
                LIMIT ?""",
            (limit,),
        ).fetchall()
        return [_row_to_record(row) for row in rows]

    def index_report(self) -> IndexStatus:
        """Summarize the index, or NoData when nothing has been indexed."""
        chunk_count = self.chunk_count()
        if chunk_count == 0:
            return NoData()

        type_rows = self._conn.execute(
            "SELECT COALESCE(content_type, 'note'), COUNT(*) FROM vault_notes WHERE chunk_id = 0 GROUP BY 1"
        ).fetchall()
        oldest, newest = self._conn.execute(
            "SELECT MIN(modified), MAX(modified) FROM vault_notes WHERE chunk_id = 0"
        ).fetchone()
        vector_count = 0
        if self.vectors_readable:
            vector_count = self._conn.execute("SELECT COUNT(*) FROM vault_notes_vec").fetchone()[0]

        return IndexReport(
            note_count=self.note_count(),
            chunk_count=chunk_count,
            vector_count=vector_count,
            content_types={ctype: count for ctype, count in type_rows},
            vectors_available=self.vec_available,
            fts_available=self.fts_available,
            embedding_dim=self.embedding_dim,
            oldest_modified=float(oldest or 0.0),
            newest_modified=float(newest or 0.0),
        )

    # ------------------------------------------------------------------
    # Writes (serialized)
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def _check_embedding(self, embedding: Optional[Sequence[float]]) -> None:
        if embedding is None:
            return
        if not self.vectors_readable:
            raise ValueError("index stores vectors in sqlite-vec, which is not loaded")
        if len(embedding) != self.embedding_dim:
            raise ValueError(
                f"embedding has {len(embedding)} dimensions, index expects {self.embedding_dim}"
            )

    def _insert_locked(self, rec: NoteRecord, embedding: Optional[Sequence[float]]) -> int:
        cur = _retry_on_locked(
            self._conn.execute,
            _INSERT_NOTE_SQL,
            (
                rec.path, rec.title, json.dumps(list(rec.tags or [])), rec.domain, rec.workstream,
                rec.agent, rec.chunk_id, rec.chunk_heading, rec.text, rec.modified,
                rec.content_hash, rec.content_type, rec.review_by, rec.confidence, rec.access_count,
            ),
        )
        note_id = cur.lastrowid
        if embedding is not None:
            _retry_on_locked(
                self._conn.execute,
                "INSERT INTO vault_notes_vec (note_id, embedding) VALUES (?, ?)",
                (note_id, serialize_f32(embedding)),
            )
        return note_id

    def insert_note(self, rec: NoteRecord, embedding: Optional[Sequence[float]] = None) -> int:
        """Insert one chunk (and its vector, if given). Returns the row id."""
        if not rec.path:
            raise ValueError("path must be a non-empty string")
        self._check_embedding(embedding)
        with self._lock:
            note_id = self._insert_locked(rec, embedding)
            self._commit()
        rec.id = note_id
        return note_id

    def bulk_insert_notes(
        self,
        records: List[NoteRecord],
        embeddings: Optional[List[Sequence[float]]] = None,
    ) -> Dict[str, int]:
        """Insert many chunks in one transaction.

        Pass ``embeddings=None`` for lite (FTS-only) indexing. Returns
        path -> row id for every inserted root chunk.
        """
        if embeddings is not None and len(records) != len(embeddings):
            raise ValueError("records and embeddings must have the same length")
        for emb in embeddings or []:
            self._check_embedding(emb)

        inserted: Dict[str, int] = {}
        with self._lock:
            try:
                for i, rec in enumerate(records):
                    note_id = self._insert_locked(rec, embeddings[i] if embeddings is not None else None)
                    rec.id = note_id
                    if rec.chunk_id == 0:
                        inserted[rec.path] = note_id
                self._commit()
            except Exception:
                self._conn.rollback()
                raise
        logger.debug("Inserted %d chunks (%d notes)", len(records), len(inserted))
        return inserted

    def delete_path(self, path: str) -> int:
        """Delete every chunk (and vector) of a note. Returns rows removed."""
        with self._lock:
            ids = [r[0] for r in self._conn.execute("SELECT id FROM vault_notes WHERE path = ?", (path,))]
            if not ids:
                return 0
            # vec0 deletes by primary key one row at a time. An unreadable
            # vec0 table keeps orphans; vector_search_raw skips them.
            if self.vectors_readable:
                _retry_on_locked(
                    self._conn.executemany,
                    "DELETE FROM vault_notes_vec WHERE note_id = ?",
                    [(note_id,) for note_id in ids],
                )
            _retry_on_locked(self._conn.execute, "DELETE FROM vault_notes WHERE path = ?", (path,))
            self._commit()
        return len(ids)

    def record_access(self, paths: Sequence[str]) -> None:
        """Increment access_count on the root chunk of each path."""
        if not paths:
            return
        with self._lock:
            for path in paths:
                _retry_on_locked(
                    self._conn.execute,
                    "UPDATE vault_notes SET access_count = access_count + 1 WHERE path = ? AND chunk_id = 0",
                    (path,),
                )
            self._commit()

    def set_confidence(self, path: str, confidence: float) -> None:
        """Overwrite the stored confidence of every chunk of a note."""
        value = min(1.0, max(0.0, float(confidence)))
        with self._lock:
            _retry_on_locked(
                self._conn.execute,
                "UPDATE vault_notes SET confidence = ? WHERE path = ?",
                (value, path),
            )
            self._commit()

    def rebuild_fts(self) -> None:
        """Rebuild the FTS5 index from vault_notes. No-op without FTS5."""
        if not self.fts_available:
            return
        with self._lock:
            _retry_on_locked(self._conn.execute, "INSERT INTO vault_notes_fts(vault_notes_fts) VALUES('rebuild')")
            self._commit()

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)

    def __enter__(self) -> "NoteStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
