from __future__ import annotations

import logging
import re
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import numpy as np

from ..errors import IndexWriteError, StoreCorruptedError
from ..models import Document, SearchFilters, SourceRecord, SourceType

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS schema_meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sources (
  origin TEXT PRIMARY KEY,
  source_type TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  file_modified_at TEXT,
  framework TEXT,
  title TEXT,
  document_count INTEGER NOT NULL DEFAULT 0,
  complete INTEGER NOT NULL DEFAULT 1,
  ingested_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sources_framework ON sources(framework);

CREATE TABLE IF NOT EXISTS documents (
  id TEXT PRIMARY KEY,
  origin TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  source_type TEXT NOT NULL,
  file_path TEXT,
  file_modified_at TEXT,
  page_number INTEGER,
  content_hash TEXT NOT NULL,
  framework TEXT,
  title TEXT,
  text TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  seq INTEGER NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_documents_origin_chunk ON documents(origin, chunk_index);
CREATE INDEX IF NOT EXISTS idx_documents_source_type ON documents(source_type);
CREATE INDEX IF NOT EXISTS idx_documents_framework ON documents(framework);

CREATE TABLE IF NOT EXISTS embeddings (
  doc_id TEXT PRIMARY KEY,
  model_id TEXT NOT NULL,
  dims INTEGER NOT NULL,
  vector BLOB NOT NULL
);

-- Keyword index: FTS5
CREATE VIRTUAL TABLE IF NOT EXISTS fts_documents USING fts5(
  doc_id UNINDEXED,
  title,
  text,
  tokenize='unicode61'
);
"""

TERM_RE = re.compile(r"\w+", re.UNICODE)


def _escape_fts5_term(term: str) -> str:
    """Quote a term so FTS5 operators (-, /, AND, NOT...) are taken literally."""
    return '"' + term.replace('"', '""') + '"'


def fts_query(text: str) -> str:
    """Build an OR query of quoted terms; bm25 rewards documents matching more of them."""
    terms = []
    for t in TERM_RE.findall(text):
        if t not in terms:
            terms.append(t)
    return " OR ".join(_escape_fts5_term(t) for t in terms)


def _vec_to_blob(vec: np.ndarray) -> bytes:
    vec = np.asarray(vec, dtype=np.float32).ravel()
    return vec.tobytes()

def _blob_to_vec(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)

def _ts(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so string order equals time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")

def _dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None

def _now() -> datetime:
    return datetime.now(timezone.utc)


class DualIndexStore:
    """SQLite store holding the metadata table, FTS5 keyword index and vector index.

    All three are written in the same transaction, so a reader sees either
    the old or the new state of a Document, never a mix. Vector search is
    brute-force cosine similarity with numpy; keyword search uses FTS5 bm25.
    Both honour SearchFilters in SQL before ranking.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._origin_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._origin_locks_guard = threading.Lock()

    def init(self) -> None:
        try:
            with self._lock:
                self._conn.executescript(SCHEMA_SQL)
                row = self._conn.execute("SELECT value FROM schema_meta WHERE key='schema_version'").fetchone()
                if row is None:
                    self._conn.execute(
                        "INSERT INTO schema_meta(key, value) VALUES('schema_version', ?)", (str(SCHEMA_VERSION),)
                    )
                elif int(row["value"]) > SCHEMA_VERSION:
                    raise StoreCorruptedError(
                        f"Database schema version {row['value']} is newer than supported ({SCHEMA_VERSION}): {self.db_path}"
                    )
                self._conn.commit()
        except sqlite3.DatabaseError as e:
            raise StoreCorruptedError(f"Cannot open knowledge store {self.db_path}: {e}") from e
        logger.debug(f"Knowledge store initialized at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Locking

    @contextmanager
    def origin_lock(self, origin: str) -> Iterator[None]:
        """Serialize delete-then-insert for one origin; other origins proceed."""
        with self._origin_locks_guard:
            lock = self._origin_locks.get(origin)
            if lock is None:
                lock = self._origin_locks[origin] = threading.Lock()
        with lock:
            yield

    @contextmanager
    def _write(self, what: str) -> Iterator[sqlite3.Connection]:
        """One atomic write transaction; rolled back on any failure."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise IndexWriteError(f"{what} failed: {e}") from e

    # Writes

    def _next_seq(self, conn: sqlite3.Connection) -> int:
        return int(conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS n FROM documents").fetchone()["n"])

    def _insert_document(
        self, conn: sqlite3.Connection, doc: Document, seq: int, created_at: Optional[str], model_id: str
    ) -> None:
        now = _ts(doc.updated_at or _now())
        conn.execute(
            """INSERT INTO documents(id, origin, chunk_index, source_type, file_path, file_modified_at,
                                     page_number, content_hash, framework, title, text, created_at, updated_at, seq)
               VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 origin=excluded.origin, chunk_index=excluded.chunk_index, source_type=excluded.source_type,
                 file_path=excluded.file_path, file_modified_at=excluded.file_modified_at,
                 page_number=excluded.page_number, content_hash=excluded.content_hash,
                 framework=excluded.framework, title=excluded.title, text=excluded.text,
                 updated_at=excluded.updated_at, seq=excluded.seq
            """,
            (doc.id, doc.origin, doc.chunk_index, doc.source_type.value, doc.file_path,
             _ts(doc.file_modified_at), doc.page_number, doc.content_hash, doc.framework, doc.title,
             doc.text, created_at or _ts(doc.created_at) or now, now, seq),
        )
        # FTS upsert: easiest is delete then insert
        conn.execute("DELETE FROM fts_documents WHERE doc_id = ?", (doc.id,))
        conn.execute("INSERT INTO fts_documents(doc_id, title, text) VALUES(?,?,?)",
                     (doc.id, doc.title or "", doc.text))
        if doc.embedding is not None:
            vec = np.asarray(doc.embedding, dtype=np.float32).ravel()
            conn.execute(
                """INSERT INTO embeddings(doc_id, model_id, dims, vector)
                   VALUES(?,?,?,?)
                   ON CONFLICT(doc_id) DO UPDATE SET model_id=excluded.model_id, dims=excluded.dims, vector=excluded.vector
                """,
                (doc.id, model_id, int(vec.size), _vec_to_blob(vec)),
            )
        else:
            conn.execute("DELETE FROM embeddings WHERE doc_id = ?", (doc.id,))

    def _delete_ids(self, conn: sqlite3.Connection, ids: Sequence[str]) -> None:
        for doc_id in ids:
            conn.execute("DELETE FROM embeddings WHERE doc_id=?", (doc_id,))
            conn.execute("DELETE FROM fts_documents WHERE doc_id=?", (doc_id,))
            conn.execute("DELETE FROM documents WHERE id=?", (doc_id,))

    def upsert(self, doc: Document, model_id: str = "") -> None:
        """Insert or replace one Document across all three tables atomically.

        A new origin gets a source row built from the Document; an existing
        source row only has its document_count recounted.
        """
        with self._write(f"upsert {doc.id}") as conn:
            self._insert_document(conn, doc, self._next_seq(conn), None, model_id)
            conn.execute(
                """INSERT INTO sources(origin, source_type, content_hash, file_modified_at, framework, title, ingested_at)
                   VALUES(?,?,?,?,?,?,?)
                   ON CONFLICT(origin) DO NOTHING
                """,
                (doc.origin, doc.source_type.value, doc.content_hash, _ts(doc.file_modified_at),
                 doc.framework, doc.title, _ts(_now())),
            )
            conn.execute(
                "UPDATE sources SET document_count=(SELECT COUNT(*) FROM documents WHERE origin=?) WHERE origin=?",
                (doc.origin, doc.origin),
            )

    def replace_origin(self, record: SourceRecord, documents: Sequence[Document], model_id: str = "") -> list[str]:
        """Atomically swap every Document of record.origin for `documents`.

        Returns the ids of every prior Document that was removed, including
        ids the new set reuses. On failure nothing changes.
        """
        with self._write(f"replace {record.origin}") as conn:
            old = {
                r["id"]: r["created_at"]
                for r in conn.execute("SELECT id, created_at FROM documents WHERE origin=?", (record.origin,))
            }
            self._delete_ids(conn, list(old))
            seq = self._next_seq(conn)
            for i, doc in enumerate(documents):
                self._insert_document(conn, doc, seq + i, old.get(doc.id), model_id)
            conn.execute(
                """INSERT INTO sources(origin, source_type, content_hash, file_modified_at, framework, title,
                                       document_count, complete, ingested_at)
                   VALUES(?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(origin) DO UPDATE SET
                     source_type=excluded.source_type, content_hash=excluded.content_hash,
                     file_modified_at=excluded.file_modified_at, framework=excluded.framework,
                     title=excluded.title, document_count=excluded.document_count,
                     complete=excluded.complete, ingested_at=excluded.ingested_at
                """,
                (record.origin, record.source_type.value, record.content_hash, _ts(record.file_modified_at),
                 record.framework, record.title, len(documents), int(record.complete),
                 _ts(record.ingested_at or _now())),
            )
        return list(old)

    def touch_source(self, origin: str, modified_at: Optional[datetime]) -> None:
        """Record a new mtime for an origin whose content did not change."""
        with self._write(f"touch {origin}") as conn:
            conn.execute("UPDATE sources SET file_modified_at=? WHERE origin=?", (_ts(modified_at), origin))

    def delete(self, doc_id: str) -> bool:
        """Delete one Document. Its source is marked incomplete so it is re-ingested next run."""
        with self._write(f"delete {doc_id}") as conn:
            row = conn.execute("SELECT origin FROM documents WHERE id=?", (doc_id,)).fetchone()
            if row is None:
                return False
            self._delete_ids(conn, [doc_id])
            conn.execute(
                "UPDATE sources SET document_count=document_count-1, complete=0 WHERE origin=?", (row["origin"],)
            )
            return True

    def delete_by_origin(self, origin: str) -> int:
        with self._write(f"delete origin {origin}") as conn:
            ids = [r["id"] for r in conn.execute("SELECT id FROM documents WHERE origin=?", (origin,))]
            self._delete_ids(conn, ids)
            conn.execute("DELETE FROM sources WHERE origin=?", (origin,))
            return len(ids)

    # Reads

    def _row_to_document(self, r: sqlite3.Row, vector: Optional[bytes] = None) -> Document:
        return Document(
            id=r["id"],
            origin=r["origin"],
            chunk_index=r["chunk_index"],
            source_type=SourceType(r["source_type"]),
            text=r["text"],
            content_hash=r["content_hash"],
            file_path=r["file_path"],
            file_modified_at=_dt(r["file_modified_at"]),
            page_number=r["page_number"],
            framework=r["framework"],
            title=r["title"],
            embedding=_blob_to_vec(vector) if vector is not None else None,
            created_at=_dt(r["created_at"]),
            updated_at=_dt(r["updated_at"]),
        )

    def get_by_id(self, doc_id: str, with_embedding: bool = False) -> Optional[Document]:
        with self._lock:
            r = self._conn.execute(
                "SELECT d.*, e.vector FROM documents d LEFT JOIN embeddings e ON e.doc_id=d.id WHERE d.id=?",
                (doc_id,),
            ).fetchone()
        if r is None:
            return None
        return self._row_to_document(r, r["vector"] if with_embedding else None)

    def get_many(self, ids: Sequence[str]) -> dict[str, Document]:
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            rows = self._conn.execute(f"SELECT * FROM documents WHERE id IN ({placeholders})", list(ids)).fetchall()
        return {r["id"]: self._row_to_document(r) for r in rows}

    def ids_for_origin(self, origin: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM documents WHERE origin=? ORDER BY chunk_index", (origin,)
            ).fetchall()
        return [r["id"] for r in rows]

    def documents_for_origin(self, origin: str) -> list[Document]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM documents WHERE origin=? ORDER BY chunk_index", (origin,)
            ).fetchall()
        return [self._row_to_document(r) for r in rows]

    def get_source(self, origin: str) -> Optional[SourceRecord]:
        with self._lock:
            r = self._conn.execute("SELECT * FROM sources WHERE origin=?", (origin,)).fetchone()
        return self._row_to_source(r) if r is not None else None

    def _row_to_source(self, r: sqlite3.Row) -> SourceRecord:
        return SourceRecord(
            origin=r["origin"],
            source_type=SourceType(r["source_type"]),
            content_hash=r["content_hash"],
            file_modified_at=_dt(r["file_modified_at"]),
            framework=r["framework"],
            title=r["title"],
            document_count=r["document_count"],
            complete=bool(r["complete"]),
            ingested_at=_dt(r["ingested_at"]),
        )

    def list_sources(
        self, framework: Optional[str] = None, source_type: Optional[SourceType] = None, limit: int = 20
    ) -> list[SourceRecord]:
        where = "1=1"
        params: list[Any] = []
        if framework:
            where += " AND framework=?"
            params.append(framework)
        if source_type:
            where += " AND source_type=?"
            params.append(source_type.value)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM sources WHERE {where} ORDER BY ingested_at DESC, origin LIMIT ?", params + [limit]
            ).fetchall()
        return [self._row_to_source(r) for r in rows]

    # Search

    @staticmethod
    def _filter_sql(filters: Optional[SearchFilters]) -> tuple[str, list[Any]]:
        where = "1=1"
        params: list[Any] = []
        if filters is None:
            return where, params
        if filters.source_types:
            where += f" AND d.source_type IN ({','.join('?' * len(filters.source_types))})"
            params.extend(st.value for st in filters.source_types)
        if filters.framework:
            where += " AND d.framework=?"
            params.append(filters.framework)
        # Date range applies to the content date: file mtime, else first ingestion
        if filters.since:
            where += " AND COALESCE(d.file_modified_at, d.created_at) >= ?"
            params.append(_ts(filters.since))
        if filters.until:
            where += " AND COALESCE(d.file_modified_at, d.created_at) <= ?"
            params.append(_ts(filters.until))
        return where, params

    def vector_search(
        self, query_vec: np.ndarray, k: int, filters: Optional[SearchFilters] = None
    ) -> list[tuple[str, float]]:
        """Top-k (id, cosine similarity); ties go to the most recently written Document."""
        where, params = self._filter_sql(filters)
        with self._lock:
            rows = self._conn.execute(
                f"""SELECT e.doc_id, e.dims, e.vector, d.seq
                    FROM embeddings e JOIN documents d ON d.id=e.doc_id
                    WHERE {where}
                """,
                params,
            ).fetchall()

        q = np.asarray(query_vec, dtype=np.float32).ravel()
        rows = [r for r in rows if r["dims"] == q.size]
        if not rows or k <= 0:
            return []

        mat = np.vstack([_blob_to_vec(r["vector"]) for r in rows])
        qn = np.linalg.norm(q) + 1e-12
        norms = np.linalg.norm(mat, axis=1) + 1e-12
        sims = (mat @ q) / (norms * qn)

        order = sorted(range(len(rows)), key=lambda i: (-float(sims[i]), -rows[i]["seq"]))
        return [(rows[i]["doc_id"], float(sims[i])) for i in order[:k]]

    def keyword_search(
        self, query: str, k: int, filters: Optional[SearchFilters] = None
    ) -> list[tuple[str, float]]:
        """Top-k (id, relevance) by bm25; higher relevance is better."""
        match = fts_query(query)
        if not match or k <= 0:
            return []
        where, params = self._filter_sql(filters)
        sql = f"""
        SELECT d.id AS id, bm25(fts_documents) AS score
        FROM fts_documents JOIN documents d ON d.id = fts_documents.doc_id
        WHERE fts_documents MATCH ? AND {where}
        ORDER BY score, d.seq DESC
        LIMIT ?
        """
        with self._lock:
            rows = self._conn.execute(sql, [match] + params + [k]).fetchall()
        return [(r["id"], float(-r["score"])) for r in rows]

    # Status

    def status(self) -> dict[str, Any]:
        with self._lock:
            by_type = {
                r["source_type"]: r["n"]
                for r in self._conn.execute("SELECT source_type, COUNT(*) AS n FROM documents GROUP BY source_type")
            }
            sources = self._conn.execute("SELECT COUNT(*) AS n FROM sources").fetchone()["n"]
            incomplete = self._conn.execute("SELECT COUNT(*) AS n FROM sources WHERE complete=0").fetchone()["n"]
            embedded = self._conn.execute("SELECT COUNT(*) AS n FROM embeddings").fetchone()["n"]
            models = [r["model_id"] for r in self._conn.execute("SELECT DISTINCT model_id FROM embeddings")]
        size = sum(
            p.stat().st_size
            for p in (self.db_path, Path(f"{self.db_path}-wal"), Path(f"{self.db_path}-shm"))
            if p.exists()
        )
        return {
            "db_path": str(self.db_path),
            "db_size_bytes": size,
            "schema_version": SCHEMA_VERSION,
            "documents": sum(by_type.values()),
            "documents_by_type": by_type,
            "sources": int(sources),
            "incomplete_sources": int(incomplete),
            "embedded_documents": int(embedded),
            "embedding_models": models,
        }
