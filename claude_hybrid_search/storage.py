"""
SQLite storage combining an FTS5 keyword index with stored session vectors.

This module provides the SessionStore class that persists one row per
session, keeps an external-content FTS5 index in step with it through
triggers, and stores one embedding per session as a float32 blob for
brute-force cosine search.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

EMBEDDING_DTYPE = np.dtype("<f4")
SCHEMA_VERSION = "1"

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    first_prompt TEXT,
    summary TEXT,
    slug TEXT,
    git_branch TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    modified_at TEXT NOT NULL,
    file_mtime REAL NOT NULL,
    indexed_at TEXT NOT NULL,
    full_text TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_sessions_modified ON sessions(modified_at DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_path);

CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
    session_id UNINDEXED,
    first_prompt,
    summary,
    full_text,
    content='sessions',
    content_rowid='rowid'
);

CREATE TABLE IF NOT EXISTS session_embeddings (
    session_id TEXT PRIMARY KEY,
    embedding BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS index_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

TRIGGERS = """
DROP TRIGGER IF EXISTS sessions_ai;
CREATE TRIGGER sessions_ai AFTER INSERT ON sessions BEGIN
    INSERT INTO sessions_fts(rowid, session_id, first_prompt, summary, full_text)
    VALUES (new.rowid, new.session_id, new.first_prompt, new.summary, new.full_text);
END;

DROP TRIGGER IF EXISTS sessions_ad;
CREATE TRIGGER sessions_ad AFTER DELETE ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, session_id, first_prompt, summary, full_text)
    VALUES ('delete', old.rowid, old.session_id, old.first_prompt, old.summary, old.full_text);
END;

DROP TRIGGER IF EXISTS sessions_au;
CREATE TRIGGER sessions_au AFTER UPDATE ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, session_id, first_prompt, summary, full_text)
    VALUES ('delete', old.rowid, old.session_id, old.first_prompt, old.summary, old.full_text);
    INSERT INTO sessions_fts(rowid, session_id, first_prompt, summary, full_text)
    VALUES (new.rowid, new.session_id, new.first_prompt, new.summary, new.full_text);
END;
"""

DOCUMENT_COLUMNS = (
    "session_id, project_path, first_prompt, summary, slug, git_branch, "
    "message_count, created_at, modified_at, full_text"
)


class StorageError(Exception):
    """Raised when the store cannot be opened, read or written."""


@dataclass
class StorageConfig:
    """Configuration for session storage."""

    db_path: str = "./data/index.db"
    enable_vectors: bool = True
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"


@dataclass
class SessionDocument:
    """One indexed session."""

    session_id: str
    project_path: str
    created_at: str
    modified_at: str
    first_prompt: Optional[str] = None
    summary: Optional[str] = None
    slug: Optional[str] = None
    git_branch: Optional[str] = None
    message_count: int = 0
    full_text: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SessionDocument":
        return cls(
            session_id=row["session_id"],
            project_path=row["project_path"],
            first_prompt=row["first_prompt"],
            summary=row["summary"],
            slug=row["slug"],
            git_branch=row["git_branch"],
            message_count=row["message_count"] or 0,
            created_at=row["created_at"],
            modified_at=row["modified_at"],
            full_text=row["full_text"] or "",
        )

    @property
    def title(self) -> str:
        return self.summary or self.first_prompt or "(no title)"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LexicalHit:
    """Keyword match; score is the FTS5 BM25 rank (lower is better)."""

    session_id: str
    score: float


@dataclass
class VectorHit:
    """Vector match; distance is 1 - cosine similarity."""

    session_id: str
    distance: float


def embedding_to_bytes(vector: Sequence[float]) -> bytes:
    """Serialize a vector as little-endian float32."""
    return np.asarray(vector, dtype=EMBEDDING_DTYPE).tobytes()


def bytes_to_embedding(blob: bytes) -> np.ndarray:
    """Deserialize a little-endian float32 blob."""
    return np.frombuffer(blob, dtype=EMBEDDING_DTYPE).astype(np.float32)


def build_match_query(query: str) -> str:
    """Turn free text into an FTS5 expression OR-ing every term.

    Terms of three or more characters also match as prefixes. Terms are
    always quoted so FTS5 operators typed by the user stay literal.
    """
    cleaned = "".join(c if c.isalnum() else " " for c in query)
    terms = cleaned.split()

    clauses = []
    for term in terms:
        if len(term) >= 3:
            clauses.append(f'"{term}" OR "{term}"*')
        else:
            clauses.append(f'"{term}"')
    return " OR ".join(clauses)


class SessionStore:
    """Durable keyword + vector index of sessions."""

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.logger = logging.getLogger(__name__)
        self.db_path = Path(self.config.db_path).expanduser()
        self.db: Optional[sqlite3.Connection] = None

    @property
    def has_vector_search(self) -> bool:
        return self.config.enable_vectors

    def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        if self.db is not None:
            return

        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = sqlite3.connect(str(self.db_path))
            self.db.row_factory = sqlite3.Row
            self.db.execute(f"PRAGMA journal_mode={self.config.journal_mode}")
            self.db.execute(f"PRAGMA synchronous={self.config.synchronous}")
            self.db.executescript(SCHEMA)
            self.db.executescript(TRIGGERS)
            self.db.execute(
                "INSERT OR IGNORE INTO index_meta (key, value) VALUES (?, ?)",
                ("schema_version", SCHEMA_VERSION),
            )
            self.db.commit()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to open database at {self.db_path}: {e}") from e

        self.logger.debug(f"Opened session store at {self.db_path}")

    def _conn(self) -> sqlite3.Connection:
        if self.db is None:
            self.initialize()
        return self.db

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a read query, raising StorageError if the database fails."""
        try:
            return self._conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read index: {e}") from e

    def upsert(self, document: SessionDocument, source_mtime: float, indexed_at: str) -> None:
        """Replace any stored row for the session.

        Delete and insert run in one transaction; the triggers remove the old
        FTS entry and add the new one alongside.
        """
        db = self._conn()
        try:
            with db:
                db.execute(
                    "DELETE FROM sessions WHERE session_id = ?", (document.session_id,)
                )
                db.execute(
                    """
                    INSERT INTO sessions (
                        session_id, project_path, first_prompt, summary, slug,
                        git_branch, message_count, created_at, modified_at,
                        file_mtime, indexed_at, full_text
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document.session_id,
                        document.project_path,
                        document.first_prompt,
                        document.summary,
                        document.slug,
                        document.git_branch,
                        document.message_count,
                        document.created_at,
                        document.modified_at,
                        float(source_mtime),
                        indexed_at,
                        document.full_text,
                    ),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write session {document.session_id}: {e}") from e

    def upsert_embedding(self, session_id: str, vector: Sequence[float]) -> None:
        """Insert or replace a session's vector; no-op when vectors are disabled."""
        if not self.has_vector_search:
            return

        db = self._conn()
        try:
            with db:
                db.execute(
                    "INSERT OR REPLACE INTO session_embeddings (session_id, embedding) "
                    "VALUES (?, ?)",
                    (session_id, embedding_to_bytes(vector)),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write embedding for {session_id}: {e}") from e

    def get_mtime(self, session_id: str) -> Optional[float]:
        """Source modification time recorded when the session was last indexed."""
        rows = self._fetch("SELECT file_mtime FROM sessions WHERE session_id = ?", (session_id,))
        return rows[0]["file_mtime"] if rows else None

    def has_embedding(self, session_id: str) -> bool:
        rows = self._fetch(
            "SELECT 1 FROM session_embeddings WHERE session_id = ?", (session_id,)
        )
        return bool(rows)

    def lexical_search(self, query: str, limit: int) -> List[LexicalHit]:
        """BM25 keyword search. Unusable queries yield no hits."""
        match = build_match_query(query)
        if not match or limit <= 0:
            return []

        try:
            rows = self._conn().execute(
                """
                SELECT session_id, rank
                FROM sessions_fts
                WHERE sessions_fts MATCH ?
                ORDER BY rank
                LIMIT ?
                """,
                (match, limit),
            ).fetchall()
        except sqlite3.OperationalError as e:
            self.logger.warning(f"Keyword search failed for {query!r}: {e}")
            return []
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read index: {e}") from e

        return [LexicalHit(session_id=row["session_id"], score=row["rank"]) for row in rows]

    def vector_search(self, query_vector: Sequence[float], limit: int) -> List[VectorHit]:
        """Rank every stored vector by cosine similarity to the query."""
        if not self.has_vector_search or limit <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        rows = self._fetch("SELECT session_id, embedding FROM session_embeddings ORDER BY rowid")

        session_ids = []
        vectors = []
        for row in rows:
            vector = bytes_to_embedding(row["embedding"])
            if vector.shape != query.shape:
                self.logger.warning(
                    f"Skipping embedding for {row['session_id']}: "
                    f"dimension {vector.shape[0]} != {query.shape[0]}"
                )
                continue
            session_ids.append(row["session_id"])
            vectors.append(vector)

        if not vectors:
            return []

        matrix = np.stack(vectors).astype(np.float64)
        q = query.astype(np.float64)
        denominators = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        dots = matrix @ q
        similarities = np.divide(
            dots, denominators, out=np.zeros_like(dots), where=denominators > 0
        )

        # Stable sort keeps insertion order among equal similarities
        order = np.argsort(-similarities, kind="stable")[:limit]
        return [
            VectorHit(session_id=session_ids[i], distance=float(1.0 - similarities[i]))
            for i in order
        ]

    def get(self, session_id: str) -> Optional[SessionDocument]:
        """Get a session document by id."""
        rows = self._fetch(
            f"SELECT {DOCUMENT_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
        )
        return SessionDocument.from_row(rows[0]) if rows else None

    def list(
        self,
        days: Optional[int] = None,
        project: Optional[str] = None,
        limit: int = 100,
    ) -> List[SessionDocument]:
        """List sessions, most recently modified first."""
        sql = f"SELECT {DOCUMENT_COLUMNS} FROM sessions WHERE 1=1"
        params: List[Any] = []

        if days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            sql += " AND created_at >= ?"
            params.append(cutoff.isoformat())

        if project:
            sql += " AND project_path LIKE ?"
            params.append(f"%{project}%")

        sql += " ORDER BY modified_at DESC LIMIT ?"
        params.append(limit)

        return [SessionDocument.from_row(row) for row in self._fetch(sql, params)]

    def delete(self, session_id: str) -> bool:
        """Delete a session and its embedding."""
        db = self._conn()
        try:
            with db:
                cursor = db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
                db.execute(
                    "DELETE FROM session_embeddings WHERE session_id = ?", (session_id,)
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete session {session_id}: {e}") from e
        return cursor.rowcount > 0

    def get_meta(self, key: str) -> Optional[str]:
        rows = self._fetch("SELECT value FROM index_meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_meta(self, key: str, value: str) -> None:
        db = self._conn()
        try:
            with db:
                db.execute(
                    "INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", (key, value)
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write index metadata {key}: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        counts = self._fetch(
            """
            SELECT
                (SELECT COUNT(*) FROM sessions),
                (SELECT COUNT(DISTINCT project_path) FROM sessions),
                (SELECT COUNT(*) FROM session_embeddings),
                (SELECT MAX(indexed_at) FROM sessions)
            """
        )[0]
        total_sessions, total_projects, total_embeddings, last_indexed = tuple(counts)
        db_size = 0
        for path in (self.db_path, self.db_path.with_name(self.db_path.name + "-wal")):
            if path.exists():
                db_size += path.stat().st_size

        return {
            "total_sessions": total_sessions,
            "total_projects": total_projects,
            "total_embeddings": total_embeddings,
            "last_indexed": last_indexed,
            "database_size": db_size,
            "vector_search": self.has_vector_search,
            "schema_version": self.get_meta("schema_version"),
            "last_full_index": self.get_meta("last_full_index"),
        }

    def close(self) -> None:
        """Close the database connection."""
        if self.db is not None:
            self.db.close()
            self.db = None
            self.logger.debug("Session store closed")

    def __enter__(self):
        """Context manager entry."""
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
