"""
Tests for the storage module.
"""

import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

from claude_hybrid_search.storage import (
    SessionDocument,
    SessionStore,
    StorageConfig,
    StorageError,
    build_match_query,
    bytes_to_embedding,
    embedding_to_bytes,
)


def make_document(session_id, **overrides):
    now = datetime.now(timezone.utc).isoformat()
    fields = dict(
        session_id=session_id,
        project_path="/Users/dev/project",
        created_at=now,
        modified_at=now,
        first_prompt=f"prompt for {session_id}",
        summary=None,
        message_count=2,
        full_text="",
    )
    fields.update(overrides)
    return SessionDocument(**fields)


class TestStorageConfig:
    """Test suite for StorageConfig."""

    def test_config_defaults(self):
        """Test StorageConfig default values."""
        config = StorageConfig()
        assert config.db_path == "./data/index.db"
        assert config.enable_vectors is True
        assert config.journal_mode == "WAL"
        assert config.synchronous == "NORMAL"


class TestMatchQuery:
    """Test suite for FTS5 query building."""

    def test_terms_are_quoted_and_prefixed(self):
        assert build_match_query("auth bug") == '"auth" OR "auth"* OR "bug" OR "bug"*'

    def test_short_terms_not_prefixed(self):
        assert build_match_query("go") == '"go"'

    def test_punctuation_split(self):
        assert build_match_query("foo-bar") == '"foo" OR "foo"* OR "bar" OR "bar"*'

    def test_operators_stay_literal(self):
        assert build_match_query("NOT") == '"NOT" OR "NOT"*'

    def test_empty(self):
        assert build_match_query("") == ""
        assert build_match_query("  ***  ") == ""


class TestEmbeddingBytes:
    """Test suite for the vector byte layout."""

    def test_round_trip_is_bit_identical(self):
        vector = np.random.default_rng(42).normal(size=384).astype(np.float32)
        restored = bytes_to_embedding(embedding_to_bytes(vector))
        assert restored.tobytes() == vector.tobytes()

    def test_little_endian_float32(self):
        assert embedding_to_bytes([1.0]) == b"\x00\x00\x80\x3f"


class TestSessionStore:
    """Test suite for SessionStore."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = StorageConfig(db_path=str(Path(self.temp_dir) / "index.db"))
        self.store = SessionStore(self.config)
        self.store.initialize()

    def teardown_method(self):
        """Clean up test fixtures."""
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_initialize_creates_schema(self):
        """Test that tables, FTS table and triggers exist."""
        names = {
            row[0]
            for row in self.store.db.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'trigger')"
            )
        }
        for name in ("sessions", "sessions_fts", "session_embeddings", "index_meta",
                     "sessions_ai", "sessions_ad", "sessions_au"):
            assert name in names

        journal = self.store.db.execute("PRAGMA journal_mode").fetchone()[0]
        assert journal.lower() == "wal"

    def test_initialize_twice_is_noop(self):
        db = self.store.db
        self.store.initialize()
        assert self.store.db is db

    def test_open_failure_raises_storage_error(self):
        blocker = Path(self.temp_dir) / "file"
        blocker.write_text("x")
        store = SessionStore(StorageConfig(db_path=str(blocker / "sub" / "index.db")))

        with pytest.raises(StorageError):
            store.initialize()

    def test_upsert_and_get(self):
        document = make_document("s1", summary="Fix auth", git_branch="main", slug="fix-auth")
        self.store.upsert(document, 1700000000.5, "2025-01-01T00:00:00+00:00")

        stored = self.store.get("s1")
        assert stored == document
        assert self.store.get_mtime("s1") == 1700000000.5
        assert self.store.get("missing") is None
        assert self.store.get_mtime("missing") is None

    def test_upsert_replaces_row_and_lexical_entry(self):
        """Test re-indexing leaves exactly one row and no stale FTS terms."""
        self.store.upsert(make_document("s1", full_text="zebra migration"), 1.0, "t1")
        self.store.upsert(make_document("s1", full_text="giraffe rollout"), 2.0, "t2")

        count = self.store.db.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
        assert count == 1
        assert self.store.get_mtime("s1") == 2.0
        assert self.store.lexical_search("zebra", 10) == []
        assert [h.session_id for h in self.store.lexical_search("giraffe", 10)] == ["s1"]

        fts_rows = self.store.db.execute(
            "SELECT COUNT(*) FROM sessions_fts WHERE sessions_fts MATCH '\"giraffe\"'"
        ).fetchone()[0]
        assert fts_rows == 1

    def test_lexical_search_ranks_and_prefixes(self):
        self.store.upsert(
            make_document("s1", full_text="authentication authentication token refresh"), 1.0, "t"
        )
        self.store.upsert(make_document("s2", full_text="database migration script"), 1.0, "t")
        self.store.upsert(make_document("s3", summary="auth flow notes"), 1.0, "t")

        hits = self.store.lexical_search("auth", 10)
        ids = [h.session_id for h in hits]

        assert set(ids) == {"s1", "s3"}
        # BM25 rank: lower is better
        assert hits == sorted(hits, key=lambda h: h.score)

    def test_lexical_search_respects_limit(self):
        for i in range(5):
            self.store.upsert(make_document(f"s{i}", full_text="shared keyword"), 1.0, "t")
        assert len(self.store.lexical_search("shared", 3)) == 3

    def test_lexical_search_empty_query(self):
        self.store.upsert(make_document("s1", full_text="something"), 1.0, "t")
        assert self.store.lexical_search("", 10) == []
        assert self.store.lexical_search("!!!", 10) == []

    def test_lexical_search_malformed_query_degrades(self):
        """Test an FTS error returns no hits instead of raising."""
        self.store.upsert(make_document("s1", full_text="something"), 1.0, "t")
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(
                "claude_hybrid_search.storage.build_match_query", lambda q: 'broken "quote'
            )
            assert self.store.lexical_search("anything", 10) == []

    def test_vector_search_orders_by_similarity(self):
        self.store.upsert_embedding("far", [0.0, 1.0, 0.0])
        self.store.upsert_embedding("near", [1.0, 0.1, 0.0])
        self.store.upsert_embedding("exact", [1.0, 0.0, 0.0])

        hits = self.store.vector_search([1.0, 0.0, 0.0], 10)

        assert [h.session_id for h in hits] == ["exact", "near", "far"]
        assert hits[0].distance == pytest.approx(0.0, abs=1e-6)
        assert hits[2].distance == pytest.approx(1.0, abs=1e-6)

    def test_vector_search_ties_keep_insertion_order(self):
        for sid in ("b", "a", "c"):
            self.store.upsert_embedding(sid, [0.0, 1.0])
        hits = self.store.vector_search([0.0, 1.0], 10)
        assert [h.session_id for h in hits] == ["b", "a", "c"]

    def test_vector_search_zero_vectors(self):
        self.store.upsert_embedding("zero", [0.0, 0.0])
        hits = self.store.vector_search([1.0, 0.0], 10)
        assert hits[0].distance == pytest.approx(1.0)

    def test_vector_search_skips_mismatched_dimension(self):
        self.store.upsert_embedding("ok", [1.0, 0.0])
        self.store.upsert_embedding("bad", [1.0, 0.0, 0.0])
        assert [h.session_id for h in self.store.vector_search([1.0, 0.0], 10)] == ["ok"]

    def test_vector_search_limit_and_empty(self):
        assert self.store.vector_search([1.0, 0.0], 10) == []
        for i in range(4):
            self.store.upsert_embedding(f"s{i}", [1.0, float(i)])
        assert len(self.store.vector_search([1.0, 0.0], 2)) == 2

    def test_upsert_embedding_replaces(self):
        self.store.upsert_embedding("s1", [1.0, 0.0])
        self.store.upsert_embedding("s1", [0.0, 1.0])
        count = self.store.db.execute("SELECT COUNT(*) FROM session_embeddings").fetchone()[0]
        assert count == 1
        assert self.store.vector_search([0.0, 1.0], 1)[0].distance == pytest.approx(0.0)

    def test_vectors_disabled(self):
        store = SessionStore(
            StorageConfig(db_path=str(Path(self.temp_dir) / "novec.db"), enable_vectors=False)
        )
        with store:
            store.upsert_embedding("s1", [1.0, 0.0])
            assert not store.has_embedding("s1")
            assert store.vector_search([1.0, 0.0], 10) == []

    def test_list_filters_and_order(self):
        now = datetime.now(timezone.utc)
        old = (now - timedelta(days=90)).isoformat()
        self.store.upsert(
            make_document("recent", modified_at=(now - timedelta(hours=1)).isoformat()), 1.0, "t"
        )
        self.store.upsert(
            make_document("newest", project_path="/Users/dev/other",
                          modified_at=now.isoformat()), 1.0, "t"
        )
        self.store.upsert(make_document("ancient", created_at=old, modified_at=old), 1.0, "t")

        assert [d.session_id for d in self.store.list()] == ["newest", "recent", "ancient"]
        assert [d.session_id for d in self.store.list(days=30)] == ["newest", "recent"]
        assert [d.session_id for d in self.store.list(project="other")] == ["newest"]
        assert len(self.store.list(limit=1)) == 1

    def test_delete(self):
        self.store.upsert(make_document("s1", full_text="unique words here"), 1.0, "t")
        self.store.upsert_embedding("s1", [1.0, 0.0])

        assert self.store.delete("s1") is True
        assert self.store.get("s1") is None
        assert self.store.lexical_search("unique", 10) == []
        assert self.store.vector_search([1.0, 0.0], 10) == []
        assert self.store.delete("s1") is False

    def test_get_stats(self):
        self.store.upsert(make_document("s1"), 1.0, "2025-01-02T00:00:00+00:00")
        self.store.upsert(make_document("s2", project_path="/other"), 1.0, "2025-01-01T00:00:00+00:00")
        self.store.upsert_embedding("s1", [1.0])

        stats = self.store.get_stats()

        assert stats["total_sessions"] == 2
        assert stats["total_projects"] == 2
        assert stats["total_embeddings"] == 1
        assert stats["last_indexed"] == "2025-01-02T00:00:00+00:00"
        assert stats["database_size"] > 0

    def test_index_meta(self):
        assert self.store.get_meta("schema_version") == "1"
        assert self.store.get_meta("last_full_index") is None

        self.store.set_meta("last_full_index", "2025-01-01T00:00:00+00:00")
        self.store.set_meta("last_full_index", "2025-02-01T00:00:00+00:00")

        assert self.store.get_meta("last_full_index") == "2025-02-01T00:00:00+00:00"
        assert self.store.get_stats()["last_full_index"] == "2025-02-01T00:00:00+00:00"

    def test_context_manager(self):
        store = SessionStore(StorageConfig(db_path=str(Path(self.temp_dir) / "ctx.db")))
        with store as s:
            assert s.db is not None
        assert store.db is None

    def test_persistence_across_connections(self):
        self.store.upsert(make_document("s1", full_text="persisted text"), 5.0, "t")
        self.store.close()

        reopened = SessionStore(self.config)
        with reopened:
            assert reopened.get_mtime("s1") == 5.0
            assert [h.session_id for h in reopened.lexical_search("persisted", 5)] == ["s1"]

    def test_write_failure_raises_storage_error(self):
        self.store.db.execute("DROP TRIGGER sessions_ai")
        self.store.db.execute("DROP TABLE sessions_fts")
        self.store.db.execute("DROP TABLE sessions")
        with pytest.raises(StorageError):
            self.store.upsert(make_document("s1"), 1.0, "t")

    def test_read_failure_raises_storage_error(self):
        self.store.db.execute("DROP TRIGGER sessions_ai")
        self.store.db.execute("DROP TABLE sessions_fts")
        self.store.db.execute("DROP TABLE sessions")
        self.store.db.execute("DROP TABLE session_embeddings")

        with pytest.raises(StorageError):
            self.store.get_mtime("s1")
        with pytest.raises(StorageError):
            self.store.get("s1")
        with pytest.raises(StorageError):
            self.store.list()
        with pytest.raises(StorageError):
            self.store.vector_search([1.0, 0.0], 10)
        with pytest.raises(StorageError):
            self.store.get_stats()
