"""
Indexing pipeline: discover session sources, skip unchanged ones, parse,
embed and persist the rest.

Sources are processed one at a time. A failure in one source is logged and
counted without stopping the run; only store failures abort it.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Set

from tqdm import tqdm

from .config import Config
from .discovery import ProjectDiscovery, decode_project_path, encoded_project_name, project_dir_of
from .embeddings import EmbeddingGenerator
from .parser import ManifestEntry, TranscriptParser, file_mtime, parse_manifest
from .ranking import parse_timestamp
from .storage import SessionDocument, SessionStore, StorageError

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    """Counters for one indexing run."""
    indexed: int = 0
    skipped: int = 0
    errored: int = 0
    duration: float = 0.0

    def merge(self, other: "IndexStats") -> None:
        self.indexed += other.indexed
        self.skipped += other.skipped
        self.errored += other.errored


def mtime_to_iso(mtime: float) -> str:
    return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()


class SessionIndexer:
    """Keeps the session store in step with the Claude projects directory."""

    def __init__(
        self,
        store: SessionStore,
        embedder: Optional[EmbeddingGenerator] = None,
        config: Optional[Config] = None,
        parser: Optional[TranscriptParser] = None,
        discovery: Optional[ProjectDiscovery] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or Config()
        self.parser = parser or TranscriptParser()
        self.discovery = discovery or ProjectDiscovery(self.config.claude_path)
        self.logger = logging.getLogger(__name__)

    def index_all(self, force: bool = False, days_filter: Optional[int] = None) -> IndexStats:
        """Index every discovered session, manifests first, then unlisted files."""
        stats = self._run(force=force, days_filter=days_filter, show_progress=True)
        self.store.set_meta("last_full_index", datetime.now(timezone.utc).isoformat())
        return stats

    def jit_index(self) -> IndexStats:
        """Quietly pick up new or changed sessions before a query."""
        return self._run(force=False, days_filter=None, show_progress=False)

    def _run(self, force: bool, days_filter: Optional[int], show_progress: bool) -> IndexStats:
        start_time = time.time()
        stats = IndexStats()
        seen_ids: Set[str] = set()

        cutoff = None
        if days_filter is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days_filter)

        # Phase 1: manifests carry summaries, branches and timestamps
        manifests = self.discovery.discover_manifests()
        with tqdm(
            manifests, desc="Session indices", unit="project", disable=not show_progress
        ) as pbar:
            for manifest_path in pbar:
                pbar.set_postfix_str(encoded_project_name(manifest_path))
                stats.merge(self._index_manifest(manifest_path, force, cutoff, seen_ids))

        # Phase 2: transcripts no manifest mentions
        unlisted = [
            (session_id, source)
            for session_id, source in self.discovery.discover_session_files().items()
            if session_id not in seen_ids
        ]
        with tqdm(
            unlisted, desc="Unlisted sessions", unit="session", disable=not show_progress
        ) as pbar:
            for session_id, (jsonl_path, encoded_name) in pbar:
                pbar.set_postfix_str(encoded_name)
                self._index_unlisted(session_id, jsonl_path, encoded_name, force, cutoff, stats)

        stats.duration = time.time() - start_time
        self.logger.info(
            f"Indexing finished: {stats.indexed} indexed, {stats.skipped} skipped, "
            f"{stats.errored} errors in {stats.duration:.2f}s"
        )
        return stats

    def _index_manifest(
        self,
        manifest_path: Path,
        force: bool,
        cutoff: Optional[datetime],
        seen_ids: Set[str],
    ) -> IndexStats:
        stats = IndexStats()
        project_dir = project_dir_of(manifest_path)
        decoded_path = decode_project_path(encoded_project_name(manifest_path))

        try:
            entries = parse_manifest(manifest_path)
        except Exception as e:
            self.logger.warning(f"Error reading session index {manifest_path}: {e}")
            stats.errored += 1
            return stats

        for entry in entries:
            # Listed sessions are never rescanned as unlisted, even when skipped
            seen_ids.add(entry.session_id)

            if cutoff is not None:
                created = parse_timestamp(entry.created or entry.created_at)
                if created is not None and created < cutoff:
                    stats.skipped += 1
                    continue

            if entry.full_path:
                jsonl_path = Path(entry.full_path).expanduser()
            else:
                jsonl_path = project_dir / f"{entry.session_id}.jsonl"
            if not jsonl_path.exists():
                self.logger.debug(f"Session file missing for {entry.session_id}: {jsonl_path}")
                stats.skipped += 1
                continue

            if not force and not self._is_stale(entry.session_id, jsonl_path):
                stats.skipped += 1
                continue

            if self._index_source(entry, jsonl_path, decoded_path):
                stats.indexed += 1
            else:
                stats.errored += 1

        return stats

    def _index_unlisted(
        self,
        session_id: str,
        jsonl_path: Path,
        encoded_name: str,
        force: bool,
        cutoff: Optional[datetime],
        stats: IndexStats,
    ) -> None:
        if not force and not self._is_stale(session_id, jsonl_path):
            stats.skipped += 1
            return

        if cutoff is not None:
            try:
                modified = datetime.fromtimestamp(file_mtime(jsonl_path), tz=timezone.utc)
            except OSError:
                modified = None
            if modified is not None and modified < cutoff:
                stats.skipped += 1
                return

        decoded_path = decode_project_path(encoded_name)
        entry = ManifestEntry(
            session_id=session_id, full_path=str(jsonl_path), project_path=decoded_path
        )
        if self._index_source(entry, jsonl_path, decoded_path):
            stats.indexed += 1
        else:
            stats.errored += 1

    def _is_stale(self, session_id: str, jsonl_path: Path) -> bool:
        """A source is stale when its mtime is newer than the one stored."""
        stored = self.store.get_mtime(session_id)
        if stored is None:
            return True
        try:
            current = file_mtime(jsonl_path)
        except OSError:
            return True
        return current > stored

    def _index_source(self, entry: ManifestEntry, jsonl_path: Path, decoded_path: str) -> bool:
        """Index one session, returning False if the source could not be used."""
        try:
            self.index_session(entry, jsonl_path, decoded_path)
        except StorageError:
            raise
        except Exception as e:
            self.logger.warning(f"Error indexing session {entry.session_id}: {e}")
            return False
        self.logger.debug(f"Indexed session {entry.session_id}")
        return True

    def index_session(self, entry: ManifestEntry, jsonl_path: Path, decoded_path: str) -> SessionDocument:
        """Parse, embed and store a single session."""
        mtime = file_mtime(jsonl_path)
        parsed = self.parser.parse_file(jsonl_path, self.config.max_text_chars)

        now = datetime.now(timezone.utc).isoformat()
        mtime_iso = mtime_to_iso(mtime)

        # Manifest metadata, then transcript timestamps, then the file itself
        created_at = entry.created or entry.created_at or parsed.first_timestamp or mtime_iso
        modified_at = (
            entry.modified or entry.last_activity_at or parsed.last_timestamp or mtime_iso
        )

        document = SessionDocument(
            session_id=entry.session_id,
            project_path=entry.project_path or decoded_path,
            first_prompt=parsed.first_prompt or entry.first_prompt or entry.summary,
            summary=entry.summary,
            slug=entry.slug,
            git_branch=entry.git_branch,
            message_count=(
                entry.message_count if entry.message_count is not None else parsed.message_count
            ),
            created_at=created_at,
            modified_at=modified_at,
            full_text=parsed.full_text,
        )

        # Embed before writing so a failed embedding leaves the session stale
        embedding = None
        if self.embedder is not None and self.store.has_vector_search:
            embedding = self.embedder.embed_document(document)

        self.store.upsert(document, mtime, now)
        if embedding is not None:
            self.store.upsert_embedding(document.session_id, embedding)

        return document
