"""
Claude Hybrid Search - Main package.

This package provides hybrid keyword and semantic search over Claude Code
sessions stored in ~/.claude/projects using SQLite FTS5, sentence embeddings
and Reciprocal Rank Fusion.
"""

__version__ = "0.1.0"

from .config import Config
from .embeddings import EmbeddingConfig, EmbeddingError, EmbeddingGenerator
from .indexer import IndexStats, SessionIndexer

# Package imports
from .parser import ManifestEntry, ParsedTranscript, TranscriptParser
from .ranking import FusedCandidate, HybridSearcher, SearchResult, fuse
from .resume import ResumeError, resume_session
from .storage import SessionDocument, SessionStore, StorageConfig, StorageError

__all__ = [
    "Config",
    "TranscriptParser",
    "ParsedTranscript",
    "ManifestEntry",
    "EmbeddingGenerator",
    "EmbeddingConfig",
    "EmbeddingError",
    "SessionStore",
    "SessionDocument",
    "StorageConfig",
    "StorageError",
    "HybridSearcher",
    "SearchResult",
    "FusedCandidate",
    "fuse",
    "SessionIndexer",
    "IndexStats",
    "resume_session",
    "ResumeError",
]
