"""
Hybrid ranking: Reciprocal Rank Fusion of keyword and vector results.

Keyword hits and vector hits are scored on unrelated scales, so fusion only
looks at rank positions. Each source contributes weight / (rank + k) for
every session it returns, and the summed score is then scaled by a recency
boost derived from the session's last modification time.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from .config import Config
from .embeddings import EmbeddingError, EmbeddingGenerator
from .storage import LexicalHit, SessionDocument, SessionStore, VectorHit

logger = logging.getLogger(__name__)

DEFAULT_RRF_K = 60.0


@dataclass
class FusedCandidate:
    """A session with its fused score and 1-based rank in each source."""
    session_id: str
    score: float
    lexical_rank: Optional[int] = None
    vector_rank: Optional[int] = None


@dataclass
class SearchResult:
    """A fused candidate joined with its stored document."""
    session_id: str
    score: float
    document: SessionDocument
    lexical_rank: Optional[int] = None
    vector_rank: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "score": self.score,
            "lexical_rank": self.lexical_rank,
            "vector_rank": self.vector_rank,
            "project_path": self.document.project_path,
            "title": self.document.title,
            "first_prompt": self.document.first_prompt,
            "summary": self.document.summary,
            "git_branch": self.document.git_branch,
            "message_count": self.document.message_count,
            "created_at": self.document.created_at,
            "modified_at": self.document.modified_at,
        }


def fuse(
    lexical: Sequence[LexicalHit],
    vector: Sequence[VectorHit],
    lexical_weight: float = 1.0,
    vector_weight: float = 1.0,
    k: float = DEFAULT_RRF_K,
) -> List[FusedCandidate]:
    """Merge two ranked lists with Reciprocal Rank Fusion.

    Ties keep first-seen order: keyword hits before vector-only hits.
    """
    candidates: Dict[str, FusedCandidate] = {}

    for rank, hit in enumerate(lexical, 1):
        candidate = candidates.setdefault(hit.session_id, FusedCandidate(hit.session_id, 0.0))
        candidate.score += lexical_weight / (rank + k)
        candidate.lexical_rank = rank

    for rank, hit in enumerate(vector, 1):
        candidate = candidates.setdefault(hit.session_id, FusedCandidate(hit.session_id, 0.0))
        candidate.score += vector_weight / (rank + k)
        candidate.vector_rank = rank

    return sorted(candidates.values(), key=lambda c: c.score, reverse=True)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def recency_boost(
    modified_at: Optional[str], half_life: float, now: Optional[datetime] = None
) -> float:
    """Multiplier in (1, 2] that halves its excess every half_life days."""
    if half_life <= 0:
        return 1.0

    modified = parse_timestamp(modified_at)
    if modified is None:
        return 1.0

    now = now or datetime.now(timezone.utc)
    age_days = max((now - modified).total_seconds() / 86400.0, 0.0)
    return 1.0 + 0.5 ** (age_days / half_life)


class HybridSearcher:
    """Runs keyword and vector search against a store and fuses the results."""

    def __init__(
        self,
        store: SessionStore,
        embedder: Optional[EmbeddingGenerator] = None,
        config: Optional[Config] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

    def hybrid_search(
        self,
        query: str,
        limit: Optional[int] = None,
        lexical_weight: Optional[float] = None,
        vector_weight: Optional[float] = None,
        rrf_k: Optional[float] = None,
        recency_halflife: Optional[float] = None,
        project: Optional[str] = None,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[SearchResult]:
        """Search sessions by keyword and meaning, best match first.

        Parameters left as None fall back to the searcher's Config.
        """
        limit = self.config.max_results if limit is None else limit
        lexical_weight = self.config.lexical_weight if lexical_weight is None else lexical_weight
        vector_weight = self.config.vector_weight if vector_weight is None else vector_weight
        rrf_k = self.config.rrf_k if rrf_k is None else rrf_k
        if recency_halflife is None:
            recency_halflife = self.config.recency_halflife

        if limit <= 0:
            return []

        start_time = time.time()
        candidate_limit = limit * 2

        lexical_hits = self.store.lexical_search(query, candidate_limit)
        vector_hits = self._vector_candidates(query, candidate_limit)
        fused = fuse(lexical_hits, vector_hits, lexical_weight, vector_weight, rrf_k)

        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days) if days is not None else None

        results = []
        for candidate in fused:
            document = self.store.get(candidate.session_id)
            if document is None:
                continue
            if project and project not in document.project_path:
                continue
            if cutoff is not None:
                created = parse_timestamp(document.created_at)
                if created is not None and created < cutoff:
                    continue

            boost = recency_boost(document.modified_at, recency_halflife, now)
            results.append(
                SearchResult(
                    session_id=candidate.session_id,
                    score=candidate.score * boost,
                    document=document,
                    lexical_rank=candidate.lexical_rank,
                    vector_rank=candidate.vector_rank,
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:limit]

        self.logger.debug(
            f"Search {query!r}: {len(lexical_hits)} keyword + {len(vector_hits)} vector "
            f"candidates -> {len(results)} results in {time.time() - start_time:.3f}s"
        )
        return results

    def _vector_candidates(self, query: str, limit: int) -> List[VectorHit]:
        if self.embedder is None or not self.embedder.is_available:
            return []
        if not self.store.has_vector_search:
            return []

        try:
            query_vector = self.embedder.embed(query)
        except EmbeddingError as e:
            self.logger.warning(f"Query embedding failed, using keyword results only: {e}")
            return []

        if query_vector is None or not query_vector.any():
            return []
        return self.store.vector_search(query_vector, limit)
