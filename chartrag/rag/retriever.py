"""
Hybrid Search Engine for ChartRAG

Fuses BM25 keyword relevance with cosine similarity from an external
vector index:

    combined = alpha * semantic_norm + (1 - alpha) * keyword_norm

Each branch is min-max normalized on its own before fusion. Results can
be pre-filtered by metadata and boosted by recency with an exponential
half-life. The vector index is only ever called through the resilience
layer; if it is unavailable the search degrades to keyword-only and the
response says so.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chartrag.config import RetrievalConfig
from chartrag.models import Chunk, RetrievalCandidate
from chartrag.rag.keyword_index import IndexSnapshot, KeywordIndex, tokenize
from chartrag.rag.vector_index import InMemoryVectorIndex, VectorHit, VectorIndex
from chartrag.resilience.circuit_breaker import CircuitBreakerRegistry
from chartrag.resilience.errors import QueryValidationError
from chartrag.resilience.fallback import Fallback, FallbackResult, FallbackStrategy
from chartrag.resilience.guard import DependencyGuard
from chartrag.resilience.retry import RetryOptions, SleepFn
from chartrag.validation import SearchFilters, SearchOptions, parse_model, validate_query_text

logger = logging.getLogger(__name__)

VECTOR_DEPENDENCY = "vector_index"
SECONDS_PER_DAY = 86400.0


# ============================================
# SearchResponse
# ============================================


@dataclass
class SearchResponse:
    """Ranked hop-0 candidates plus how they were produced."""

    results: list[RetrievalCandidate]
    total_candidates: int
    semantic_hits: int
    keyword_hits: int
    elapsed_ms: float
    fallback: FallbackResult | None = None

    @property
    def used_fallback(self) -> bool:
        return self.fallback is not None and self.fallback.used_fallback

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [c.to_dict() for c in self.results],
            "total_candidates": self.total_candidates,
            "semantic_hits": self.semantic_hits,
            "keyword_hits": self.keyword_hits,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "fallback": self.fallback.to_dict() if self.used_fallback else None,
        }


# ============================================
# Scoring helpers
# ============================================


def min_max_normalize(scores: dict[str, float]) -> dict[str, float]:
    """Scale scores to [0, 1]. Equal scores all map to 1.0."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high == low:
        return {cid: 1.0 for cid in scores}
    span = high - low
    return {cid: (s - low) / span for cid, s in scores.items()}


def fuse_scores(
    semantic: dict[str, float],
    keyword: dict[str, float],
    alpha: float,
) -> dict[str, float]:
    """Weighted sum over the union of both branches; absence counts as 0."""
    fused = {}
    for cid in semantic.keys() | keyword.keys():
        fused[cid] = alpha * semantic.get(cid, 0.0) + (1 - alpha) * keyword.get(cid, 0.0)
    return fused


def recency_multiplier(occurred_at: datetime, now: datetime, half_life_days: float) -> float:
    """2 ** (-age_days / half_life). Future timestamps count as age 0."""
    if half_life_days <= 0:
        return 1.0
    age_days = max(0.0, (now - occurred_at).total_seconds() / SECONDS_PER_DAY)
    return 2.0 ** (-age_days / half_life_days)


def build_snippet(content: str, query_terms: Sequence[str], length: int) -> str:
    """Window of ``length`` characters around the earliest query-term match."""
    if len(content) <= length:
        return content

    lowered = content.lower()
    first_match = None
    for term in query_terms:
        match = re.search(r"\b" + re.escape(term), lowered)
        if match and (first_match is None or match.start() < first_match):
            first_match = match.start()

    center = first_match if first_match is not None else 0
    start = max(0, center - length // 3)
    end = min(len(content), start + length)
    start = max(0, end - length)

    snippet = content[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet = snippet + "..."
    return snippet


def matches_filters(chunk: Chunk, filters: SearchFilters) -> bool:
    if filters.patient_id is not None and chunk.patient_id != filters.patient_id:
        return False
    if filters.artifact_types and chunk.artifact_type not in filters.artifact_types:
        return False
    if filters.date_from is not None and chunk.occurred_at < filters.date_from:
        return False
    if filters.date_to is not None and chunk.occurred_at > filters.date_to:
        return False
    return True


def _top(scores: dict[str, float], k: int) -> dict[str, float]:
    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    return dict(ranked[:k])


# ============================================
# HybridSearchEngine
# ============================================


class HybridSearchEngine:
    """Owns the keyword index and talks to the vector index through a guard."""

    def __init__(
        self,
        vector_index: VectorIndex | None = None,
        config: RetrievalConfig | None = None,
        registry: CircuitBreakerRegistry | None = None,
        sleep: SleepFn = asyncio.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or RetrievalConfig.from_env()
        self.keyword_index = KeywordIndex(k1=self.config.bm25_k1, b=self.config.bm25_b)
        self.vector_index = vector_index if vector_index is not None else InMemoryVectorIndex()
        # An empty registry is falsy
        if registry is None:
            registry = CircuitBreakerRegistry(
                failure_threshold=self.config.cb_failure_threshold,
                success_threshold=self.config.cb_success_threshold,
                reset_timeout=self.config.cb_reset_timeout_seconds,
                half_open_max_calls=self.config.cb_half_open_max_calls,
            )
        self.registry = registry
        retry_options = RetryOptions(
            max_attempts=self.config.retry_max_attempts,
            base_backoff_ms=self.config.retry_base_backoff_ms,
            backoff_multiplier=self.config.retry_backoff_multiplier,
        )
        self._vector_guard = DependencyGuard.from_registry(
            self.registry, VECTOR_DEPENDENCY, retry_options, sleep=sleep
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ============================================
    # Index maintenance
    # ============================================

    async def add_document(self, chunk: Chunk) -> int:
        return await self.add_documents([chunk])

    async def add_documents(self, chunks: list[Chunk]) -> int:
        """Index a batch of chunks.

        Embeddings are upserted first; the keyword snapshot is only
        published once every upsert has succeeded, so a failed batch
        never becomes visible to keyword search.
        """
        if not chunks:
            return 0

        for chunk in chunks:
            if chunk.embedding is None:
                continue
            await self._vector_guard.call(
                lambda c=chunk: self.vector_index.upsert(c.chunk_id, c.embedding)
            )

        self.keyword_index.add_many(chunks)
        return len(chunks)

    async def remove_document(self, chunk_id: str) -> bool:
        if chunk_id not in self.keyword_index:
            return False
        await self._vector_guard.call(lambda: self.vector_index.delete(chunk_id))
        return self.keyword_index.remove(chunk_id)

    async def clear(self) -> None:
        for chunk_id in list(self.keyword_index.snapshot().chunks):
            await self._vector_guard.call(lambda cid=chunk_id: self.vector_index.delete(cid))
        self.keyword_index.clear()

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        return self.keyword_index.snapshot().chunks.get(chunk_id)

    def snapshot(self) -> IndexSnapshot:
        return self.keyword_index.snapshot()

    def stats(self) -> dict[str, Any]:
        snap = self.keyword_index.snapshot()
        return {
            "document_count": snap.document_count,
            "vocabulary_size": len(snap.postings),
            "average_document_length": round(snap.average_document_length, 2),
            "generation": snap.generation,
            "vector_backend": type(self.vector_index).__name__,
        }

    # ============================================
    # Search
    # ============================================

    async def search(
        self,
        query_text: str,
        query_embedding: Sequence[float] | None = None,
        options: SearchOptions | dict[str, Any] | None = None,
    ) -> SearchResponse:
        start = time.perf_counter()
        query_text = validate_query_text(query_text)
        opts = parse_model(SearchOptions, options)
        if query_embedding is not None and len(query_embedding) == 0:
            raise QueryValidationError("query_embedding must not be empty", field="query_embedding")
        dimension = getattr(self.vector_index, "dimension", None)
        if query_embedding is not None and dimension is not None and len(query_embedding) != dimension:
            raise QueryValidationError(
                f"query_embedding has dimension {len(query_embedding)}, expected {dimension}",
                field="query_embedding",
            )

        # One snapshot per query: postings and corpus statistics stay consistent.
        snap = self.keyword_index.snapshot()
        candidate_ids = self._prefilter(snap, opts.filters)
        total_candidates = snap.document_count if candidate_ids is None else len(candidate_ids)

        if total_candidates == 0:
            logger.info("Search matched no candidates after filtering")
            return SearchResponse([], 0, 0, 0, (time.perf_counter() - start) * 1000)

        fetch_k = opts.k * self.config.fetch_multiplier
        query_terms = tokenize(query_text)

        semantic_outcome, keyword_raw = await asyncio.gather(
            self._semantic_branch(query_embedding, candidate_ids, fetch_k),
            asyncio.to_thread(snap.score_candidates, query_terms, candidate_ids),
        )

        semantic_raw = {
            cid: score
            for cid, score in semantic_outcome.result
            if cid in snap.chunks and (candidate_ids is None or cid in candidate_ids)
        }
        keyword_top = _top(keyword_raw, fetch_k)

        semantic_norm = min_max_normalize(semantic_raw)
        keyword_norm = min_max_normalize(keyword_top)
        fused = fuse_scores(semantic_norm, keyword_norm, opts.alpha)

        now = self._now()
        candidates = []
        for cid, combined in fused.items():
            chunk = snap.chunks[cid]
            boost = 1.0
            if opts.recency_boost:
                boost = recency_multiplier(
                    chunk.occurred_at, now, self.config.recency_half_life_days
                )
            final = combined * boost
            candidates.append(
                RetrievalCandidate(
                    chunk=chunk,
                    score=final,
                    original_score=final,
                    semantic_score=semantic_norm.get(cid, 0.0),
                    keyword_score=keyword_norm.get(cid, 0.0),
                    recency_boost=boost,
                )
            )

        candidates.sort(key=lambda c: (-c.score, -c.occurred_at.timestamp()))
        results = candidates[: opts.k]
        for candidate in results:
            candidate.snippet = build_snippet(candidate.content, query_terms, opts.snippet_length)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Hybrid search: %d candidates, %d semantic, %d keyword, %d returned (%.1fms)%s",
            total_candidates,
            len(semantic_raw),
            len(keyword_top),
            len(results),
            elapsed_ms,
            " [keyword-only fallback]" if semantic_outcome.used_fallback else "",
        )
        return SearchResponse(
            results=results,
            total_candidates=total_candidates,
            semantic_hits=len(semantic_raw),
            keyword_hits=len(keyword_top),
            elapsed_ms=elapsed_ms,
            fallback=semantic_outcome if semantic_outcome.used_fallback else None,
        )

    def _prefilter(self, snap: IndexSnapshot, filters: SearchFilters | None) -> set[str] | None:
        """Candidate ids matching every filter, or None for the whole corpus."""
        if filters is None or filters.is_empty():
            return None
        return {cid for cid, chunk in snap.chunks.items() if matches_filters(chunk, filters)}

    async def _semantic_branch(
        self,
        query_embedding: Sequence[float] | None,
        candidate_ids: set[str] | None,
        k: int,
    ) -> FallbackResult[list[VectorHit]]:
        if query_embedding is None:
            return FallbackResult(
                result=[],
                strategy=FallbackStrategy.KEYWORD_SEARCH_ONLY,
                reason="no query embedding supplied",
            )

        async def keyword_only() -> list[VectorHit]:
            return []

        return await Fallback(
            primary=lambda: self._vector_guard.call(
                lambda: self.vector_index.query(query_embedding, candidate_ids, k)
            ),
            fallback=keyword_only,
            strategy=FallbackStrategy.KEYWORD_SEARCH_ONLY,
        ).run()
