"""
Retrieval Pipeline for ChartRAG

Composes the ranking stages as one callable unit:

    hybrid search -> multi-hop expansion -> re-rank -> diversify -> minimum diversity

Validation errors propagate to the caller. Any other failure returns a
fallback: the last cached result for the same request when one exists,
otherwise refinement suggestions. An empty result is not an error; it is
returned with a ``suggest_refinement`` fallback so the caller can decide.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from chartrag.config import RetrievalConfig
from chartrag.models import RetrievalCandidate
from chartrag.observability.metrics import record_fallback, record_retrieval
from chartrag.rag.cache import RetrievalCache, restore_candidates
from chartrag.rag.diversifier import DiversityStats, ResultDiversifier
from chartrag.rag.keyword_index import tokenize
from chartrag.rag.multi_hop import MultiHopResult, MultiHopRetriever
from chartrag.rag.reranker import Reranker
from chartrag.rag.retriever import HybridSearchEngine, SearchResponse
from chartrag.resilience.errors import ErrorKind, capture
from chartrag.resilience.fallback import FallbackResult, FallbackStrategy, suggest_refinement
from chartrag.validation import RetrieveRequest, parse_model

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Final ranked candidates plus provenance for the answer-generation stage."""

    candidates: list[RetrievalCandidate]
    processing_time_ms: float
    fallback: FallbackResult | None = None
    refinement: dict[str, Any] | None = None
    cached: bool = False
    diversity: DiversityStats = field(default_factory=DiversityStats)
    hop_stats: dict[str, int] = field(default_factory=dict)
    enrichment_stats: dict[str, float] = field(default_factory=dict)
    steps: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [c.to_dict() for c in self.candidates],
            "count": len(self.candidates),
            "processing_time_ms": round(self.processing_time_ms, 1),
            "fallback": self.fallback.to_dict() if self.fallback else None,
            "refinement": self.refinement,
            "cached": self.cached,
            "diversity": self.diversity.to_dict(),
            "hop_stats": dict(self.hop_stats),
            "enrichment_stats": dict(self.enrichment_stats),
            "steps": list(self.steps),
        }


def _step(steps: list[dict[str, Any]], name: str, started: float, detail: str) -> None:
    steps.append(
        {
            "name": name,
            "duration_ms": round((time.time() - started) * 1000, 1),
            "detail": detail,
        }
    )


class RetrievalPipeline:
    """Search, expand, re-rank and diversify in one call."""

    def __init__(
        self,
        engine: HybridSearchEngine,
        multi_hop: MultiHopRetriever | None = None,
        reranker: Reranker | None = None,
        diversifier: ResultDiversifier | None = None,
        cache: RetrievalCache | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.config = config if config is not None else engine.config
        self.engine = engine
        self.multi_hop = (
            multi_hop if multi_hop is not None else MultiHopRetriever(engine.snapshot, self.config)
        )
        self.reranker = reranker if reranker is not None else Reranker(self.config.rerank_weights)
        self.diversifier = diversifier if diversifier is not None else ResultDiversifier(
            decay=self.config.diversity_decay,
            top_k=self.config.diversity_top_k,
            min_sources=self.config.diversity_min_sources,
        )
        self.cache = cache

    async def run(self, request: RetrieveRequest | dict[str, Any]) -> PipelineResult:
        start_time = time.time()
        request = parse_model(RetrieveRequest, request)
        steps: list[dict[str, Any]] = []

        outcome = await capture(self._rank(request, steps))
        if not outcome.ok:
            if outcome.kind is ErrorKind.VALIDATION:
                raise outcome.error  # type: ignore[misc]
            return await self._on_failure(request, outcome.error, outcome.kind, steps, start_time)

        candidates, search, hops = outcome.value  # type: ignore[misc]
        elapsed = (time.time() - start_time) * 1000

        if not candidates:
            reason = "no candidates matched the query and filters"
            record_fallback(FallbackStrategy.SUGGEST_REFINEMENT.value)
            record_retrieval(elapsed, success=True, result_count=0)
            return PipelineResult(
                candidates=[],
                processing_time_ms=elapsed,
                fallback=FallbackResult(
                    result=[],
                    strategy=FallbackStrategy.SUGGEST_REFINEMENT,
                    reason=reason,
                    used_fallback=True,
                ),
                refinement=suggest_refinement(request.query_text, reason),
                steps=steps,
            )

        if self.cache is not None:
            await self.cache.set(request, candidates)

        record_retrieval(elapsed, success=True, result_count=len(candidates))
        return PipelineResult(
            candidates=candidates,
            processing_time_ms=elapsed,
            fallback=search.fallback,
            diversity=self.diversifier.stats(candidates),
            hop_stats=hops.hop_stats,
            enrichment_stats=hops.enrichment_stats,
            steps=steps,
        )

    async def _rank(
        self,
        request: RetrieveRequest,
        steps: list[dict[str, Any]],
    ) -> tuple[list[RetrievalCandidate], SearchResponse, MultiHopResult]:
        step_start = time.time()
        search = await self.engine.search(
            request.query_text, request.query_embedding, request.search
        )
        _step(
            steps,
            "hybrid_search",
            step_start,
            f"{len(search.results)} of {search.total_candidates} candidates "
            f"({search.semantic_hits} semantic, {search.keyword_hits} keyword)",
        )

        step_start = time.time()
        hops = self.multi_hop.retrieve(search.results, request.multi_hop, top_k=request.search.k)
        _step(
            steps,
            "multi_hop",
            step_start,
            f"{hops.hop_stats.get('hop_1', 0)} hop-1, {hops.hop_stats.get('hop_2', 0)} hop-2",
        )

        step_start = time.time()
        query_terms = request.query_terms or tokenize(request.query_text)
        ranked = self.reranker.rerank(
            hops.candidates,
            query_entities=request.query_entities,
            query_terms=query_terms,
            target_artifact_type=request.target_artifact_type,
        )
        _step(steps, "rerank", step_start, f"Reranked {len(ranked)} candidates")

        step_start = time.time()
        diversified = self.diversifier.diversify(ranked)
        diversified = self.diversifier.ensure_minimum_diversity(
            diversified, top_k=request.top_k
        )
        final = diversified[: request.top_k]
        _step(
            steps,
            "diversify",
            step_start,
            f"{len({c.artifact_id for c in final})} sources in top {len(final)}",
        )
        return final, search, hops

    async def _on_failure(
        self,
        request: RetrieveRequest,
        error: BaseException | None,
        kind: ErrorKind | None,
        steps: list[dict[str, Any]],
        start_time: float,
    ) -> PipelineResult:
        logger.warning("Retrieval failed (%s): %s", kind.value if kind else "unknown", error)

        cached = await self.cache.get(request) if self.cache is not None else None
        if cached is not None:
            candidates = restore_candidates(cached.get("results", []), self.engine.get_chunk)
            if candidates:
                elapsed = (time.time() - start_time) * 1000
                reason = f"retrieval failed, serving result cached at {cached.get('cached_at')}"
                record_fallback(FallbackStrategy.RETURN_CACHED.value)
                record_retrieval(elapsed, success=False, result_count=len(candidates), cache_hit=True)
                return PipelineResult(
                    candidates=candidates,
                    processing_time_ms=elapsed,
                    fallback=FallbackResult(
                        result=candidates,
                        strategy=FallbackStrategy.RETURN_CACHED,
                        reason=reason,
                        used_fallback=True,
                        error_kind=kind,
                    ),
                    cached=True,
                    diversity=self.diversifier.stats(candidates),
                    steps=steps,
                )

        elapsed = (time.time() - start_time) * 1000
        reason = f"retrieval failed: {error}"
        record_fallback(FallbackStrategy.SUGGEST_REFINEMENT.value)
        record_retrieval(elapsed, success=False)
        return PipelineResult(
            candidates=[],
            processing_time_ms=elapsed,
            fallback=FallbackResult(
                result=[],
                strategy=FallbackStrategy.SUGGEST_REFINEMENT,
                reason=reason,
                used_fallback=True,
                error_kind=kind,
            ),
            refinement=suggest_refinement(request.query_text, reason),
            steps=steps,
        )
