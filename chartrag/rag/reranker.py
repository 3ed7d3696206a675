"""
Reranker for ChartRAG

Recomputes a composite score from signals supplied by the upstream
query-understanding stage:

    rerank_score = w1 * base + w2 * entity_coverage + w3 * term_overlap + w4 * type_bonus

Weights are rescaled to sum to 1.0. Ties keep input order.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from chartrag.config import RERANK_WEIGHTS
from chartrag.models import RetrievalCandidate
from chartrag.rag.keyword_index import tokenize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RerankWeights:
    base_score: float = RERANK_WEIGHTS[0]
    entity_coverage: float = RERANK_WEIGHTS[1]
    term_overlap: float = RERANK_WEIGHTS[2]
    type_bonus: float = RERANK_WEIGHTS[3]

    def __post_init__(self) -> None:
        values = self.as_tuple()
        if any(w < 0 for w in values):
            raise ValueError("Rerank weights must be non-negative")
        if sum(values) <= 0:
            raise ValueError("Rerank weights must have a positive sum")

    @classmethod
    def from_sequence(cls, weights: Sequence[float]) -> "RerankWeights":
        if len(weights) != 4:
            raise ValueError("Expected 4 rerank weights: base, entity, term, type")
        return cls(*weights)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.base_score, self.entity_coverage, self.term_overlap, self.type_bonus)

    def normalized(self) -> "RerankWeights":
        total = sum(self.as_tuple())
        return RerankWeights(*(w / total for w in self.as_tuple()))


def entity_coverage(candidate: RetrievalCandidate, query_entities: Sequence[str]) -> float:
    """Share of query entities found (case-insensitively) in content or enriched text."""
    entities = [e.strip().lower() for e in query_entities if e.strip()]
    if not entities:
        return 0.0
    haystack = candidate.content.lower()
    enriched = candidate.chunk.metadata.enriched_text
    if enriched:
        haystack += "\n" + enriched.lower()
    found = sum(1 for e in entities if e in haystack)
    return found / max(1, len(entities))


def term_overlap(candidate: RetrievalCandidate, query_terms: Sequence[str]) -> float:
    terms = {t.lower() for t in query_terms if t.strip()}
    if not terms:
        return 0.0
    content_terms = set(tokenize(candidate.content))
    return len(terms & content_terms) / max(1, len(terms))


class Reranker:
    """Composite re-scoring of retrieval candidates."""

    def __init__(self, weights: RerankWeights | Sequence[float] | None = None) -> None:
        if weights is None:
            weights = RerankWeights()
        elif not isinstance(weights, RerankWeights):
            weights = RerankWeights.from_sequence(weights)
        self.weights = weights.normalized()

    def rerank(
        self,
        candidates: list[RetrievalCandidate],
        query_entities: Sequence[str] = (),
        query_terms: Sequence[str] = (),
        target_artifact_type: str | None = None,
        top_k: int | None = None,
    ) -> list[RetrievalCandidate]:
        """Rescore ``candidates`` in place and return them best-first."""
        if not candidates:
            return []

        w = self.weights
        target = target_artifact_type.strip().lower() if target_artifact_type else None
        for candidate in candidates:
            coverage = entity_coverage(candidate, query_entities)
            overlap = term_overlap(candidate, query_terms)
            bonus = 1.0 if target is not None and candidate.artifact_type == target else 0.0
            base = candidate.score
            candidate.signals.update(
                {
                    "base_score": base,
                    "entity_coverage": coverage,
                    "term_overlap": overlap,
                    "type_bonus": bonus,
                }
            )
            candidate.score = (
                w.base_score * base
                + w.entity_coverage * coverage
                + w.term_overlap * overlap
                + w.type_bonus * bonus
            )

        # sorted() is stable: equal scores keep their incoming rank
        ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
        logger.debug(
            "Reranked %d candidates (entities=%d, terms=%d, target_type=%s)",
            len(ranked),
            len(query_entities),
            len(query_terms),
            target,
        )
        return ranked[:top_k] if top_k else ranked
