"""
Multi-Hop Relationship Retrieval

Expands hop-0 search results across the relationship graph carried in
chunk metadata (a medication chunk linked to the condition it treats,
a lab result linked to the order that produced it) and re-scores the
union with hop-distance and enrichment adjustments:

    final = base * (1 - 0.1 * hop) * (1 + 0.2 * enrichment) * (1 + boost if hop > 0 else 1)

Each hop multiplies the origin score by ``hop_decay`` (compounding, so
two hops apply it twice).
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from chartrag.config import RetrievalConfig
from chartrag.models import Chunk, ChunkMetadata, RetrievalCandidate
from chartrag.rag.keyword_index import IndexSnapshot
from chartrag.validation import MultiHopOptions, parse_model

logger = logging.getLogger(__name__)

HOP_PENALTY = 0.1
ENRICHMENT_WEIGHT = 0.2
ENRICHED_TEXT_WEIGHT = 0.4
EXTRACTED_ENTITIES_WEIGHT = 0.3
RELATIONSHIP_WEIGHT = 0.3
RELATIONSHIP_SATURATION = 5


def compute_enrichment_score(metadata: ChunkMetadata) -> float:
    """0.4 for enriched text, 0.3 for extracted entities, up to 0.3 for relationships."""
    score = 0.0
    if metadata.has_enriched_text:
        score += ENRICHED_TEXT_WEIGHT
    if metadata.has_extracted_entities:
        score += EXTRACTED_ENTITIES_WEIGHT
    score += RELATIONSHIP_WEIGHT * min(1.0, len(metadata.relationship_ids) / RELATIONSHIP_SATURATION)
    return min(1.0, score)


def hop_adjusted_score(
    base_score: float,
    hop_distance: int,
    enrichment_score: float,
    relationship_boost: float,
) -> float:
    boost = 1 + relationship_boost if hop_distance > 0 else 1.0
    return (
        base_score
        * (1 - HOP_PENALTY * hop_distance)
        * (1 + ENRICHMENT_WEIGHT * enrichment_score)
        * boost
    )


# ============================================
# Relationship Graph
# ============================================


class RelationshipGraph:
    """Read-only adjacency view: relationship id -> chunk ids."""

    def __init__(self, chunks: Mapping[str, Chunk], generation: int = 0) -> None:
        self._chunks = chunks
        self.generation = generation
        members: dict[str, list[str]] = defaultdict(list)
        for chunk_id, chunk in chunks.items():
            for rel_id in chunk.metadata.relationship_ids:
                members[rel_id].append(chunk_id)
        self._members = {rel: sorted(ids) for rel, ids in members.items()}

    @classmethod
    def from_chunks(cls, chunks: Iterable[Chunk]) -> "RelationshipGraph":
        return cls({c.chunk_id: c for c in chunks})

    @classmethod
    def from_snapshot(cls, snapshot: IndexSnapshot) -> "RelationshipGraph":
        return cls(snapshot.chunks, generation=snapshot.generation)

    @property
    def relationship_count(self) -> int:
        return len(self._members)

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        return self._chunks.get(chunk_id)

    def members(self, relationship_id: str) -> list[str]:
        return list(self._members.get(relationship_id, ()))

    def neighbors(self, chunk_id: str, limit: int | None = None) -> list[tuple[str, str]]:
        """Related chunks of the same patient as ``(neighbor_id, shared_relationship_id)``.

        The shared id reported is the lexicographically first one.
        """
        origin = self._chunks.get(chunk_id)
        if origin is None:
            return []
        found: dict[str, str] = {}
        for rel_id in sorted(origin.metadata.relationship_ids):
            for other_id in self._members.get(rel_id, ()):
                if other_id == chunk_id or other_id in found:
                    continue
                if self._chunks[other_id].patient_id != origin.patient_id:
                    continue
                found[other_id] = rel_id
                if limit is not None and len(found) >= limit:
                    return list(found.items())
        return list(found.items())


# ============================================
# MultiHopResult
# ============================================


@dataclass
class MultiHopResult:
    candidates: list[RetrievalCandidate]
    hop_stats: dict[str, int] = field(default_factory=dict)
    enrichment_stats: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "hop_stats": dict(self.hop_stats),
            "enrichment_stats": dict(self.enrichment_stats),
        }


# ============================================
# MultiHopRetriever
# ============================================


class MultiHopRetriever:
    """Expands and re-scores hop-0 candidates over the relationship graph.

    ``snapshot_source`` returns the current keyword-index snapshot; the
    graph is rebuilt only when the snapshot generation changes.
    """

    def __init__(
        self,
        snapshot_source: Callable[[], IndexSnapshot],
        config: RetrievalConfig | None = None,
    ) -> None:
        self._snapshot_source = snapshot_source
        self.config = config or RetrievalConfig.from_env()
        self._graph: RelationshipGraph | None = None
        self._graph_lock = threading.Lock()

    def graph(self) -> RelationshipGraph:
        snapshot = self._snapshot_source()
        with self._graph_lock:
            if self._graph is None or self._graph.generation != snapshot.generation:
                self._graph = RelationshipGraph.from_snapshot(snapshot)
                logger.debug(
                    "Rebuilt relationship graph (generation=%d, relationships=%d)",
                    snapshot.generation,
                    self._graph.relationship_count,
                )
            return self._graph

    def retrieve(
        self,
        candidates: list[RetrievalCandidate],
        options: MultiHopOptions | dict[str, Any] | None = None,
        top_k: int | None = None,
    ) -> MultiHopResult:
        opts = parse_model(MultiHopOptions, options)
        top_k = top_k or self.config.top_k

        seeds: dict[str, RetrievalCandidate] = {}
        for c in candidates:
            if c.chunk_id not in seeds or c.score > seeds[c.chunk_id].score:
                seeds[c.chunk_id] = c
        hop0 = [
            replace(
                c,
                hop_distance=0,
                relationship_path=list(c.relationship_path),
                signals=dict(c.signals),
            )
            for c in seeds.values()
        ]
        if not opts.enable_multi_hop or opts.max_hops == 0:
            for c in hop0:
                c.enrichment_score = compute_enrichment_score(c.chunk.metadata)
            hop0.sort(key=lambda c: -c.score)
            return self._result(hop0[:top_k], relationships_followed=set())

        graph = self.graph()
        instances = list(hop0)
        frontier = hop0
        followed: set[str] = set()
        for hop in range(1, opts.max_hops + 1):
            frontier = self._expand(graph, frontier, hop, opts.hop_decay, followed)
            instances.extend(frontier)
            if not frontier:
                break

        best: dict[str, RetrievalCandidate] = {}
        for c in instances:
            c.enrichment_score = compute_enrichment_score(c.chunk.metadata)
            c.score = hop_adjusted_score(
                c.score, c.hop_distance, c.enrichment_score, opts.relationship_boost
            )
            current = best.get(c.chunk_id)
            if current is None or (c.score, -c.hop_distance) > (current.score, -current.hop_distance):
                best[c.chunk_id] = c

        ranked = sorted(best.values(), key=lambda c: (-c.score, c.hop_distance))
        result = self._result(ranked[:top_k], relationships_followed=followed)
        logger.info(
            "Multi-hop: %d hop-0, %d expanded instances, %d unique, %d returned",
            len(hop0),
            len(instances) - len(hop0),
            len(best),
            len(result.candidates),
        )
        return result

    def _expand(
        self,
        graph: RelationshipGraph,
        origins: list[RetrievalCandidate],
        hop: int,
        hop_decay: float,
        followed: set[str],
    ) -> list[RetrievalCandidate]:
        """One hop out from ``origins``; a chunk reached twice keeps its best score."""
        reached: dict[str, RetrievalCandidate] = {}
        for origin in origins:
            neighbors = graph.neighbors(origin.chunk_id, self.config.max_neighbors_per_chunk)
            for neighbor_id, rel_id in neighbors:
                score = origin.score * hop_decay
                existing = reached.get(neighbor_id)
                if existing is not None and existing.score >= score:
                    continue
                chunk = graph.get_chunk(neighbor_id)
                if chunk is None:
                    continue
                followed.add(rel_id)
                reached[neighbor_id] = RetrievalCandidate(
                    chunk=chunk,
                    score=score,
                    original_score=origin.original_score,
                    hop_distance=hop,
                    relationship_path=origin.relationship_path + [rel_id],
                )
        return list(reached.values())

    def _result(
        self,
        candidates: list[RetrievalCandidate],
        relationships_followed: set[str],
    ) -> MultiHopResult:
        hop_stats = {"hop_0": 0, "hop_1": 0, "hop_2": 0}
        for c in candidates:
            hop_stats[f"hop_{c.hop_distance}"] += 1
        hop_stats["relationships_followed"] = len(relationships_followed)

        enriched = [c for c in candidates if c.enrichment_score > 0]
        avg = sum(c.enrichment_score for c in candidates) / len(candidates) if candidates else 0.0
        return MultiHopResult(
            candidates=candidates,
            hop_stats=hop_stats,
            enrichment_stats={
                "enriched_count": len(enriched),
                "avg_enrichment_score": round(avg, 4),
            },
        )
