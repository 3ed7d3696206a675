"""
Result Diversifier

Penalizes over-representation of a single source artifact:

    penalty(position) = decay ** (position - 1)

where position is the 1-based rank of a chunk among chunks of the same
artifact. Diversification only ever scales scores down and never adds
or drops a candidate.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any

from chartrag.config import DIVERSITY_DECAY, DIVERSITY_MIN_SOURCES, DIVERSITY_TOP_K
from chartrag.models import RetrievalCandidate

logger = logging.getLogger(__name__)


@dataclass
class DiversityStats:
    total_candidates: int = 0
    unique_artifacts: int = 0
    avg_chunks_per_artifact: float = 0.0
    max_chunks_from_single_artifact: int = 0
    diversity_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def group_by_artifact(
    candidates: list[RetrievalCandidate],
) -> dict[str, list[RetrievalCandidate]]:
    """Group by artifact_id. Groups and members keep input order."""
    groups: dict[str, list[RetrievalCandidate]] = {}
    for candidate in candidates:
        groups.setdefault(candidate.artifact_id, []).append(candidate)
    return groups


def interleave_groups(groups: dict[str, list[RetrievalCandidate]]) -> list[RetrievalCandidate]:
    """Round-robin over group heads, skipping exhausted groups."""
    queues = [list(members) for members in groups.values()]
    result: list[RetrievalCandidate] = []
    position = 0
    while any(queues):
        for queue in queues:
            if position < len(queue):
                result.append(queue[position])
        position += 1
        queues = [q for q in queues if position < len(q)]
    return result


class ResultDiversifier:
    def __init__(
        self,
        decay: float = DIVERSITY_DECAY,
        top_k: int = DIVERSITY_TOP_K,
        min_sources: int = DIVERSITY_MIN_SOURCES,
    ) -> None:
        if decay <= 0.0 or decay > 1.0:
            raise ValueError("decay must be in (0, 1]")
        self.decay = decay
        self.top_k = top_k
        self.min_sources = min_sources

    def penalty(self, position: int) -> float:
        if position < 1:
            raise ValueError("position is 1-based")
        return self.decay ** (position - 1)

    def penalty_curve(self, n: int) -> list[float]:
        return [self.penalty(p) for p in range(1, n + 1)]

    def diversify(self, candidates: list[RetrievalCandidate]) -> list[RetrievalCandidate]:
        """Apply per-artifact position penalties and re-sort by penalized score."""
        if not candidates:
            return []

        for members in group_by_artifact(candidates).values():
            for index, candidate in enumerate(members):
                position = index + 1
                penalty = self.penalty(position)
                candidate.artifact_position = position
                candidate.diversity_penalty = penalty
                candidate.score = candidate.score * penalty

        return sorted(candidates, key=lambda c: c.score, reverse=True)

    def ensure_minimum_diversity(
        self,
        candidates: list[RetrievalCandidate],
        top_k: int | None = None,
        min_sources: int | None = None,
    ) -> list[RetrievalCandidate]:
        """Guarantee ``min_sources`` distinct artifacts in the first ``top_k`` entries.

        When the window is too homogeneous it is rebuilt by interleaving
        the per-artifact groups (best-scoring member first). Everything
        outside the window keeps its current order.
        """
        top_k = top_k if top_k is not None else self.top_k
        min_sources = min_sources if min_sources is not None else self.min_sources
        if len(candidates) <= top_k:
            return list(candidates)

        if self.has_minimum_diversity(candidates, top_k, min_sources):
            return list(candidates)

        groups = {
            artifact_id: sorted(members, key=lambda c: c.score, reverse=True)
            for artifact_id, members in group_by_artifact(candidates).items()
        }
        window = interleave_groups(groups)[:top_k]
        chosen = {id(c) for c in window}
        rest = [c for c in candidates if id(c) not in chosen]

        logger.info(
            "Enforced minimum diversity: %d sources in top %d (was %d)",
            len({c.artifact_id for c in window}),
            top_k,
            len({c.artifact_id for c in candidates[:top_k]}),
        )
        return window + rest

    def has_minimum_diversity(
        self,
        candidates: list[RetrievalCandidate],
        top_k: int | None = None,
        min_sources: int | None = None,
    ) -> bool:
        top_k = top_k if top_k is not None else self.top_k
        min_sources = min_sources if min_sources is not None else self.min_sources
        return len({c.artifact_id for c in candidates[:top_k]}) >= min_sources

    def stats(self, candidates: list[RetrievalCandidate]) -> DiversityStats:
        if not candidates:
            return DiversityStats()
        groups = group_by_artifact(candidates)
        return DiversityStats(
            total_candidates=len(candidates),
            unique_artifacts=len(groups),
            avg_chunks_per_artifact=len(candidates) / len(groups),
            max_chunks_from_single_artifact=max(len(m) for m in groups.values()),
            diversity_ratio=len(groups) / len(candidates),
        )

    def compare_before_after(
        self,
        original: list[RetrievalCandidate],
        diversified: list[RetrievalCandidate],
    ) -> dict[str, Any]:
        """Rank movement per chunk between two orderings of the same candidates."""
        original_rank = {c.chunk_id: i + 1 for i, c in enumerate(original)}
        changes = []
        improved = degraded = unchanged = 0
        for i, c in enumerate(diversified):
            before = original_rank.get(c.chunk_id, 0)
            change = before - (i + 1)
            if change > 0:
                improved += 1
            elif change < 0:
                degraded += 1
            else:
                unchanged += 1
            changes.append(
                {
                    "chunk_id": c.chunk_id,
                    "artifact_id": c.artifact_id,
                    "original_rank": before,
                    "diversified_rank": i + 1,
                    "rank_change": change,
                    "penalty": c.diversity_penalty,
                }
            )
        avg_penalty = (
            sum(c.diversity_penalty for c in diversified) / len(diversified) if diversified else 0.0
        )
        return {
            "rank_changes": changes,
            "stats": {
                "improved": improved,
                "degraded": degraded,
                "unchanged": unchanged,
                "avg_penalty": avg_penalty,
            },
        }
