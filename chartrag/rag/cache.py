"""
ChartRAG Result Cache

Redis cache of final retrieval results, keyed by a SHA-256 of the
request (patient filter, query text and every option that affects
ranking). Used as the ``return_cached`` fallback when retrieval fails.
Cache errors are treated as a miss.
"""

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from chartrag.config import DEFAULT_REDIS_URL, RESULT_CACHE_TTL_SECONDS
from chartrag.models import Chunk, RetrievalCandidate
from chartrag.validation import RetrieveRequest

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "retrieval:"


def make_cache_key(request: RetrieveRequest) -> str:
    """Content-addressed key. The query embedding is excluded on purpose:
    it is derived from the query text, which is already part of the key."""
    payload = request.model_dump(mode="json", exclude={"query_embedding"})
    payload["query_text"] = payload["query_text"].lower()
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest}"


def restore_candidates(
    entries: list[dict[str, Any]],
    lookup: Callable[[str], Chunk | None],
) -> list[RetrievalCandidate]:
    """Rebuild candidates from cached dicts; chunks no longer indexed are skipped."""
    restored = []
    for entry in entries:
        chunk = lookup(entry["chunk_id"])
        if chunk is None:
            continue
        restored.append(
            RetrievalCandidate(
                chunk=chunk,
                score=entry["score"],
                original_score=entry["original_score"],
                hop_distance=entry.get("hop_distance", 0),
                relationship_path=list(entry.get("relationship_path", [])),
                enrichment_score=entry.get("enrichment_score", 0.0),
                artifact_position=entry.get("artifact_position", 0),
                diversity_penalty=entry.get("diversity_penalty", 1.0),
                snippet=entry.get("snippet", ""),
                semantic_score=entry.get("semantic_score", 0.0),
                keyword_score=entry.get("keyword_score", 0.0),
                recency_boost=entry.get("recency_boost", 1.0),
                signals=dict(entry.get("signals", {})),
            )
        )
    return restored


class RetrievalCache:
    """Lazily-connected redis.asyncio cache of serialized candidate lists."""

    def __init__(
        self,
        redis_url: str | None = None,
        ttl_seconds: int = RESULT_CACHE_TTL_SECONDS,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._redis_url = redis_url or DEFAULT_REDIS_URL
        self._redis: Any | None = None

    async def _get_redis(self) -> Any:
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def get(self, request: RetrieveRequest) -> dict[str, Any] | None:
        """Cached payload ``{"results": [...], "cached_at": iso}`` or None."""
        try:
            redis = await self._get_redis()
            cached = await redis.get(make_cache_key(request))
            if cached:
                return json.loads(cached)
            return None
        except Exception as e:
            logger.debug("Result cache read failed, treating as miss: %s", e)
            return None

    async def set(
        self,
        request: RetrieveRequest,
        candidates: list[RetrievalCandidate],
        ttl: int | None = None,
    ) -> bool:
        payload = {
            "results": [c.to_dict() for c in candidates],
            "cached_at": datetime.now().astimezone().isoformat(),
        }
        try:
            redis = await self._get_redis()
            await redis.set(
                make_cache_key(request),
                json.dumps(payload),
                ex=ttl if ttl is not None else self.ttl_seconds,
            )
            return True
        except Exception as e:
            logger.debug("Result cache write failed: %s", e)
            return False

    async def invalidate(self, request: RetrieveRequest) -> bool:
        try:
            redis = await self._get_redis()
            await redis.delete(make_cache_key(request))
            return True
        except Exception:
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
