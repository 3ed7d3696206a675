"""
Fallback selection.

The primary is run once (it may carry its own retry); on failure the
fallback is run exactly once and the result is tagged with the strategy
and the reason. Validation errors are never masked by a fallback.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from chartrag.observability.metrics import record_fallback
from chartrag.resilience.errors import ErrorKind, capture

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FallbackStrategy(str, Enum):
    RETRIEVAL_ONLY = "retrieval_only"
    KEYWORD_SEARCH_ONLY = "keyword_search_only"
    SUGGEST_REFINEMENT = "suggest_refinement"
    RETURN_CACHED = "return_cached"
    RETURN_PARTIAL = "return_partial"


@dataclass
class FallbackResult(Generic[T]):
    result: T
    strategy: FallbackStrategy
    reason: str
    used_fallback: bool = False
    error_kind: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "reason": self.reason,
            "used_fallback": self.used_fallback,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


REASONS: dict[ErrorKind, str] = {
    ErrorKind.TRANSIENT: "dependency unavailable after retries",
    ErrorKind.CIRCUIT_OPEN: "circuit open, dependency skipped",
    ErrorKind.DEPENDENCY: "dependency failed",
}


class Fallback(Generic[T]):
    """Run ``primary``; on failure run ``fallback`` once and tag the result."""

    def __init__(
        self,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        strategy: FallbackStrategy,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.strategy = strategy

    async def run(self) -> FallbackResult[T]:
        outcome = await capture(self.primary())
        if outcome.ok:
            return FallbackResult(
                result=outcome.value,  # type: ignore[arg-type]
                strategy=self.strategy,
                reason="primary succeeded",
            )

        kind = outcome.kind
        if kind is ErrorKind.VALIDATION:
            raise outcome.error  # type: ignore[misc]

        reason = f"{REASONS.get(kind, 'primary failed')}: {outcome.error}"
        logger.warning("Primary failed, using fallback %s (%s)", self.strategy.value, reason)
        record_fallback(self.strategy.value)

        result = await self.fallback()
        return FallbackResult(
            result=result,
            strategy=self.strategy,
            reason=reason,
            used_fallback=True,
            error_kind=kind,
        )


REFINEMENT_SUGGESTIONS = [
    "Try more specific clinical terms",
    "Check the spelling of medication or condition names",
    "Widen or remove the date range",
    "Remove artifact type filters",
]


def suggest_refinement(query: str, reason: str = "No results found") -> dict[str, Any]:
    """Build the payload returned when nothing can be retrieved."""
    return {
        "message": "No results found. Please try refining your query.",
        "suggestions": list(REFINEMENT_SUGGESTIONS),
        "original_query": query,
        "reason": reason,
    }
