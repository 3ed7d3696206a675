"""
ChartRAG Resilience Module

Fault-tolerance around external dependencies:
- Retry with exponential backoff
- Per-dependency circuit breakers
- Fallback selection by error kind
"""

from chartrag.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerStats,
    CircuitState,
)
from chartrag.resilience.errors import (
    CircuitOpenError,
    DependencyError,
    ErrorKind,
    Outcome,
    QueryValidationError,
    RetrievalError,
    TransientDependencyError,
    annotate_exhausted,
    capture,
    classify_error,
)
from chartrag.resilience.fallback import (
    Fallback,
    FallbackResult,
    FallbackStrategy,
    suggest_refinement,
)
from chartrag.resilience.guard import DependencyGuard
from chartrag.resilience.retry import (
    Retry,
    RetryOptions,
    RetryResult,
    backoff_delay_ms,
    retry,
)

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerStats",
    "CircuitState",
    # Errors
    "CircuitOpenError",
    "DependencyError",
    "ErrorKind",
    "Outcome",
    "QueryValidationError",
    "RetrievalError",
    "TransientDependencyError",
    "annotate_exhausted",
    "capture",
    "classify_error",
    # Fallback
    "Fallback",
    "FallbackResult",
    "FallbackStrategy",
    "suggest_refinement",
    # Retry
    "DependencyGuard",
    "Retry",
    "RetryOptions",
    "RetryResult",
    "backoff_delay_ms",
    "retry",
]
