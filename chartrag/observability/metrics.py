"""
Prometheus Metrics for ChartRAG

Tracks:
- retrievals_total: Counter of retrieval requests processed
- retrieval_latency_seconds: Latency buckets and percentiles
- fallbacks_total: Fallback activations per strategy
- empty_results_total: Retrievals that returned no candidates
- circuit_rejections_total: Calls rejected by an open circuit, per dependency
"""

import logging
import threading
from collections import deque

logger = logging.getLogger(__name__)

# Thread-safe metrics storage
_lock = threading.Lock()

_metrics: dict[str, float] = {
    "retrievals_total": 0,
    "retrievals_successful": 0,
    "retrievals_failed": 0,
    "empty_results": 0,
    "cache_hits": 0,
    "avg_latency_ms": 0.0,
    "latency_sum_ms": 0.0,
}

_fallbacks: dict[str, int] = {}
_circuit_rejections: dict[str, int] = {}

# Percentiles cover the most recent requests only
LATENCY_WINDOW = 1000
LATENCY_BUCKETS_MS = (100, 500, 1000, 2000)

_latencies: deque[float] = deque(maxlen=LATENCY_WINDOW)
_latency_buckets: dict[int, int] = {le: 0 for le in LATENCY_BUCKETS_MS}


def record_retrieval(
    latency_ms: float,
    success: bool = True,
    result_count: int = 0,
    cache_hit: bool = False,
) -> None:
    """Record metrics for a completed retrieval request."""
    with _lock:
        _metrics["retrievals_total"] += 1
        if success:
            _metrics["retrievals_successful"] += 1
        else:
            _metrics["retrievals_failed"] += 1
        if result_count == 0:
            _metrics["empty_results"] += 1
        if cache_hit:
            _metrics["cache_hits"] += 1
        _latencies.append(latency_ms)
        for le in LATENCY_BUCKETS_MS:
            if latency_ms <= le:
                _latency_buckets[le] += 1
        _metrics["latency_sum_ms"] += latency_ms
        _metrics["avg_latency_ms"] = _metrics["latency_sum_ms"] / _metrics["retrievals_total"]


def record_fallback(strategy: str) -> None:
    with _lock:
        _fallbacks[strategy] = _fallbacks.get(strategy, 0) + 1


def record_circuit_rejection(dependency: str) -> None:
    with _lock:
        _circuit_rejections[dependency] = _circuit_rejections.get(dependency, 0) + 1


def get_metrics_text() -> str:
    """Generate Prometheus-compatible metrics text."""
    with _lock:
        sorted_latencies = sorted(_latencies) if _latencies else [0]
        p50 = _percentile(sorted_latencies, 50)
        p95 = _percentile(sorted_latencies, 95)
        p99 = _percentile(sorted_latencies, 99)

        lines = [
            "# HELP retrievals_total Total number of retrieval requests",
            "# TYPE retrievals_total counter",
            f'retrievals_total {int(_metrics["retrievals_total"])}',
            "",
            "# HELP retrievals_successful Retrievals completed without error",
            "# TYPE retrievals_successful counter",
            f'retrievals_successful {int(_metrics["retrievals_successful"])}',
            "",
            "# HELP retrievals_failed Retrievals that fell back after a failure",
            "# TYPE retrievals_failed counter",
            f'retrievals_failed {int(_metrics["retrievals_failed"])}',
            "",
            "# HELP empty_results_total Retrievals returning zero candidates",
            "# TYPE empty_results_total counter",
            f'empty_results_total {int(_metrics["empty_results"])}',
            "",
            "# HELP cache_hits_total Retrievals served from the result cache",
            "# TYPE cache_hits_total counter",
            f'cache_hits_total {int(_metrics["cache_hits"])}',
            "",
            "# HELP retrieval_latency_seconds Retrieval latency histogram",
            "# TYPE retrieval_latency_seconds histogram",
            f'retrieval_latency_seconds{{le="0.1"}} {_latency_buckets[100]}',
            f'retrieval_latency_seconds{{le="0.5"}} {_latency_buckets[500]}',
            f'retrieval_latency_seconds{{le="1.0"}} {_latency_buckets[1000]}',
            f'retrieval_latency_seconds{{le="2.0"}} {_latency_buckets[2000]}',
            f"retrieval_latency_seconds_sum {_metrics['latency_sum_ms'] / 1000:.4f}",
            f"retrieval_latency_seconds_count {int(_metrics['retrievals_total'])}",
            f"retrieval_latency_seconds_p50 {p50 / 1000:.4f}",
            f"retrieval_latency_seconds_p95 {p95 / 1000:.4f}",
            f"retrieval_latency_seconds_p99 {p99 / 1000:.4f}",
            "",
            "# HELP fallbacks_total Fallback activations by strategy",
            "# TYPE fallbacks_total counter",
        ]
        for strategy, count in sorted(_fallbacks.items()):
            lines.append(f'fallbacks_total{{strategy="{strategy}"}} {count}')
        lines += [
            "",
            "# HELP circuit_rejections_total Calls rejected by an open circuit",
            "# TYPE circuit_rejections_total counter",
        ]
        for dependency, count in sorted(_circuit_rejections.items()):
            lines.append(f'circuit_rejections_total{{dependency="{dependency}"}} {count}')

        return "\n".join(lines) + "\n"


def reset_metrics() -> None:
    """Reset all metrics to zero."""
    with _lock:
        for key in _metrics:
            _metrics[key] = 0
        _fallbacks.clear()
        _circuit_rejections.clear()
        _latencies.clear()
        for le in _latency_buckets:
            _latency_buckets[le] = 0


def _percentile(sorted_data: list[float], percentile: int) -> float:
    """Compute the given percentile from sorted data."""
    if not sorted_data:
        return 0.0
    idx = int(len(sorted_data) * percentile / 100)
    idx = min(idx, len(sorted_data) - 1)
    return sorted_data[idx]

