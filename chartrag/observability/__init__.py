"""
ChartRAG Observability Module

Monitoring components:
- Prometheus-format retrieval metrics
"""

from chartrag.observability.metrics import get_metrics_text, record_retrieval

__all__ = ["get_metrics_text", "record_retrieval"]
