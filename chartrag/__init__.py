"""
ChartRAG - Retrieval and Ranking Core for Clinical Question Answering

Returns a small, diverse, high-precision set of chunks from a patient's
medical record for a downstream answer-generation stage.

Features:
- Hybrid retrieval (BM25 + vector similarity) with metadata pre-filtering
- Recency boosting and min-max score fusion
- Multi-hop expansion over the clinical relationship graph
- Entity/term-aware re-ranking
- Source diversification
- Retry, circuit breaking and fallback around every external dependency
"""

__version__ = "0.1.0"
__author__ = "ChartRAG Team"
