"""
ChartRAG RAG Module

Retrieval and ranking over indexed clinical record chunks.
Provides the BM25 keyword index, vector index adapters, hybrid search,
multi-hop relationship expansion, re-ranking, diversification and the
result cache.
"""

from chartrag.rag.cache import RetrievalCache
from chartrag.rag.diversifier import (
    DiversityStats,
    ResultDiversifier,
    group_by_artifact,
    interleave_groups,
)
from chartrag.rag.keyword_index import IndexSnapshot, KeywordIndex, tokenize
from chartrag.rag.multi_hop import (
    MultiHopResult,
    MultiHopRetriever,
    RelationshipGraph,
    compute_enrichment_score,
)
from chartrag.rag.reranker import Reranker, RerankWeights
from chartrag.rag.retriever import HybridSearchEngine, SearchResponse
from chartrag.rag.vector_index import InMemoryVectorIndex, PgVectorIndex, VectorIndex

__all__ = [
    # Keyword index
    "IndexSnapshot",
    "KeywordIndex",
    "tokenize",
    # Vector index
    "InMemoryVectorIndex",
    "PgVectorIndex",
    "VectorIndex",
    # Hybrid search
    "HybridSearchEngine",
    "SearchResponse",
    # Multi-hop
    "MultiHopResult",
    "MultiHopRetriever",
    "RelationshipGraph",
    "compute_enrichment_score",
    # Ranking
    "Reranker",
    "RerankWeights",
    "DiversityStats",
    "ResultDiversifier",
    "group_by_artifact",
    "interleave_groups",
    # Cache
    "RetrievalCache",
]
