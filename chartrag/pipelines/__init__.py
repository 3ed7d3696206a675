"""
ChartRAG Pipelines

Stage composition: hybrid search -> multi-hop -> re-rank -> diversify.
"""

from chartrag.pipelines.retrieval import PipelineResult, RetrievalPipeline

__all__ = ["PipelineResult", "RetrievalPipeline"]
