"""
ChartRAG - FastAPI Application Entry Point

Retrieval-and-ranking service for clinical record question answering.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from chartrag import __version__
from chartrag.config import (
    DEFAULT_DATABASE_URL,
    DEFAULT_REDIS_URL,
    EMBEDDING_DIMENSION,
    VECTOR_INDEX_BACKEND,
    RetrievalConfig,
)
from chartrag.observability.metrics import get_metrics_text, reset_metrics
from chartrag.pipelines.retrieval import RetrievalPipeline
from chartrag.rag.cache import RetrievalCache
from chartrag.rag.retriever import HybridSearchEngine
from chartrag.rag.vector_index import InMemoryVectorIndex, VectorIndex
from chartrag.resilience.circuit_breaker import CircuitBreakerRegistry
from chartrag.resilience.errors import QueryValidationError, RetrievalError, classify_error
from chartrag.validation import IndexRequest, RetrieveRequest

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _build_vector_index(app: FastAPI) -> VectorIndex:
    if VECTOR_INDEX_BACKEND != "pgvector":
        return InMemoryVectorIndex(dimension=EMBEDDING_DIMENSION)

    from chartrag.db.postgres import create_db_engine, create_session_factory, init_vector_table
    from chartrag.rag.vector_index import PgVectorIndex

    app.state.db_engine = create_db_engine(DEFAULT_DATABASE_URL)
    try:
        await init_vector_table(app.state.db_engine, EMBEDDING_DIMENSION)
    except Exception as e:
        # The breaker and fallback handle an unreachable database per request.
        logger.warning("pgvector initialization failed: %s", e)
    return PgVectorIndex(create_session_factory(app.state.db_engine), dimension=EMBEDDING_DIMENSION)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build one engine, registry, cache and pipeline per process."""
    logger.info("Starting ChartRAG API v%s (vector backend: %s)", __version__, VECTOR_INDEX_BACKEND)

    config = RetrievalConfig.from_env()
    app.state.config = config
    app.state.registry = CircuitBreakerRegistry(
        failure_threshold=config.cb_failure_threshold,
        success_threshold=config.cb_success_threshold,
        reset_timeout=config.cb_reset_timeout_seconds,
        half_open_max_calls=config.cb_half_open_max_calls,
    )
    app.state.db_engine = None
    vector_index = await _build_vector_index(app)
    app.state.engine = HybridSearchEngine(
        vector_index=vector_index, config=config, registry=app.state.registry
    )
    app.state.cache = RetrievalCache(DEFAULT_REDIS_URL, ttl_seconds=config.result_cache_ttl_seconds)
    app.state.pipeline = RetrievalPipeline(app.state.engine, cache=app.state.cache, config=config)

    yield

    logger.info("Shutting down ChartRAG API")
    await app.state.cache.close()
    if app.state.db_engine is not None:
        await app.state.db_engine.dispose()


app = FastAPI(
    title="ChartRAG",
    description="Hybrid retrieval and ranking over clinical records",
    version=__version__,
    lifespan=lifespan,
)


# ============================================
# Health Check Endpoints
# ============================================


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "service": "chartrag-api",
    }


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, Any]:
    """Readiness check with dependency status."""
    database = "not_configured"
    if app.state.db_engine is not None:
        from chartrag.db.postgres import check_database_health

        health = await check_database_health(app.state.db_engine)
        database = "ok" if health["status"] == "healthy" else "unavailable"

    breaker = app.state.registry.get("vector_index")
    return {
        "ready": True,
        "checks": {
            "database": database,
            "vector_index": breaker.state.value,
            "documents": app.state.engine.stats()["document_count"],
        },
    }


@app.get("/api/v1/index/stats", tags=["Documents"])
async def index_stats() -> dict[str, Any]:
    return app.state.engine.stats()


# ============================================
# Document Endpoints
# ============================================


def _is_dependency_failure(error: Exception) -> bool:
    """Typed dependency errors, or any error the retry loop gave up on."""
    if isinstance(error, QueryValidationError):
        return False
    return isinstance(error, RetrievalError) or hasattr(error, "retry_errors")


def _failure_detail(error: Exception) -> dict[str, Any]:
    if isinstance(error, RetrievalError):
        detail = error.to_dict()
    else:
        detail = {"kind": classify_error(error).value, "message": str(error)}
    detail["attempts"] = getattr(error, "retry_attempts", detail.get("attempts") or 1)
    return detail


@app.post("/api/v1/documents", tags=["Documents"], status_code=status.HTTP_201_CREATED)
async def index_documents(body: IndexRequest) -> dict[str, Any]:
    """Index a batch of chunks (keyword index + vector index)."""
    chunks = [item.to_chunk() for item in body.chunks]
    try:
        indexed = await app.state.engine.add_documents(chunks)
    except QueryValidationError:
        raise
    except Exception as e:
        if not _is_dependency_failure(e):
            raise
        logger.warning("Indexing failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_failure_detail(e)
        )
    return {"indexed": indexed, "index": app.state.engine.stats()}


@app.delete("/api/v1/documents/{chunk_id}", tags=["Documents"])
async def delete_document(chunk_id: str) -> dict[str, Any]:
    try:
        removed = await app.state.engine.remove_document(chunk_id)
    except Exception as e:
        if not _is_dependency_failure(e):
            raise
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_failure_detail(e)
        )
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chunk not found")
    return {"removed": chunk_id}


# ============================================
# Retrieval Endpoint
# ============================================


@app.post("/api/v1/retrieve", tags=["Retrieval"])
async def retrieve(body: RetrieveRequest) -> dict[str, Any]:
    """Search, expand, re-rank and diversify.

    Failures other than validation come back as a fallback payload.
    """
    result = await app.state.pipeline.run(body)
    return result.to_dict()


# ============================================
# Circuit Breaker Endpoints
# ============================================


@app.get("/api/v1/circuit-breakers", tags=["Resilience"])
async def list_circuit_breakers() -> dict[str, Any]:
    return {name: s.to_dict() for name, s in app.state.registry.all_stats().items()}


def _get_breaker(name: str):
    if name not in app.state.registry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown dependency: {name}")
    return app.state.registry.get(name)


@app.post("/api/v1/circuit-breakers/{name}/open", tags=["Resilience"])
async def open_circuit_breaker(name: str) -> dict[str, Any]:
    breaker = _get_breaker(name)
    breaker.force_open()
    return breaker.get_stats().to_dict()


@app.post("/api/v1/circuit-breakers/{name}/close", tags=["Resilience"])
async def close_circuit_breaker(name: str) -> dict[str, Any]:
    breaker = _get_breaker(name)
    breaker.force_close()
    return breaker.get_stats().to_dict()


# ============================================
# Metrics Endpoint
# ============================================


@app.get("/metrics", tags=["Monitoring"])
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(content=get_metrics_text(), media_type="text/plain")


@app.post("/metrics/reset", tags=["Monitoring"])
async def reset_metrics_endpoint():
    reset_metrics()
    return {"status": "metrics_reset"}


# ============================================
# Exception Handlers
# ============================================


@app.exception_handler(QueryValidationError)
async def validation_exception_handler(request: Request, exc: QueryValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "detail": str(exc), "field": exc.field},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if app.debug else "An unexpected error occurred",
        },
    )


# ============================================
# Main Entry Point
# ============================================


def main():
    """Run the application using uvicorn."""
    import uvicorn

    uvicorn.run("chartrag.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
