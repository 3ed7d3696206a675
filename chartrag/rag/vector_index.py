"""
Vector similarity index adapters.

The nearest-neighbour service is external to ChartRAG; the engine talks
to it only through the VectorIndex protocol:

- query(embedding, candidate_ids, k) -> [(chunk_id, cosine)]
- upsert(chunk_id, embedding)
- delete(chunk_id)

InMemoryVectorIndex backs tests and single-process deployments;
PgVectorIndex talks to a pgvector table through SQLAlchemy.
"""

import logging
from collections.abc import Callable, Collection, Sequence
from typing import Protocol, runtime_checkable

import numpy as np
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chartrag.resilience.errors import (
    DependencyError,
    QueryValidationError,
    TransientDependencyError,
)

logger = logging.getLogger(__name__)

VectorHit = tuple[str, float]


@runtime_checkable
class VectorIndex(Protocol):
    async def query(
        self,
        embedding: Sequence[float],
        candidate_ids: Collection[str] | None,
        k: int,
    ) -> list[VectorHit]: ...

    async def upsert(self, chunk_id: str, embedding: Sequence[float]) -> None: ...

    async def delete(self, chunk_id: str) -> None: ...


# ============================================
# In-Memory Index
# ============================================


class InMemoryVectorIndex:
    """Brute-force cosine index over unit-normalized numpy vectors."""

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension
        self._vectors: dict[str, np.ndarray] = {}

    async def upsert(self, chunk_id: str, embedding: Sequence[float]) -> None:
        vec = np.asarray(embedding, dtype=np.float32)
        if self.dimension is None:
            self.dimension = int(vec.shape[0])
        if vec.shape != (self.dimension,):
            raise DependencyError(
                f"Embedding for {chunk_id} has dimension {vec.shape[0]}, "
                f"expected {self.dimension}",
                dependency="vector_index",
            )
        norm = float(np.linalg.norm(vec))
        self._vectors[chunk_id] = vec / norm if norm > 0 else vec

    async def delete(self, chunk_id: str) -> None:
        self._vectors.pop(chunk_id, None)

    async def query(
        self,
        embedding: Sequence[float],
        candidate_ids: Collection[str] | None,
        k: int,
    ) -> list[VectorHit]:
        if k <= 0 or not self._vectors:
            return []
        ids = [
            cid
            for cid in self._vectors
            if candidate_ids is None or cid in candidate_ids
        ]
        if not ids:
            return []
        q = np.asarray(embedding, dtype=np.float32)
        if q.shape != (self.dimension,):
            raise QueryValidationError(
                f"Query embedding has dimension {q.shape[0] if q.ndim else 0}, "
                f"expected {self.dimension}",
                field="query_embedding",
            )
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0:
            return []
        matrix = np.stack([self._vectors[cid] for cid in ids])
        sims = matrix @ (q / q_norm)
        order = np.argsort(-sims, kind="stable")[:k]
        return [(ids[i], float(sims[i])) for i in order]

    def __len__(self) -> int:
        return len(self._vectors)


# ============================================
# pgvector Index
# ============================================


def _vector_literal(embedding: Sequence[float]) -> str:
    # pgvector literal: '[1.0,2.0,3.0]'
    return "[" + ",".join(str(float(v)) for v in embedding) + "]"


class PgVectorIndex:
    """pgvector-backed index. One session per call, from the given factory."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        table: str = "chunk_embeddings",
        dimension: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.dimension = dimension
        self._table = table

    async def query(
        self,
        embedding: Sequence[float],
        candidate_ids: Collection[str] | None,
        k: int,
    ) -> list[VectorHit]:
        where = "WHERE embedding IS NOT NULL"
        params: dict = {"query_vector": _vector_literal(embedding), "top_k": k}
        if candidate_ids is not None:
            if not candidate_ids:
                return []
            where += " AND chunk_id = ANY(:candidate_ids)"
            params["candidate_ids"] = list(candidate_ids)
        sql = text(
            f"SELECT chunk_id, "
            f"1 - (embedding <=> CAST(:query_vector AS vector)) AS similarity "
            f"FROM {self._table} {where} "
            f"ORDER BY embedding <=> CAST(:query_vector AS vector) "
            f"LIMIT :top_k"
        )
        async with self._session_factory() as session:
            result = await self._execute(session, sql, params)
            rows = result.fetchall()
        return [(row.chunk_id, float(row.similarity)) for row in rows]

    async def upsert(self, chunk_id: str, embedding: Sequence[float]) -> None:
        sql = text(
            f"INSERT INTO {self._table} (chunk_id, embedding) "
            f"VALUES (:chunk_id, CAST(:embedding AS vector)) "
            f"ON CONFLICT (chunk_id) DO UPDATE SET embedding = EXCLUDED.embedding"
        )
        async with self._session_factory() as session:
            await self._execute(
                session, sql, {"chunk_id": chunk_id, "embedding": _vector_literal(embedding)}
            )
            await session.commit()

    async def delete(self, chunk_id: str) -> None:
        sql = text(f"DELETE FROM {self._table} WHERE chunk_id = :chunk_id")
        async with self._session_factory() as session:
            await self._execute(session, sql, {"chunk_id": chunk_id})
            await session.commit()

    async def _execute(self, session: AsyncSession, sql, params: dict):  # type: ignore[no-untyped-def]
        try:
            return await session.execute(sql, params)
        except OperationalError as e:
            logger.warning("pgvector operational error: %s", e)
            raise TransientDependencyError(
                f"pgvector unavailable: {e}", dependency="vector_index", last_error=e
            ) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientDependencyError(
                    f"pgvector connection lost: {e}", dependency="vector_index", last_error=e
                ) from e
            raise DependencyError(
                f"pgvector query failed: {e}", dependency="vector_index", last_error=e
            ) from e
        except SQLAlchemyError as e:
            raise DependencyError(
                f"pgvector query failed: {e}", dependency="vector_index", last_error=e
            ) from e
