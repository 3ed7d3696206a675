"""
Input Validation for ChartRAG

Pydantic models for search, multi-hop and re-rank options plus the HTTP
request bodies. Validation failures are surfaced as QueryValidationError
with a specific, actionable message and are never retried.
"""

from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from chartrag.config import (
    FUSION_ALPHA,
    HOP_DECAY,
    MULTI_HOP_ENABLED,
    MULTI_HOP_MAX_HOPS,
    RELATIONSHIP_BOOST,
    SEARCH_TOP_K,
    SNIPPET_LENGTH,
)
from chartrag.models import Chunk, ChunkMetadata
from chartrag.resilience.errors import QueryValidationError

M = TypeVar("M", bound=BaseModel)

MAX_QUERY_LENGTH = 1000
MAX_TOP_K = 100


def _as_utc(v: datetime | None) -> datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class SearchFilters(BaseModel):
    """Metadata pre-filter. All provided predicates must match."""

    model_config = ConfigDict(extra="forbid")

    date_from: datetime | None = None
    date_to: datetime | None = None
    artifact_types: list[str] | None = None
    patient_id: str | None = None

    @field_validator("date_from", "date_to")
    @classmethod
    def normalize_dates(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("artifact_types")
    @classmethod
    def normalize_types(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        cleaned = [t.strip().lower() for t in v if t.strip()]
        if not cleaned:
            raise ValueError("artifact_types must contain at least one non-empty type")
        return cleaned

    @model_validator(mode="after")
    def check_date_range(self) -> "SearchFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError(
                f"date_from ({self.date_from.date()}) is after date_to ({self.date_to.date()})"
            )
        return self

    def is_empty(self) -> bool:
        return (
            self.date_from is None
            and self.date_to is None
            and not self.artifact_types
            and self.patient_id is None
        )


class SearchOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    k: int = SEARCH_TOP_K
    alpha: float = FUSION_ALPHA
    filters: SearchFilters | None = None
    recency_boost: bool = True
    snippet_length: int = SNIPPET_LENGTH

    @field_validator("k")
    @classmethod
    def validate_k(cls, v: int) -> int:
        if v < 1 or v > MAX_TOP_K:
            raise ValueError(f"k must be between 1 and {MAX_TOP_K}")
        return v

    @field_validator("alpha")
    @classmethod
    def validate_alpha(cls, v: float) -> float:
        if v < 0.0 or v > 1.0:
            raise ValueError("alpha must be between 0.0 and 1.0")
        return v

    @field_validator("snippet_length")
    @classmethod
    def validate_snippet_length(cls, v: int) -> int:
        if v < 10:
            raise ValueError("snippet_length must be at least 10 characters")
        return v


class MultiHopOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enable_multi_hop: bool = MULTI_HOP_ENABLED
    max_hops: int = MULTI_HOP_MAX_HOPS
    relationship_boost: float = RELATIONSHIP_BOOST
    hop_decay: float = HOP_DECAY

    @field_validator("max_hops")
    @classmethod
    def validate_max_hops(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("max_hops must be 0, 1 or 2")
        return v

    @field_validator("hop_decay")
    @classmethod
    def validate_hop_decay(cls, v: float) -> float:
        if v <= 0.0 or v > 1.0:
            raise ValueError("hop_decay must be in (0, 1]")
        return v

    @field_validator("relationship_boost")
    @classmethod
    def validate_boost(cls, v: float) -> float:
        if v < 0.0:
            raise ValueError("relationship_boost must be non-negative")
        return v


def validate_query_text(query_text: str) -> str:
    q = (query_text or "").strip()
    if not q:
        raise QueryValidationError("Query text must not be empty", field="query_text")
    if len(q) > MAX_QUERY_LENGTH:
        raise QueryValidationError(
            f"Query must be at most {MAX_QUERY_LENGTH} characters", field="query_text"
        )
    return q


def parse_model(model: type[M], data: M | dict[str, Any] | None) -> M:
    """Validate ``data`` as ``model``, raising QueryValidationError on failure."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ())) or model.__name__
        message = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
        raise QueryValidationError(f"{location}: {message}", field=location) from e


# ============================================
# HTTP Request Models
# ============================================


class ChunkIn(BaseModel):
    chunk_id: str
    artifact_id: str
    patient_id: str
    content: str
    embedding: list[float] | None = None
    metadata: dict[str, Any]

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be empty")
        return v

    def to_chunk(self) -> Chunk:
        try:
            metadata = ChunkMetadata.from_raw(self.metadata)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(p) for p in first.get("loc", ()))
            raise QueryValidationError(
                f"metadata.{location}: {first.get('msg')}", field=f"metadata.{location}"
            ) from e
        return Chunk(
            chunk_id=self.chunk_id,
            artifact_id=self.artifact_id,
            patient_id=self.patient_id,
            content=self.content,
            metadata=metadata,
            embedding=tuple(self.embedding) if self.embedding is not None else None,
        )


class IndexRequest(BaseModel):
    chunks: list[ChunkIn] = Field(min_length=1)


class RetrieveRequest(BaseModel):
    """Retrieval request as produced by the query-understanding stage."""

    query_text: str
    query_embedding: list[float] | None = None
    search: SearchOptions = Field(default_factory=SearchOptions)
    multi_hop: MultiHopOptions = Field(default_factory=MultiHopOptions)
    query_entities: list[str] = Field(default_factory=list)
    query_terms: list[str] = Field(default_factory=list)
    target_artifact_type: str | None = None
    top_k: int = 5

    @field_validator("query_text")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query_text must not be empty")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"query_text must be at most {MAX_QUERY_LENGTH} characters")
        return v

    @field_validator("top_k")
    @classmethod
    def validate_top_k(cls, v: int) -> int:
        if v < 1 or v > MAX_TOP_K:
            raise ValueError(f"top_k must be between 1 and {MAX_TOP_K}")
        return v
