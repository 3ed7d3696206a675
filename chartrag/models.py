"""
ChartRAG Data Model

Chunk and ChunkMetadata describe indexed record text; RetrievalCandidate
is the unit threaded through every retrieval stage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

METADATA_SCHEMA_VERSION = 1


# ============================================
# Chunk Metadata
# ============================================


class ChunkMetadata(BaseModel):
    """Closed, versioned metadata record attached to every chunk.

    Unknown keys are rejected; callers holding loosely-shaped source
    records should go through ``from_raw`` which routes them into ``extra``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: int = METADATA_SCHEMA_VERSION
    artifact_type: str
    occurred_at: datetime
    author: str | None = None
    relationship_ids: frozenset[str] = Field(default_factory=frozenset)
    enriched_text: str | None = None
    extracted_entities: tuple[str, ...] = ()
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("artifact_type")
    @classmethod
    def normalize_artifact_type(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("artifact_type must not be empty")
        return v

    @property
    def has_enriched_text(self) -> bool:
        return bool(self.enriched_text)

    @property
    def has_extracted_entities(self) -> bool:
        return len(self.extracted_entities) > 0

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "ChunkMetadata":
        """Build metadata from a loose dict, moving unknown keys into ``extra``."""
        known = set(cls.model_fields) - {"extra"}
        fields = {k: v for k, v in raw.items() if k in known}
        extra = dict(raw.get("extra") or {})
        extra.update({k: v for k, v in raw.items() if k not in known and k != "extra"})
        return cls(**fields, extra=extra)


# ============================================
# Chunk
# ============================================


@dataclass(frozen=True)
class Chunk:
    """An indexed unit of record text. Immutable once created."""

    chunk_id: str
    artifact_id: str
    patient_id: str
    content: str
    metadata: ChunkMetadata
    embedding: tuple[float, ...] | None = None

    @property
    def artifact_type(self) -> str:
        return self.metadata.artifact_type

    @property
    def occurred_at(self) -> datetime:
        return self.metadata.occurred_at


# ============================================
# RetrievalCandidate
# ============================================


@dataclass
class RetrievalCandidate:
    """A chunk with stage-local score and retrieval provenance.

    ``score`` is replaced by each stage; ``original_score`` keeps the
    hop-0 value and ``relationship_path`` is only ever appended to.
    """

    chunk: Chunk
    score: float
    original_score: float
    hop_distance: int = 0
    relationship_path: list[str] = field(default_factory=list)
    enrichment_score: float = 0.0
    artifact_position: int = 0
    diversity_penalty: float = 1.0
    snippet: str = ""
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    recency_boost: float = 1.0
    signals: dict[str, float] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def artifact_id(self) -> str:
        return self.chunk.artifact_id

    @property
    def artifact_type(self) -> str:
        return self.chunk.artifact_type

    @property
    def occurred_at(self) -> datetime:
        return self.chunk.occurred_at

    @property
    def content(self) -> str:
        return self.chunk.content

    def to_dict(self) -> dict[str, Any]:
        """Serialize for HTTP responses and the result cache."""
        return {
            "chunk_id": self.chunk_id,
            "artifact_id": self.artifact_id,
            "patient_id": self.chunk.patient_id,
            "artifact_type": self.artifact_type,
            "occurred_at": self.occurred_at.isoformat(),
            "score": round(self.score, 6),
            "original_score": round(self.original_score, 6),
            "hop_distance": self.hop_distance,
            "relationship_path": list(self.relationship_path),
            "enrichment_score": round(self.enrichment_score, 4),
            "artifact_position": self.artifact_position,
            "diversity_penalty": round(self.diversity_penalty, 6),
            "snippet": self.snippet,
            "semantic_score": round(self.semantic_score, 6),
            "keyword_score": round(self.keyword_score, 6),
            "recency_boost": round(self.recency_boost, 6),
            "signals": dict(self.signals),
        }
