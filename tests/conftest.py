"""
ChartRAG Test Configuration

Pytest fixtures shared by the test suite.
"""

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from chartrag.config import RetrievalConfig
from chartrag.models import Chunk, ChunkMetadata, RetrievalCandidate
from chartrag.observability.metrics import reset_metrics
from chartrag.rag.retriever import HybridSearchEngine
from chartrag.rag.vector_index import InMemoryVectorIndex
from chartrag.resilience.circuit_breaker import CircuitBreakerRegistry

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ============================================
# Time Fixtures
# ============================================


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays in seconds."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def clean_metrics() -> Generator[None, None, None]:
    """Metrics are process-global; start every test from zero."""
    reset_metrics()
    yield
    reset_metrics()


# ============================================
# Data Fixtures
# ============================================


def make_chunk(
    chunk_id: str,
    content: str,
    artifact_id: str | None = None,
    patient_id: str = "patient-1",
    artifact_type: str = "note",
    occurred_at: datetime = NOW - timedelta(days=10),
    relationship_ids: tuple[str, ...] = (),
    embedding: tuple[float, ...] | None = None,
    enriched_text: str | None = None,
    extracted_entities: tuple[str, ...] = (),
) -> Chunk:
    return Chunk(
        chunk_id=chunk_id,
        artifact_id=artifact_id or f"artifact-{chunk_id}",
        patient_id=patient_id,
        content=content,
        metadata=ChunkMetadata(
            artifact_type=artifact_type,
            occurred_at=occurred_at,
            relationship_ids=frozenset(relationship_ids),
            enriched_text=enriched_text,
            extracted_entities=extracted_entities,
        ),
        embedding=embedding,
    )


def make_candidate(
    chunk_id: str,
    score: float,
    artifact_id: str | None = None,
    **chunk_kwargs,
) -> RetrievalCandidate:
    chunk = make_chunk(chunk_id, f"content of {chunk_id}", artifact_id=artifact_id, **chunk_kwargs)
    return RetrievalCandidate(chunk=chunk, score=score, original_score=score)


@pytest.fixture
def sample_chunks() -> list[Chunk]:
    """Small clinical record for two patients with a relationship graph."""
    return [
        make_chunk(
            "med-metformin",
            "Metformin 500 mg twice daily for type 2 diabetes mellitus.",
            artifact_id="med-1",
            artifact_type="medication",
            occurred_at=NOW - timedelta(days=12),
            relationship_ids=("rel-diabetes",),
            embedding=(1.0, 0.0, 0.0),
            enriched_text="Medication: metformin, biguanide",
            extracted_entities=("metformin", "diabetes"),
        ),
        make_chunk(
            "cond-diabetes",
            "Type 2 diabetes mellitus diagnosed. HbA1c 8.2 percent at diagnosis.",
            artifact_id="cond-1",
            artifact_type="condition",
            occurred_at=NOW - timedelta(days=90),
            relationship_ids=("rel-diabetes", "rel-a1c"),
            embedding=(0.9, 0.1, 0.0),
        ),
        make_chunk(
            "lab-a1c",
            "Hemoglobin A1c result 8.2 percent, elevated above target range.",
            artifact_id="lab-1",
            artifact_type="lab",
            occurred_at=NOW - timedelta(days=91),
            relationship_ids=("rel-a1c",),
            embedding=(0.0, 1.0, 0.0),
        ),
        make_chunk(
            "note-knee",
            "Patient reports knee pain after running. Advised ibuprofen and rest.",
            artifact_id="note-1",
            artifact_type="note",
            occurred_at=NOW - timedelta(days=30),
            relationship_ids=("rel-knee",),
            embedding=(0.0, 0.0, 1.0),
        ),
        make_chunk(
            "med-lisinopril",
            "Lisinopril 10 mg daily for hypertension.",
            artifact_id="med-2",
            artifact_type="medication",
            occurred_at=NOW - timedelta(days=180),
            relationship_ids=("rel-htn",),
            embedding=(0.1, 0.0, 0.9),
        ),
        make_chunk(
            "other-patient-diabetes",
            "Type 2 diabetes mellitus, diet controlled, no metformin.",
            artifact_id="cond-9",
            patient_id="patient-2",
            artifact_type="condition",
            occurred_at=NOW - timedelta(days=60),
            relationship_ids=("rel-diabetes",),
            embedding=(1.0, 0.0, 0.0),
        ),
    ]


# ============================================
# Engine Fixtures
# ============================================


@pytest.fixture
def config() -> RetrievalConfig:
    return RetrievalConfig(
        top_k=10,
        fetch_multiplier=3,
        recency_half_life_days=30.0,
        retry_max_attempts=3,
        retry_base_backoff_ms=1000.0,
        retry_backoff_multiplier=2.0,
        cb_failure_threshold=5,
        cb_reset_timeout_seconds=30.0,
    )


@pytest.fixture
def registry(fake_clock: FakeClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        failure_threshold=5,
        success_threshold=2,
        reset_timeout=30.0,
        half_open_max_calls=2,
        clock=fake_clock,
    )


@pytest.fixture
def vector_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def engine(vector_index, config, registry, recording_sleep) -> HybridSearchEngine:
    return HybridSearchEngine(
        vector_index=vector_index,
        config=config,
        registry=registry,
        sleep=recording_sleep,
        now=lambda: NOW,
    )


@pytest_asyncio.fixture
async def indexed_engine(engine, sample_chunks) -> HybridSearchEngine:
    await engine.add_documents(sample_chunks)
    return engine


@pytest.fixture
def chunk_factory():
    return make_chunk


@pytest.fixture
def candidate_factory():
    return make_candidate


@pytest.fixture
def now() -> datetime:
    return NOW
