"""
In-memory BM25 keyword index.

The index is held as an immutable snapshot. Writers build the next
snapshot under a lock and publish it with a single reference swap, so a
reader that captured a snapshot always sees postings, document lengths
and the BM25 model from the same generation.

Scoring uses rank_bm25's Okapi implementation with a non-negative idf:

    idf(t) = ln(1 + (N - df + 0.5) / (df + 0.5))
"""

import logging
import math
import re
import threading
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from rank_bm25 import BM25Okapi

from chartrag.config import BM25_B, BM25_K1
from chartrag.models import Chunk

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

STOP_WORDS: frozenset[str] = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "will", "with",
    }
)


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric terms, minus stop words and single characters."""
    return [
        t
        for t in _TOKEN_PATTERN.findall(text.lower())
        if len(t) > 1 and t not in STOP_WORDS
    ]


class SmoothedBM25(BM25Okapi):
    """BM25Okapi whose idf stays positive even for terms in most documents."""

    def _calc_idf(self, nd: dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))


# ============================================
# Snapshot
# ============================================


@dataclass(frozen=True)
class IndexSnapshot:
    """One consistent generation of the keyword index. Never mutated."""

    chunks: Mapping[str, Chunk] = field(default_factory=lambda: MappingProxyType({}))
    postings: Mapping[str, Mapping[str, int]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    doc_lengths: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    total_document_length: int = 0
    generation: int = 0
    tokens: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    # Row of each chunk in the model's corpus
    positions: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    model: SmoothedBM25 | None = field(default=None, compare=False, repr=False)

    @property
    def document_count(self) -> int:
        return len(self.doc_lengths)

    @property
    def average_document_length(self) -> float:
        if self.document_count == 0:
            return 0.0
        return self.total_document_length / self.document_count

    def document_frequency(self, term: str) -> int:
        return len(self.postings.get(term, ()))

    def idf(self, term: str) -> float:
        if self.model is None:
            return 0.0
        return self.model.idf.get(term, 0.0)

    def bm25(self, query_terms: list[str], chunk_id: str) -> float:
        """BM25 score of one indexed document for the given query terms."""
        if self.model is None or not self.doc_lengths.get(chunk_id):
            return 0.0
        return self.model.get_batch_scores(query_terms, [self.positions[chunk_id]])[0]

    def score_candidates(
        self,
        query_terms: list[str],
        candidate_ids: Iterable[str] | None = None,
    ) -> dict[str, float]:
        """Positive BM25 scores for candidates containing at least one query term."""
        if not query_terms or self.model is None:
            return {}
        allowed = None if candidate_ids is None else set(candidate_ids)
        touched: set[str] = set()
        for term in set(query_terms):
            for chunk_id in self.postings.get(term, {}):
                if allowed is None or chunk_id in allowed:
                    touched.add(chunk_id)
        if not touched:
            return {}

        ids = sorted(touched)
        scores = self.model.get_batch_scores(query_terms, [self.positions[cid] for cid in ids])
        return {cid: s for cid, s in zip(ids, scores, strict=True) if s > 0}


# ============================================
# KeywordIndex
# ============================================


class KeywordIndex:
    """Owns the current IndexSnapshot and serializes writers."""

    def __init__(self, k1: float = BM25_K1, b: float = BM25_B) -> None:
        self.k1 = k1
        self.b = b
        self._snapshot = IndexSnapshot()
        self._write_lock = threading.Lock()

    def snapshot(self) -> IndexSnapshot:
        """Current generation. Reading the reference is atomic."""
        return self._snapshot

    def add(self, chunk: Chunk) -> IndexSnapshot:
        return self.add_many([chunk])

    def add_many(self, chunks: list[Chunk]) -> IndexSnapshot:
        """Index a batch and publish one new snapshot for the whole batch.

        Re-adding an existing chunk_id replaces the earlier version.
        """
        if not chunks:
            return self._snapshot
        with self._write_lock:
            builder = _SnapshotBuilder(self._snapshot, self.k1, self.b)
            for chunk in chunks:
                builder.remove(chunk.chunk_id)
                builder.add(chunk)
            self._snapshot = builder.build()
        logger.info(
            "Indexed %d chunks (documents=%d, vocabulary=%d)",
            len(chunks),
            self._snapshot.document_count,
            len(self._snapshot.postings),
        )
        return self._snapshot

    def remove(self, chunk_id: str) -> bool:
        with self._write_lock:
            base = self._snapshot
            if chunk_id not in base.chunks:
                return False
            builder = _SnapshotBuilder(base, self.k1, self.b)
            builder.remove(chunk_id)
            self._snapshot = builder.build()
        logger.info("Removed chunk %s from keyword index", chunk_id)
        return True

    def clear(self) -> None:
        with self._write_lock:
            self._snapshot = IndexSnapshot(generation=self._snapshot.generation + 1)
        logger.info("Keyword index cleared")

    def __len__(self) -> int:
        return self._snapshot.document_count

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._snapshot.chunks


class _SnapshotBuilder:
    """Copy-on-write helper: only posting lists that change are copied."""

    def __init__(self, base: IndexSnapshot, k1: float, b: float) -> None:
        self.generation = base.generation + 1
        self.k1 = k1
        self.b = b
        self.chunks = dict(base.chunks)
        self.postings: dict[str, Mapping[str, int]] = dict(base.postings)
        self.doc_lengths = dict(base.doc_lengths)
        self.total_length = base.total_document_length
        self.tokens: dict[str, tuple[str, ...]] = dict(base.tokens)
        self._copied: set[str] = set()

    def _mutable_posting(self, term: str) -> dict[str, int]:
        if term not in self._copied:
            self.postings[term] = dict(self.postings.get(term, {}))
            self._copied.add(term)
        return self.postings[term]  # type: ignore[return-value]

    def add(self, chunk: Chunk) -> None:
        tokens = tokenize(chunk.content)
        for term, tf in Counter(tokens).items():
            self._mutable_posting(term)[chunk.chunk_id] = tf
        self.chunks[chunk.chunk_id] = chunk
        self.tokens[chunk.chunk_id] = tuple(tokens)
        self.doc_lengths[chunk.chunk_id] = len(tokens)
        self.total_length += len(tokens)

    def remove(self, chunk_id: str) -> None:
        if self.chunks.pop(chunk_id, None) is None:
            return
        for term in set(self.tokens.pop(chunk_id)):
            posting = self._mutable_posting(term)
            posting.pop(chunk_id, None)
            if not posting:
                del self.postings[term]
                self._copied.discard(term)
        self.total_length -= self.doc_lengths.pop(chunk_id, 0)

    def build(self) -> IndexSnapshot:
        order = list(self.chunks)
        model = None
        if order:
            model = SmoothedBM25([self.tokens[cid] for cid in order], k1=self.k1, b=self.b)
        return IndexSnapshot(
            chunks=MappingProxyType(self.chunks),
            postings=MappingProxyType(
                {
                    t: p if isinstance(p, MappingProxyType) else MappingProxyType(p)
                    for t, p in self.postings.items()
                }
            ),
            doc_lengths=MappingProxyType(self.doc_lengths),
            tokens=MappingProxyType(self.tokens),
            total_document_length=self.total_length,
            generation=self.generation,
            positions=MappingProxyType({cid: i for i, cid in enumerate(order)}),
            model=model,
        )
