"""Shared fixtures for the RagKeeper test suite."""

from typing import List, Optional, Sequence

import pytest

from config.settings import ChunkerSettings, DatabaseSettings, RetrievalSettings
from config.vocabulary import load_vocabulary
from indexer.embeddings import EmbeddingBackend, EmbeddingGenerator
from indexer.retrieval import RetrievalEngine
from pipelines.chunker import DocumentChunker
from pipelines.ingest import IngestionPipeline
from services.shared.db import create_db_engine
from services.shared.store import DocumentStore

FAKE_DIMENSIONS = ("budget", "forecast", "holiday", "schedule", "engine", "safety")


class FakeEmbeddingBackend(EmbeddingBackend):
    """Deterministic bag-of-words embeddings over a fixed word list.

    ``fail_on`` texts raise whenever they are sent, alone or in a batch.
    """

    model = "fake-embedding"

    def __init__(self, dimensions: Sequence[str] = FAKE_DIMENSIONS, fail_on: Sequence[str] = ()):
        self.dimensions = tuple(dimensions)
        self.fail_on = set(fail_on)
        self.calls: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.dimensions]

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_on.intersection(texts):
            raise RuntimeError("embedding service unavailable")
        return [self.vector_for(text) for text in texts]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    """Document store over a fresh in-memory SQLite database."""
    engine = create_db_engine(DatabaseSettings(url="sqlite://"))
    yield DocumentStore(engine)
    engine.dispose()


@pytest.fixture
def vocabulary():
    return load_vocabulary()


@pytest.fixture
def chunker(vocabulary):
    return DocumentChunker(ChunkerSettings(), vocabulary)


@pytest.fixture
def fake_backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def keyword_only_embeddings():
    """Generator without a backend, as when no API key is configured."""
    return EmbeddingGenerator(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def retrieval(store, keyword_only_embeddings, clock):
    return RetrievalEngine(store, keyword_only_embeddings, RetrievalSettings(), clock=clock)


@pytest.fixture
def pipeline(store, chunker, keyword_only_embeddings, retrieval):
    return IngestionPipeline(store, chunker, keyword_only_embeddings, on_index_changed=retrieval.invalidate)


def make_chunk_row(chunk_index: int, content: str, doc_type: str = "general",
                   dept_ids: Optional[List[str]] = None, embedding: Optional[str] = None,
                   tags: Optional[List[str]] = None) -> dict:
    """Chunk row in the shape ``DocumentStore.replace_chunks`` expects."""
    return {
        "chunk_index": chunk_index,
        "content": content,
        "char_count": len(content),
        "token_estimate": len(content) // 3,
        "tags": tags or [],
        "dept_ids": dept_ids or ["all"],
        "doc_type": doc_type,
        "embedding": embedding,
    }
