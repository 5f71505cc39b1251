"""Retrieval over the in-memory chunk index.

The index is an immutable snapshot of every stored chunk, rebuilt from the
database when it expires or is invalidated. Readers always hold a complete
snapshot; a rebuild builds a new one and swaps the reference.
"""

import binascii
import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from config.settings import RetrievalSettings
from observability.metrics import record_retrieval_metrics
from services.shared.scope import Scope, scope_tags
from services.shared.store import DocumentStore
from .embeddings import EmbeddingGenerator, cosine_similarity, decode_vector, keyword_similarity

logger = logging.getLogger(__name__)

# Department tag meaning "applies to every department"
ALL_DEPARTMENTS = "all"


@dataclass(frozen=True)
class IndexedChunk:
    """A stored chunk with its vector decoded."""
    chunk_id: int
    document_id: int
    filename: str
    scope: str
    chunk_index: int
    content: str
    vector: Optional[np.ndarray]
    tags: Tuple[str, ...]
    dept_ids: Tuple[str, ...]
    doc_type: str


@dataclass(frozen=True)
class IndexSnapshot:
    chunks: Tuple[IndexedChunk, ...]
    built_at: float
    generation: int


@dataclass
class RetrievedChunk:
    """A scored retrieval result."""
    chunk_id: int
    document_id: int
    filename: str
    scope: str
    chunk_index: int
    content: str
    score: float
    dept_ids: List[str] = field(default_factory=list)
    doc_type: str = "general"
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RetrievalEngine:
    """Filters, scores and selects chunks for a query."""

    def __init__(self, store: DocumentStore, embeddings: EmbeddingGenerator,
                 settings: Optional[RetrievalSettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.embeddings = embeddings
        self.settings = settings or RetrievalSettings()
        self._clock = clock
        self._snapshot: Optional[IndexSnapshot] = None
        self._generation = 0
        self._rebuild_lock = threading.Lock()

    def invalidate(self) -> None:
        """Force the next read to rebuild the index."""
        self._generation += 1
        logger.debug(f"Retrieval index invalidated (generation {self._generation})")

    def snapshot(self) -> IndexSnapshot:
        """Current index, rebuilt when stale or invalidated."""
        current = self._snapshot
        if self._is_fresh(current):
            return current

        with self._rebuild_lock:
            current = self._snapshot
            if self._is_fresh(current):
                return current
            generation = self._generation
            rebuilt = IndexSnapshot(
                chunks=tuple(self._load_chunks()),
                built_at=self._clock(),
                generation=generation,
            )
            if generation == self._generation:
                self._snapshot = rebuilt
            logger.info(f"Retrieval index rebuilt with {len(rebuilt.chunks)} chunks")
            return rebuilt

    def _is_fresh(self, snapshot: Optional[IndexSnapshot]) -> bool:
        return (
            snapshot is not None
            and snapshot.generation == self._generation
            and self._clock() - snapshot.built_at < self.settings.cache_ttl_seconds
        )

    def _load_chunks(self) -> List[IndexedChunk]:
        chunks = []
        for row in self.store.load_index_rows():
            vector = None
            if row.embedding:
                try:
                    vector = decode_vector(row.embedding)
                except (binascii.Error, ValueError) as e:
                    logger.warning(f"Unreadable embedding on chunk {row.chunk_id}, using keyword scoring: {e}")
            chunks.append(IndexedChunk(
                chunk_id=row.chunk_id,
                document_id=row.document_id,
                filename=row.filename,
                scope=row.scope,
                chunk_index=row.chunk_index,
                content=row.content,
                vector=vector,
                tags=tuple(row.tags),
                dept_ids=tuple(row.dept_ids),
                doc_type=row.doc_type,
            ))
        return chunks

    async def retrieve(self, query: str, scopes: Sequence[Scope],
                       dept_ids: Optional[Sequence[str]] = None,
                       doc_types: Optional[Sequence[str]] = None,
                       top_k: Optional[int] = None,
                       max_chars: Optional[int] = None) -> List[RetrievedChunk]:
        """Retrieve the chunks most relevant to ``query``.

        Args:
            query: Free-text query
            scopes: Scopes the caller may read
            dept_ids: Optional department filter; chunks tagged ``all`` always match
            doc_types: Optional document-type filter
            top_k: Maximum number of chunks returned
            max_chars: Character budget across returned chunks

        Returns:
            Chunks sorted by descending score. Never empty when at least one
            chunk passes the filters.
        """
        start_time = time.time()
        top_k = top_k if top_k is not None else self.settings.top_k
        max_chars = max_chars if max_chars is not None else self.settings.max_chars

        allowed_scopes = set(scope_tags(scopes))
        dept_filter = set(dept_ids or [])
        type_filter = set(doc_types or [])

        candidates = [
            chunk for chunk in self.snapshot().chunks
            if chunk.scope in allowed_scopes
            and (not type_filter or chunk.doc_type in type_filter)
            and (not dept_filter or ALL_DEPARTMENTS in chunk.dept_ids or dept_filter.intersection(chunk.dept_ids))
        ]

        if not candidates:
            record_retrieval_metrics("empty", time.time() - start_time, 0)
            return []

        query_vector = None
        if self.embeddings.available and any(chunk.vector is not None for chunk in candidates):
            query_vector = await self.embeddings.embed_one(query)
            if query_vector is None:
                logger.warning("Query embedding failed, falling back to keyword scoring")
        mode = "vector" if query_vector is not None else "keyword"

        scored = []
        for chunk in candidates:
            if query_vector is not None and chunk.vector is not None:
                score = cosine_similarity(query_vector, chunk.vector)
            else:
                score = keyword_similarity(query, chunk.content)
            scored.append((self._boost(score, chunk, dept_filter), chunk))

        scored.sort(key=lambda item: (-item[0], item[1].document_id, item[1].chunk_index))
        results = self._select(scored, top_k, max_chars)

        record_retrieval_metrics(mode, time.time() - start_time, len(results))
        logger.debug(f"Retrieved {len(results)} of {len(candidates)} candidate chunks ({mode})")
        return results

    def _boost(self, score: float, chunk: IndexedChunk, dept_filter: set) -> float:
        factor = 1.0
        if chunk.doc_type == self.settings.boosted_doc_type:
            factor *= self.settings.doc_type_boost
        if dept_filter and dept_filter.intersection(chunk.dept_ids):
            factor *= self.settings.dept_boost
        # Dividing keeps negative similarities ordered the same way as positive ones
        return score * factor if score >= 0 else score / factor

    def _select(self, scored: List[Tuple[float, IndexedChunk]], top_k: int, max_chars: int) -> List[RetrievedChunk]:
        results: List[RetrievedChunk] = []
        total_chars = 0
        for score, chunk in scored:
            if len(results) >= top_k:
                break
            length = len(chunk.content)
            if total_chars + length > max_chars:
                if not results:
                    results.append(self._to_result(chunk, score, chunk.content[:max_chars]))
                    break
                continue
            results.append(self._to_result(chunk, score, chunk.content))
            total_chars += length
        return results

    @staticmethod
    def _to_result(chunk: IndexedChunk, score: float, content: str) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            filename=chunk.filename,
            scope=chunk.scope,
            chunk_index=chunk.chunk_index,
            content=content,
            score=score,
            dept_ids=list(chunk.dept_ids),
            doc_type=chunk.doc_type,
            tags=list(chunk.tags),
        )


def format_chunks_for_prompt(chunks: Sequence[RetrievedChunk], header: Optional[str] = None) -> str:
    """Render retrieved chunks grouped by source file, each group in chunk order."""
    if not chunks:
        return ""

    text = f"## {header}\n\n" if header else ""

    by_file: Dict[str, List[RetrievedChunk]] = {}
    for chunk in chunks:
        by_file.setdefault(chunk.filename, []).append(chunk)

    for filename, file_chunks in by_file.items():
        file_chunks.sort(key=lambda c: c.chunk_index)
        text += f"### {filename}\n"
        text += "\n\n".join(c.content for c in file_chunks)
        text += "\n\n"

    return text
