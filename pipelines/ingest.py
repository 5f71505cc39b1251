"""Document ingestion pipeline for RagKeeper.

Document text -> chunks -> embeddings -> chunk rows, replacing whatever the
document had before.
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from indexer.embeddings import EmbeddingGenerator, encode_vector
from observability.metrics import record_ingestion_metrics
from services.shared.scope import Scope
from services.shared.store import DocumentStore
from .chunker import DocumentChunker

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of processing one document."""
    document_id: int
    filename: str
    chunks_created: int = 0
    embeddings_generated: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    """Aggregate outcome of processing many documents."""
    total: int = 0
    success: int = 0
    failed: int = 0
    results: List[ProcessResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class IngestionPipeline:
    """Chunks, embeds and stores documents."""

    def __init__(self, store: DocumentStore, chunker: DocumentChunker, embeddings: EmbeddingGenerator,
                 on_index_changed: Optional[Callable[[], None]] = None,
                 insert_batch_size: int = 50, concurrency: int = 3):
        """Initialize the pipeline.

        Args:
            store: Document and chunk persistence
            chunker: Chunker used for every document
            embeddings: Embedding generator, possibly without a backend
            on_index_changed: Called after every chunk write, typically the
                retrieval engine's ``invalidate``
            insert_batch_size: Chunk rows per insert statement
            concurrency: Documents processed at once by ``process_all_documents``
        """
        self.store = store
        self.chunker = chunker
        self.embeddings = embeddings
        self.on_index_changed = on_index_changed
        self.insert_batch_size = insert_batch_size
        self.concurrency = max(1, concurrency)

    async def process_document(self, document_id: int) -> ProcessResult:
        """Replace the chunks of one document. Errors are returned, not raised."""
        doc = self.store.get_document(document_id)
        if doc is None:
            return ProcessResult(document_id=document_id, filename="unknown", error="Document not found")

        try:
            raw_chunks = self.chunker.chunk(doc.content, doc.filename)

            if not raw_chunks:
                self.store.replace_chunks(document_id, [], self.insert_batch_size)
                self.notify_index_changed()
                logger.info(f"{doc.filename}: no chunks generated (content too short?)")
                record_ingestion_metrics(0)
                return ProcessResult(document_id=document_id, filename=doc.filename)

            vectors = await self.embeddings.embed_many([c.content for c in raw_chunks])

            rows = []
            for chunk, vector in zip(raw_chunks, vectors):
                row = chunk.to_row()
                row["embedding"] = encode_vector(vector) if vector is not None else None
                rows.append(row)

            self.store.replace_chunks(document_id, rows, self.insert_batch_size)
            self.notify_index_changed()

            embedded = sum(1 for v in vectors if v is not None)
            logger.info(f"{doc.filename}: {len(raw_chunks)} chunks, {embedded} embeddings")
            record_ingestion_metrics(len(raw_chunks))
            return ProcessResult(
                document_id=document_id,
                filename=doc.filename,
                chunks_created=len(raw_chunks),
                embeddings_generated=embedded,
            )

        except Exception as e:
            logger.error(f"{doc.filename}: ingestion failed - {e}")
            record_ingestion_metrics(0, error=str(e))
            return ProcessResult(document_id=document_id, filename=doc.filename, error=str(e))

    async def process_all_documents(self, scopes: Optional[Sequence[Scope]] = None) -> BatchResult:
        """Reprocess every document with bounded concurrency.

        Not atomic across documents; a failed document can be reprocessed on
        its own later.
        """
        docs = self.store.list_documents(scopes)
        logger.info(f"Processing all {len(docs)} documents...")

        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def run(document_id: int) -> ProcessResult:
            nonlocal done
            async with semaphore:
                result = await self.process_document(document_id)
            done += 1
            if done % 15 == 0 or done == len(docs):
                logger.info(f"Progress: {done}/{len(docs)}")
            return result

        results = await asyncio.gather(*(run(doc.id) for doc in docs))

        batch = BatchResult(total=len(docs), results=list(results))
        batch.failed = sum(1 for r in results if not r.ok)
        batch.success = batch.total - batch.failed
        logger.info(f"Complete: {batch.success} success, {batch.failed} failed out of {batch.total} documents")

        if not self.embeddings.available:
            logger.warning("Embedding backend not configured, retrieval will use keyword scoring")
        return batch

    async def ingest_document(self, filename: str, content: str, file_type: str,
                              scope: Optional[Scope] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> Tuple[ProcessResult, bool]:
        """Upsert a document and process it.

        Returns:
            Tuple of (process result, created)
        """
        doc, created = self.store.upsert_document(filename, content, file_type, scope or Scope.shared(), metadata)
        result = await self.process_document(doc.id)
        return result, created

    def notify_index_changed(self) -> None:
        if self.on_index_changed is not None:
            self.on_index_changed()
