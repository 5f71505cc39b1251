"""Repository over the document, chunk and crawl bookkeeping tables.

All methods open and close their own session. Returned ORM objects are
detached, so callers read plain column values only (relationships are
not loaded).
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from sqlalchemy import delete, func, insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from indexer.hashing import hash_text
from .db import create_session_factory
from .models import Chunk, Document, WebCrawlLog, WebSource, utcnow
from .scope import Scope, scope_tags

logger = logging.getLogger(__name__)


@dataclass
class IndexRow:
    """One chunk joined with its document, as the retrieval index sees it."""
    chunk_id: int
    document_id: int
    filename: str
    scope: str
    chunk_index: int
    content: str
    embedding: Optional[str]
    tags: List[str] = field(default_factory=list)
    dept_ids: List[str] = field(default_factory=list)
    doc_type: str = "general"


class DocumentStore:
    """Persistence for documents, chunks, web sources and crawl logs."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Documents

    def get_document(self, document_id: int) -> Optional[Document]:
        with self.session_scope() as session:
            return session.get(Document, document_id)

    def find_document(self, filename: str, scope: Scope) -> Optional[Document]:
        with self.session_scope() as session:
            return session.query(Document).filter(
                Document.filename == filename,
                Document.scope == scope.tag
            ).first()

    def list_documents(self, scopes: Optional[Sequence[Scope]] = None) -> List[Document]:
        """List documents, optionally restricted to the given scopes."""
        with self.session_scope() as session:
            query = session.query(Document)
            if scopes is not None:
                query = query.filter(Document.scope.in_(scope_tags(scopes)))
            return query.order_by(Document.id).all()

    def upsert_document(self, filename: str, content: str, file_type: str,
                        scope: Scope, metadata: Optional[Dict[str, Any]] = None) -> Tuple[Document, bool]:
        """Create or update the document keyed by (filename, scope).

        Returns:
            Tuple of (document, created)
        """
        content_hash = hash_text(content)
        metadata_json = json.dumps(metadata, ensure_ascii=False) if metadata else None

        with self.session_scope() as session:
            doc = session.query(Document).filter(
                Document.filename == filename,
                Document.scope == scope.tag
            ).first()

            if doc is None:
                doc = Document(
                    filename=filename,
                    file_type=file_type,
                    content=content,
                    content_hash=content_hash,
                    scope=scope.tag,
                    metadata_json=metadata_json,
                )
                session.add(doc)
                session.flush()
                logger.debug(f"Created document {doc.id}: {filename} [{scope.tag}]")
                return doc, True

            doc.file_type = file_type
            doc.content = content
            doc.content_hash = content_hash
            doc.metadata_json = metadata_json
            doc.updated_at = utcnow()
            session.flush()
            logger.debug(f"Updated document {doc.id}: {filename} [{scope.tag}]")
            return doc, False

    def delete_document(self, document_id: int) -> bool:
        """Delete a document and its chunks. Returns False when it did not exist."""
        with self.session_scope() as session:
            session.execute(delete(Chunk).where(Chunk.document_id == document_id))
            result = session.execute(delete(Document).where(Document.id == document_id))
            return result.rowcount > 0

    def delete_documents_by_filename(self, filename: str, scope: Scope) -> int:
        """Delete every document with this filename in ``scope``; returns the count."""
        with self.session_scope() as session:
            ids = [row[0] for row in session.query(Document.id).filter(
                Document.filename == filename,
                Document.scope == scope.tag
            ).all()]
            if not ids:
                return 0
            session.execute(delete(Chunk).where(Chunk.document_id.in_(ids)))
            session.execute(delete(Document).where(Document.id.in_(ids)))
            return len(ids)

    # Chunks

    def replace_chunks(self, document_id: int, rows: List[Dict[str, Any]], batch_size: int = 50) -> int:
        """Replace all chunks of a document in one transaction.

        Rows are inserted in batches of ``batch_size`` to stay under
        statement parameter limits.
        """
        with self.session_scope() as session:
            session.execute(delete(Chunk).where(Chunk.document_id == document_id))
            for start in range(0, len(rows), batch_size):
                batch = [dict(row, document_id=document_id) for row in rows[start:start + batch_size]]
                session.execute(insert(Chunk), batch)
        return len(rows)

    def count_chunks(self, document_id: Optional[int] = None) -> int:
        with self.session_scope() as session:
            query = session.query(func.count(Chunk.id))
            if document_id is not None:
                query = query.filter(Chunk.document_id == document_id)
            return query.scalar() or 0

    def load_index_rows(self) -> List[IndexRow]:
        """Load every chunk with its document's filename and scope."""
        with self.session_scope() as session:
            results = session.query(
                Chunk.id, Chunk.document_id, Document.filename, Document.scope,
                Chunk.chunk_index, Chunk.content, Chunk.embedding,
                Chunk.tags, Chunk.dept_ids, Chunk.doc_type
            ).join(Document, Chunk.document_id == Document.id).order_by(
                Chunk.document_id, Chunk.chunk_index
            ).all()

        return [
            IndexRow(
                chunk_id=r[0],
                document_id=r[1],
                filename=r[2],
                scope=r[3],
                chunk_index=r[4],
                content=r[5],
                embedding=r[6],
                tags=list(r[7] or []),
                dept_ids=list(r[8] or []),
                doc_type=r[9] or "general",
            )
            for r in results
        ]

    # Web sources

    def add_web_source(self, url: str, name: Optional[str] = None) -> WebSource:
        """Register a seed URL; an existing registration is returned unchanged."""
        domain = urlparse(url).hostname
        if not domain:
            raise ValueError(f"Not an absolute URL: {url}")

        with self.session_scope() as session:
            source = session.query(WebSource).filter(WebSource.url == url).first()
            if source is None:
                source = WebSource(url=url, domain=domain, name=name)
                session.add(source)
                session.flush()
                logger.info(f"Registered web source {url}")
            return source

    def list_web_sources(self) -> List[WebSource]:
        with self.session_scope() as session:
            return session.query(WebSource).order_by(WebSource.id).all()

    # Crawl logs

    def create_crawl_log(self) -> WebCrawlLog:
        with self.session_scope() as session:
            log = WebCrawlLog(status="running", errors=[], started_at=utcnow())
            session.add(log)
            session.flush()
            return log

    def update_crawl_log(self, log_id: int, **fields: Any) -> None:
        """Set columns on a crawl log row (status, counters, errors, completed_at)."""
        with self.session_scope() as session:
            log = session.get(WebCrawlLog, log_id)
            if log is None:
                logger.warning(f"Crawl log {log_id} not found")
                return
            for key, value in fields.items():
                if key == "errors":
                    value = list(value)
                setattr(log, key, value)

    def latest_crawl_log(self) -> Optional[WebCrawlLog]:
        with self.session_scope() as session:
            return session.query(WebCrawlLog).order_by(
                WebCrawlLog.started_at.desc(), WebCrawlLog.id.desc()
            ).first()
