"""Shared database models for documents, chunks and web crawl bookkeeping."""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Document(Base):
    """One ingested source unit: a local file or a crawled page."""
    __tablename__ = 'documents'

    id = Column(Integer, primary_key=True)
    filename = Column(String(2048), nullable=False)
    file_type = Column(String(50), nullable=False)
    content = Column(Text, nullable=False, default="")
    content_hash = Column(String(80), nullable=False)
    scope = Column(String(255), nullable=False, default="shared")
    metadata_json = Column('metadata', Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    chunks = relationship("Chunk", back_populates="document", cascade="all, delete-orphan",
                          passive_deletes=True)

    __table_args__ = (
        UniqueConstraint('filename', 'scope', name='uq_documents_filename_scope'),
        Index('idx_documents_scope', 'scope'),
        Index('idx_documents_content_hash', 'content_hash'),
    )

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        """Free-form metadata; corrupt JSON reads as empty."""
        if not self.metadata_json:
            return {}
        try:
            value = json.loads(self.metadata_json)
        except (TypeError, ValueError):
            logger.warning(f"Corrupt metadata JSON on document {self.id} ({self.filename})")
            return {}
        return value if isinstance(value, dict) else {}

    def __repr__(self) -> str:
        return f"<Document id={self.id} scope={self.scope} filename={self.filename!r}>"


class Chunk(Base):
    """A bounded slice of a document's text with derived metadata."""
    __tablename__ = 'chunks'

    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey('documents.id', ondelete='CASCADE'), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    char_count = Column(Integer, nullable=False)
    token_estimate = Column(Integer, nullable=False, default=0)
    # base64 of little-endian float32, see indexer.embeddings.encode_vector
    embedding = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    dept_ids = Column(JSON, nullable=False, default=list)
    doc_type = Column(String(50), nullable=False, default="general")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        Index('idx_chunks_document_id', 'document_id'),
        Index('idx_chunks_doc_type', 'doc_type'),
    )


class WebSource(Base):
    """Seed URL for the web crawler."""
    __tablename__ = 'web_sources'

    id = Column(Integer, primary_key=True)
    url = Column(String(2048), nullable=False, unique=True)
    domain = Column(String(255), nullable=False)
    name = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WebCrawlLog(Base):
    """One row per crawl run, updated while the run progresses."""
    __tablename__ = 'web_crawl_logs'

    id = Column(Integer, primary_key=True)
    status = Column(String(20), nullable=False, default="running")
    pages_visited = Column(Integer, nullable=False, default=0)
    docs_updated = Column(Integer, nullable=False, default=0)
    docs_deleted = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_web_crawl_logs_started_at', 'started_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'status': self.status,
            'pages_visited': self.pages_visited,
            'docs_updated': self.docs_updated,
            'docs_deleted': self.docs_deleted,
            'errors': list(self.errors or []),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
