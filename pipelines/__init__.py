"""Pipelines package for RagKeeper.

Provides extraction, chunking, ingestion, directory sync and web crawling.
"""

from .extraction import ContentExtractor, TextExtractor, ExtractionError, UnsupportedFileType, get_file_type
from .chunker import DocumentChunker, ChunkMetadata, RawChunk, chunk_document, strip_overlap, estimate_tokens
from .ingest import IngestionPipeline, ProcessResult, BatchResult
from .sync import SyncEngine, SyncResult, SourceDirectoryHandler
from .crawler import (
    WebCrawler,
    CrawlScheduler,
    CrawlDecision,
    CrawlRunResult,
    DomainCrawlResult,
    FetchResponse,
    extract_text_from_html,
    normalize_url,
)

__all__ = [
    # Extraction
    'ContentExtractor',
    'TextExtractor',
    'ExtractionError',
    'UnsupportedFileType',
    'get_file_type',

    # Chunker
    'DocumentChunker',
    'ChunkMetadata',
    'RawChunk',
    'chunk_document',
    'strip_overlap',
    'estimate_tokens',

    # Ingestion
    'IngestionPipeline',
    'ProcessResult',
    'BatchResult',

    # Sync
    'SyncEngine',
    'SyncResult',
    'SourceDirectoryHandler',

    # Crawler
    'WebCrawler',
    'CrawlScheduler',
    'CrawlDecision',
    'CrawlRunResult',
    'DomainCrawlResult',
    'FetchResponse',
    'extract_text_from_html',
    'normalize_url',
]
