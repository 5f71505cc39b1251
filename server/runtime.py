"""Runtime composition for RagKeeper.

Builds every component from one :class:`Settings` and exposes the engine's
operations: ingest, resync, retrieve, integrity check and crawl.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import Settings
from config.vocabulary import load_vocabulary
from indexer.embeddings import EmbeddingGenerator, build_embedding_backend
from indexer.integrity import IntegrityChecker, IntegrityReport
from indexer.retrieval import RetrievalEngine, RetrievedChunk
from pipelines.chunker import DocumentChunker
from pipelines.crawler import CrawlDecision, CrawlRunResult, CrawlScheduler, WebCrawler
from pipelines.extraction import ContentExtractor, TextExtractor
from pipelines.ingest import BatchResult, IngestionPipeline, ProcessResult
from pipelines.sync import SyncEngine, SyncResult
from services.shared.db import create_db_engine
from services.shared.scope import Scope
from services.shared.store import DocumentStore

logger = logging.getLogger(__name__)


class KnowledgeBaseService:
    """Owns the store, pipelines and background jobs of one knowledge base."""

    POLL_JOB_ID = "source_poll"

    def __init__(self, settings: Optional[Settings] = None,
                 extractor: Optional[ContentExtractor] = None,
                 embedding_generator: Optional[EmbeddingGenerator] = None):
        """Initialize the service.

        Args:
            settings: Settings for every component; read from the environment when omitted
            extractor: Extraction collaborator; :class:`TextExtractor` when omitted
            embedding_generator: Overrides the generator built from the embedding settings
        """
        self.settings = settings or Settings.from_env()
        s = self.settings

        self.engine = create_db_engine(s.database)
        self.store = DocumentStore(self.engine)
        self.extractor = extractor or TextExtractor()

        self.chunker = DocumentChunker(s.chunker, load_vocabulary(s.vocabulary_path))
        self.embeddings = embedding_generator or EmbeddingGenerator(
            build_embedding_backend(s.embedding), batch_size=s.embedding.batch_size
        )
        self.retrieval = RetrievalEngine(self.store, self.embeddings, s.retrieval)
        self.pipeline = IngestionPipeline(
            self.store,
            self.chunker,
            self.embeddings,
            on_index_changed=self.retrieval.invalidate,
            insert_batch_size=s.sync.insert_batch_size,
            concurrency=s.processing.concurrency,
        )
        self.sync_engine = SyncEngine(self.store, self.pipeline, self.extractor, s.sync)
        self.integrity = IntegrityChecker(self.store, s.integrity)
        self.crawler = WebCrawler(self.store, self.pipeline, self.extractor, s.crawler)
        self.crawl_scheduler = CrawlScheduler(self.crawler, self.store, s.crawler)

        self.scheduler: Optional[AsyncIOScheduler] = None

    async def start(self) -> None:
        """Start watching the source directory and the periodic jobs.

        Must be called from a running event loop.
        """
        if self.scheduler is not None:
            return

        self.sync_engine.start_watching()

        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1},
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)

        self.scheduler.add_job(
            self._poll_source_dir,
            'interval',
            seconds=self.settings.sync.poll_interval_seconds,
            id=self.POLL_JOB_ID,
            replace_existing=True,
        )
        self.crawl_scheduler.start(self.scheduler)
        self.scheduler.start()

        # Initial pass picks up anything changed while stopped
        self.sync_engine.trigger()
        logger.info("Knowledge base service started")

    async def stop(self) -> None:
        """Stop background jobs, the watcher and the crawler session."""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.sync_engine.stop_watching()
        await self.crawler.close()
        logger.info("Knowledge base service stopped")

    def close(self) -> None:
        self.engine.dispose()

    async def _poll_source_dir(self) -> None:
        # Coroutine jobs run on the loop thread, where trigger() must be called
        self.sync_engine.trigger()

    def _job_executed(self, event):
        logger.debug(f"Job {event.job_id} executed")

    def _job_error(self, event):
        logger.error(f"Job {event.job_id} failed: {event.exception}")

    # Operations

    async def ingest(self, filename: str, content: str, file_type: str = "md",
                     scope: Optional[Scope] = None,
                     metadata: Optional[Dict[str, Any]] = None) -> Tuple[ProcessResult, bool]:
        """Upsert one document and make it retrievable."""
        return await self.pipeline.ingest_document(filename, content, file_type, scope, metadata)

    async def resync(self) -> SyncResult:
        """Run one sync pass of the source directory now."""
        return await self.sync_engine.sync()

    async def reprocess(self, scopes: Optional[Sequence[Scope]] = None) -> BatchResult:
        """Re-chunk and re-embed every stored document."""
        return await self.pipeline.process_all_documents(scopes)

    async def retrieve(self, query: str, scopes: Sequence[Scope],
                       dept_ids: Optional[Sequence[str]] = None,
                       doc_types: Optional[Sequence[str]] = None,
                       top_k: Optional[int] = None,
                       max_chars: Optional[int] = None) -> List[RetrievedChunk]:
        return await self.retrieval.retrieve(query, scopes, dept_ids, doc_types, top_k, max_chars)

    def check_integrity(self, fresh: bool = False) -> IntegrityReport:
        if fresh:
            return self.integrity.run_integrity_check()
        return self.integrity.get_integrity_warnings()

    async def crawl(self) -> CrawlRunResult:
        """Crawl all web sources now, regardless of the monthly schedule."""
        return await self.crawler.run_web_crawl()

    async def check_crawl_schedule(self, wait: bool = False) -> CrawlDecision:
        return await self.crawl_scheduler.check_and_run(wait=wait)

    def add_web_source(self, url: str, name: Optional[str] = None):
        return self.store.add_web_source(url, name)
