"""Prometheus metrics for the ingestion, retrieval and crawl engine."""

from prometheus_client import Counter, Histogram, start_http_server
from prometheus_client.core import CollectorRegistry
from typing import Optional, Dict
import logging

logger = logging.getLogger(__name__)

# Custom registry so embedding processes do not leak into the default one
ragkeeper_registry = CollectorRegistry()

# Sync metrics
sync_runs = Counter(
    'ragkeeper_sync_runs_total',
    'Total number of sync passes',
    ['status'],
    registry=ragkeeper_registry
)

sync_files = Counter(
    'ragkeeper_sync_files_total',
    'Files handled by sync passes',
    ['outcome'],
    registry=ragkeeper_registry
)

sync_duration = Histogram(
    'ragkeeper_sync_duration_seconds',
    'Sync pass duration in seconds',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
    registry=ragkeeper_registry
)

# Ingestion metrics
ingested_documents = Counter(
    'ragkeeper_ingested_documents_total',
    'Documents processed by the ingestion pipeline',
    ['status'],
    registry=ragkeeper_registry
)

chunks_per_document = Histogram(
    'ragkeeper_chunks_per_document',
    'Number of chunks created per document',
    buckets=[0, 1, 5, 10, 25, 50, 100, 250],
    registry=ragkeeper_registry
)

# Embedding metrics
embedding_requests = Counter(
    'ragkeeper_embedding_requests_total',
    'Embedding service calls',
    ['kind', 'status'],
    registry=ragkeeper_registry
)

embedding_failures = Counter(
    'ragkeeper_embedding_failed_items_total',
    'Texts left without an embedding after retry',
    registry=ragkeeper_registry
)

# Retrieval metrics
retrieval_requests = Counter(
    'ragkeeper_retrieval_requests_total',
    'Retrieval requests by scoring mode',
    ['mode'],
    registry=ragkeeper_registry
)

retrieval_duration = Histogram(
    'ragkeeper_retrieval_duration_seconds',
    'Retrieval latency in seconds',
    ['mode'],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=ragkeeper_registry
)

retrieval_results = Histogram(
    'ragkeeper_retrieval_results_count',
    'Number of chunks returned per retrieval',
    buckets=[0, 1, 5, 10, 20, 50],
    registry=ragkeeper_registry
)

# Crawl metrics
crawl_pages = Counter(
    'ragkeeper_crawl_pages_total',
    'Crawled pages by outcome',
    ['outcome'],
    registry=ragkeeper_registry
)

crawl_runs = Counter(
    'ragkeeper_crawl_runs_total',
    'Crawl runs by final status',
    ['status'],
    registry=ragkeeper_registry
)

# Integrity metrics
integrity_warnings = Counter(
    'ragkeeper_integrity_warnings_total',
    'Integrity warnings by level',
    ['level'],
    registry=ragkeeper_registry
)


def record_sync_metrics(duration: float, created: int, updated: int, deleted: int,
                        skipped: int, errors: int, status: str = "completed") -> None:
    """Record the outcome of one sync pass."""
    try:
        sync_runs.labels(status=status).inc()
        if status != "completed":
            return
        sync_duration.observe(duration)
        for outcome, count in (("created", created), ("updated", updated), ("deleted", deleted),
                               ("skipped", skipped), ("error", errors)):
            if count:
                sync_files.labels(outcome=outcome).inc(count)
    except Exception as e:
        logger.debug(f"Failed to record sync metrics: {e}")


def record_ingestion_metrics(chunk_count: int, error: Optional[str] = None) -> None:
    """Record ingestion-related metrics."""
    try:
        ingested_documents.labels(status="error" if error else "success").inc()
        if not error:
            chunks_per_document.observe(chunk_count)
    except Exception as e:
        logger.debug(f"Failed to record ingestion metrics: {e}")


def record_embedding_metrics(kind: str, success: bool, failed_items: int = 0) -> None:
    """Record one embedding call. ``kind`` is ``batch`` or ``item``."""
    try:
        embedding_requests.labels(kind=kind, status="success" if success else "error").inc()
        if failed_items:
            embedding_failures.inc(failed_items)
    except Exception as e:
        logger.debug(f"Failed to record embedding metrics: {e}")


def record_retrieval_metrics(mode: str, duration: float, result_count: int) -> None:
    """Record retrieval-related metrics. ``mode`` is ``vector``, ``keyword`` or ``empty``."""
    try:
        retrieval_requests.labels(mode=mode).inc()
        retrieval_duration.labels(mode=mode).observe(duration)
        retrieval_results.observe(result_count)
    except Exception as e:
        logger.debug(f"Failed to record retrieval metrics: {e}")


def record_crawl_page(outcome: str) -> None:
    """Record one crawled page (``updated``, ``unchanged``, ``not_found``, ``error``, ``skipped``)."""
    try:
        crawl_pages.labels(outcome=outcome).inc()
    except Exception as e:
        logger.debug(f"Failed to record crawl metrics: {e}")


def record_crawl_run(status: str) -> None:
    try:
        crawl_runs.labels(status=status).inc()
    except Exception as e:
        logger.debug(f"Failed to record crawl metrics: {e}")


def record_integrity_warnings(counts: Dict[str, int]) -> None:
    """Record integrity warnings grouped by level."""
    try:
        for level, count in counts.items():
            if count:
                integrity_warnings.labels(level=level).inc(count)
    except Exception as e:
        logger.debug(f"Failed to record integrity metrics: {e}")


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> None:
    """Expose the registry over HTTP for Prometheus scraping."""
    start_http_server(port, addr=addr, registry=ragkeeper_registry)
    logger.info(f"Metrics exposed on {addr}:{port}")
