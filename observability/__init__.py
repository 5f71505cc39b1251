"""Observability package for RagKeeper."""

from .logging import (
    setup_logging,
    get_logger,
    get_audit_logger,
    get_structured_logger,
    log_performance,
)
from .metrics import (
    record_sync_metrics,
    record_ingestion_metrics,
    record_embedding_metrics,
    record_retrieval_metrics,
    record_crawl_page,
    record_crawl_run,
    record_integrity_warnings,
    start_metrics_server,
    ragkeeper_registry
)

__all__ = [
    'setup_logging',
    'get_logger',
    'get_audit_logger',
    'get_structured_logger',
    'log_performance',
    'record_sync_metrics',
    'record_ingestion_metrics',
    'record_embedding_metrics',
    'record_retrieval_metrics',
    'record_crawl_page',
    'record_crawl_run',
    'record_integrity_warnings',
    'start_metrics_server',
    'ragkeeper_registry'
]
