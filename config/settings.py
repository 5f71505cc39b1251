"""Runtime settings for the knowledge-base engine.

All tunables live here as pydantic models so they can be built from the
environment in one place and passed explicitly to each component.
"""

import os
import logging
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {raw!r}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class EmbeddingProvider(str, Enum):
    """Supported embedding service flavours."""
    OPENAI = "openai"
    AZURE = "azure"


class DatabaseSettings(BaseModel):
    """Persistent store configuration."""
    url: str = Field(default="sqlite:///data/ragkeeper.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")


class ChunkerSettings(BaseModel):
    """Chunk sizing and metadata heuristics."""
    max_chars: int = Field(default=1500, description="Maximum characters per chunk, overlap included")
    min_chars: int = Field(default=100, description="Chunks shorter than this are merged into a neighbour")
    overlap_chars: int = Field(default=150, description="Trailing characters of the previous chunk to prepend")
    break_window: int = Field(default=200, description="Backward search window for a force-split boundary")
    min_type_matches: int = Field(default=2, description="Distinct keyword hits needed to classify a document type")
    max_tags: int = Field(default=10, description="Maximum tags kept per chunk")
    doc_scan_chars: int = Field(default=2000, description="Leading characters scanned for document-level metadata")


class EmbeddingSettings(BaseModel):
    """Embedding backend configuration. An empty api_key disables embeddings."""
    provider: EmbeddingProvider = Field(default=EmbeddingProvider.OPENAI)
    api_key: str = Field(default="")
    endpoint: Optional[str] = Field(default=None, description="Azure endpoint or custom base URL")
    model: str = Field(default="text-embedding-3-small", description="Model or Azure deployment name")
    api_version: str = Field(default="2024-08-01-preview")
    dimensions: int = Field(default=1536)
    batch_size: int = Field(default=16)
    timeout_seconds: float = Field(default=30.0)

    @property
    def configured(self) -> bool:
        if not self.api_key or not self.model:
            return False
        if self.provider == EmbeddingProvider.AZURE and not self.endpoint:
            return False
        return True


class SyncSettings(BaseModel):
    """Watched source directory and sync cadence."""
    source_dir: str = Field(default="data/ingest_files")
    manifest_filename: str = Field(default="_ingest_manifest.json")
    supported_types: List[str] = Field(
        default_factory=lambda: ["pdf", "txt", "md", "json", "doc", "docx", "csv", "pptx", "msg", "eml", "html", "htm"]
    )
    debounce_seconds: float = Field(default=5.0)
    poll_interval_seconds: float = Field(default=300.0)
    insert_batch_size: int = Field(default=50, description="Chunk rows inserted per statement batch")


class ProcessingSettings(BaseModel):
    """Bulk reprocessing limits."""
    concurrency: int = Field(default=3, description="Documents processed at once by process_all_documents")


class RetrievalSettings(BaseModel):
    """Retrieval defaults and score boosts."""
    cache_ttl_seconds: float = Field(default=300.0)
    top_k: int = Field(default=20)
    max_chars: int = Field(default=15000)
    boosted_doc_type: str = Field(default="budget")
    doc_type_boost: float = Field(default=1.3)
    dept_boost: float = Field(default=1.2)


class IntegritySettings(BaseModel):
    """Three-level integrity check locations."""
    source_dir: str = Field(default="data/raw_documents")
    refined_dir: str = Field(default="data/rag-ready")
    manifest_filename: str = Field(default="_refine_manifest.json")
    log_filename: str = Field(default="_integrity.log")
    cache_ttl_seconds: float = Field(default=300.0)


class CrawlerSettings(BaseModel):
    """Breadth-first web crawl limits and monthly cadence."""
    max_depth: int = Field(default=6)
    max_pages_per_domain: int = Field(default=200)
    request_delay_seconds: float = Field(default=0.5)
    fetch_timeout_seconds: float = Field(default=15.0)
    max_content_chars: int = Field(default=10000)
    interval_days: float = Field(default=30.0)
    check_interval_hours: float = Field(default=24.0)
    max_errors_per_domain: int = Field(default=10)
    progress_every_pages: int = Field(default=10)
    user_agent: str = Field(default="Mozilla/5.0 (compatible; RagKeeperBot/1.0)")
    skip_extensions: List[str] = Field(
        default_factory=lambda: [
            "jpg", "jpeg", "png", "gif", "svg", "webp", "ico",
            "css", "js", "woff", "woff2", "ttf", "eot",
            "zip", "tar", "gz", "exe", "dmg",
            "mp4", "mp3", "avi", "mov",
            "xml", "rss", "atom",
        ]
    )


class LoggingSettings(BaseModel):
    """Logging output options."""
    level: str = Field(default="INFO")
    use_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)


class Settings(BaseModel):
    """Top-level settings for every component."""
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chunker: ChunkerSettings = Field(default_factory=ChunkerSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    integrity: IntegritySettings = Field(default_factory=IntegritySettings)
    crawler: CrawlerSettings = Field(default_factory=CrawlerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    vocabulary_path: Optional[str] = Field(default=None, description="Override for the keyword vocabulary YAML")

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables."""
        azure_key = os.getenv('AZURE_OPENAI_API_KEY', '')
        if azure_key:
            embedding = EmbeddingSettings(
                provider=EmbeddingProvider.AZURE,
                api_key=azure_key,
                endpoint=os.getenv('AZURE_OPENAI_ENDPOINT') or None,
                model=os.getenv('AZURE_OPENAI_EMBEDDING_DEPLOYMENT', ''),
                api_version=os.getenv('AZURE_OPENAI_API_VERSION', '2024-08-01-preview'),
            )
        else:
            embedding = EmbeddingSettings(
                provider=EmbeddingProvider.OPENAI,
                api_key=os.getenv('OPENAI_API_KEY', ''),
                endpoint=os.getenv('OPENAI_BASE_URL') or None,
                model=os.getenv('EMBEDDING_MODEL', 'text-embedding-3-small'),
            )

        return cls(
            database=DatabaseSettings(
                url=os.getenv('RAG_DATABASE_URL', 'sqlite:///data/ragkeeper.db'),
                echo=_env_bool('RAG_DATABASE_ECHO', False),
            ),
            embedding=embedding,
            sync=SyncSettings(
                source_dir=os.getenv('INGEST_SOURCE_DIR', 'data/ingest_files'),
                debounce_seconds=_env_int('INGEST_DEBOUNCE_MS', 5000) / 1000.0,
                poll_interval_seconds=_env_int('INGEST_POLL_INTERVAL_MS', 300000) / 1000.0,
            ),
            processing=ProcessingSettings(
                concurrency=_env_int('RAG_PROCESS_CONCURRENCY', 3),
            ),
            integrity=IntegritySettings(
                source_dir=os.getenv('RAG_RAW_SOURCE_DIR', 'data/raw_documents'),
                refined_dir=os.getenv('RAG_READY_DIR', 'data/rag-ready'),
            ),
            crawler=CrawlerSettings(
                max_depth=_env_int('CRAWL_MAX_DEPTH', 6),
                max_pages_per_domain=_env_int('CRAWL_MAX_PAGES', 200),
            ),
            logging=LoggingSettings(
                level=os.getenv('LOG_LEVEL', 'INFO'),
                use_json=_env_bool('LOG_JSON', False),
                log_file=os.getenv('LOG_FILE') or None,
            ),
            vocabulary_path=os.getenv('RAG_VOCABULARY_PATH') or None,
        )
