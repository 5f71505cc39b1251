"""Web crawler pipeline for RagKeeper.

Breadth-first, same-domain crawl from each registered seed URL. Crawled
pages become ``web``-scope documents keyed by URL; pages that answer 404
are removed from the index once the domain traversal finishes. A monthly
scheduler re-runs the crawl.
"""

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urljoin, urlparse, urlunparse

import aiohttp
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from bs4 import BeautifulSoup

from config.settings import CrawlerSettings
from indexer.hashing import hash_text
from observability.logging import get_structured_logger
from observability.metrics import record_crawl_page, record_crawl_run
from services.shared.guard import RunGuard
from services.shared.models import utcnow
from services.shared.scope import Scope
from services.shared.store import DocumentStore
from .extraction import ContentExtractor, UnsupportedFileType
from .ingest import IngestionPipeline

logger = logging.getLogger(__name__)

_STRIP_SELECTORS = "nav, footer, script, style, noscript, header, .navigation, .footer, .menu"
_MAIN_SELECTORS = "main, article, [role='main'], .content, .main-content, #content, #main"


@dataclass
class FetchResponse:
    """HTTP response as the crawler needs it."""
    status: int
    content_type: str = ""
    body: bytes = b""
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode(self.encoding or "utf-8", errors="replace")


@dataclass
class PageContent:
    text: str
    links: List[str] = field(default_factory=list)


@dataclass
class DomainCrawlResult:
    """Result of crawling one seed URL."""
    seed_url: str
    domain: str
    pages_visited: int = 0
    docs_updated: int = 0
    docs_deleted: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CrawlRunResult:
    """Totals for one crawl run across all seed URLs."""
    status: str
    log_id: Optional[int] = None
    pages_visited: int = 0
    docs_updated: int = 0
    docs_deleted: int = 0
    errors: List[str] = field(default_factory=list)
    domains: List[DomainCrawlResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_domain(url: str) -> str:
    return urlparse(url).hostname or ""


def normalize_url(href: str, base: str) -> Optional[str]:
    """Resolve ``href`` against ``base``; http(s) only, fragment removed."""
    try:
        resolved = urlparse(urljoin(base, href.strip()))
    except ValueError:
        return None
    if resolved.scheme not in ("http", "https") or not resolved.netloc:
        return None
    return urlunparse(resolved._replace(fragment=""))


def url_extension(url: str) -> str:
    return PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")


def is_pdf_url(url: str) -> bool:
    return url_extension(url) == "pdf"


def extract_text_from_html(html: str, url: str, max_chars: int = 10000,
                           skip_extensions: Iterable[str] = ()) -> PageContent:
    """Extract readable text and same-domain links from an HTML page."""
    soup = BeautifulSoup(html, "html.parser")

    # Links are collected before chrome removal so navigation still feeds the frontier
    domain = get_domain(url)
    skip = set(skip_extensions)
    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        normalized = normalize_url(anchor["href"], url)
        if normalized and get_domain(normalized) == domain and url_extension(normalized) not in skip:
            links.append(normalized)

    title = soup.title.get_text(strip=True) if soup.title else ""

    for element in soup.select(_STRIP_SELECTORS):
        element.decompose()

    main = soup.select_one(_MAIN_SELECTORS)
    container = main if main is not None else (soup.body or soup)
    text = container.get_text()

    if title:
        text = f"Title: {title}\n\n{text}"

    text = re.sub(r"\s{3,}", "\n\n", text).replace("\u3000", " ").strip()[:max_chars]
    return PageContent(text=text, links=list(dict.fromkeys(links)))


class WebCrawler:
    """Breadth-first same-domain crawler feeding the ingestion pipeline."""

    def __init__(self, store: DocumentStore, pipeline: IngestionPipeline, extractor: ContentExtractor,
                 settings: Optional[CrawlerSettings] = None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        """Initialize crawler.

        Args:
            store: Document store holding web sources, crawl logs and pages
            pipeline: Ingestion pipeline for changed pages
            extractor: Extraction collaborator used for PDF bodies
            settings: Depth, page, delay and timeout limits
            sleep: Awaitable sleep used for the per-request delay
        """
        self.store = store
        self.pipeline = pipeline
        self.extractor = extractor
        self.settings = settings or CrawlerSettings()
        self._sleep = sleep
        self._guard = RunGuard("crawl")
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def running(self) -> bool:
        return self._guard.running

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.fetch_timeout_seconds)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    'User-Agent': self.settings.user_agent,
                    'Accept': 'text/html,application/pdf,*/*',
                }
            )
        return self.session

    async def close(self):
        """Close the crawler session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def _fetch(self, url: str) -> FetchResponse:
        """Fetch ``url`` following redirects, bounded by the request timeout."""
        session = await self._ensure_session()
        async with session.get(url, allow_redirects=True) as response:
            body = await response.read() if response.status < 400 else b""
            return FetchResponse(
                status=response.status,
                content_type=response.headers.get('content-type', ''),
                body=body,
                encoding=response.charset,
            )

    async def crawl_domain(self, seed_url: str,
                           on_progress: Optional[Callable[[DomainCrawlResult], None]] = None) -> DomainCrawlResult:
        """Crawl one seed URL's domain breadth-first.

        Args:
            seed_url: Starting URL; only links on its hostname are followed
            on_progress: Called every ``progress_every_pages`` visited pages

        Returns:
            Per-domain counters and captured error strings
        """
        s = self.settings
        domain = get_domain(seed_url)
        result = DomainCrawlResult(seed_url=seed_url, domain=domain)
        log = get_structured_logger(__name__, domain=domain)

        visited: Set[str] = set()
        not_found: Set[str] = set()
        queue = deque([(seed_url, 0)])

        log.info("Starting crawl", seed=seed_url)

        while queue and len(visited) < s.max_pages_per_domain:
            url, depth = queue.popleft()
            if url in visited or depth > s.max_depth:
                continue
            visited.add(url)

            try:
                await self._sleep(s.request_delay_seconds)
                response = await self._fetch(url)

                if not response.ok:
                    log.warning("Non-success response", url=url, status=response.status)
                    if response.status == 404:
                        not_found.add(url)
                        record_crawl_page("not_found")
                    else:
                        record_crawl_page("error")
                    continue

                result.pages_visited += 1

                if is_pdf_url(url):
                    await self._handle_pdf(url, response, result)
                elif "text/html" in response.content_type:
                    page = extract_text_from_html(response.text(), url, s.max_content_chars, s.skip_extensions)
                    await self._store_page(url, page.text, "html", result)
                    if depth < s.max_depth:
                        for link in page.links:
                            if link not in visited:
                                queue.append((link, depth + 1))
                else:
                    record_crawl_page("skipped")

                if on_progress is not None and result.pages_visited % s.progress_every_pages == 0:
                    on_progress(result)
                    log.info("Progress", pages=result.pages_visited, updated=result.docs_updated)

            except Exception as e:
                log.warning("Error fetching page", url=url, error=str(e))
                result.errors.append(f"{url}: {e}")
                record_crawl_page("error")

        self._prune_not_found(not_found, result)

        log.info("Done", pages=result.pages_visited, updated=result.docs_updated,
                 deleted=result.docs_deleted, errors=len(result.errors))
        return result

    async def _handle_pdf(self, url: str, response: FetchResponse, result: DomainCrawlResult) -> None:
        if "pdf" not in response.content_type.lower() and not response.body.startswith(b"%PDF"):
            logger.info(f"Not a PDF response, skipping {url}")
            record_crawl_page("skipped")
            return
        try:
            text, _ = self.extractor.extract(response.body, "pdf")
        except UnsupportedFileType:
            logger.info(f"No PDF extractor configured, skipping {url}")
            record_crawl_page("skipped")
            return
        name = PurePosixPath(urlparse(url).path).name or url
        content = f"PDF: {name}\nURL: {url}\n\n{text[:self.settings.max_content_chars]}"
        await self._store_page(url, content, "pdf", result)

    async def _store_page(self, url: str, content: str, file_type: str, result: DomainCrawlResult) -> None:
        """Upsert a crawled page unless its content is unchanged."""
        if not content.strip():
            record_crawl_page("skipped")
            return

        existing = self.store.find_document(url, Scope.web())
        if existing is not None and existing.content_hash == hash_text(content):
            record_crawl_page("unchanged")
            return

        metadata = {"source": "web-crawler", "crawled_at": utcnow().isoformat()}
        process_result, _ = await self.pipeline.ingest_document(url, content, file_type, Scope.web(), metadata)
        if not process_result.ok:
            result.errors.append(f"{url}: {process_result.error}")
            record_crawl_page("error")
            return

        result.docs_updated += 1
        record_crawl_page("updated")

    def _prune_not_found(self, not_found: Set[str], result: DomainCrawlResult) -> None:
        for dead_url in sorted(not_found):
            deleted = self.store.delete_documents_by_filename(dead_url, Scope.web())
            if deleted:
                result.docs_deleted += deleted
                logger.info(f"Deleted stale page: {dead_url}")
        if result.docs_deleted:
            self.pipeline.notify_index_changed()

    async def run_web_crawl(self) -> CrawlRunResult:
        """Crawl every registered web source, recording the run in the crawl log."""
        if not self._guard.try_acquire():
            return CrawlRunResult(status="skipped")

        try:
            log_row = self.store.create_crawl_log()
            run = CrawlRunResult(status="running", log_id=log_row.id)
            try:
                await self._crawl_sources(run)
            except Exception as e:
                logger.error(f"Crawl run failed: {e}", exc_info=True)
                run.status = "failed"
                run.errors = [str(e)]
                self.store.update_crawl_log(run.log_id, status="failed", completed_at=utcnow(), errors=run.errors)
            finally:
                await self.close()

            record_crawl_run(run.status)
            return run
        finally:
            self._guard.release()

    async def _crawl_sources(self, run: CrawlRunResult) -> None:
        sources = self.store.list_web_sources()
        if not sources:
            logger.info("No web sources registered")
            run.status = "completed"
            run.errors = ["No web sources"]
            self.store.update_crawl_log(run.log_id, status="completed", completed_at=utcnow(), errors=run.errors)
            return

        logger.info(f"Starting crawl for {len(sources)} sources")

        for source in sources:
            def report(progress: DomainCrawlResult) -> None:
                self.store.update_crawl_log(
                    run.log_id,
                    pages_visited=run.pages_visited + progress.pages_visited,
                    docs_updated=run.docs_updated + progress.docs_updated,
                )

            try:
                domain_result = await self.crawl_domain(source.url, on_progress=report)
            except Exception as e:
                logger.error(f"Crawl of {source.url} failed: {e}")
                run.errors.append(f"{source.url}: {e}")
                continue

            run.domains.append(domain_result)
            run.pages_visited += domain_result.pages_visited
            run.docs_updated += domain_result.docs_updated
            run.docs_deleted += domain_result.docs_deleted
            run.errors.extend(domain_result.errors[:self.settings.max_errors_per_domain])

        run.status = "completed"
        self.store.update_crawl_log(
            run.log_id,
            status="completed",
            completed_at=utcnow(),
            pages_visited=run.pages_visited,
            docs_updated=run.docs_updated,
            docs_deleted=run.docs_deleted,
            errors=run.errors,
        )
        logger.info(f"Crawl completed: {run.pages_visited} pages, {run.docs_updated} updated, "
                    f"{run.docs_deleted} deleted")


class CrawlDecision(str, Enum):
    STARTED = "started"
    NOT_DUE = "not_due"
    ALREADY_RUNNING = "already_running"


class CrawlScheduler:
    """Starts a crawl when none has run for ``interval_days``."""

    JOB_ID = "web_crawl_check"

    def __init__(self, crawler: WebCrawler, store: DocumentStore,
                 settings: Optional[CrawlerSettings] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.crawler = crawler
        self.store = store
        self.settings = settings or CrawlerSettings()
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def days_since_last_crawl(self) -> Optional[float]:
        latest = self.store.latest_crawl_log()
        if latest is None:
            return None
        return (self._clock() - latest.started_at).total_seconds() / 86400

    async def check_and_run(self, wait: bool = False) -> CrawlDecision:
        """Start a crawl if one is due.

        Args:
            wait: Await the crawl instead of leaving it running in the background
        """
        if self.crawler.running:
            logger.info("Crawl already running")
            return CrawlDecision.ALREADY_RUNNING

        days = self.days_since_last_crawl()
        if days is not None and days < self.settings.interval_days:
            remaining = self.settings.interval_days - days
            logger.info(f"Last crawl {days:.0f} days ago, next in {remaining:.0f} days")
            return CrawlDecision.NOT_DUE

        if days is None:
            logger.info("No previous crawl, starting first crawl")
        else:
            logger.info(f"{days:.0f} days since last crawl, starting crawl")

        self._task = asyncio.ensure_future(self.crawler.run_web_crawl())
        if wait:
            await self._task
        return CrawlDecision.STARTED

    def start(self, scheduler: AsyncIOScheduler) -> None:
        """Check once now and then every ``check_interval_hours``."""
        scheduler.add_job(
            self._scheduled_check,
            'interval',
            hours=self.settings.check_interval_hours,
            next_run_time=datetime.now(),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Crawl scheduler started (every {self.settings.check_interval_hours}h)")

    async def _scheduled_check(self) -> None:
        try:
            await self.check_and_run()
        except Exception as e:
            logger.error(f"Crawl scheduler error: {e}", exc_info=True)
