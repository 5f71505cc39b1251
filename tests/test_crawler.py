"""Tests for the web crawler and its monthly scheduler."""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List
from unittest.mock import Mock

import pytest

from config.settings import CrawlerSettings
from pipelines.crawler import (
    CrawlDecision,
    CrawlScheduler,
    FetchResponse,
    WebCrawler,
    extract_text_from_html,
    is_pdf_url,
    normalize_url,
)
from pipelines.extraction import TextExtractor
from services.shared.models import utcnow
from services.shared.scope import Scope

SITE = "https://example.com"


def html_page(title: str, body: str, links: List[str] = ()) -> FetchResponse:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    html = f"<html><head><title>{title}</title></head><body><main><p>{body}</p>{anchors}</main></body></html>"
    return FetchResponse(status=200, content_type="text/html; charset=utf-8", body=html.encode("utf-8"))


class GraphCrawler(WebCrawler):
    """Crawler whose fetches are answered from an in-memory link graph."""

    def __init__(self, *args, pages: Dict[str, FetchResponse] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.pages = pages or {}
        self.fetched: List[str] = []

    async def _fetch(self, url: str) -> FetchResponse:
        self.fetched.append(url)
        response = self.pages.get(url)
        if isinstance(response, Exception):
            raise response
        return response or FetchResponse(status=404)


async def no_sleep(seconds):
    return None


@pytest.fixture
def crawler_settings():
    return CrawlerSettings(request_delay_seconds=0)


@pytest.fixture
def make_crawler(store, pipeline, crawler_settings):
    def factory(pages, settings=None, extractor=None):
        return GraphCrawler(store, pipeline, extractor or TextExtractor(), settings or crawler_settings,
                            sleep=no_sleep, pages=pages)
    return factory


class TestHtmlExtraction:

    HTML = """
    <html><head><title>Example Page</title></head><body>
      <header>Site header</header>
      <nav><a href="/nav-link">Nav</a></nav>
      <main>
        <h1>Hello</h1>
        <p>Main content here.</p>
        <a href="/about#team">About</a>
        <a href="https://other.com/x">Other</a>
        <a href="/logo.png">Logo</a>
        <a href="mailto:someone@example.com">Mail</a>
      </main>
      <script>var x = 1;</script>
      <footer>Footer text</footer>
    </body></html>
    """

    def test_text_prefers_main_and_prepends_title(self):
        page = extract_text_from_html(self.HTML, f"{SITE}/index.html", skip_extensions=["png"])

        assert page.text.startswith("Title: Example Page\n\n")
        assert "Main content here." in page.text
        assert "Footer text" not in page.text
        assert "Site header" not in page.text
        assert "var x" not in page.text

    def test_links_same_domain_without_fragments_or_assets(self):
        page = extract_text_from_html(self.HTML, f"{SITE}/index.html", skip_extensions=["png"])
        assert page.links == [f"{SITE}/nav-link", f"{SITE}/about"]

    def test_falls_back_to_body(self):
        html = "<html><body><div>Plain body text</div><footer>f</footer></body></html>"
        page = extract_text_from_html(html, SITE)
        assert page.text == "Plain body text"

    def test_text_is_capped(self):
        html = f"<html><body><main>{'word ' * 1000}</main></body></html>"
        assert len(extract_text_from_html(html, SITE, max_chars=50).text) == 50

    def test_whitespace_runs_collapsed(self):
        html = "<html><body><main>one\n\n\n\n\ntwo\u3000three</main></body></html>"
        assert extract_text_from_html(html, SITE).text == "one\n\ntwo three"


class TestUrlHelpers:

    @pytest.mark.parametrize("href, expected", [
        ("/a", f"{SITE}/a"),
        ("b?x=1#frag", f"{SITE}/docs/b?x=1"),
        ("https://example.com/c#top", f"{SITE}/c"),
        ("mailto:x@example.com", None),
        ("javascript:void(0)", None),
        ("ftp://example.com/file", None),
    ])
    def test_normalize_url(self, href, expected):
        assert normalize_url(href, f"{SITE}/docs/index.html") == expected

    def test_pdf_detection_ignores_query(self):
        assert is_pdf_url(f"{SITE}/files/report.PDF?download=1")
        assert not is_pdf_url(f"{SITE}/files/report.html")


class TestCrawlDomain:

    @pytest.mark.asyncio
    async def test_cycles_visit_each_url_once(self, make_crawler, store):
        pages = {
            f"{SITE}/": html_page("Home", "home", ["/a", "/b"]),
            f"{SITE}/a": html_page("A", "page a", ["/", "/b"]),
            f"{SITE}/b": html_page("B", "page b", ["/a", "/"]),
        }
        crawler = make_crawler(pages)

        result = await crawler.crawl_domain(f"{SITE}/")

        assert sorted(crawler.fetched) == sorted(pages)
        assert result.pages_visited == 3
        assert result.docs_updated == 3
        assert store.find_document(f"{SITE}/a", Scope.web()).content.startswith("Title: A")

    @pytest.mark.asyncio
    async def test_stops_at_max_pages(self, make_crawler):
        pages = {f"{SITE}/{i}": html_page(str(i), f"page {i}", [f"/{i + 1}", f"/{i + 2}"]) for i in range(50)}
        crawler = make_crawler(pages, CrawlerSettings(request_delay_seconds=0, max_pages_per_domain=5))

        await crawler.crawl_domain(f"{SITE}/0")

        assert len(crawler.fetched) == 5

    @pytest.mark.asyncio
    async def test_stops_at_max_depth(self, make_crawler):
        pages = {f"{SITE}/{i}": html_page(str(i), f"page {i}", [f"/{i + 1}"]) for i in range(10)}
        crawler = make_crawler(pages, CrawlerSettings(request_delay_seconds=0, max_depth=2))

        await crawler.crawl_domain(f"{SITE}/0")

        assert crawler.fetched == [f"{SITE}/0", f"{SITE}/1", f"{SITE}/2"]

    @pytest.mark.asyncio
    async def test_breadth_first_order(self, make_crawler):
        pages = {
            f"{SITE}/": html_page("Home", "home", ["/a", "/b"]),
            f"{SITE}/a": html_page("A", "a", ["/a1"]),
            f"{SITE}/b": html_page("B", "b"),
            f"{SITE}/a1": html_page("A1", "a1"),
        }
        crawler = make_crawler(pages)

        await crawler.crawl_domain(f"{SITE}/")

        assert crawler.fetched == [f"{SITE}/", f"{SITE}/a", f"{SITE}/b", f"{SITE}/a1"]

    @pytest.mark.asyncio
    async def test_unchanged_page_not_rewritten(self, make_crawler, pipeline):
        pages = {f"{SITE}/": html_page("Home", "stable content")}
        crawler = make_crawler(pages)
        await crawler.crawl_domain(f"{SITE}/")

        pipeline.ingest_document = Mock(side_effect=AssertionError("unchanged page was re-ingested"))
        result = await crawler.crawl_domain(f"{SITE}/")

        assert result.pages_visited == 1
        assert result.docs_updated == 0
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_changed_page_updated(self, make_crawler, store):
        crawler = make_crawler({f"{SITE}/": html_page("Home", "version one")})
        await crawler.crawl_domain(f"{SITE}/")

        crawler.pages[f"{SITE}/"] = html_page("Home", "version two")
        result = await crawler.crawl_domain(f"{SITE}/")

        assert result.docs_updated == 1
        doc = store.find_document(f"{SITE}/", Scope.web())
        assert "version two" in doc.content
        assert doc.metadata_dict["source"] == "web-crawler"

    @pytest.mark.asyncio
    async def test_non_html_content_skipped(self, make_crawler, store):
        pages = {f"{SITE}/": FetchResponse(status=200, content_type="application/json", body=b"{}")}
        crawler = make_crawler(pages)

        result = await crawler.crawl_domain(f"{SITE}/")

        assert result.pages_visited == 1
        assert result.docs_updated == 0
        assert store.list_documents() == []

    @pytest.mark.asyncio
    async def test_pdf_without_extractor_skipped(self, make_crawler, store):
        pages = {
            f"{SITE}/": html_page("Home", "home", ["/report.pdf"]),
            f"{SITE}/report.pdf": FetchResponse(status=200, content_type="application/pdf", body=b"%PDF"),
        }
        crawler = make_crawler(pages)

        result = await crawler.crawl_domain(f"{SITE}/")

        assert result.errors == []
        assert store.find_document(f"{SITE}/report.pdf", Scope.web()) is None

    @pytest.mark.asyncio
    async def test_pdf_extracted_by_collaborator(self, make_crawler, store):
        extractor = Mock()
        extractor.extract.return_value = ("Quarterly figures", {})
        pages = {f"{SITE}/files/report.pdf": FetchResponse(status=200, content_type="application/pdf", body=b"%PDF")}
        crawler = make_crawler(pages, extractor=extractor)

        await crawler.crawl_domain(f"{SITE}/files/report.pdf")

        extractor.extract.assert_called_once_with(b"%PDF", "pdf")
        doc = store.find_document(f"{SITE}/files/report.pdf", Scope.web())
        assert doc.content == f"PDF: report.pdf\nURL: {SITE}/files/report.pdf\n\nQuarterly figures"
        assert doc.file_type == "pdf"

    @pytest.mark.asyncio
    async def test_html_served_at_pdf_url_skipped(self, make_crawler, store):
        extractor = Mock()
        pages = {f"{SITE}/report.pdf": FetchResponse(status=200, content_type="text/html", body=b"<html>login</html>")}
        crawler = make_crawler(pages, extractor=extractor)

        result = await crawler.crawl_domain(f"{SITE}/report.pdf")

        extractor.extract.assert_not_called()
        assert result.errors == []
        assert store.find_document(f"{SITE}/report.pdf", Scope.web()) is None

    @pytest.mark.asyncio
    async def test_fetch_errors_recorded_and_crawl_continues(self, make_crawler):
        pages = {
            f"{SITE}/": html_page("Home", "home", ["/broken", "/ok"]),
            f"{SITE}/broken": asyncio.TimeoutError(),
            f"{SITE}/ok": html_page("OK", "fine"),
        }
        crawler = make_crawler(pages)

        result = await crawler.crawl_domain(f"{SITE}/")

        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"{SITE}/broken")
        assert result.docs_updated == 2

    @pytest.mark.asyncio
    async def test_progress_callback(self, make_crawler):
        pages = {f"{SITE}/{i}": html_page(str(i), f"page {i}", [f"/{i + 1}"]) for i in range(25)}
        crawler = make_crawler(pages, CrawlerSettings(request_delay_seconds=0, max_depth=30))
        progress = Mock()

        await crawler.crawl_domain(f"{SITE}/0", on_progress=progress)

        assert progress.call_count == 2


class TestCrawlRun:

    @pytest.mark.asyncio
    async def test_dead_link_pruned(self, make_crawler, store):
        """A previously indexed page that now answers 404 is removed."""
        store.add_web_source(f"{SITE}/")
        store.upsert_document(f"{SITE}/old", "retired page", "html", Scope.web())
        pages = {f"{SITE}/": html_page("Home", "home", ["/old"])}
        crawler = make_crawler(pages)

        result = await crawler.run_web_crawl()

        assert result.status == "completed"
        assert result.docs_deleted == 1
        assert store.find_document(f"{SITE}/old", Scope.web()) is None
        log = store.latest_crawl_log()
        assert log.status == "completed"
        assert log.docs_deleted == 1
        assert log.pages_visited == 1
        assert log.completed_at is not None

    @pytest.mark.asyncio
    async def test_pruning_invalidates_retrieval(self, make_crawler, store, retrieval):
        store.add_web_source(f"{SITE}/")
        store.upsert_document(f"{SITE}/old", "retired page", "html", Scope.web())
        crawler = make_crawler({f"{SITE}/": html_page("Home", "home", ["/old"])})
        generation = retrieval._generation

        await crawler.run_web_crawl()

        assert retrieval._generation > generation

    @pytest.mark.asyncio
    async def test_no_sources(self, make_crawler, store):
        result = await make_crawler({}).run_web_crawl()

        assert result.status == "completed"
        assert result.errors == ["No web sources"]
        assert store.latest_crawl_log().errors == ["No web sources"]

    @pytest.mark.asyncio
    async def test_concurrent_run_is_skipped(self, make_crawler, store):
        crawler = make_crawler({})
        assert crawler._guard.try_acquire()
        try:
            result = await crawler.run_web_crawl()
        finally:
            crawler._guard.release()

        assert result.status == "skipped"
        assert store.latest_crawl_log() is None

    @pytest.mark.asyncio
    async def test_errors_capped_per_domain(self, make_crawler, store):
        links = [f"/bad{i}" for i in range(15)]
        pages = {f"{SITE}/": html_page("Home", "home", links)}
        pages.update({f"{SITE}/bad{i}": RuntimeError("reset") for i in range(15)})
        store.add_web_source(f"{SITE}/")
        crawler = make_crawler(pages)

        result = await crawler.run_web_crawl()

        assert len(result.domains[0].errors) == 15
        assert len(result.errors) == 10

    @pytest.mark.asyncio
    async def test_totals_across_sources(self, make_crawler, store):
        store.add_web_source(f"{SITE}/")
        store.add_web_source("https://docs.example.org/")
        pages = {
            f"{SITE}/": html_page("Home", "home"),
            "https://docs.example.org/": html_page("Docs", "docs", ["/guide"]),
            "https://docs.example.org/guide": html_page("Guide", "guide"),
        }
        crawler = make_crawler(pages)

        result = await crawler.run_web_crawl()

        assert result.pages_visited == 3
        assert result.docs_updated == 3
        assert [d.domain for d in result.domains] == ["example.com", "docs.example.org"]


class TestCrawlScheduler:

    @pytest.fixture
    def now(self):
        return utcnow()

    @pytest.fixture
    def scheduler(self, make_crawler, store, crawler_settings, now):
        return CrawlScheduler(make_crawler({}), store, crawler_settings, clock=lambda: now)

    @pytest.mark.asyncio
    async def test_first_run_starts_crawl(self, scheduler, store):
        decision = await scheduler.check_and_run(wait=True)

        assert decision == CrawlDecision.STARTED
        assert store.latest_crawl_log() is not None

    @pytest.mark.asyncio
    async def test_recent_crawl_not_due(self, scheduler, store, now):
        log = store.create_crawl_log()
        store.update_crawl_log(log.id, started_at=now - timedelta(days=10))

        assert await scheduler.check_and_run() == CrawlDecision.NOT_DUE
        assert scheduler.days_since_last_crawl() == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_old_crawl_is_due(self, scheduler, store, now):
        log = store.create_crawl_log()
        store.update_crawl_log(log.id, started_at=now - timedelta(days=30))

        assert await scheduler.check_and_run(wait=True) == CrawlDecision.STARTED
        assert store.latest_crawl_log().id != log.id

    @pytest.mark.asyncio
    async def test_running_crawl_reported(self, scheduler):
        assert scheduler.crawler._guard.try_acquire()
        try:
            assert await scheduler.check_and_run() == CrawlDecision.ALREADY_RUNNING
        finally:
            scheduler.crawler._guard.release()

    def test_registers_daily_job(self, scheduler):
        aps = Mock()
        scheduler.start(aps)

        kwargs = aps.add_job.call_args.kwargs
        assert aps.add_job.call_args.args[1] == "interval"
        assert kwargs["hours"] == 24
        assert kwargs["id"] == CrawlScheduler.JOB_ID
        assert isinstance(kwargs["next_run_time"], datetime)
