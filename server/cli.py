"""Command-line entry point for RagKeeper."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from config.settings import Settings
from indexer.retrieval import format_chunks_for_prompt
from observability.logging import setup_logging
from observability.metrics import start_metrics_server
from services.shared.scope import Scope
from .runtime import KnowledgeBaseService

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _parse_scopes(tags: Optional[List[str]]) -> List[Scope]:
    return [Scope.parse(tag) for tag in (tags or ["shared", "web"])]


async def _run_sync(service: KnowledgeBaseService, args) -> int:
    result = await service.resync()
    _print_json(result.to_dict())
    return 1 if result.errors else 0


async def _run_reprocess(service: KnowledgeBaseService, args) -> int:
    scopes = _parse_scopes(args.scope) if args.scope else None
    batch = await service.reprocess(scopes)
    _print_json({"total": batch.total, "success": batch.success, "failed": batch.failed})
    return 1 if batch.failed else 0


async def _run_retrieve(service: KnowledgeBaseService, args) -> int:
    chunks = await service.retrieve(
        args.query,
        _parse_scopes(args.scope),
        dept_ids=args.dept or None,
        doc_types=args.doc_type or None,
        top_k=args.top_k,
        max_chars=args.max_chars,
    )
    if args.format == "prompt":
        print(format_chunks_for_prompt(chunks))
    else:
        _print_json([c.to_dict() for c in chunks])
    return 0


async def _run_integrity(service: KnowledgeBaseService, args) -> int:
    report = service.check_integrity(fresh=True)
    _print_json(report.to_dict())
    return 0 if report.ok else 1


async def _run_crawl(service: KnowledgeBaseService, args) -> int:
    if args.if_due:
        decision = await service.check_crawl_schedule(wait=True)
        print(decision.value)
        return 0
    result = await service.crawl()
    _print_json(result.to_dict())
    return 1 if result.status == "failed" else 0


async def _run_add_source(service: KnowledgeBaseService, args) -> int:
    source = service.add_web_source(args.url, args.name)
    _print_json({"id": source.id, "url": source.url, "domain": source.domain, "name": source.name})
    return 0


async def _run_serve(service: KnowledgeBaseService, args) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    if args.metrics_port:
        start_metrics_server(args.metrics_port)

    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
    return 0


COMMANDS = {
    "sync": _run_sync,
    "reprocess": _run_reprocess,
    "retrieve": _run_retrieve,
    "integrity": _run_integrity,
    "crawl": _run_crawl,
    "add-source": _run_add_source,
    "serve": _run_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ragkeeper", description="RagKeeper knowledge-base engine")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines to the console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sync", help="Run one sync pass of the source directory")

    reprocess = subparsers.add_parser("reprocess", help="Re-chunk and re-embed stored documents")
    reprocess.add_argument("--scope", action="append", help="Scope tag to reprocess (repeatable)")

    retrieve = subparsers.add_parser("retrieve", help="Retrieve chunks for a query")
    retrieve.add_argument("query")
    retrieve.add_argument("--scope", action="append", help="Scope tag to search (default: shared and web)")
    retrieve.add_argument("--dept", action="append", help="Department id filter (repeatable)")
    retrieve.add_argument("--doc-type", action="append", help="Document type filter (repeatable)")
    retrieve.add_argument("--top-k", type=int, default=None)
    retrieve.add_argument("--max-chars", type=int, default=None)
    retrieve.add_argument("--format", choices=["json", "prompt"], default="json")

    subparsers.add_parser("integrity", help="Run the three-level integrity check")

    crawl = subparsers.add_parser("crawl", help="Crawl registered web sources")
    crawl.add_argument("--if-due", action="store_true", help="Only crawl when the monthly interval has elapsed")

    add_source = subparsers.add_parser("add-source", help="Register a seed URL for crawling")
    add_source.add_argument("url")
    add_source.add_argument("--name", default=None)

    serve = subparsers.add_parser("serve", help="Watch the source directory and run scheduled jobs")
    serve.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    return parser


async def _main_async(args) -> int:
    settings = Settings.from_env()
    setup_logging(
        level=args.log_level or settings.logging.level,
        log_file=settings.logging.log_file,
        use_json=args.json_logs or settings.logging.use_json,
    )

    service = KnowledgeBaseService(settings)
    try:
        return await COMMANDS[args.command](service, args)
    finally:
        service.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main_async(args))
    except ValueError as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
