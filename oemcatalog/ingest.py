"""
OEM catalog ingest – expand the vendor sitemap, then crawl every catalog page
(fetch -> extract -> merge) under one politeness gate. Output: SQLite catalog
(oem_makes ... oem_assembly_parts) plus the oem_crawl_pages log.

Usage:
  python -m oemcatalog.ingest
  python -m oemcatalog.ingest --sitemap https://www.partzilla.com/sitemap/i/catalog/0.xml --workers 4 --interval 1
  python -m oemcatalog.ingest --skip-succeeded        # resume: skip pages that merged last time
  python -m oemcatalog.ingest --include /catalog/ --include /atv --limit 50
"""
import argparse
import asyncio
import logging
import signal
import sqlite3
import sys
from dataclasses import dataclass, field
from pathlib import Path

from playwright.async_api import async_playwright

from oemcatalog.config import (
    DB_PATH,
    DEFAULT_HEADERS,
    FETCH_TIMEOUT_MS,
    MAX_RETRIES,
    MAX_WORKERS,
    REQUEST_INTERVAL_SEC,
    RETRY_ALL_ERRORS,
    RETRY_BACKOFF_MS,
    SITEMAP_URL,
    URL_INCLUDE,
    get_proxy_settings,
)
from oemcatalog.extractor import AssemblyTableExtractor, ExtractionError, PageExtractor
from oemcatalog.fetcher import Fetcher, FetchExhausted, RetryPolicy
from oemcatalog.models import CatalogStore
from oemcatalog.scheduler import CrawlScheduler, CrawlTask, TaskStatus
from oemcatalog.sitemap import SitemapError, SitemapExpander, filter_urls
from oemcatalog.upsert import CatalogUpserter, MergeError, MergeResult

logger = logging.getLogger("oemcatalog")


@dataclass
class RunSummary:
    discovered: int = 0
    skipped_done: int = 0
    queued: int = 0
    crawled: int = 0
    extracted: int = 0
    merged: int = 0
    fetch_failed: int = 0
    extract_failed: int = 0
    merge_failed: int = 0
    not_started: int = 0
    records: MergeResult = field(default_factory=MergeResult)
    exit_code: int = 0

    @property
    def failed(self) -> int:
        return self.fetch_failed + self.extract_failed + self.merge_failed

    def tally(self, tasks: list[CrawlTask]) -> None:
        """Classify finished tasks by the stage that failed them."""
        for task in tasks:
            if task.status == TaskStatus.PENDING:
                self.not_started += 1
            elif task.status == TaskStatus.FAILED:
                if isinstance(task.error, FetchExhausted):
                    self.fetch_failed += 1
                elif isinstance(task.error, ExtractionError):
                    self.extract_failed += 1
                else:
                    self.merge_failed += 1

    def log(self) -> None:
        logger.info(
            "Summary: %d discovered, %d queued (%d skipped as already done), %d crawled, %d extracted, %d merged",
            self.discovered, self.queued, self.skipped_done, self.crawled, self.extracted, self.merged,
        )
        logger.info(
            "Failed: %d (fetch %d, extract %d, merge %d), not started: %d",
            self.failed, self.fetch_failed, self.extract_failed, self.merge_failed, self.not_started,
        )
        logger.info(
            "Records: %d merged, %d failed (%s)",
            self.records.merged, self.records.failed, self.records.summary(),
        )


class IngestPipeline:
    """One task per page URL: fetch, extract, merge, then log the outcome to oem_crawl_pages."""

    def __init__(self, fetcher: Fetcher, extractor: PageExtractor, upserter: CatalogUpserter, store: CatalogStore, summary: RunSummary):
        self.fetcher = fetcher
        self.extractor = extractor
        self.upserter = upserter
        self.store = store
        self.summary = summary

    async def _crawl(self, url: str) -> MergeResult:
        html = await self.fetcher.fetch(url)
        self.summary.crawled += 1
        records = self.extractor.extract(url, html)
        self.summary.extracted += 1
        # Store I/O runs on a worker thread; no transaction spans the fetch above
        result = await asyncio.to_thread(self.upserter.merge, records)
        self.summary.records.add(result)
        if result.failed and not result.merged:
            raise MergeError(f"all {result.failed} records failed to merge: {result.errors[-1]}")
        self.summary.merged += 1
        if records:
            logger.info("  %s: %d records (%s)", url, len(records), result.summary())
        return result

    async def _log_page(self, url: str, status: TaskStatus, error: str | None = None, records: int = 0) -> None:
        try:
            await asyncio.to_thread(self.store.record_crawl_page, url, status.value, error, records)
        except sqlite3.Error as e:
            logger.warning("Could not record crawl status for %s: %s", url, e)

    async def process(self, url: str) -> MergeResult:
        try:
            result = await self._crawl(url)
        except Exception as e:
            await self._log_page(url, TaskStatus.FAILED, f"{type(e).__name__}: {e}")
            raise
        await self._log_page(url, TaskStatus.SUCCEEDED, records=result.merged)
        return result


async def run_ingest(
    request_context,
    store: CatalogStore,
    *,
    sitemap_url: str = SITEMAP_URL,
    extractor: PageExtractor | None = None,
    policy: RetryPolicy | None = None,
    scheduler: CrawlScheduler | None = None,
    include=URL_INCLUDE,
    skip_succeeded: bool = False,
    limit: int | None = None,
    sleep=asyncio.sleep,
) -> RunSummary:
    """
    Full run against an open store. Raises SitemapError when the sitemap tree
    cannot be expanded; page-level failures only show up in the summary.
    """
    scheduler = scheduler or CrawlScheduler()
    fetcher = Fetcher(
        request_context,
        policy=policy,
        gate=scheduler.gate,
        sleep=sleep,
        should_stop=lambda: scheduler.stopping,
    )
    summary = RunSummary()

    leaves = await SitemapExpander(fetcher).expand(sitemap_url)
    urls = filter_urls(leaves, include)
    summary.discovered = len(urls)
    logger.info("Sitemap: %d page URLs, %d after include filter %s", len(leaves), len(urls), list(include))

    if skip_succeeded:
        done = store.crawl_pages_with_status(TaskStatus.SUCCEEDED.value)
        before = len(urls)
        urls = [u for u in urls if u not in done]
        summary.skipped_done = before - len(urls)
    if limit:
        urls = urls[:limit]
    summary.queued = len(urls)

    if scheduler.stopping:
        logger.warning("Shutdown requested before crawl started; nothing queued.")
        summary.not_started = len(urls)
        return summary

    pipeline = IngestPipeline(fetcher, extractor or AssemblyTableExtractor(), CatalogUpserter(store), store, summary)
    tasks = await scheduler.run(urls, pipeline.process)
    summary.tally(tasks)
    return summary


async def _run(args, scheduler: CrawlScheduler, policy: RetryPolicy) -> RunSummary:
    async with async_playwright() as p:
        request_context = await p.request.new_context(
            extra_http_headers=DEFAULT_HEADERS,
            proxy=get_proxy_settings(),
            timeout=args.timeout_ms,
        )
        try:
            with CatalogStore(args.db) as store:
                summary = await run_ingest(
                    request_context,
                    store,
                    sitemap_url=args.sitemap,
                    policy=policy,
                    scheduler=scheduler,
                    include=tuple(args.include),
                    skip_succeeded=args.skip_succeeded,
                    limit=args.limit,
                )
                counts = store.table_counts()
        finally:
            await request_context.dispose()
    logger.info("Catalog rows: %s", ", ".join(f"{t}={n}" for t, n in counts.items()))
    return summary


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Crawl a vendor sitemap into the OEM parts catalog")
    ap.add_argument("--sitemap", default=SITEMAP_URL, help="Root sitemap (index) URL")
    ap.add_argument("--db", type=Path, default=DB_PATH, help="SQLite catalog path")
    ap.add_argument("--include", action="append", default=None, help=f"Keep URLs containing this substring (repeatable). Default: {list(URL_INCLUDE)}")
    ap.add_argument("--all-urls", action="store_true", help="Ignore include filters and crawl every leaf URL")
    ap.add_argument("--workers", type=int, default=MAX_WORKERS, help="Concurrent page tasks")
    ap.add_argument("--interval", type=float, default=REQUEST_INTERVAL_SEC, help="Minimum seconds between request starts (all workers)")
    ap.add_argument("--max-retries", type=int, default=MAX_RETRIES, help="Attempts per URL")
    ap.add_argument("--backoff-ms", type=int, default=RETRY_BACKOFF_MS, help="Backoff unit; delay after attempt n is n * backoff")
    ap.add_argument("--retry-404", action="store_true", default=RETRY_ALL_ERRORS, help="Retry every non-2xx status, not only 403/429/5xx")
    ap.add_argument("--timeout-ms", type=int, default=FETCH_TIMEOUT_MS, help="Per-request timeout")
    ap.add_argument("--limit", type=int, default=None, help="Crawl at most N pages")
    ap.add_argument("--skip-succeeded", action="store_true", help="Skip pages already merged in a previous run")
    ap.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    return ap


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = _build_parser().parse_args(argv)
    if args.all_urls:
        args.include = []
    elif args.include is None:
        args.include = list(URL_INCLUDE)

    policy = RetryPolicy(max_attempts=max(1, args.max_retries), backoff_ms=args.backoff_ms, retry_all_errors=args.retry_404)
    scheduler = CrawlScheduler(args.workers, args.interval, progress=not args.no_progress)

    def _set_shutdown(*_):
        logger.info("SIGTERM/SIGINT received; finishing in-flight pages and exiting.")
        scheduler.stop()

    previous = {sig: signal.signal(sig, _set_shutdown) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        summary = asyncio.run(_run(args, scheduler, policy))
    except SitemapError as e:
        logger.error("Fatal: %s", e)
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    summary.log()
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
