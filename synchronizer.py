#!/usr/bin/env python3
"""
Feed synchronization.

For each configured feed: build the dedup index, fetch, import new items as
records (metadata, tags, optional cover image), then prune the feed down to
its ``max_items``. Failures are contained at item or feed scope, so ``run()``
always attempts every feed exactly once and never raises for a single feed.

A fetch's ETag/Last-Modified are committed only after all of its items were
imported without a store failure. An aborted, cancelled or partly failed feed
is fetched unconditionally next time and re-deduplicated.
"""

from asyncio import Semaphore, gather
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import List, Optional

from config import config, get_logger
from dedup import DedupIndex
from diagnostics import Diagnostic, DiagnosticKind, DiagnosticSink, Severity
from errors import FetchError, ImageError, StoreError
from extractor import extract_fields, resolve_identity
from feed_types import FeedConfig, RawFeedItem
from retention import RetentionPruner
from telemetry import trace_span
from utils import format_duration

logger = get_logger("synchronizer")

# Metadata keys written for every imported record
META_FEED_URL = "feed_url"
META_ITEM_ID = "item_id"
META_ITEM_LINK = "item_link"


@dataclass
class FeedSyncResult:
    feed_url: str
    label: str
    created: int = 0
    existing: int = 0
    skipped: int = 0
    store_failures: int = 0
    pruned: int = 0
    fetch_failed: bool = False
    not_modified: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.fetch_failed and self.error is None


@dataclass
class SyncReport:
    results: List[FeedSyncResult] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    started: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0

    @property
    def created(self) -> int:
        return sum(r.created for r in self.results)

    @property
    def pruned(self) -> int:
        return sum(r.pruned for r in self.results)

    @property
    def failed(self) -> List[FeedSyncResult]:
        return [r for r in self.results if not r.ok]

    def summary(self) -> str:
        return (
            f"{len(self.results)} feeds, {self.created} created, {self.pruned} pruned, "
            f"{len(self.failed)} failed in {format_duration(self.duration)}"
        )


class FeedSynchronizer:
    """Imports items from configured feeds into the record store."""

    def __init__(self, db, retriever, images=None, diagnostics: Optional[DiagnosticSink] = None,
                 concurrency: Optional[int] = None):
        self.db = db
        self.retriever = retriever
        self.images = images
        self.diagnostics = diagnostics or DiagnosticSink(Severity.parse(config.DIAGNOSTIC_LEVEL))
        self.concurrency = max(int(concurrency or config.FEED_CONCURRENCY), 1)
        self.pruner = RetentionPruner(db, images=images, diagnostics=self.diagnostics)

    async def run(self, feed_configs: List[FeedConfig]) -> SyncReport:
        """Synchronize every feed once. Feeds run in parallel up to ``concurrency``."""
        report = SyncReport()
        started = monotonic()
        first_diagnostic = len(self.diagnostics.records)
        logger.info(f"Starting sync of {len(feed_configs)} feeds")

        semaphore = Semaphore(self.concurrency)

        async def sync_with_semaphore(feed: FeedConfig) -> FeedSyncResult:
            async with semaphore:
                return await self._sync_contained(feed)

        report.results = list(await gather(*(sync_with_semaphore(feed) for feed in feed_configs)))
        report.duration = monotonic() - started
        report.diagnostics = list(self.diagnostics.records[first_diagnostic:])
        logger.info(f"Sync finished: {report.summary()}")
        return report

    async def _sync_contained(self, feed: FeedConfig) -> FeedSyncResult:
        try:
            return await self.sync_feed(feed)
        except Exception as e:
            self.diagnostics.emit(
                Severity.ERROR,
                DiagnosticKind.FEED_FAILED,
                f"Feed {feed.label} aborted",
                feed_url=feed.url or None,
                detail=f"{e.__class__.__name__}: {e}",
            )
            logger.exception(f"Unexpected error while syncing {feed.label}")
            return FeedSyncResult(feed_url=feed.url, label=feed.label, error=str(e) or e.__class__.__name__)

    @trace_span(
        "sync_feed",
        tracer_name="synchronizer",
        attr_from_args=lambda self, feed: {"feed.url": feed.url, "feed.max_items": feed.max_items},
    )
    async def sync_feed(self, feed: FeedConfig) -> FeedSyncResult:
        """Fetch one feed, import its new items and prune old records."""
        result = FeedSyncResult(feed_url=feed.url, label=feed.label)

        if not feed.url or not feed.url.strip():
            self.diagnostics.emit(
                Severity.WARNING,
                DiagnosticKind.MISSING_URL,
                f"Skipping feed entry {feed.label} without a URL",
            )
            result.error = "missing url"
            return result

        index = await DedupIndex.build(self.db, feed.url)

        try:
            handle = await self.retriever.fetch(feed.url)
        except FetchError as e:
            self.diagnostics.emit(
                Severity.ERROR,
                DiagnosticKind.FETCH_FAILED,
                f"Could not fetch feed ({e.kind})",
                feed_url=feed.url,
                detail=str(e),
            )
            result.fetch_failed = True
            result.error = str(e)
            return result

        result.not_modified = bool(getattr(handle, 'not_modified', False))
        items = handle.items(feed.max_items)
        if not items and not result.not_modified:
            self.diagnostics.emit(
                Severity.INFO,
                DiagnosticKind.FEED_EMPTY,
                "Feed returned no items",
                feed_url=feed.url,
            )

        for item in items:
            await self._import_item(feed, item, index, result)

        if result.store_failures:
            logger.info(
                f"Feed {feed.label}: keeping previous cache headers so {result.store_failures} "
                f"failed items are offered again on the next run"
            )
        else:
            await self.retriever.commit(handle)

        result.pruned = await self.pruner.prune(feed.url, index, feed.max_items)

        logger.info(
            f"Feed {feed.label}: {result.created} created, {result.existing} existing, "
            f"{result.skipped} skipped, {result.pruned} pruned"
        )
        return result

    async def _import_item(self, feed: FeedConfig, item: RawFeedItem, index: DedupIndex,
                           result: FeedSyncResult) -> Optional[int]:
        identity = resolve_identity(item)
        if identity is None:
            self.diagnostics.emit(
                Severity.WARNING,
                DiagnosticKind.MISSING_IDENTITY,
                "Skipping item without guid or link",
                feed_url=feed.url,
                detail=(item.title or "")[:200] or None,
            )
            result.skipped += 1
            return None

        if identity in index:
            result.existing += 1
            return None

        data = extract_fields(item, self.diagnostics, feed_url=feed.url, item_id=identity)
        if not data.title:
            self.diagnostics.emit(
                Severity.WARNING,
                DiagnosticKind.MISSING_TITLE,
                "Skipping item without title or text to build one from",
                feed_url=feed.url,
                item_id=identity,
            )
            result.skipped += 1
            return None

        try:
            record_id = await self.db.execute(
                'create_record',
                feed_url=feed.url,
                item_id=identity,
                title=data.title,
                date=int(data.date.timestamp()),
                author_id=feed.author_id,
                excerpt=data.excerpt,
                body=data.body,
                link=data.link,
                metadata={
                    META_FEED_URL: feed.url,
                    META_ITEM_ID: identity,
                    META_ITEM_LINK: data.link,
                },
            )
        except StoreError as e:
            self.diagnostics.emit(
                Severity.ERROR,
                DiagnosticKind.STORE_FAILED,
                "Could not create record",
                feed_url=feed.url,
                item_id=identity,
                detail=str(e),
            )
            result.skipped += 1
            result.store_failures += 1
            return None

        index.record(identity, record_id)
        result.created += 1

        if feed.tags:
            try:
                await self.db.execute('set_record_tags', record_id=record_id, tags=sorted(feed.tags))
            except StoreError as e:
                self.diagnostics.emit(
                    Severity.ERROR,
                    DiagnosticKind.TAGS_FAILED,
                    f"Could not tag record {record_id}",
                    feed_url=feed.url,
                    item_id=identity,
                    detail=str(e),
                )

        if data.thumbnail_url and self.images is not None:
            try:
                await self.images.download_and_attach(data.thumbnail_url, record_id)
            except ImageError as e:
                self.diagnostics.emit(
                    Severity.WARNING,
                    DiagnosticKind.IMAGE_FAILED,
                    f"Record {record_id} kept without cover image ({e.kind})",
                    feed_url=feed.url,
                    item_id=identity,
                    detail=str(e),
                )

        return record_id
