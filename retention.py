#!/usr/bin/env python3
"""
Count-based retention for imported records.

Keeps the newest ``max_items`` records of a feed and permanently deletes the
rest, oldest first. Duplicate records found while building the feed's dedup
index are removed before the capacity check.
"""

from typing import Optional

from config import get_logger
from dedup import DedupIndex
from diagnostics import DiagnosticKind, DiagnosticSink, Severity
from errors import StoreError
from telemetry import trace_span

logger = get_logger("retention")


class RetentionPruner:
    """Deletes the oldest excess records of a feed."""

    def __init__(self, db, images=None, diagnostics: Optional[DiagnosticSink] = None):
        self.db = db
        self.images = images
        self.diagnostics = diagnostics or DiagnosticSink()

    async def _delete(self, feed_url: str, record_id: int, identity: Optional[str] = None) -> bool:
        images = []
        try:
            if self.images is not None:
                images = await self.db.execute('list_record_images', record_id=record_id)
            deleted = await self.db.execute('delete_record', record_id=record_id)
        except StoreError as e:
            deleted = False
            detail = str(e)
        else:
            detail = None if deleted else "delete_record returned False"

        # Files go only with their record; a surviving record keeps its cover
        if deleted and images:
            await self.images.remove_files(images)

        if not deleted:
            self.diagnostics.emit(
                Severity.ERROR,
                DiagnosticKind.PRUNE_FAILED,
                f"Could not delete record {record_id}",
                feed_url=feed_url,
                item_id=identity,
                detail=detail,
            )
        return deleted

    @trace_span(
        "retention.prune",
        tracer_name="retention",
        attr_from_args=lambda self, feed_url, index, max_items: {
            "feed.url": feed_url,
            "retention.max_items": max_items,
            "retention.current": len(index),
        },
    )
    async def prune(self, feed_url: str, index: DedupIndex, max_items: int) -> int:
        """Delete records so that at most ``max_items`` remain for the feed.

        The index is updated in place. A failed deletion is reported and the
        remaining excess records are still processed.

        Returns:
            Number of records deleted.
        """
        deleted_count = 0

        for record_id in list(index.duplicates):
            self.diagnostics.emit(
                Severity.WARNING,
                DiagnosticKind.DUPLICATE_RECORD,
                f"Removing duplicate record {record_id}",
                feed_url=feed_url,
            )
            if await self._delete(feed_url, record_id):
                index.duplicates.remove(record_id)
                deleted_count += 1

        excess = len(index) - max_items
        if excess <= 0:
            logger.debug(f"No pruning needed for {feed_url}: {len(index)} <= {max_items}")
            return deleted_count

        logger.info(f"Pruning {excess} oldest records from {feed_url} (limit {max_items})")
        for identity, record_id in index.oldest_first()[:excess]:
            if await self._delete(feed_url, record_id, identity):
                index.forget(identity)
                deleted_count += 1

        return deleted_count
