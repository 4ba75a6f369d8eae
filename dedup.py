#!/usr/bin/env python3
"""
Per-feed deduplication index.

Maps item identity to record id for one feed, ordered oldest to newest by
the store's creation order. Built once at the start of a feed's processing
and updated in memory as records are created during the run.
"""

from collections import OrderedDict
from typing import Iterator, List, Optional, Tuple

from config import get_logger

logger = get_logger("dedup")


class DedupIndex:
    """Identity to record id mapping scoped to a single feed URL."""

    def __init__(self, feed_url: str, entries: Optional[List[Tuple[int, str]]] = None):
        self.feed_url = feed_url
        self._entries: "OrderedDict[str, int]" = OrderedDict()
        # Records sharing an identity with an older record of the same feed
        self.duplicates: List[int] = []

        for record_id, identity in entries or []:
            if identity in self._entries:
                self.duplicates.append(record_id)
            else:
                self._entries[identity] = record_id

        if self.duplicates:
            logger.warning(
                f"Found {len(self.duplicates)} duplicate records for {feed_url}: {self.duplicates}"
            )

    @classmethod
    async def build(cls, db, feed_url: str) -> "DedupIndex":
        """Query existing records for the feed and build the index from them."""
        rows = await db.execute('list_feed_identities', feed_url=feed_url)
        index = cls(feed_url, [(int(record_id), str(identity)) for record_id, identity in rows])
        logger.debug(f"Built dedup index for {feed_url} with {len(index)} entries")
        return index

    def lookup(self, identity: str) -> Optional[int]:
        return self._entries.get(identity)

    def record(self, identity: str, record_id: int) -> None:
        """Add a newly created record at the newest end of the index."""
        if identity in self._entries:
            self._entries.move_to_end(identity)
        self._entries[identity] = record_id

    def forget(self, identity: str) -> None:
        self._entries.pop(identity, None)

    def oldest_first(self) -> List[Tuple[str, int]]:
        return list(self._entries.items())

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)
