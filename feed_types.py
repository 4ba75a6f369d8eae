"""Shared feed and item data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional

DEFAULT_MAX_ITEMS = 10
DEFAULT_POLL_INTERVAL_MINUTES = 60


@dataclass(frozen=True)
class FeedConfig:
    """One configured feed, loaded fresh from feeds.yaml at the start of each run."""

    url: str
    author_id: str
    max_items: int = DEFAULT_MAX_ITEMS
    poll_interval_minutes: int = DEFAULT_POLL_INTERVAL_MINUTES
    tags: FrozenSet[str] = frozenset()
    slug: Optional[str] = None

    @property
    def label(self) -> str:
        return self.slug or self.url or "<unnamed>"


@dataclass(frozen=True)
class Enclosure:
    url: str
    type: Optional[str] = None


@dataclass(frozen=True)
class RawFeedItem:
    """An item as produced by feed retrieval, before any normalization.

    ``content`` is the content-encoded body and ``description`` the summary;
    both are raw markup. ``thumbnails`` holds media extension URLs in feed order.
    """

    guid: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    published: Optional[datetime] = None
    description: Optional[str] = None
    content: Optional[str] = None
    enclosures: List[Enclosure] = field(default_factory=list)
    thumbnails: List[str] = field(default_factory=list)
    guid_is_permalink: bool = False


@dataclass(frozen=True)
class ExtractedItemData:
    """Normalized fields ready for record creation."""

    title: Optional[str]
    date: datetime
    excerpt: Optional[str] = None
    body: Optional[str] = None
    link: Optional[str] = None
    thumbnail_url: Optional[str] = None
