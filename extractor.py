#!/usr/bin/env python3
"""
Item identity, image resolution and field extraction.

Turns a ``RawFeedItem`` into the values the synchronizer needs: a stable
feed-scoped identity for deduplication, a thumbnail URL, and the normalized
``ExtractedItemData`` used for record creation. Extraction never fails; each
field has a documented fallback.
"""

from datetime import datetime, timezone
from hashlib import md5
from typing import Optional

from bs4 import BeautifulSoup

from config import get_logger
from diagnostics import DiagnosticKind, DiagnosticSink, Severity
from feed_types import ExtractedItemData, RawFeedItem
from utils import sanitize_url, strip_tags, synthesize_title, validate_url

logger = get_logger("extractor")


def resolve_identity(item: RawFeedItem) -> Optional[str]:
    """Return a stable identity for an item, or None when none can be derived.

    The feed-supplied guid wins verbatim. Without one, a permalink lets us
    derive an md5 over ``link|title|timestamp``; the same triple always yields
    the same identity so re-fetching an item deduplicates it.
    """
    guid = (item.guid or "").strip()
    if guid:
        return guid

    link = (item.link or "").strip()
    if not link:
        return None

    timestamp = str(int(item.published.timestamp())) if item.published else ""
    combined = f"{link}|{item.title or ''}|{timestamp}"
    return md5(combined.encode("utf-8")).hexdigest()


def _first_inline_image(markup: Optional[str]) -> Optional[str]:
    if not markup or '<img' not in markup.lower():
        return None
    soup = BeautifulSoup(markup, 'html.parser')
    img = soup.find('img', src=True)
    if img is None:
        return None
    return str(img['src'])


def resolve_image(
    item: RawFeedItem,
    diagnostics: Optional[DiagnosticSink] = None,
    feed_url: Optional[str] = None,
    item_id: Optional[str] = None,
) -> Optional[str]:
    """Locate a thumbnail URL for an item.

    Priority: media thumbnail extension, first ``image*`` enclosure, first
    ``<img src>`` in the content body (falling back to the description). Only
    the inline markup source is re-sanitized. A candidate that fails URL
    validation is reported and treated as no thumbnail.
    """
    candidate: Optional[str] = None
    source = None

    for thumbnail in item.thumbnails:
        if thumbnail and thumbnail.strip():
            candidate = thumbnail.strip()
            source = "media:thumbnail"
            break

    if candidate is None:
        for enclosure in item.enclosures:
            if isinstance(enclosure.type, str) and enclosure.type.lower().startswith('image') and enclosure.url:
                candidate = enclosure.url.strip()
                source = "enclosure"
                break

    if candidate is None:
        raw_src = _first_inline_image(item.content) or _first_inline_image(item.description)
        if raw_src is not None:
            candidate = sanitize_url(raw_src, base_url=item.link) or raw_src.strip()
            source = "inline"

    if candidate is None:
        logger.debug(f"No thumbnail found for item: {item.title}")
        return None

    if not validate_url(candidate):
        message = f"Discarding invalid thumbnail URL from {source}"
        if diagnostics is not None:
            diagnostics.emit(
                Severity.WARNING,
                DiagnosticKind.INVALID_THUMBNAIL,
                message,
                feed_url=feed_url,
                item_id=item_id,
                detail=candidate[:200],
            )
        else:
            logger.warning(f"{message}: {candidate[:200]}")
        return None

    logger.debug(f"Thumbnail URL found via {source}: {candidate}")
    return candidate


def _link_for(item: RawFeedItem) -> Optional[str]:
    link = (item.link or "").strip()
    if link:
        return link
    guid = (item.guid or "").strip()
    if guid and item.guid_is_permalink:
        return guid
    return None


def extract_fields(
    item: RawFeedItem,
    diagnostics: Optional[DiagnosticSink] = None,
    feed_url: Optional[str] = None,
    item_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExtractedItemData:
    """Derive record fields from a raw item.

    - date: feed publish date, else the current time
    - excerpt/body: read independently; a missing one is backfilled from the
      other; both stay empty when the feed has neither. The excerpt is plain text
      and a description without any text falls back to the content's text.
    - title: feed title with tags stripped, else synthesized from the excerpt;
      None when neither exists (the caller skips the item)
    - link: item link, else a permalink guid
    - thumbnail_url: see resolve_image()
    """
    date = item.published
    if date is None:
        date = now or datetime.now(timezone.utc)
    elif date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    description = item.description if item.description and item.description.strip() else None
    content = item.content if item.content and item.content.strip() else None
    body = content or description

    excerpt = None
    for source in (description, content):
        excerpt = (strip_tags(source) if source else None) or None
        if excerpt:
            break

    title = strip_tags(item.title) if item.title else ""
    if not title and excerpt:
        title = synthesize_title(excerpt)
        logger.debug(f"Synthesized title from excerpt: {title}")

    return ExtractedItemData(
        title=title or None,
        date=date,
        excerpt=excerpt,
        body=body,
        link=_link_for(item),
        thumbnail_url=resolve_image(item, diagnostics, feed_url=feed_url, item_id=item_id),
    )
