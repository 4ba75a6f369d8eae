#!/usr/bin/env python3
"""
RSS/Atom feed retrieval.

This module fetches a feed over HTTP with conditional request headers, parses
it with feedparser in a thread pool, and converts entries into ``RawFeedItem``
values. Failures are raised as ``FetchError``; nothing is retried within a run.
"""

from asyncio import get_event_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime, format_datetime
from functools import partial
from calendar import timegm
from typing import Any, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError, StoreError
from feed_types import Enclosure, RawFeedItem
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304

DATE_FIELDS = [
    'published',
    'updated',
    'created',
    'modified',
    'date',
    'pubDate',
    'pubdate',
    'issued',
]


def _get_entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    try:
        value = getattr(entry, field)
    except AttributeError:
        value = None

    if value is not None:
        return value

    getter = getattr(entry, 'get', None)
    if callable(getter):
        try:
            return getter(field)
        except KeyError:
            return None
    return None


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return int(timegm(time_struct))
    except (ValueError, TypeError, AttributeError, OSError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
    except (TypeError, ValueError, OverflowError):
        return None
    return None


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    custom_formats = [
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S %Z",
        "%d %b %Y %H:%M:%S",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%d",
    ]
    for fmt in custom_formats:
        try:
            dt = datetime.strptime(date_str.strip(), fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except (ValueError, TypeError):
            continue
    return None


def _date_value_to_timestamp(value: Any) -> Optional[int]:
    """Convert assorted date representations into a Unix timestamp."""
    if value in (None, ''):
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        timestamp = int(value)
        return timestamp if timestamp > 0 else None

    if isinstance(value, datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    if isinstance(value, (list, tuple)):
        try:
            # feedparser's *_parsed structs are UTC
            return int(datetime(*tuple(value)[:6], tzinfo=timezone.utc).timestamp())
        except (OverflowError, ValueError, TypeError):
            return None

    if isinstance(value, str):
        for parser in (_parse_with_email_utils, _parse_with_feedparser, _parse_with_custom_formats):
            timestamp = parser(value)
            if timestamp is not None:
                return timestamp

    return None


def parse_entry_date(entry) -> Optional[datetime]:
    """Return the publication date of an entry, or None when the feed has none.

    Tries the common date fields and their ``*_parsed`` variants in priority
    order. Undated entries are left undated; the extractor decides the fallback.
    """
    for field in DATE_FIELDS:
        for candidate in (field, f"{field}_parsed"):
            timestamp = _date_value_to_timestamp(_get_entry_value(entry, candidate))
            if timestamp:
                return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return None


def _first_content_value(entry) -> Optional[str]:
    content = _get_entry_value(entry, 'content')
    if not content:
        return None
    for content_item in content:
        value = content_item.get('value') if hasattr(content_item, 'get') else None
        if value:
            return value
    return None


def raw_item_from_entry(entry) -> RawFeedItem:
    """Convert a feedparser entry into a RawFeedItem."""
    enclosures: List[Enclosure] = []
    for enclosure in _get_entry_value(entry, 'enclosures') or []:
        url = enclosure.get('href') or enclosure.get('url')
        if url:
            enclosures.append(Enclosure(url=url, type=enclosure.get('type')))

    thumbnails: List[str] = []
    for thumbnail in _get_entry_value(entry, 'media_thumbnail') or []:
        url = thumbnail.get('url') if hasattr(thumbnail, 'get') else None
        if url:
            thumbnails.append(url)

    description = _get_entry_value(entry, 'summary') or _get_entry_value(entry, 'description')

    return RawFeedItem(
        guid=_get_entry_value(entry, 'id') or _get_entry_value(entry, 'guid'),
        title=_get_entry_value(entry, 'title'),
        link=_get_entry_value(entry, 'link'),
        published=parse_entry_date(entry),
        description=description,
        content=_first_content_value(entry),
        enclosures=enclosures,
        thumbnails=thumbnails,
        guid_is_permalink=bool(_get_entry_value(entry, 'guidislink')),
    )


class FeedHandle:
    """Result of a successful fetch: the feed's items in feed order.

    ``etag`` and ``last_modified`` are the validators of this response. They
    are only stored once the items were imported, see FeedRetriever.commit().
    """

    def __init__(self, url: str, items: Optional[List[RawFeedItem]] = None, title: Optional[str] = None,
                 not_modified: bool = False, etag: Optional[str] = None, last_modified: Optional[str] = None):
        self.url = url
        self.title = title
        self.not_modified = not_modified
        self.etag = etag
        self.last_modified = last_modified
        self._items = list(items or [])

    def items(self, limit: Optional[int] = None) -> List[RawFeedItem]:
        """Return at most ``limit`` items, preserving the feed's own ordering."""
        if limit is None:
            return list(self._items)
        return self._items[:max(limit, 0)]

    def __len__(self) -> int:
        return len(self._items)


class FeedRetriever:
    """Fetches and parses feeds. One attempt per call."""

    def __init__(self, session: ClientSession, db=None) -> None:
        self.session = session
        self.db = db
        self.executor = ThreadPoolExecutor()

    def _normalize_http_date(self, date_value: Optional[str]) -> Optional[str]:
        """Normalize HTTP date strings to RFC 7231 format (GMT)."""
        if not date_value:
            return None
        try:
            dt = parsedate_to_datetime(date_value)
            if not dt:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            dt = dt.astimezone(timezone.utc)
            return format_datetime(dt, usegmt=True)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
            return None

    async def _prepare_request_headers(self, url: str) -> dict:
        """Prepare HTTP headers for conditional requests."""
        headers = {'User-Agent': config.USER_AGENT}
        if self.db is None:
            return headers

        state = await self.db.execute('get_feed_state', url=url)
        etag = state.get('etag')
        last_modified = state.get('last_modified')

        if etag:
            # Quote unquoted ETags, keep weak ones as-is
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag
            logger.debug(f"Using If-None-Match: {etag} for {url}")

        if last_modified:
            normalized_last_modified = self._normalize_http_date(last_modified)
            if normalized_last_modified:
                headers['If-Modified-Since'] = normalized_last_modified
                logger.debug(f"Using If-Modified-Since: {normalized_last_modified} for {url}")
            else:
                logger.warning(
                    f"Invalid Last-Modified format for {url}, not sending header (stored value: {last_modified})"
                )

        return headers

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def parse(self, url: str, content: bytes) -> FeedHandle:
        """Parse feed bytes into a handle. Raises FetchError(kind='parse')."""
        feed = await self.run_in_executor(
            lambda c: feedparser.parse(c, sanitize_html=True, resolve_relative_uris=True), content
        )
        entries = feed.get('entries') or []

        if feed.get('bozo'):
            problem = feed.get('bozo_exception')
            if not entries:
                raise FetchError(url, 'parse', f"Unparseable feed: {problem}")
            logger.warning(f"Feed parsing warning for {url}: {problem}")
        elif not entries and not feed.get('version'):
            raise FetchError(url, 'parse', "Response is not an RSS or Atom feed")

        feed_type = feed.get('version') or "unknown"
        logger.info(f"Feed {url} parsed as {feed_type} format with {len(entries)} entries")

        title = feed.get('feed', {}).get('title')
        return FeedHandle(url, [raw_item_from_entry(entry) for entry in entries], title=title)

    async def _record_failure(self, error: FetchError) -> None:
        if self.db is None:
            return
        try:
            await self.db.execute('record_fetch_error', url=error.url, last_error=str(error))
        except StoreError as e:
            logger.error(f"Could not record fetch failure for {error.url}: {e}")

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch(self, url: str) -> FeedHandle:
        """Fetch and parse a feed.

        Returns:
            A FeedHandle; an empty one when the server answered 304.

        Raises:
            FetchError: on network, timeout, HTTP status or parse failures.
        """
        try:
            handle = await self._fetch(url)
        except FetchError as e:
            logger.error(f"Error fetching {url}: {e}")
            await self._record_failure(e)
            raise
        return handle

    async def _fetch(self, url: str) -> FeedHandle:
        headers = await self._prepare_request_headers(url)
        timeout = ClientTimeout(total=max(int(config.HTTP_TIMEOUT), 1))

        try:
            async with self.session.get(
                url,
                headers=headers,
                timeout=timeout,
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.info(f"Feed {url} not modified since last fetch")
                    if self.db is not None:
                        await self.db.execute('record_fetch_success', url=url)
                    return FeedHandle(url, not_modified=True)

                if response.status != HTTP_OK:
                    raise FetchError(url, 'http', f"HTTP {response.status}", status=response.status)

                new_etag = response.headers.get('ETag')
                new_last_modified = self._normalize_http_date(response.headers.get('Last-Modified'))
                content = await response.read()
        except TimeoutError as e:
            raise FetchError(url, 'timeout', f"Timed out after {config.HTTP_TIMEOUT}s") from e
        except ClientError as e:
            raise FetchError(url, 'network', self._format_client_error(e)) from e

        handle = await self.parse(url, content)
        handle.etag = new_etag
        handle.last_modified = new_last_modified

        if self.db is not None:
            await self.db.execute('record_fetch_success', url=url)
            if handle.title:
                await self.db.execute('update_feed_title', url=url, title=handle.title)

        return handle

    async def commit(self, handle: FeedHandle) -> bool:
        """Store the handle's validators so the next fetch is conditional.

        Call this only after every item of the handle was imported; a 304 on
        the next run means the items are not offered again.
        """
        if self.db is None or handle.not_modified:
            return False
        if not handle.etag and not handle.last_modified:
            return False
        try:
            saved = await self.db.execute(
                'save_cache_headers', url=handle.url, etag=handle.etag, last_modified=handle.last_modified
            )
        except StoreError as e:
            logger.error(f"Could not store cache headers for {handle.url}: {e}")
            return False
        if saved:
            logger.debug(f"Stored cache headers for {handle.url}")
        return bool(saved)

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        if self.executor:
            logger.debug("Shutting down thread pool executor...")
            try:
                await wait_for(
                    get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                    timeout=30.0,
                )
            except TimeoutError:
                logger.warning("Thread pool executor shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
        logger.info("FeedRetriever closed")
