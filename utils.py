#!/usr/bin/env python3
"""
Utility functions for the feed synchronization engine.

Shared helpers used by the extractor, image store and scheduler: URL
validation and sanitizing, tag stripping, title synthesis and filename
handling.
"""

import re
from typing import Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

TITLE_MAX_LENGTH = 50
ELLIPSIS = "..."

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f-\x9f]')
_WHITESPACE = re.compile(r'\s+')


def validate_url(url: Optional[str]) -> bool:
    """Validate if a string is a properly formatted absolute http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url or _WHITESPACE.search(url):
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        return False
    return '.' in parsed.hostname or parsed.hostname == 'localhost'


def sanitize_url(url: Optional[str], base_url: Optional[str] = None) -> Optional[str]:
    """Clean a URL pulled out of untrusted markup.

    Removes surrounding whitespace and control characters, upgrades
    protocol-relative references to https, and resolves relative references
    against ``base_url`` when one is given. Returns None for anything that is
    not an http(s) URL afterwards.
    """
    if not url or not isinstance(url, str):
        return None
    cleaned = _CONTROL_CHARS.sub('', url).strip()
    if not cleaned:
        return None
    # Encoded spaces are valid in a URL, raw ones are not
    cleaned = cleaned.replace(' ', '%20')
    if cleaned.startswith('//'):
        cleaned = f"https:{cleaned}"
    if not cleaned.lower().startswith(('http://', 'https://')):
        if not base_url or cleaned.lower().startswith(('javascript:', 'data:', 'vbscript:')):
            return None
        try:
            cleaned = urljoin(base_url, cleaned)
        except ValueError:
            return None
    if not cleaned.lower().startswith(('http://', 'https://')):
        return None
    return cleaned


def strip_tags(html_content: Optional[str]) -> str:
    """Return the plain text of an HTML fragment with whitespace collapsed."""
    if not html_content:
        return ""
    if '<' not in html_content and '&' not in html_content:
        return _WHITESPACE.sub(' ', html_content).strip()
    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = soup.get_text(separator=' ')
    return _WHITESPACE.sub(' ', text).strip()


def synthesize_title(text: Optional[str], max_length: int = TITLE_MAX_LENGTH, ellipsis: str = ELLIPSIS) -> str:
    """Build a title of at most ``max_length`` characters from body text.

    Whole words are appended while the title plus ellipsis still fits; the
    ellipsis is added only when words were dropped. Text that already fits is
    returned unchanged. A single word longer than the limit is cut at
    ``max_length - len(ellipsis)`` characters, the only case where a word is split.
    """
    if not text:
        return ""
    text = _WHITESPACE.sub(' ', text).strip()
    if len(text) <= max_length:
        return text

    words = text.split(' ')
    budget = max_length - len(ellipsis)
    if len(words[0]) > budget:
        return words[0][:budget] + ellipsis

    title = words[0]
    for word in words[1:]:
        candidate = f"{title} {word}"
        if len(candidate) > budget:
            break
        title = candidate
    return title + ellipsis


def safe_filename(filename: str, max_length: int = 255) -> str:
    """Convert a string to a safe filename by removing/replacing problematic characters.

    Args:
        filename: The original filename string
        max_length: Maximum allowed length for the filename

    Returns:
        A sanitized filename safe for filesystem use
    """
    if not filename:
        return "untitled"

    safe_name = re.sub(r'[<>:"/\\|?*]', '_', filename)
    safe_name = _CONTROL_CHARS.sub('', safe_name)
    safe_name = safe_name.strip('. ')

    if not safe_name:
        return "untitled"

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('. ')

    return safe_name


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
