#!/usr/bin/env python3
"""Common error types shared across modules.

Each collaborator (feed retrieval, record store, image storage) raises its own
exception type tagged with a ``kind`` so callers can contain failures at the
smallest meaningful scope without inspecting messages.
"""

from typing import Optional


class FetchError(Exception):
    """Raised when a feed cannot be retrieved or parsed.

    Attributes:
        url: Feed URL that failed.
        kind: One of ``network``, ``timeout``, ``http``, ``parse``.
        status: HTTP status code when ``kind == 'http'``.
    """

    def __init__(self, url: str, kind: str, message: str = "", status: Optional[int] = None):
        super().__init__(message or f"{kind} error fetching {url}")
        self.url = url
        self.kind = kind
        self.status = status


class StoreError(Exception):
    """Raised when a record store operation fails.

    Attributes:
        operation: Name of the queued database operation.
    """

    def __init__(self, operation: str, message: str = ""):
        super().__init__(message or f"Store operation {operation} failed")
        self.operation = operation


class ImageError(Exception):
    """Raised when a cover image cannot be downloaded or attached.

    Attributes:
        url: Image URL.
        kind: One of ``download``, ``http``, ``content_type``, ``too_large``, ``write``, ``attach``.
    """

    def __init__(self, url: str, kind: str, message: str = ""):
        super().__init__(message or f"{kind} error for image {url}")
        self.url = url
        self.kind = kind


__all__ = ["FetchError", "StoreError", "ImageError"]
