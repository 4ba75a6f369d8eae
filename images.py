#!/usr/bin/env python3
"""
Cover image download and storage.

Images are fetched with aiohttp, written under ``MEDIA_DIR`` as
``<record_id>-<filename>`` and registered as the record's cover in the
record store. Every failure surfaces as an ``ImageError``.
"""

import mimetypes
import os
from asyncio import TimeoutError, get_event_loop
from functools import partial
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import ImageError, StoreError
from telemetry import trace_span
from utils import safe_filename

logger = get_logger("images")

CHUNK_SIZE = 64 * 1024


def _write_file(directory: str, path: str, data: bytes) -> None:
    os.makedirs(directory, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)


def image_filename(url: str, content_type: Optional[str] = None) -> str:
    """Derive a local filename from the last segment of the image URL path."""
    name = os.path.basename(unquote(urlparse(url).path or ""))
    name = safe_filename(name) if name else ""
    if not name or name == "untitled":
        name = "image"
    if not os.path.splitext(name)[1] and content_type:
        extension = mimetypes.guess_extension(content_type.split(';')[0].strip())
        if extension:
            name += extension
    return name


class ImageStore:
    """Downloads images and attaches them to records as covers."""

    def __init__(self, session: ClientSession, db, media_dir: Optional[str] = None):
        self.session = session
        self.db = db
        self.media_dir = media_dir or config.MEDIA_DIR

    async def run_in_executor(self, func, *args) -> Any:
        """Run blocking file I/O in the default thread pool."""
        loop = get_event_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _download(self, url: str):
        timeout = ClientTimeout(total=max(int(config.IMAGE_TIMEOUT), 1))
        limit = config.MAX_IMAGE_BYTES
        try:
            async with self.session.get(url, headers={'User-Agent': config.USER_AGENT}, timeout=timeout) as response:
                if response.status != 200:
                    raise ImageError(url, 'http', f"HTTP {response.status}")

                content_type = (response.headers.get('Content-Type') or '').lower()
                if not content_type.startswith('image/'):
                    raise ImageError(url, 'content_type', f"Unexpected content type '{content_type or 'none'}'")

                declared = response.headers.get('Content-Length')
                if declared and declared.isdigit() and int(declared) > limit:
                    raise ImageError(url, 'too_large', f"{declared} bytes exceeds limit of {limit}")

                data = bytearray()
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    data.extend(chunk)
                    if len(data) > limit:
                        raise ImageError(url, 'too_large', f"More than {limit} bytes")
                return bytes(data), content_type.split(';')[0].strip()
        except TimeoutError as e:
            raise ImageError(url, 'download', f"Timed out after {config.IMAGE_TIMEOUT}s") from e
        except ClientError as e:
            raise ImageError(url, 'download', f"{e.__class__.__name__} {e}") from e

    @trace_span(
        "image.download_and_attach",
        tracer_name="images",
        attr_from_args=lambda self, url, record_id: {"http.url": url, "record.id": record_id},
    )
    async def download_and_attach(self, url: str, record_id: int) -> int:
        """Download ``url`` and set it as the cover image of ``record_id``.

        Returns:
            The image id.

        Raises:
            ImageError: on download, validation, write or attach failure. A
            file written before a failed attach is removed again.
        """
        data, content_type = await self._download(url)

        path = os.path.join(self.media_dir, f"{record_id}-{image_filename(url, content_type)}")
        try:
            await self.run_in_executor(_write_file, self.media_dir, path, data)
        except OSError as e:
            raise ImageError(url, 'write', str(e)) from e

        try:
            image_id = await self.db.execute(
                'save_cover_image',
                record_id=record_id,
                url=url,
                path=path,
                content_type=content_type,
                size=len(data),
            )
        except StoreError as e:
            await self.run_in_executor(self._remove_file, path)
            raise ImageError(url, 'attach', str(e)) from e

        logger.info(f"Attached cover image {path} ({len(data)} bytes) to record {record_id}")
        return image_id

    def _remove_file(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not remove image file {path}: {e}")
            return False

    async def remove_files(self, images: List[Dict[str, Any]]) -> int:
        """Delete the files of image rows from ``list_record_images``. Returns the number removed.

        Callers list the rows before deleting the record and only remove the
        files once the delete succeeded.
        """
        removed = 0
        for image in images:
            if image.get('path') and await self.run_in_executor(self._remove_file, image['path']):
                removed += 1
        if removed:
            logger.debug(f"Removed {removed} image files")
        return removed
