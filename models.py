#!/usr/bin/env python3
"""
Database models and operations for the Feed Importer.

This module contains the SQLite record store. All operations run on a single
connection owned by a worker coroutine and are submitted through
``DatabaseQueue.execute(operation_name, **params)``, which keeps access
sequential without explicit locking.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, Iterable, List, Optional, Any, Tuple

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span

logger = get_logger("models")


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='records'")
        records_table_exists = cursor.fetchone() is not None

        if not records_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


class DatabaseQueue:
    """A queue for database operations to ensure sequential access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any callers still waiting on an operation
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")

        initialize_database(self.conn)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation.

        Raises:
            StoreError: if the worker is not running or the operation failed.
        """
        if not self.running:
            raise StoreError(operation_name, "Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "No result produced"})
            if "error" in result:
                raise StoreError(operation_name, result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed fetch state
    def get_feed_state(self, url: str) -> Dict[str, Any]:
        """Return the conditional request headers and error tracking for a feed."""
        empty = {'etag': None, 'last_modified': None, 'last_fetched': 0, 'error_count': 0, 'last_error': None}
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT etag, last_modified, last_fetched, error_count, last_error FROM feeds WHERE url = ?",
                (url,),
            )
            row = cursor.fetchone()
            if not row:
                return empty
            return {
                'etag': row['etag'],
                'last_modified': row['last_modified'],
                'last_fetched': row['last_fetched'] or 0,
                'error_count': row['error_count'] or 0,
                'last_error': row['last_error'],
            }
        except Error as e:
            logger.error(f"Error reading state for feed {url}: {e}")
            return empty

    def update_feed_title(self, url: str, title: str) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feeds SET title = ? WHERE url = ?", (title, url))
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error updating feed title for {url}: {e}")
            return False

    def record_fetch_success(self, url: str) -> bool:
        """Bump last_fetched and clear error tracking."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("INSERT OR IGNORE INTO feeds (url, last_fetched) VALUES (?, 0)", (url,))
            cursor.execute(
                "UPDATE feeds SET last_fetched = ?, error_count = 0, last_error = NULL WHERE url = ?",
                (int(time()), url),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error recording fetch success for {url}: {e}")
            return False

    def save_cache_headers(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> bool:
        """Store the validators sent with the next conditional request for a feed."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("INSERT OR IGNORE INTO feeds (url, last_fetched) VALUES (?, 0)", (url,))
            cursor.execute(
                "UPDATE feeds SET etag = ?, last_modified = ? WHERE url = ?",
                (etag, last_modified, url),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error saving cache headers for {url}: {e}")
            return False

    def record_fetch_error(self, url: str, last_error: str) -> bool:
        """Increment the error counter for a feed. Status reporting only."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("INSERT OR IGNORE INTO feeds (url, last_fetched) VALUES (?, 0)", (url,))
            cursor.execute(
                "UPDATE feeds SET error_count = COALESCE(error_count, 0) + 1, last_error = ?, last_fetched = ? WHERE url = ?",
                (last_error, int(time()), url),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error recording fetch error for {url}: {e}")
            return False

    def list_feeds(self) -> List[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT url, title, last_fetched, error_count, last_error FROM feeds ORDER BY url")
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing feeds: {e}")
            return []

    # Record operations
    def create_record(
        self,
        feed_url: str,
        item_id: str,
        title: str,
        date: int,
        author_id: Optional[str] = None,
        excerpt: Optional[str] = None,
        body: Optional[str] = None,
        link: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert a record and its metadata in one transaction.

        Returns:
            The new record id. Raises on failure so the caller sees a StoreError.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO records (feed_url, item_id, author_id, title, excerpt, body, link, date, created)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (feed_url, item_id, author_id, title, excerpt, body, link, int(date), int(time())),
            )
            record_id = cursor.lastrowid
            for key, value in (metadata or {}).items():
                cursor.execute(
                    "INSERT OR REPLACE INTO record_meta (record_id, key, value) VALUES (?, ?, ?)",
                    (record_id, key, None if value is None else str(value)),
                )
            self.conn.commit()
            return record_id
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def set_record_meta(self, record_id: int, key: str, value: Any) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM records WHERE id = ?", (record_id,))
            if cursor.fetchone() is None:
                raise ValueError(f"No record with id {record_id}")
            cursor.execute(
                "INSERT OR REPLACE INTO record_meta (record_id, key, value) VALUES (?, ?, ?)",
                (record_id, key, None if value is None else str(value)),
            )
            self.conn.commit()
            return True
        finally:
            cursor.close()

    def get_record_meta(self, record_id: int, key: str) -> Optional[str]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM record_meta WHERE record_id = ? AND key = ?", (record_id, key))
            row = cursor.fetchone()
            return row['value'] if row else None
        except Error as e:
            logger.error(f"Error reading metadata {key} for record {record_id}: {e}")
            return None

    def set_record_tags(self, record_id: int, tags: Iterable[str]) -> int:
        """Replace the tag set of a record, creating tags as needed.

        Returns:
            Number of tags assigned.
        """
        names = sorted({str(tag).strip() for tag in tags if str(tag).strip()})
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM records WHERE id = ?", (record_id,))
            if cursor.fetchone() is None:
                raise ValueError(f"No record with id {record_id}")
            cursor.execute("DELETE FROM record_tags WHERE record_id = ?", (record_id,))
            for name in names:
                cursor.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
                cursor.execute("SELECT id FROM tags WHERE name = ?", (name,))
                tag_id = cursor.fetchone()['id']
                cursor.execute(
                    "INSERT OR IGNORE INTO record_tags (record_id, tag_id) VALUES (?, ?)",
                    (record_id, tag_id),
                )
            self.conn.commit()
            return len(names)
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def get_record_tags(self, record_id: int) -> List[str]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT t.name FROM tags t
                JOIN record_tags rt ON rt.tag_id = t.id
                WHERE rt.record_id = ?
                ORDER BY t.name
                """,
                (record_id,),
            )
            return [row['name'] for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error reading tags for record {record_id}: {e}")
            return []

    def list_record_ids(self, feed_url: str) -> List[int]:
        """Record ids for a feed, oldest first (ascending creation order)."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT id FROM records WHERE feed_url = ? ORDER BY id ASC", (feed_url,))
        return [row['id'] for row in cursor.fetchall()]

    def list_feed_identities(self, feed_url: str) -> List[Tuple[int, str]]:
        """(record id, item identity) pairs for a feed, oldest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT id, item_id FROM records WHERE feed_url = ? ORDER BY id ASC",
            (feed_url,),
        )
        return [(row['id'], row['item_id']) for row in cursor.fetchall()]

    def get_record(self, record_id: int) -> Optional[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM records WHERE id = ?", (record_id,))
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error reading record {record_id}: {e}")
            return None

    def delete_record(self, record_id: int) -> bool:
        """Permanently delete a record with its metadata, tag links and image rows."""
        cursor = None
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM record_meta WHERE record_id = ?", (record_id,))
            cursor.execute("DELETE FROM record_tags WHERE record_id = ?", (record_id,))
            cursor.execute("DELETE FROM images WHERE record_id = ?", (record_id,))
            cursor.execute("DELETE FROM records WHERE id = ?", (record_id,))
            deleted = cursor.rowcount > 0
            self.conn.commit()
            if not deleted:
                logger.warning(f"No record found with ID {record_id} to delete")
            return deleted
        except Error as e:
            self.conn.rollback()
            logger.error(f"Error deleting record {record_id}: {e}")
            return False
        finally:
            if cursor:
                cursor.close()

    def count_records(self, feed_url: Optional[str] = None) -> int:
        try:
            cursor = self.conn.cursor()
            if feed_url is None:
                cursor.execute("SELECT COUNT(*) FROM records")
            else:
                cursor.execute("SELECT COUNT(*) FROM records WHERE feed_url = ?", (feed_url,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        except Error as e:
            logger.error(f"Error counting records: {e}")
            return 0

    # Image operations
    def save_cover_image(
        self,
        record_id: int,
        url: str,
        path: str,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> int:
        """Register a downloaded image and set it as the record's cover."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM records WHERE id = ?", (record_id,))
            if cursor.fetchone() is None:
                raise ValueError(f"No record with id {record_id}")
            cursor.execute(
                "INSERT INTO images (record_id, url, path, content_type, size, created) VALUES (?, ?, ?, ?, ?, ?)",
                (record_id, url, path, content_type, size, int(time())),
            )
            image_id = cursor.lastrowid
            cursor.execute("UPDATE records SET cover_image_id = ? WHERE id = ?", (image_id, record_id))
            self.conn.commit()
            return image_id
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def list_record_images(self, record_id: int) -> List[Dict[str, Any]]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT id, url, path, content_type, size FROM images WHERE record_id = ? ORDER BY id",
                (record_id,),
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing images for record {record_id}: {e}")
            return []

    def get_status(self) -> Dict[str, Any]:
        """Per-feed record counts plus totals, for the status command."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT feed_url, COUNT(*) AS records FROM records GROUP BY feed_url")
        per_feed = {row['feed_url']: row['records'] for row in cursor.fetchall()}
        cursor.execute("SELECT COUNT(*) FROM images")
        total_images = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM tags")
        total_tags = cursor.fetchone()[0]
        return {
            'total_records': sum(per_feed.values()),
            'total_images': total_images,
            'total_tags': total_tags,
            'records_per_feed': per_feed,
            'feeds': [{**feed, 'records': per_feed.get(feed['url'], 0)} for feed in self.list_feeds()],
        }
