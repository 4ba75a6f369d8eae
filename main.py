#!/usr/bin/env python3
"""
Feed Importer entry point.

Wires the record store, feed retriever, image store and synchronizer
together and exposes them on the command line:

- run: synchronize every configured feed once (optionally only some feeds)
- scheduled: keep synchronizing on the minimum configured poll interval
- status: show record counts and per-feed fetch state
- schedule-status: show the computed poll interval
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import StoreError
from feed_types import FeedConfig
from fetcher import FeedRetriever
from images import ImageStore
from models import DatabaseQueue
from scheduler import create_scheduler
from synchronizer import FeedSynchronizer, SyncReport
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")


def select_feeds(feeds: List[FeedConfig], only: Optional[List[str]] = None) -> List[FeedConfig]:
    """Keep the feeds whose slug or URL is listed in ``only`` (all feeds when empty)."""
    if not only:
        return feeds
    wanted = set(only)
    selected = [feed for feed in feeds if feed.url in wanted or (feed.slug and feed.slug in wanted)]
    unknown = wanted - {feed.url for feed in selected} - {feed.slug for feed in selected if feed.slug}
    if unknown:
        logger.warning(f"Unknown feeds requested: {', '.join(sorted(unknown))}")
    return selected


class FeedImportOrchestrator:
    """Owns the shared resources of a run: database worker, HTTP session and collaborators."""

    def __init__(self, db_path: Optional[str] = None, media_dir: Optional[str] = None,
                 config_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH
        self.media_dir = media_dir or config.MEDIA_DIR
        self.config_path = config_path
        self.db: Optional[DatabaseQueue] = None
        self.session: Optional[ClientSession] = None
        self.retriever: Optional[FeedRetriever] = None
        self.synchronizer: Optional[FeedSynchronizer] = None

    async def start(self) -> None:
        self.db = DatabaseQueue(self.db_path)
        await self.db.start()
        self.session = ClientSession()
        self.retriever = FeedRetriever(self.session, db=self.db)
        images = ImageStore(self.session, self.db, media_dir=self.media_dir)
        self.synchronizer = FeedSynchronizer(self.db, self.retriever, images=images)

    async def close(self) -> None:
        if self.retriever:
            await self.retriever.close()
        if self.session:
            await self.session.close()
        if self.db:
            await self.db.stop()
        logger.info("Orchestrator closed")

    def load_feeds(self, only: Optional[List[str]] = None) -> List[FeedConfig]:
        return select_feeds(config.list_feeds(self.config_path), only)

    @trace_span(
        "orchestrator.run",
        tracer_name="orchestrator",
        attr_from_args=lambda self, only=None: {"feed.only": ",".join(only) if only else ""},
    )
    async def run(self, only: Optional[List[str]] = None) -> SyncReport:
        """Synchronize the configured feeds once."""
        feeds = self.load_feeds(only)
        if not feeds:
            logger.warning("No feeds configured")
        await self.start()
        try:
            report = await self.synchronizer.run(feeds)
        finally:
            await self.close()
        return report

    async def run_scheduled(self) -> None:
        """Synchronize on the minimum poll interval until interrupted."""
        await self.start()
        scheduler = create_scheduler(self.synchronizer.run, self.config_path)
        scheduler.print_schedule_status()
        try:
            await scheduler.run_forever()
        finally:
            await self.close()

    async def check_status(self) -> dict:
        """Check the current status of the record store."""
        logger.info("📊 Checking system status")

        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {},
        }

        if not Path(self.db_path).exists():
            status['checks']['database'] = {
                'status': 'missing',
                'message': 'Database file not found',
            }
        else:
            db = DatabaseQueue(self.db_path)
            await db.start()
            try:
                summary = await db.execute('get_status')
                status['checks']['database'] = {
                    'status': 'ok',
                    'total_records': summary['total_records'],
                    'total_images': summary['total_images'],
                    'feeds': summary['feeds'],
                }
            except StoreError as e:
                status['checks']['database'] = {
                    'status': 'error',
                    'message': str(e),
                }
            finally:
                await db.stop()

        database = status['checks']['database']
        failing = [f for f in database.get('feeds', []) if f.get('error_count')]
        status['overall_status'] = 'healthy' if database['status'] == 'ok' and not failing else 'issues_detected'
        return status

    def print_status(self, status: dict) -> None:
        """Print formatted status information."""
        print("\n📊 Feed Importer Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        db = status['checks']['database']
        if db['status'] != 'ok':
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")
            return

        print("\n💾 Database:")
        print(f"   📰 Records: {db['total_records']}")
        print(f"   🖼️ Images: {db['total_images']}")
        for feed in db['feeds']:
            last = feed['last_fetched']
            fetched = datetime.fromtimestamp(last, tz=timezone.utc).isoformat() if last else "never"
            line = f"   - {feed['title'] or feed['url']}: {feed['records']} records, last fetched {fetched}"
            if feed['error_count']:
                line += f", {feed['error_count']} errors ({feed['last_error']})"
            print(line)


def print_report(report: SyncReport) -> None:
    print(f"\n📡 {report.summary()}")
    for result in report.results:
        if result.fetch_failed or result.error:
            print(f"   ❌ {result.label}: {result.error}")
        else:
            print(f"   ✅ {result.label}: {result.created} new, {result.existing} known, "
                  f"{result.skipped} skipped, {result.pruned} pruned")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Importer')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status', 'schedule-status'],
                        help='Operation mode')
    parser.add_argument('--feed', action='append', dest='feeds', metavar='SLUG_OR_URL',
                        help='Only synchronize this feed (repeatable)')
    parser.add_argument('--config', type=str,
                        help='Path to feeds.yaml (default: FEEDS_CONFIG_PATH)')
    parser.add_argument('--database', type=str,
                        help='Path to the SQLite database (default: DATABASE_PATH)')

    args = parser.parse_args()

    init_telemetry()
    orchestrator = FeedImportOrchestrator(db_path=args.database, config_path=args.config)

    try:
        if args.mode == 'run':
            report = asyncio.run(orchestrator.run(only=args.feeds))
            print_report(report)

        elif args.mode == 'scheduled':
            asyncio.run(orchestrator.run_scheduled())

        elif args.mode == 'status':
            status = asyncio.run(orchestrator.check_status())
            orchestrator.print_status(status)

        elif args.mode == 'schedule-status':
            scheduler = create_scheduler(lambda feeds: None, args.config)
            scheduler.print_schedule_status()

    except KeyboardInterrupt:
        logger.info("👋 Feed importer shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
