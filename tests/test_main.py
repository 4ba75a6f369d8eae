import pytest

from feed_types import FeedConfig
from main import FeedImportOrchestrator, select_feeds
from models import DatabaseQueue

FEED = "https://example.com/rss"


def test_select_feeds_by_slug_or_url():
    feeds = [
        FeedConfig(url=FEED, author_id="me", slug="example"),
        FeedConfig(url="https://other.example.com/rss", author_id="me", slug="other"),
    ]

    assert select_feeds(feeds) == feeds
    assert select_feeds(feeds, ["example"]) == feeds[:1]
    assert select_feeds(feeds, ["https://other.example.com/rss", "unknown"]) == feeds[1:]


@pytest.mark.asyncio
async def test_status_reads_store_summary(tmp_path):
    db_path = str(tmp_path / "feeds.db")
    db = DatabaseQueue(db_path)
    await db.start()
    try:
        await db.execute('create_record', feed_url=FEED, item_id="1", title="One", date=1700000000)
        await db.execute('record_fetch_error', url=FEED, last_error='HTTP 500')
    finally:
        await db.stop()

    status = await FeedImportOrchestrator(db_path=db_path).check_status()

    database = status['checks']['database']
    assert database['status'] == 'ok'
    assert database['total_records'] == 1
    assert database['total_images'] == 0
    [feed] = database['feeds']
    assert feed['url'] == FEED
    assert feed['records'] == 1
    assert feed['error_count'] == 1
    assert status['overall_status'] == 'issues_detected'


@pytest.mark.asyncio
async def test_status_without_database(tmp_path):
    status = await FeedImportOrchestrator(db_path=str(tmp_path / "missing.db")).check_status()

    assert status['checks']['database']['status'] == 'missing'
    assert status['overall_status'] == 'issues_detected'
    assert not (tmp_path / "missing.db").exists()
