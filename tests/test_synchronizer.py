from datetime import datetime, timedelta, timezone

import pytest

from diagnostics import DiagnosticKind, DiagnosticSink, Severity
from errors import FetchError, StoreError
from feed_types import Enclosure, FeedConfig, RawFeedItem
from models import DatabaseQueue
from fetcher import FeedRetriever
from synchronizer import FeedSynchronizer
from fakes import ConditionalSession, FakeImages, FakeRetriever

FEED_A = "https://a.example.com/rss"
FEED_B = "https://b.example.com/rss"
BASE_DATE = datetime(2025, 5, 1, tzinfo=timezone.utc)


def make_items(prefix, count, **extra):
    """Newest-first items like most feeds publish them."""
    return [
        RawFeedItem(
            guid=f"{prefix}-{n}",
            title=f"{prefix} item {n}",
            link=f"https://example.com/{prefix}/{n}",
            published=BASE_DATE + timedelta(hours=n),
            description=f"Summary {n}",
            **extra,
        )
        for n in reversed(range(count))
    ]


def feed(url, **kwargs):
    kwargs.setdefault('author_id', 'editor')
    return FeedConfig(url=url, **kwargs)


def make_sync(db, feeds, images=None):
    sink = DiagnosticSink(Severity.DEBUG)
    retriever = FakeRetriever(feeds)
    return FeedSynchronizer(db, retriever, images=images, diagnostics=sink, concurrency=2), sink, retriever


@pytest.mark.asyncio
async def test_second_run_on_unchanged_feed_creates_nothing(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, _, _ = make_sync(db, {FEED_A: make_items("a", 3)})

        first = await sync.run([feed(FEED_A)])
        second = await sync.run([feed(FEED_A)])

        assert first.results[0].created == 3
        assert second.results[0].created == 0
        assert second.results[0].existing == 3
        assert second.results[0].pruned == 0
        assert await db.execute('count_records', feed_url=FEED_A) == 3
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_records_carry_fields_metadata_and_tags(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, _, _ = make_sync(db, {FEED_A: make_items("a", 1)})

        await sync.run([feed(FEED_A, tags=frozenset({'news', 'local'}))])

        [record_id] = await db.execute('list_record_ids', feed_url=FEED_A)
        record = await db.execute('get_record', record_id=record_id)
        assert record['title'] == "a item 0"
        assert record['author_id'] == "editor"
        assert record['excerpt'] == "Summary 0"
        assert record['body'] == "Summary 0"
        assert record['date'] == int(BASE_DATE.timestamp())
        assert await db.execute('get_record_meta', record_id=record_id, key='feed_url') == FEED_A
        assert await db.execute('get_record_meta', record_id=record_id, key='item_id') == "a-0"
        assert await db.execute('get_record_meta', record_id=record_id, key='item_link') == "https://example.com/a/0"
        assert await db.execute('get_record_tags', record_id=record_id) == ['local', 'news']
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_duplicate_guid_in_one_fetch_is_imported_once(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        items = [
            RawFeedItem(guid="same", title="First copy", link="https://example.com/1"),
            RawFeedItem(guid="same", title="Second copy", link="https://example.com/1"),
            RawFeedItem(guid="other", title="Other", link="https://example.com/2"),
        ]
        sync, _, _ = make_sync(db, {FEED_A: items})

        report = await sync.run([feed(FEED_A)])

        assert report.results[0].created == 2
        assert report.results[0].existing == 1
        identities = await db.execute('list_feed_identities', feed_url=FEED_A)
        assert [identity for _, identity in identities] == ["same", "other"]
        record = await db.execute('get_record', record_id=identities[0][0])
        assert record['title'] == "First copy"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_fetch_failure_skips_only_that_feed(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, sink, retriever = make_sync(db, {
            FEED_A: FetchError(FEED_A, 'network', "connection refused"),
            FEED_B: make_items("b", 2),
        })

        report = await sync.run([feed(FEED_A), feed(FEED_B)])

        result_a, result_b = report.results
        assert result_a.fetch_failed and not result_a.ok
        assert result_b.created == 2 and result_b.ok
        assert sorted(retriever.fetched) == [FEED_A, FEED_B]
        [failure] = sink.of_kind(DiagnosticKind.FETCH_FAILED)
        assert failure.feed_url == FEED_A
        assert await db.execute('count_records', feed_url=FEED_A) == 0
        assert report.failed == [result_a]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_unexpected_feed_error_is_contained(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, sink, _ = make_sync(db, {
            FEED_A: RuntimeError("parser exploded"),
            FEED_B: make_items("b", 1),
        })

        report = await sync.run([feed(FEED_A), feed(FEED_B)])

        assert report.results[0].error == "parser exploded"
        assert report.results[1].created == 1
        assert sink.of_kind(DiagnosticKind.FEED_FAILED)[0].feed_url == FEED_A
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_fetch_is_capped_at_max_items(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        items = make_items("a", 5)
        sync, _, _ = make_sync(db, {FEED_A: items})

        report = await sync.run([feed(FEED_A, max_items=3)])

        assert report.results[0].created == 3
        assert report.results[0].pruned == 0
        identities = await db.execute('list_feed_identities', feed_url=FEED_A)
        assert [identity for _, identity in identities] == ["a-4", "a-3", "a-2"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_lowering_max_items_prunes_oldest_records(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, _, retriever = make_sync(db, {FEED_A: make_items("old", 5)})
        await sync.run([feed(FEED_A, max_items=5)])

        retriever.feeds[FEED_A] = make_items("new", 2)
        report = await sync.run([feed(FEED_A, max_items=2)])

        assert report.results[0].created == 2
        assert report.results[0].pruned == 5
        identities = await db.execute('list_feed_identities', feed_url=FEED_A)
        assert [identity for _, identity in identities] == ["new-1", "new-0"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_capacity_holds_for_every_feed(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, _, retriever = make_sync(db, {FEED_A: make_items("a", 4), FEED_B: make_items("b", 4)})
        configs = [feed(FEED_A, max_items=3), feed(FEED_B, max_items=2)]

        await sync.run(configs)
        retriever.feeds[FEED_A] = make_items("a2", 4)
        await sync.run(configs)

        assert await db.execute('count_records', feed_url=FEED_A) <= 3
        assert await db.execute('count_records', feed_url=FEED_B) <= 2
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_unusable_items_are_skipped_with_diagnostics(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        items = [
            RawFeedItem(title="No identity", description="text"),
            RawFeedItem(guid="untitled", link="https://example.com/u"),
            RawFeedItem(guid="synth", description="A body long enough to need a generated title for this item"),
        ]
        sync, sink, _ = make_sync(db, {FEED_A: items})

        report = await sync.run([feed(FEED_A)])

        assert report.results[0].skipped == 2
        assert report.results[0].created == 1
        assert len(sink.of_kind(DiagnosticKind.MISSING_IDENTITY)) == 1
        assert sink.of_kind(DiagnosticKind.MISSING_TITLE)[0].item_id == "untitled"
        [record_id] = await db.execute('list_record_ids', feed_url=FEED_A)
        record = await db.execute('get_record', record_id=record_id)
        assert record['title'] == "A body long enough to need a generated title..."
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_feed_entry_without_url_is_reported(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, sink, retriever = make_sync(db, {FEED_B: make_items("b", 1)})

        report = await sync.run([feed("", slug="broken"), feed(FEED_B)])

        assert report.results[0].error == "missing url"
        assert report.results[1].created == 1
        assert retriever.fetched == [FEED_B]
        assert len(sink.of_kind(DiagnosticKind.MISSING_URL)) == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_image_failure_keeps_the_record(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        items = [
            RawFeedItem(guid="ok", title="Good image", thumbnails=["https://img.example.com/ok.jpg"]),
            RawFeedItem(guid="bad", title="Broken image",
                        enclosures=[Enclosure(url="https://img.example.com/missing.jpg", type="image/jpeg")]),
        ]
        images = FakeImages(failing={"https://img.example.com/missing.jpg"})
        sync, sink, _ = make_sync(db, {FEED_A: items}, images=images)

        report = await sync.run([feed(FEED_A)])

        assert report.results[0].created == 2
        ids = await db.execute('list_record_ids', feed_url=FEED_A)
        assert images.attached == [("https://img.example.com/ok.jpg", ids[0])]
        [failure] = sink.of_kind(DiagnosticKind.IMAGE_FAILED)
        assert failure.item_id == "bad"
    finally:
        await db.stop()


class FailingCreateStore:
    """Wraps a DatabaseQueue and fails record creation for chosen identities."""

    def __init__(self, db, failing_ids):
        self.db = db
        self.failing_ids = set(failing_ids)

    async def execute(self, operation_name, **params):
        if operation_name == 'create_record' and params.get('item_id') in self.failing_ids:
            raise StoreError(operation_name, "disk I/O error")
        if operation_name == 'set_record_tags':
            raise StoreError(operation_name, "database is locked")
        return await self.db.execute(operation_name, **params)


@pytest.mark.asyncio
async def test_store_failures_skip_single_items(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        store = FailingCreateStore(db, failing_ids={"a-1"})
        sink = DiagnosticSink()
        retriever = FakeRetriever({FEED_A: make_items("a", 3)})
        sync = FeedSynchronizer(store, retriever, diagnostics=sink)

        report = await sync.run([feed(FEED_A, tags=frozenset({'x'}))])

        assert report.results[0].created == 2
        assert report.results[0].skipped == 1
        assert sink.of_kind(DiagnosticKind.STORE_FAILED)[0].item_id == "a-1"
        assert len(sink.of_kind(DiagnosticKind.TAGS_FAILED)) == 2
        assert await db.execute('count_records', feed_url=FEED_A) == 2
        assert retriever.committed == []

        # The failed item is picked up by the next run
        sync.db = db
        sync.pruner.db = db
        retry = await sync.run([feed(FEED_A)])
        assert retry.results[0].created == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_report_collects_run_diagnostics(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sync, _, _ = make_sync(db, {FEED_A: []})

        report = await sync.run([feed(FEED_A)])

        assert [d.kind for d in report.diagnostics] == [DiagnosticKind.FEED_EMPTY]
        assert "1 feeds, 0 created" in report.summary()
    finally:
        await db.stop()


def rss_body(guids):
    items = "".join(
        f"<item><guid isPermaLink=\"false\">{guid}</guid><title>Post {guid}</title>"
        f"<link>https://example.com/{guid}</link></item>"
        for guid in guids
    )
    return (
        "<?xml version=\"1.0\"?><rss version=\"2.0\"><channel><title>A</title>"
        f"<link>https://example.com/</link>{items}</channel></rss>"
    ).encode()


@pytest.mark.asyncio
async def test_items_failed_to_store_are_refetched_despite_etag(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    session = ConditionalSession(FEED_A, rss_body(["a-0", "a-1", "a-2"]), etag="v1")
    retriever = FeedRetriever(session, db=db)
    try:
        failing = FeedSynchronizer(FailingCreateStore(db, failing_ids={"a-1"}), retriever,
                                   diagnostics=DiagnosticSink())
        first = await failing.run([feed(FEED_A)])
        assert first.results[0].created == 2
        assert first.results[0].store_failures == 1
        assert (await db.execute('get_feed_state', url=FEED_A))['etag'] is None

        sync = FeedSynchronizer(db, retriever, diagnostics=DiagnosticSink())
        second = await sync.run([feed(FEED_A)])
        assert session.statuses == [200, 200]
        assert second.results[0].created == 1
        assert second.results[0].existing == 2
        assert await db.execute('count_records', feed_url=FEED_A) == 3

        third = await sync.run([feed(FEED_A)])
        assert session.statuses == [200, 200, 304]
        assert third.results[0].not_modified
        assert await db.execute('count_records', feed_url=FEED_A) == 3
    finally:
        await retriever.close()
        await db.stop()


@pytest.mark.asyncio
async def test_aborted_feed_keeps_previous_cache_headers(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    session = ConditionalSession(FEED_A, rss_body(["a-0", "a-1"]), etag="v1")
    retriever = FeedRetriever(session, db=db)
    try:
        sync = FeedSynchronizer(db, retriever, diagnostics=DiagnosticSink())

        async def explode(*args, **kwargs):
            raise RuntimeError("worker crashed")

        sync._import_item = explode
        aborted = await sync.run([feed(FEED_A)])
        assert aborted.results[0].error == "worker crashed"
        assert (await db.execute('get_feed_state', url=FEED_A))['etag'] is None

        del sync._import_item
        retry = await sync.run([feed(FEED_A)])
        assert session.statuses == [200, 200]
        assert retry.results[0].created == 2
        assert (await db.execute('get_feed_state', url=FEED_A))['etag'] == 'v1'
    finally:
        await retriever.close()
        await db.stop()
