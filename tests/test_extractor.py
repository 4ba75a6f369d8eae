from datetime import datetime, timezone

from diagnostics import DiagnosticKind, DiagnosticSink
from extractor import extract_fields, resolve_identity, resolve_image
from feed_types import Enclosure, RawFeedItem

PUBLISHED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_identity_prefers_guid_verbatim():
    item = RawFeedItem(guid="tag:example.com,2025:post-1", link="https://example.com/1", title="One")
    assert resolve_identity(item) == "tag:example.com,2025:post-1"


def test_identity_is_derived_from_link_title_and_date():
    item = RawFeedItem(link="https://example.com/1", title="One", published=PUBLISHED)
    same = RawFeedItem(link="https://example.com/1", title="One", published=PUBLISHED, description="changed")
    other = RawFeedItem(link="https://example.com/1", title="One (updated)", published=PUBLISHED)

    identity = resolve_identity(item)
    assert identity and len(identity) == 32
    assert resolve_identity(same) == identity
    assert resolve_identity(other) != identity


def test_identity_is_missing_without_guid_or_link():
    assert resolve_identity(RawFeedItem(title="Orphan", description="text")) is None
    assert resolve_identity(RawFeedItem(guid="   ", link="")) is None


def test_native_thumbnail_wins_over_enclosure():
    item = RawFeedItem(
        thumbnails=["https://example.com/thumb.jpg"],
        enclosures=[Enclosure(url="https://example.com/photo.jpg", type="image/jpeg")],
        content='<img src="https://example.com/inline.jpg">',
    )
    assert resolve_image(item) == "https://example.com/thumb.jpg"


def test_first_image_enclosure_is_used():
    item = RawFeedItem(enclosures=[
        Enclosure(url="https://example.com/episode.mp3", type="audio/mpeg"),
        Enclosure(url="https://example.com/cover.png", type="image/png"),
        Enclosure(url="https://example.com/other.png", type="image/png"),
    ])
    assert resolve_image(item) == "https://example.com/cover.png"


def test_inline_image_is_resolved_against_item_link():
    item = RawFeedItem(
        link="https://example.com/posts/1",
        content='<p>Intro</p><img alt="x" src="/media/pic.jpg"><img src="https://example.com/second.jpg">',
    )
    assert resolve_image(item) == "https://example.com/media/pic.jpg"


def test_inline_image_falls_back_to_description():
    item = RawFeedItem(description='<img src="https://example.com/from-description.gif">')
    assert resolve_image(item) == "https://example.com/from-description.gif"


def test_invalid_thumbnail_is_reported_and_dropped():
    sink = DiagnosticSink()
    item = RawFeedItem(thumbnails=["not a url"])

    assert resolve_image(item, sink, feed_url="https://example.com/feed", item_id="1") is None
    [diagnostic] = sink.of_kind(DiagnosticKind.INVALID_THUMBNAIL)
    assert diagnostic.feed_url == "https://example.com/feed"
    assert diagnostic.item_id == "1"


def test_no_image_anywhere():
    assert resolve_image(RawFeedItem(content="<p>No pictures</p>")) is None


def test_missing_description_and_content_stay_empty():
    data = extract_fields(RawFeedItem(title="Title only", published=PUBLISHED))

    assert data.excerpt is None
    assert data.body is None
    assert data.title == "Title only"


def test_only_description_backfills_body():
    data = extract_fields(RawFeedItem(title="T", description="Plain summary"))

    assert data.excerpt == "Plain summary"
    assert data.body == "Plain summary"


def test_only_content_backfills_excerpt_as_plain_text():
    data = extract_fields(RawFeedItem(title="T", content="<p>Rich <em>body</em></p>"))

    assert data.body == "<p>Rich <em>body</em></p>"
    assert data.excerpt == "Rich body"


def test_description_and_content_are_read_independently():
    data = extract_fields(RawFeedItem(title="T", description="<b>Teaser</b>", content="<p>Full text</p>"))

    assert data.excerpt == "Teaser"
    assert data.body == "<p>Full text</p>"


def test_markup_only_description_takes_excerpt_from_content():
    data = extract_fields(RawFeedItem(
        title="T",
        description='<img src="https://example.com/a.png">',
        content="<p>Words here</p>",
    ))

    assert data.excerpt == "Words here"
    assert data.body == "<p>Words here</p>"


def test_title_is_stripped_of_markup():
    data = extract_fields(RawFeedItem(title="<b>Bold</b> move", description="x"))
    assert data.title == "Bold move"


def test_missing_title_is_synthesized_from_excerpt():
    text = "Municipal elections were held across the region on Sunday with record turnout"
    data = extract_fields(RawFeedItem(description=text))

    assert data.title == "Municipal elections were held across the region..."
    assert len(data.title) <= 50


def test_no_title_and_no_text_leaves_title_empty():
    data = extract_fields(RawFeedItem(link="https://example.com/x"))
    assert data.title is None


def test_missing_date_falls_back_to_now():
    now = datetime(2025, 6, 1, 8, 30, tzinfo=timezone.utc)
    data = extract_fields(RawFeedItem(title="T"), now=now)
    assert data.date == now


def test_naive_date_is_treated_as_utc():
    data = extract_fields(RawFeedItem(title="T", published=datetime(2025, 1, 2, 3, 4)))
    assert data.date == datetime(2025, 1, 2, 3, 4, tzinfo=timezone.utc)


def test_link_falls_back_to_permalink_guid():
    permalink = RawFeedItem(title="T", guid="https://example.com/p/1", guid_is_permalink=True)
    opaque = RawFeedItem(title="T", guid="urn:uuid:1234")

    assert extract_fields(permalink).link == "https://example.com/p/1"
    assert extract_fields(opaque).link is None


def test_thumbnail_is_part_of_extracted_data():
    item = RawFeedItem(title="T", enclosures=[Enclosure(url="https://example.com/a.webp", type="image/webp")])
    assert extract_fields(item).thumbnail_url == "https://example.com/a.webp"
