"""
Unit tests for link and bookmark record encoding.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

from space.pokearound.atp.atproto.lexicon import (
    BOOKMARK_COLLECTION,
    LINK_COLLECTION,
    BookmarkRecord,
    LinkRecord,
    SourcePost,
    non_empty_list,
    truncate,
)

INSERTED_AT = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


def make_link(**kwargs):
    values = dict(
        id=1,
        url="https://example.com/article",
        title="An article",
        description="About things",
        domain="example.com",
        image_url="https://example.com/image.png",
        tags=["python", "atproto"],
        langs=["en"],
        score=72,
        post_uri="at://did:plc:bob/app.bsky.feed.post/3k",
        post_text="Look at this",
        post_created_at=datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc),
        author_did="did:plc:bob",
        author_handle="bob.test",
        at_uri=None,
        inserted_at=INSERTED_AT,
    )
    values.update(kwargs)
    return SimpleNamespace(**values)


class TestTruncate:
    def test_short_values_are_unchanged(self):
        assert truncate("hello", 500) == "hello"
        assert truncate("x" * 500, 500) == "x" * 500

    def test_none(self):
        assert truncate(None, 10) is None

    def test_ascii_truncation(self):
        result = truncate("x" * 600, 500)
        assert len(result) == 500
        assert result.endswith("...")

    def test_multibyte_stays_within_byte_cap(self):
        # Each character is 3 bytes in UTF-8.
        result = truncate("日" * 300, 500)
        assert len(result.encode("utf-8")) <= 500
        assert result.endswith("...")
        # 497 bytes hold 165 whole characters.
        assert result == "日" * 165 + "..."

    def test_never_splits_a_character(self):
        result = truncate("a" + "\U0001f600" * 200, 20)
        assert result == "a" + "\U0001f600" * 4 + "..."


class TestNonEmptyList:
    def test_caps_items(self):
        assert non_empty_list([str(i) for i in range(15)], 10) == [str(i) for i in range(10)]

    def test_empty_is_none(self):
        assert non_empty_list([], 10) is None
        assert non_empty_list(None, 10) is None


class TestLinkRecord:
    def test_full_record(self):
        record = LinkRecord.from_link(make_link()).to_record()

        assert record == {
            "$type": LINK_COLLECTION,
            "url": "https://example.com/article",
            "createdAt": "2024-05-01T08:30:00+00:00",
            "title": "An article",
            "description": "About things",
            "domain": "example.com",
            "imageUrl": "https://example.com/image.png",
            "tags": ["python", "atproto"],
            "langs": ["en"],
            "score": 72,
            "sourcePost": {
                "uri": "at://did:plc:bob/app.bsky.feed.post/3k",
                "authorDid": "did:plc:bob",
                "authorHandle": "bob.test",
                "text": "Look at this",
                "postedAt": "2024-05-01T08:00:00+00:00",
            },
        }

    def test_long_title_is_truncated(self):
        record = LinkRecord.from_link(make_link(title="t" * 600)).to_record()
        assert len(record["title"]) == 500
        assert record["title"].endswith("...")

    def test_missing_fields_are_absent(self):
        record = LinkRecord.from_link(
            make_link(
                title=None,
                description=None,
                image_url=None,
                domain="",
                tags=[],
                langs=None,
                post_uri=None,
                post_text=None,
                post_created_at=None,
                author_did=None,
                author_handle=None,
            )
        ).to_record()

        for key in ("title", "description", "imageUrl", "domain", "tags", "langs", "sourcePost"):
            assert key not in record

    def test_list_caps(self):
        record = LinkRecord.from_link(
            make_link(tags=[f"t{i}" for i in range(15)], langs=["a", "b", "c", "d", "e", "f"])
        ).to_record()
        assert len(record["tags"]) == 10
        assert record["langs"] == ["a", "b", "c", "d", "e"]

    def test_post_text_is_capped(self):
        record = LinkRecord.from_link(make_link(post_text="p" * 700)).to_record()
        assert len(record["sourcePost"]["text"].encode("utf-8")) == 500

    def test_naive_datetimes_are_utc(self):
        record = LinkRecord.from_link(
            make_link(inserted_at=datetime(2024, 5, 1, 8, 30))
        ).to_record()
        assert record["createdAt"] == "2024-05-01T08:30:00+00:00"


class TestSourcePost:
    def test_empty_post(self):
        assert SourcePost().to_record() == {}


class TestBookmarkRecord:
    def test_bookmark(self):
        link = make_link(at_uri="at://did:plc:service/space.pokearound.link/3kabc")
        bookmark = BookmarkRecord.from_link(link, note="read later", tags=["todo"])
        record = bookmark.to_record()

        assert record["$type"] == BOOKMARK_COLLECTION
        assert record["url"] == link.url
        assert record["title"] == "An article"
        assert record["domain"] == "example.com"
        assert record["note"] == "read later"
        assert record["personalTags"] == ["todo"]
        assert record["pokeAroundUri"] == link.at_uri
        assert "createdAt" in record

    def test_bookmark_caps(self):
        bookmark = BookmarkRecord.from_link(
            make_link(), note="n" * 1200, tags=[str(i) for i in range(12)]
        )
        record = bookmark.to_record()
        assert len(record["note"]) == 1000
        assert len(record["personalTags"]) == 10

    def test_empty_optional_fields(self):
        record = BookmarkRecord.from_link(make_link(title=None), tags=[]).to_record()
        assert "note" not in record
        assert "personalTags" not in record
        assert "pokeAroundUri" not in record
        assert "title" not in record
