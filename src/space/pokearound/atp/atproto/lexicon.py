"""
Record models for the space.pokearound.* lexicons.

The models convert stored links into the JSON written to a repository with
`com.atproto.repo.createRecord`. Text fields are capped in UTF-8 bytes, list fields
in items, and empty values are left out of the record entirely.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

LINK_COLLECTION = "space.pokearound.link"
BOOKMARK_COLLECTION = "space.pokearound.bookmark"

TITLE_MAX_BYTES = 500
DESCRIPTION_MAX_BYTES = 2000
NOTE_MAX_BYTES = 1000
POST_TEXT_MAX_BYTES = 500

MAX_TAGS = 10
MAX_PERSONAL_TAGS = 10
MAX_LANGS = 5

ELLIPSIS = "..."


def truncate(value: Optional[str], max_bytes: int) -> Optional[str]:
    """Cap a string at `max_bytes` of UTF-8.

    Oversized values keep the longest run of whole characters that fits in
    `max_bytes - 3` bytes, followed by "...".
    """
    if value is None:
        return None
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    head = encoded[: max_bytes - len(ELLIPSIS)].decode("utf-8", errors="ignore")
    return head + ELLIPSIS


def non_empty_list(values: Optional[List[str]], max_items: int) -> Optional[List[str]]:
    if not values:
        return None
    return list(values[:max_items])


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def put_present(record: Dict[str, Any], key: str, value: Any) -> None:
    if value is None or value == "":
        return
    record[key] = value


class SourcePost(BaseModel):
    """The Bluesky post a link was found in."""

    uri: Optional[str] = None
    author_did: Optional[str] = None
    author_handle: Optional[str] = None
    text: Optional[str] = None
    posted_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        put_present(record, "uri", self.uri)
        put_present(record, "authorDid", self.author_did)
        put_present(record, "authorHandle", self.author_handle)
        put_present(record, "text", truncate(self.text, POST_TEXT_MAX_BYTES))
        put_present(record, "postedAt", format_datetime(self.posted_at))
        return record


class LinkRecord(BaseModel):
    """A curated link published by the service account."""

    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    domain: Optional[str] = None
    image_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    langs: List[str] = Field(default_factory=list)
    score: Optional[int] = None
    source_post: Optional[SourcePost] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def from_link(link: Any) -> "LinkRecord":
        """Build a record from a stored link row."""
        return LinkRecord(
            url=link.url,
            title=link.title,
            description=link.description,
            domain=link.domain,
            image_url=link.image_url,
            tags=link.tags or [],
            langs=link.langs or [],
            score=link.score,
            source_post=SourcePost(
                uri=link.post_uri,
                author_did=link.author_did,
                author_handle=link.author_handle,
                text=link.post_text,
                posted_at=link.post_created_at,
            ),
            created_at=link.inserted_at or datetime.now(timezone.utc),
        )

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "$type": LINK_COLLECTION,
            "url": self.url,
            "createdAt": format_datetime(self.created_at),
        }
        put_present(record, "title", truncate(self.title, TITLE_MAX_BYTES))
        put_present(
            record, "description", truncate(self.description, DESCRIPTION_MAX_BYTES)
        )
        put_present(record, "domain", self.domain)
        put_present(record, "imageUrl", self.image_url)
        put_present(record, "tags", non_empty_list(self.tags, MAX_TAGS))
        put_present(record, "langs", non_empty_list(self.langs, MAX_LANGS))
        put_present(record, "score", self.score)
        if self.source_post is not None:
            source_post = self.source_post.to_record()
            if len(source_post) > 0:
                record["sourcePost"] = source_post
        return record


class BookmarkRecord(BaseModel):
    """A personal bookmark saved to a user's own repository."""

    url: str
    title: Optional[str] = None
    domain: Optional[str] = None
    note: Optional[str] = None
    personal_tags: List[str] = Field(default_factory=list)
    poke_around_uri: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def from_link(
        link: Any, note: Optional[str] = None, tags: Optional[List[str]] = None
    ) -> "BookmarkRecord":
        return BookmarkRecord(
            url=link.url,
            title=link.title,
            domain=link.domain,
            note=note,
            personal_tags=tags or [],
            poke_around_uri=link.at_uri,
        )

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "$type": BOOKMARK_COLLECTION,
            "url": self.url,
            "createdAt": format_datetime(self.created_at),
        }
        put_present(record, "title", truncate(self.title, TITLE_MAX_BYTES))
        put_present(record, "domain", self.domain)
        put_present(record, "note", truncate(self.note, NOTE_MAX_BYTES))
        put_present(
            record, "personalTags", non_empty_list(self.personal_tags, MAX_PERSONAL_TAGS)
        )
        put_present(record, "pokeAroundUri", self.poke_around_uri)
        return record
