"""Curated links and their publication state.

The `links` table is owned by the ingestion pipeline. Only the columns read by the
record codec and written by the sync worker are mapped here.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import DateTime, Integer, String, Text, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from space.pokearound.atp.model.base import Base, StringList, idpk

SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Link(Base):
    __tablename__ = "links"

    id: Mapped[idpk]
    url: Mapped[str] = mapped_column(Text, nullable=False)
    url_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    post_uri: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    post_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    post_created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    author_did: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    author_handle: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    domain: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    tags: Mapped[Optional[List[str]]] = mapped_column(StringList, nullable=True)
    langs: Mapped[Optional[List[str]]] = mapped_column(StringList, nullable=True)

    at_uri: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


def syncable_links_stmt(min_score: int, limit: int) -> Any:
    """Links that qualify for publication and have not been attempted yet."""
    return (
        select(Link)
        .where(
            Link.score >= min_score,
            or_(Link.sync_status.is_(None), Link.sync_status == SYNC_STATUS_PENDING),
            Link.at_uri.is_(None),
        )
        .order_by(Link.score.desc(), Link.inserted_at.asc())
        .limit(limit)
    )


class LinkStore:
    """Candidate storage used by the sync worker."""

    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._database_session_maker = database_session_maker

    async def select_syncable(self, min_score: int, limit: int) -> List[Link]:
        async with self._database_session_maker() as database_session:
            result = await database_session.scalars(
                syncable_links_stmt(min_score, limit)
            )
            return list(result.all())

    async def get(self, link_id: int) -> Optional[Link]:
        async with self._database_session_maker() as database_session:
            return await database_session.get(Link, link_id)

    async def mark_synced(self, link: Link, uri: str, synced_at: datetime) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    update(Link)
                    .where(Link.id == link.id)
                    .values(
                        at_uri=uri,
                        synced_at=synced_at,
                        sync_status=SYNC_STATUS_SYNCED,
                    )
                )
        link.at_uri = uri
        link.synced_at = synced_at
        link.sync_status = SYNC_STATUS_SYNCED

    async def mark_failed(self, link: Link) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    update(Link)
                    .where(Link.id == link.id)
                    .values(sync_status=SYNC_STATUS_FAILED)
                )
        link.sync_status = SYNC_STATUS_FAILED
