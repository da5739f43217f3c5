"""Persisted OAuth sessions.

One row per authenticated identity, keyed by DID. Access tokens, refresh tokens and
the DPoP key pair are Fernet encrypted at rest; everything else is stored in the
clear so operators can inspect which identities are signed in and where.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet
from sqlalchemy import DateTime, String, Text, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from space.pokearound.atp.atproto.jwt import deserialize_dpop_key, serialize_dpop_key
from space.pokearound.atp.atproto.session import Session
from space.pokearound.atp.model.base import Base, idpk, str512

logger = logging.getLogger(__name__)


class OAuthSession(Base):
    """Stored OAuth session for one DID."""

    __tablename__ = "atproto_sessions"

    id: Mapped[idpk]
    user_did: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    handle: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dpop_keypair: Mapped[str] = mapped_column(Text, nullable=False)
    pds_url: Mapped[str512]
    auth_server_url: Mapped[str512]
    scope: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auth_server_nonce: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    resource_server_nonce: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStore:
    """Loads and saves sessions, encrypting secrets with the configured key."""

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        encryption_key: Fernet,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._encryption_key = encryption_key

    def _encrypt(self, value: str) -> str:
        return self._encryption_key.encrypt(value.encode("utf-8")).decode("ascii")

    def _decrypt(self, value: str) -> str:
        return self._encryption_key.decrypt(value.encode("ascii")).decode("utf-8")

    def to_session(self, row: OAuthSession) -> Session:
        dpop_key = deserialize_dpop_key(json.loads(self._decrypt(row.dpop_keypair)))
        return Session(
            did=row.user_did,
            handle=row.handle,
            access_token=self._decrypt(row.access_token),
            refresh_token=(
                self._decrypt(row.refresh_token)
                if row.refresh_token is not None
                else None
            ),
            dpop_key=dpop_key,
            pds_url=row.pds_url,
            auth_server_url=row.auth_server_url,
            scope=row.scope,
            expires_at=_aware(row.expires_at),
            auth_server_nonce=row.auth_server_nonce,
            resource_server_nonce=row.resource_server_nonce,
        )

    def _apply(self, row: OAuthSession, session: Session, now: datetime) -> None:
        row.user_did = session.did
        row.handle = session.handle
        row.access_token = self._encrypt(session.access_token)
        row.refresh_token = (
            self._encrypt(session.refresh_token)
            if session.refresh_token is not None
            else None
        )
        row.dpop_keypair = self._encrypt(
            json.dumps(serialize_dpop_key(session.dpop_key))
        )
        row.pds_url = session.pds_url
        row.auth_server_url = session.auth_server_url
        row.scope = session.scope
        row.expires_at = session.expires_at
        row.auth_server_nonce = session.auth_server_nonce
        row.resource_server_nonce = session.resource_server_nonce
        row.updated_at = now

    async def load(self, did: str) -> Optional[Session]:
        async with self._database_session_maker() as database_session:
            stmt = select(OAuthSession).where(OAuthSession.user_did == did)
            row: Optional[OAuthSession] = (
                await database_session.scalars(stmt)
            ).first()
            if row is None:
                return None
            return self.to_session(row)

    async def save(self, session: Session) -> None:
        """Insert or update the stored session for `session.did`."""
        now = datetime.now(timezone.utc)
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                stmt = select(OAuthSession).where(OAuthSession.user_did == session.did)
                row: Optional[OAuthSession] = (
                    await database_session.scalars(stmt)
                ).first()
                if row is None:
                    row = OAuthSession(created_at=now)
                    database_session.add(row)
                self._apply(row, session, now)
        logger.debug("Saved session for %s", session.did)

    async def delete(self, did: str) -> bool:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthSession).where(OAuthSession.user_did == did)
                )
        return result.rowcount > 0
