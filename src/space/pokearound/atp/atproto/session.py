"""
OAuth session state for one authenticated identity.

A session is created by a successful code exchange and carries everything needed to
make DPoP-bound calls against the identity's PDS. The DPoP key is fixed for the
lifetime of the session: a new key means a new login, never a refresh.

Two nonces are tracked separately because the authorization server and the PDS
issue them independently.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jwcrypto import jwk

from space.pokearound.atp.atproto.jwt import deserialize_dpop_key, serialize_dpop_key

REFRESH_WINDOW = timedelta(minutes=5)


@dataclass
class Session:
    did: str
    access_token: str
    dpop_key: jwk.JWK
    pds_url: str
    auth_server_url: str
    handle: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    auth_server_nonce: Optional[str] = None
    resource_server_nonce: Optional[str] = None
    public_key_dict: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.public_key_dict:
            self.public_key_dict = self.dpop_key.export_public(as_dict=True)

    def with_resource_server_nonce(self, nonce: Optional[str]) -> "Session":
        if nonce is None or nonce == self.resource_server_nonce:
            return self
        return replace(self, resource_server_nonce=nonce)

    def to_dict(self) -> Dict[str, Any]:
        """JSON storable form. Includes the private DPoP key."""
        return {
            "did": self.did,
            "handle": self.handle,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "dpop_key": serialize_dpop_key(self.dpop_key),
            "pds_url": self.pds_url,
            "auth_server_url": self.auth_server_url,
            "scope": self.scope,
            "expires_at": (
                self.expires_at.isoformat() if self.expires_at is not None else None
            ),
            "auth_server_nonce": self.auth_server_nonce,
            "resource_server_nonce": self.resource_server_nonce,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Session":
        expires_at = data.get("expires_at", None)
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)

        return Session(
            did=data["did"],
            handle=data.get("handle", None),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", None),
            dpop_key=deserialize_dpop_key(data["dpop_key"]),
            pds_url=data["pds_url"],
            auth_server_url=data["auth_server_url"],
            scope=data.get("scope", None),
            expires_at=expires_at,
            auth_server_nonce=data.get("auth_server_nonce", None),
            resource_server_nonce=data.get("resource_server_nonce", None),
        )


def _utc(value: datetime) -> datetime:
    # Naive datetimes read back from storage are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def should_refresh(session: Session, now: Optional[datetime] = None) -> bool:
    """Whether the access token expires within the next five minutes.

    An unknown expiry never forces a refresh. An already expired token does.
    """
    if session.expires_at is None:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    return _utc(now) + REFRESH_WINDOW >= _utc(session.expires_at)


def is_expired(session: Session, now: Optional[datetime] = None) -> bool:
    if session.expires_at is None:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    return _utc(now) > _utc(session.expires_at)
