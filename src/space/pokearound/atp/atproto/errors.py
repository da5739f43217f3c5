"""
AT Protocol client error taxonomy.

Errors fall into a few families so callers can decide what to surface:

- DiscoveryError: identity and server metadata resolution failed. Never retried here.
- TransportError: the request never produced an HTTP response (DNS, refused
  connection, timeout).
- OAuthFlowError: PAR, code exchange or refresh was rejected by the authorization
  server.
- DpopNonceError: the server asked for a fresh DPoP nonce twice in a row.
- ClientError: repository (XRPC) calls returned a non-success status.

Protocol-level errors carry the HTTP status and decoded body for diagnostics.
"""

from typing import Any, Optional


class ATProtoError(Exception):
    """Base class for all errors raised by this package.

    Repository calls attach the session they were made with, updated with any
    nonce learned before the failure, as `session`.
    """

    session: Any = None


class ConfigurationError(ATProtoError):
    """A required setting (client id, service account, ...) is missing."""


class TransportError(ATProtoError):
    """The request failed before an HTTP response was received."""

    def __init__(self, url: str, cause: BaseException) -> None:
        super().__init__(f"transport error calling {url}: {type(cause).__name__} {cause}")
        self.url = url
        self.cause = cause


class ProtocolError(ATProtoError):
    """A server answered with an unexpected status."""

    def __init__(
        self,
        status: int,
        body: Any = None,
        message: Optional[str] = None,
        session: Any = None,
    ) -> None:
        super().__init__(message or f"{type(self).__name__}: {status} {body!r}")
        self.status = status
        self.body = body
        self.session = session


# Discovery


class DiscoveryError(ATProtoError):
    pass


class HttpError(DiscoveryError):
    """A discovery fetch returned a non-200 status."""

    def __init__(self, url: str, status: int) -> None:
        super().__init__(f"GET {url} returned {status}")
        self.url = url
        self.status = status


class UnsupportedDidMethod(DiscoveryError):
    def __init__(self, did: str) -> None:
        super().__init__(f"unsupported DID method: {did}")
        self.did = did


class InvalidDidDocument(DiscoveryError):
    pass


class PdsNotFound(DiscoveryError):
    """The DID document has no #atproto_pds service."""


class InvalidServerMetadata(DiscoveryError):
    """OAuth server metadata is malformed or missing required keys."""


class HandleResolutionFailed(DiscoveryError, ProtocolError):
    def __init__(self, handle: str, status: int, body: Any = None) -> None:
        ProtocolError.__init__(
            self, status, body, f"unable to resolve handle {handle}: {status} {body!r}"
        )
        self.handle = handle


# OAuth flow


class OAuthFlowError(ATProtoError):
    pass


class StateMismatch(OAuthFlowError):
    """The state returned to the callback does not match the stored one."""


class NoRefreshToken(OAuthFlowError):
    pass


class ParFailed(OAuthFlowError, ProtocolError):
    pass


class TokenExchangeFailed(OAuthFlowError, ProtocolError):
    pass


class TokenRefreshFailed(OAuthFlowError, ProtocolError):
    pass


# DPoP


class DpopNonceError(ProtocolError):
    """The server kept asking for a new DPoP nonce after a retry."""


class NonceRetryExhausted(DpopNonceError):
    pass


# Repository client


class ClientError(ProtocolError):
    pass


class NotFound(ClientError):
    pass


class GetFailed(ClientError):
    pass


class CreateFailed(ClientError):
    pass


class ListFailed(ClientError):
    pass


class DeleteFailed(ClientError):
    pass


# Storage


class SessionNotFound(ATProtoError):
    def __init__(self, did: str) -> None:
        super().__init__(f"no stored session for {did}")
        self.did = did


class LinkNotFound(ATProtoError):
    def __init__(self, link_id: int) -> None:
        super().__init__(f"no link with id {link_id}")
        self.link_id = link_id
