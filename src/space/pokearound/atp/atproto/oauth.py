"""
AT Protocol OAuth Client Implementation

This module implements the client side of the AT Protocol OAuth profile: initiating a
login, exchanging the authorization code for tokens, and refreshing those tokens.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The flow is implemented in three stages:
1. Initialization (`start_authorization`): Resolve the user's identity, discover the
   authorization server, push the authorization request and build the URL the user
   is sent to. The returned AuthState is held by the caller until the callback.
2. Completion (`exchange_code`): Verify the returned state and exchange the
   authorization code for a DPoP-bound Session.
3. Refresh (`refresh_session`): Use the refresh token to obtain a new access token.

Authorization servers may demand a server-issued DPoP nonce. A `use_dpop_nonce`
challenge is answered with exactly one retry; a second challenge fails the call.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone, timedelta
import logging
import secrets
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse
from aiohttp import ClientSession, ClientTimeout
from jwcrypto import jwk

from space.pokearound.atp.app.config import Settings
from space.pokearound.atp.app.metrics import MetricsClient
from space.pokearound.atp.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    GenerateDpopMiddleware,
    MetricsMiddleware,
    RequestMiddlewareBase,
)
from space.pokearound.atp.atproto.errors import (
    ConfigurationError,
    ParFailed,
    StateMismatch,
    TokenExchangeFailed,
    TokenRefreshFailed,
    NoRefreshToken,
)
from space.pokearound.atp.atproto.jwt import deserialize_dpop_key, generate_dpop_key, serialize_dpop_key
from space.pokearound.atp.atproto.pds import ServerMetadata, discover_auth_server
from space.pokearound.atp.atproto.pkce import generate_pkce_verifier
from space.pokearound.atp.atproto.session import Session
from space.pokearound.atp.resolve.handle import ResolvedSubject, resolve_identity

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "atproto transition:generic"
OAUTH_REQUEST_TIMEOUT = 15.0

# Authorization servers answer a missing or stale nonce with either status.
NONCE_CHALLENGE_STATUSES = (400, 401)


@dataclass
class AuthState:
    """Everything needed to finish one in-flight login.

    Created by `start_authorization` and consumed once by `exchange_code`. It can be
    round-tripped through `to_dict`/`from_dict` so a login controller can keep it in
    a short lived cookie; it is never written to the session store.
    """

    state: str
    pkce_verifier: str
    dpop_key: jwk.JWK
    auth_server_metadata: Dict[str, Any]
    pds_url: str
    did: str
    redirect_uri: str
    authorization_url: str
    client_id: str
    handle: Optional[str] = None
    nonce: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "pkce_verifier": self.pkce_verifier,
            "dpop_key": serialize_dpop_key(self.dpop_key),
            "auth_server_metadata": self.auth_server_metadata,
            "pds_url": self.pds_url,
            "did": self.did,
            "handle": self.handle,
            "redirect_uri": self.redirect_uri,
            "authorization_url": self.authorization_url,
            "client_id": self.client_id,
            "nonce": self.nonce,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AuthState":
        return AuthState(
            state=data["state"],
            pkce_verifier=data["pkce_verifier"],
            dpop_key=deserialize_dpop_key(data["dpop_key"]),
            auth_server_metadata=data["auth_server_metadata"],
            pds_url=data["pds_url"],
            did=data["did"],
            handle=data.get("handle", None),
            redirect_uri=data["redirect_uri"],
            authorization_url=data["authorization_url"],
            client_id=data["client_id"],
            nonce=data.get("nonce", None),
        )


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def build_authorization_url(
    authorization_endpoint: str, client_id: str, request_uri: str
) -> str:
    """Add `client_id` and `request_uri` to the authorization endpoint.

    Query parameters already present on the endpoint are kept.
    """
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update({"client_id": client_id, "request_uri": request_uri})
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


def calculate_expiry(
    token_response: Dict[str, Any], now: Optional[datetime] = None
) -> Optional[datetime]:
    expires_in = token_response.get("expires_in", None)
    if not isinstance(expires_in, int) or isinstance(expires_in, bool):
        return None
    if now is None:
        now = datetime.now(timezone.utc)
    return now + timedelta(seconds=expires_in)


def token_endpoint_for(auth_server_url: str) -> str:
    return f"{auth_server_url.rstrip('/')}/oauth/token"


def _client_id(settings: Settings, client_id: Optional[str] = None) -> str:
    client_id = client_id or settings.client_id
    if not client_id:
        raise ConfigurationError("client_id is not configured")
    return client_id


async def dpop_form_post(
    http_session: ClientSession,
    dpop_key: jwk.JWK,
    url: str,
    data: Dict[str, str],
    nonce: Optional[str] = None,
    timeout: float = OAUTH_REQUEST_TIMEOUT,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[ChainResponse, Optional[str]]:
    """POST a form to an authorization server endpoint with a DPoP proof.

    Returns the final response and the most recent nonce the server issued (or the
    nonce that was passed in when the server issued none).
    """
    dpop_middleware = GenerateDpopMiddleware(
        dpop_key, nonce=nonce, nonce_statuses=NONCE_CHALLENGE_STATUSES
    )
    chain_middleware: list[RequestMiddlewareBase] = []
    if metrics_client is not None:
        chain_middleware.append(MetricsMiddleware(metrics_client, "atp.oauth.request"))
    chain_middleware.append(dpop_middleware)

    chain_client = ChainMiddlewareClient(
        client_session=http_session, raise_for_status=False, middleware=chain_middleware
    )
    async with chain_client.post(
        url, data=data, timeout=ClientTimeout(total=timeout)
    ) as (
        _,
        chain_response,
    ):
        return chain_response, dpop_middleware.nonce


async def start_authorization(
    http_session: ClientSession,
    settings: Settings,
    subject: str,
    redirect_uri: Optional[str] = None,
    scope: Optional[str] = None,
    client_id: Optional[str] = None,
    metrics_client: Optional[MetricsClient] = None,
) -> AuthState:
    """
    Start an OAuth login for a handle or DID.

    Args:
        http_session: HTTP session for making requests
        settings: Application settings
        subject: User's handle or DID
        redirect_uri: Callback URL (defaults to the configured redirect URI)
        scope: Requested scope (defaults to "atproto transition:generic")
        client_id: Client id (defaults to the configured client id)

    Returns:
        AuthState whose `authorization_url` the user should be sent to

    Raises:
        ConfigurationError: no client id is available
        DiscoveryError: identity or server metadata could not be resolved
        ParFailed: the pushed authorization request was rejected
        TransportError: network failure or timeout
    """
    client_id = _client_id(settings, client_id)
    redirect_uri = redirect_uri or settings.oauth_redirect_uri
    scope = scope or settings.oauth_scope or DEFAULT_SCOPE

    resolved = await resolve_identity(
        http_session,
        subject,
        plc_hostname=settings.plc_hostname,
        handle_resolver=settings.handle_resolver,
        timeout=settings.discovery_timeout,
    )

    server_metadata = await discover_auth_server(
        http_session, resolved.pds, timeout=settings.discovery_timeout
    )

    return await initiate_par(
        http_session,
        resolved,
        server_metadata,
        redirect_uri,
        client_id,
        scope,
        timeout=settings.request_timeout,
        metrics_client=metrics_client,
    )


async def initiate_par(
    http_session: ClientSession,
    resolved: ResolvedSubject,
    server_metadata: ServerMetadata,
    redirect_uri: str,
    client_id: str,
    scope: str = DEFAULT_SCOPE,
    timeout: float = OAUTH_REQUEST_TIMEOUT,
    metrics_client: Optional[MetricsClient] = None,
) -> AuthState:
    """Push the authorization request and build the AuthState for the login."""
    state = generate_state()
    (pkce_verifier, code_challenge) = generate_pkce_verifier()
    dpop_key, _ = generate_dpop_key()

    data = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "login_hint": resolved.did,
    }

    par_url = server_metadata.par_endpoint
    chain_response, nonce = await dpop_form_post(
        http_session,
        dpop_key,
        par_url,
        data,
        timeout=timeout,
        metrics_client=metrics_client,
    )

    if chain_response.is_nonce_challenge(NONCE_CHALLENGE_STATUSES):
        raise ParFailed(
            chain_response.status,
            chain_response.body,
            f"PAR to {par_url} still demanded a DPoP nonce after retrying",
        )

    par_resp = chain_response.json_body()
    par_request_uri = par_resp.get("request_uri", None)
    if chain_response.status != 201 or not isinstance(par_request_uri, str):
        logger.error("PAR failed: %s %r", chain_response.status, chain_response.body)
        raise ParFailed(chain_response.status, chain_response.body)

    authorization_url = build_authorization_url(
        server_metadata.authorization_endpoint, client_id, par_request_uri
    )

    return AuthState(
        state=state,
        pkce_verifier=pkce_verifier,
        dpop_key=dpop_key,
        auth_server_metadata=server_metadata.auth,
        pds_url=server_metadata.pds_url,
        did=resolved.did,
        handle=resolved.handle,
        redirect_uri=redirect_uri,
        authorization_url=authorization_url,
        client_id=client_id,
        nonce=nonce,
    )


async def exchange_code(
    http_session: ClientSession,
    settings: Settings,
    auth_state: AuthState,
    code: str,
    returned_state: Optional[str],
    metrics_client: Optional[MetricsClient] = None,
) -> Session:
    """
    Exchange an authorization code for a Session.

    The returned state is compared before anything is sent, so a mismatch never
    reaches the network.

    Raises:
        StateMismatch: `returned_state` differs from the state sent in the PAR
        TokenExchangeFailed: the token endpoint rejected the code
        TransportError: network failure or timeout
    """
    if returned_state is None or not secrets.compare_digest(
        returned_state, auth_state.state
    ):
        raise StateMismatch("state returned to the callback does not match")

    token_endpoint = auth_state.auth_server_metadata.get("token_endpoint", None)
    if not token_endpoint:
        raise TokenExchangeFailed(0, None, "authorization server has no token endpoint")

    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": auth_state.redirect_uri,
        "client_id": auth_state.client_id,
        "code_verifier": auth_state.pkce_verifier,
    }

    chain_response, nonce = await dpop_form_post(
        http_session,
        auth_state.dpop_key,
        token_endpoint,
        data,
        nonce=auth_state.nonce,
        timeout=settings.request_timeout,
        metrics_client=metrics_client,
    )

    if chain_response.status != 200:
        raise TokenExchangeFailed(chain_response.status, chain_response.body)

    token_response = chain_response.json_body()
    access_token = token_response.get("access_token", None)
    if not access_token:
        raise TokenExchangeFailed(
            chain_response.status, chain_response.body, "token response has no access token"
        )

    sub = token_response.get("sub", None)
    if sub != auth_state.did:
        logger.warning("DID mismatch: expected %s, got %s", auth_state.did, sub)

    return Session(
        did=sub or auth_state.did,
        handle=auth_state.handle,
        access_token=access_token,
        refresh_token=token_response.get("refresh_token", None),
        dpop_key=auth_state.dpop_key,
        pds_url=auth_state.pds_url,
        auth_server_url=auth_state.auth_server_metadata.get("issuer", ""),
        scope=token_response.get("scope", None),
        expires_at=calculate_expiry(token_response),
        auth_server_nonce=nonce,
        resource_server_nonce=None,
    )


async def refresh_session(
    http_session: ClientSession,
    settings: Settings,
    session: Session,
    metrics_client: Optional[MetricsClient] = None,
) -> Session:
    """
    Refresh the access token of a session.

    The DPoP key is kept; tokens, expiry and the authorization server nonce are
    replaced. A refresh token omitted from the response keeps the current one.

    Raises:
        NoRefreshToken: the session has no refresh token; nothing is sent
        TokenRefreshFailed: the token endpoint rejected the refresh
        TransportError: network failure or timeout
    """
    if not session.refresh_token:
        raise NoRefreshToken(f"session for {session.did} has no refresh token")

    client_id = _client_id(settings)
    token_endpoint = token_endpoint_for(session.auth_server_url)

    data = {
        "grant_type": "refresh_token",
        "refresh_token": session.refresh_token,
        "client_id": client_id,
    }

    chain_response, nonce = await dpop_form_post(
        http_session,
        session.dpop_key,
        token_endpoint,
        data,
        nonce=session.auth_server_nonce,
        timeout=settings.request_timeout,
        metrics_client=metrics_client,
    )

    token_response = chain_response.json_body()
    access_token = token_response.get("access_token", None)
    if chain_response.status != 200 or not access_token:
        raise TokenRefreshFailed(chain_response.status, chain_response.body)

    logger.debug("Refreshed session for %s", session.did)

    return replace(
        session,
        access_token=access_token,
        refresh_token=token_response.get("refresh_token", None) or session.refresh_token,
        expires_at=calculate_expiry(token_response),
        scope=token_response.get("scope", None) or session.scope,
        auth_server_nonce=nonce,
    )


async def logout(session_store: Any, did: str) -> bool:
    """Forget the stored session for a DID. Returns whether one existed."""
    deleted = await session_store.delete(did)
    if deleted:
        logger.info("Logged out %s", did)
    return deleted
