"""
Repository client for a user's PDS.

Every call is DPoP-bound to the session's access token. The PDS may rotate its
nonce on any response, so each operation returns the session it should be followed
with; callers persist that session (see `save_session`) once they are done.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from aiohttp import ClientSession, ClientTimeout
from pydantic import BaseModel

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
    ATProtoError,
    CreateFailed,
    DeleteFailed,
    GetFailed,
    ListFailed,
    NonceRetryExhausted,
    NotFound,
    SessionNotFound,
    TransportError,
)
from space.pokearound.atp.atproto.oauth import refresh_session
from space.pokearound.atp.atproto.session import Session, should_refresh
from space.pokearound.atp.atproto.tid import generate as generate_tid

logger = logging.getLogger(__name__)

PDS_REQUEST_TIMEOUT = 15.0

# Resource servers challenge for a nonce with 401 only.
RESOURCE_NONCE_STATUSES = (401,)


class RecordRef(BaseModel):
    uri: str
    cid: Optional[str] = None


def xrpc_url(session: Session, method: str) -> str:
    return f"{session.pds_url.rstrip('/')}/xrpc/{method}"


async def authenticated_request(
    http_session: ClientSession,
    session: Session,
    method: str,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    json: Optional[Any] = None,
    timeout: float = PDS_REQUEST_TIMEOUT,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[ChainResponse, Session]:
    """
    Make a DPoP-bound request with the session's access token.

    A `401 use_dpop_nonce` response is retried once with the nonce from its
    `DPoP-Nonce` header. The returned session carries the latest nonce seen, even
    when the server rotated it on a successful response.

    Returns:
        The final response and the session to use for the next call

    Raises:
        NonceRetryExhausted: the server demanded a fresh nonce again after the retry
        TransportError: network failure or timeout

    Errors raised here and by the record operations carry the updated session as
    `session`, so a nonce learned before the failure is not lost.
    """
    dpop_middleware = GenerateDpopMiddleware(
        session.dpop_key,
        session.public_key_dict,
        nonce=session.resource_server_nonce,
        access_token=session.access_token,
        nonce_statuses=RESOURCE_NONCE_STATUSES,
    )
    chain_middleware: list[RequestMiddlewareBase] = []
    if metrics_client is not None:
        chain_middleware.append(MetricsMiddleware(metrics_client, "atp.pds.request"))
    chain_middleware.append(dpop_middleware)

    chain_client = ChainMiddlewareClient(
        client_session=http_session, raise_for_status=False, middleware=chain_middleware
    )

    kwargs: Dict[str, Any] = {"timeout": ClientTimeout(total=timeout)}
    if params is not None:
        kwargs["params"] = params
    if json is not None:
        kwargs["json"] = json

    try:
        async with chain_client.request(method, url, **kwargs) as (_, chain_response):
            pass
    except TransportError as e:
        e.session = session.with_resource_server_nonce(dpop_middleware.nonce)
        raise

    updated_session = session.with_resource_server_nonce(dpop_middleware.nonce)

    if chain_response.is_nonce_challenge(RESOURCE_NONCE_STATUSES):
        raise NonceRetryExhausted(
            chain_response.status,
            chain_response.body,
            f"{method.upper()} {url} still demanded a DPoP nonce after retrying",
            session=updated_session,
        )

    return chain_response, updated_session


async def create_record(
    http_session: ClientSession,
    session: Session,
    collection: str,
    record: Dict[str, Any],
    rkey: Optional[str] = None,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[RecordRef, Session]:
    """
    Create a record in the session's repository.

    Args:
        collection: Collection NSID (e.g. "space.pokearound.link")
        record: Record body, including its `$type`
        rkey: Record key, a freshly generated TID when omitted

    Raises:
        CreateFailed: the PDS answered with a non-200 status
    """
    if rkey is None:
        rkey = generate_tid()

    body = {
        "repo": session.did,
        "collection": collection,
        "rkey": rkey,
        "record": record,
    }

    chain_response, updated_session = await authenticated_request(
        http_session,
        session,
        "POST",
        xrpc_url(session, "com.atproto.repo.createRecord"),
        json=body,
        metrics_client=metrics_client,
    )

    response = chain_response.json_body()
    uri = response.get("uri", None)
    if chain_response.status != 200 or not isinstance(uri, str):
        raise CreateFailed(
            chain_response.status, chain_response.body, session=updated_session
        )

    return RecordRef(uri=uri, cid=response.get("cid", None)), updated_session


async def get_record(
    http_session: ClientSession,
    session: Session,
    collection: str,
    rkey: str,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[Dict[str, Any], Session]:
    """
    Fetch one record.

    Raises:
        NotFound: the record does not exist
        GetFailed: any other non-200 status
    """
    params = {"repo": session.did, "collection": collection, "rkey": rkey}

    chain_response, updated_session = await authenticated_request(
        http_session,
        session,
        "GET",
        xrpc_url(session, "com.atproto.repo.getRecord"),
        params=params,
        metrics_client=metrics_client,
    )

    if chain_response.status == 404:
        raise NotFound(
            chain_response.status, chain_response.body, session=updated_session
        )
    if chain_response.status != 200:
        raise GetFailed(
            chain_response.status, chain_response.body, session=updated_session
        )

    return chain_response.json_body(), updated_session


async def list_records(
    http_session: ClientSession,
    session: Session,
    collection: str,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    reverse: Optional[bool] = None,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[Dict[str, Any], Session]:
    """List records in a collection. Optional arguments are sent only when given."""
    params: Dict[str, str] = {"repo": session.did, "collection": collection}
    if limit is not None:
        params["limit"] = str(limit)
    if cursor is not None:
        params["cursor"] = cursor
    if reverse is not None:
        params["reverse"] = "true" if reverse else "false"

    chain_response, updated_session = await authenticated_request(
        http_session,
        session,
        "GET",
        xrpc_url(session, "com.atproto.repo.listRecords"),
        params=params,
        metrics_client=metrics_client,
    )

    if chain_response.status != 200:
        raise ListFailed(
            chain_response.status, chain_response.body, session=updated_session
        )

    return chain_response.json_body(), updated_session


async def delete_record(
    http_session: ClientSession,
    session: Session,
    collection: str,
    rkey: str,
    metrics_client: Optional[MetricsClient] = None,
) -> Session:
    body = {"repo": session.did, "collection": collection, "rkey": rkey}

    chain_response, updated_session = await authenticated_request(
        http_session,
        session,
        "POST",
        xrpc_url(session, "com.atproto.repo.deleteRecord"),
        json=body,
        metrics_client=metrics_client,
    )

    if chain_response.status != 200:
        raise DeleteFailed(
            chain_response.status, chain_response.body, session=updated_session
        )

    return updated_session


async def get_session_for(
    http_session: ClientSession,
    settings: Settings,
    session_store: Any,
    did: str,
    metrics_client: Optional[MetricsClient] = None,
) -> Session:
    """
    Load the stored session for a DID, refreshing it first when close to expiry.

    A failed refresh is logged and the stored session is returned unchanged; its
    access token may still be accepted.

    Raises:
        SessionNotFound: no session is stored for the DID
    """
    session = await session_store.load(did)
    if session is None:
        raise SessionNotFound(did)

    if not should_refresh(session):
        return session

    try:
        refreshed = await refresh_session(
            http_session, settings, session, metrics_client=metrics_client
        )
    except ATProtoError as e:
        logger.warning("Failed to refresh session for %s: %s", did, e)
        return session

    await session_store.save(refreshed)
    return refreshed


async def save_session(session_store: Any, session: Session) -> None:
    """Persist a session after calls that may have rotated its nonces."""
    await session_store.save(session)
