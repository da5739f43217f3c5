"""
Authorization server discovery for a PDS.

A PDS advertises which authorization server issues tokens for it through
`/.well-known/oauth-protected-resource`; that server then publishes its endpoints
through `/.well-known/oauth-authorization-server`.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel

from space.pokearound.atp.atproto.errors import (
    HttpError,
    InvalidServerMetadata,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_AUTH_SERVER = "https://bsky.social"
DISCOVERY_TIMEOUT = 10.0

RESOURCE_SERVER_PATH = "/.well-known/oauth-protected-resource"
AUTH_SERVER_PATH = "/.well-known/oauth-authorization-server"

REQUIRED_AUTH_SERVER_KEYS = (
    "issuer",
    "authorization_endpoint",
    "token_endpoint",
    "pushed_authorization_request_endpoint",
)


class ServerMetadata(BaseModel):
    """Resource and authorization server metadata for one PDS."""

    resource: Dict[str, Any]
    auth: Dict[str, Any]
    pds_url: str

    @property
    def issuer(self) -> str:
        return self.auth["issuer"]

    @property
    def authorization_endpoint(self) -> str:
        return self.auth["authorization_endpoint"]

    @property
    def token_endpoint(self) -> str:
        return self.auth["token_endpoint"]

    @property
    def par_endpoint(self) -> str:
        return self.auth["pushed_authorization_request_endpoint"]


async def get_json(
    session: ClientSession,
    url: str,
    params: Optional[Dict[str, str]] = None,
    timeout: float = DISCOVERY_TIMEOUT,
) -> Any:
    """GET a JSON document.

    Raises:
        HttpError: on any non-200 status
        TransportError: when no response was received
    """
    try:
        async with session.get(
            url, params=params, timeout=ClientTimeout(total=timeout)
        ) as resp:
            if resp.status != 200:
                raise HttpError(url, resp.status)
            try:
                return await resp.json(content_type=None)
            except ValueError:
                return None
    except (ClientError, asyncio.TimeoutError) as e:
        raise TransportError(url, e) from e


async def oauth_protected_resource(
    session: ClientSession, pds: str, timeout: float = DISCOVERY_TIMEOUT
) -> Dict[str, Any]:
    body = await get_json(session, f"{pds.rstrip('/')}{RESOURCE_SERVER_PATH}", timeout=timeout)
    if not isinstance(body, dict):
        raise InvalidServerMetadata(f"resource server metadata for {pds} is not an object")
    return body


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str, timeout: float = DISCOVERY_TIMEOUT
) -> Dict[str, Any]:
    body = await get_json(
        session, f"{authorization_server.rstrip('/')}{AUTH_SERVER_PATH}", timeout=timeout
    )
    if not isinstance(body, dict):
        raise InvalidServerMetadata(
            f"authorization server metadata for {authorization_server} is not an object"
        )

    missing = [key for key in REQUIRED_AUTH_SERVER_KEYS if not body.get(key)]
    if missing:
        raise InvalidServerMetadata(
            f"authorization server {authorization_server} is missing {', '.join(missing)}"
        )
    return body


def auth_server_url(resource_metadata: Dict[str, Any]) -> str:
    """Pick the authorization server named by resource server metadata."""
    servers = resource_metadata.get("authorization_servers")
    if isinstance(servers, list) and len(servers) > 0 and isinstance(servers[0], str):
        return servers[0]
    if isinstance(servers, str) and servers:
        return servers
    return DEFAULT_AUTH_SERVER


async def discover_auth_server(
    session: ClientSession, pds_url: str, timeout: float = DISCOVERY_TIMEOUT
) -> ServerMetadata:
    """Discover the authorization server for a PDS.

    Args:
        session: HTTP client session
        pds_url: Base URL of the PDS
        timeout: Per-request timeout in seconds

    Returns:
        ServerMetadata with both metadata documents

    Raises:
        HttpError: a metadata document returned a non-200 status
        InvalidServerMetadata: a document is malformed or lacks a required endpoint
        TransportError: network failure or timeout
    """
    resource = await oauth_protected_resource(session, pds_url, timeout=timeout)
    authorization_server = auth_server_url(resource)
    logger.debug("PDS %s uses authorization server %s", pds_url, authorization_server)
    auth = await oauth_authorization_server(session, authorization_server, timeout=timeout)
    return ServerMetadata(resource=resource, auth=auth, pds_url=pds_url)
