"""AT Protocol handle and DID resolution utilities.

Resolves handles to DIDs through the `com.atproto.identity.resolveHandle` XRPC
method, and DIDs to their PDS through the DID document. Supports the did:plc and
did:web DID methods.
"""

import asyncio
from enum import IntEnum
import logging
from urllib.parse import unquote
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel
from typing import Optional, Any, Dict

from space.pokearound.atp.atproto.errors import (
    DiscoveryError,
    HandleResolutionFailed,
    InvalidDidDocument,
    PdsNotFound,
    TransportError,
    UnsupportedDidMethod,
)
from space.pokearound.atp.atproto.pds import DISCOVERY_TIMEOUT, get_json

logger = logging.getLogger(__name__)

PLC_DIRECTORY = "plc.directory"
DEFAULT_HANDLE_RESOLVER = "https://bsky.social"
PDS_SERVICE_ID = "#atproto_pds"


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject.

    The handle is only known when the DID document lists one in `alsoKnownAs`.
    """

    did: str
    pds: str
    handle: Optional[str] = None


def handle_predicate(value: str) -> bool:
    """Check if value is an AT Protocol handle reference."""
    return isinstance(value, str) and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if a DID document service entry is the atproto PDS.

    Both the relative `#atproto_pds` and the fully-qualified `did:...#atproto_pds`
    forms of the id are accepted.
    """
    if not isinstance(value, dict):
        return False
    service_id = value.get("id", None)
    return (
        isinstance(service_id, str)
        and (service_id == PDS_SERVICE_ID or service_id.endswith(PDS_SERVICE_ID))
        and isinstance(value.get("serviceEndpoint", None), str)
    )


def extract_pds(did_document: Any) -> str:
    """Return the PDS endpoint of a DID document.

    Raises:
        InvalidDidDocument: the document or its service list is malformed
        PdsNotFound: no #atproto_pds service is listed
    """
    if not isinstance(did_document, dict):
        raise InvalidDidDocument("DID document is not an object")
    services = did_document.get("service", None)
    if not isinstance(services, list):
        raise InvalidDidDocument("DID document has no service list")
    pds = next(filter(pds_predicate, services), None)
    if pds is None:
        raise PdsNotFound(f"no {PDS_SERVICE_ID} service in DID document")
    return pds["serviceEndpoint"]


def extract_handle(did_document: Dict[str, Any]) -> Optional[str]:
    also_known_as = did_document.get("alsoKnownAs", None)
    if not isinstance(also_known_as, list):
        return None
    handle = next(filter(handle_predicate, also_known_as), None)
    if handle is None:
        return None
    return handle.removeprefix("at://")


def did_web_url(did: str) -> str:
    """Build the did.json URL for a did:web identifier.

    `did:web:example.com` maps to `https://example.com/.well-known/did.json`, and
    additional colon separated segments become path components.
    """
    parts = [unquote(part) for part in did.removeprefix("did:web:").split(":")]
    if len(parts) == 0 or not parts[0]:
        raise UnsupportedDidMethod(did)

    if len(parts) == 1:
        parts.append(".well-known")

    return "https://{inner}/did.json".format(inner="/".join(parts))


def did_document_url(did: str, plc_hostname: str = PLC_DIRECTORY) -> str:
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"
    elif did.startswith("did:web:"):
        return did_web_url(did)
    raise UnsupportedDidMethod(did)


async def fetch_did_document(
    session: ClientSession,
    did: str,
    plc_hostname: str = PLC_DIRECTORY,
    timeout: float = DISCOVERY_TIMEOUT,
) -> Dict[str, Any]:
    """Fetch the DID document for a did:plc or did:web identifier.

    Raises:
        UnsupportedDidMethod: any other DID method; no request is made
        HttpError: the document fetch returned a non-200 status
        InvalidDidDocument: the body is not a JSON object
        TransportError: network failure or timeout
    """
    url = did_document_url(did, plc_hostname)
    body = await get_json(session, url, timeout=timeout)
    if not isinstance(body, dict):
        raise InvalidDidDocument(f"DID document for {did} is not an object")
    return body


async def resolve_did(
    session: ClientSession,
    plc_hostname: str,
    did: str,
    timeout: float = DISCOVERY_TIMEOUT,
) -> ResolvedSubject:
    """Resolve DID to its PDS and, when published, its handle."""
    did_document = await fetch_did_document(session, did, plc_hostname, timeout)
    return ResolvedSubject(
        did=did,
        pds=extract_pds(did_document),
        handle=extract_handle(did_document),
    )


async def resolve_handle(
    session: ClientSession,
    handle: str,
    handle_resolver: str = DEFAULT_HANDLE_RESOLVER,
    timeout: float = DISCOVERY_TIMEOUT,
) -> str:
    """Resolve AT Protocol handle to DID using the resolveHandle XRPC method.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve
        handle_resolver: Base URL of a server implementing resolveHandle

    Returns:
        The DID for the handle

    Raises:
        HandleResolutionFailed: non-200 status or a body without a DID
        TransportError: network failure or timeout
    """
    url = f"{handle_resolver.rstrip('/')}/xrpc/com.atproto.identity.resolveHandle"
    try:
        async with session.get(
            url, params={"handle": handle}, timeout=ClientTimeout(total=timeout)
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            if resp.status != 200:
                raise HandleResolutionFailed(handle, resp.status, body)
    except (ClientError, asyncio.TimeoutError) as e:
        raise TransportError(url, e) from e

    did = body.get("did", None) if isinstance(body, dict) else None
    if not isinstance(did, str) or not did.startswith("did:"):
        raise HandleResolutionFailed(handle, 200, body)
    return did


async def resolve_identity(
    session: ClientSession,
    subject: str,
    plc_hostname: str = PLC_DIRECTORY,
    handle_resolver: str = DEFAULT_HANDLE_RESOLVER,
    timeout: float = DISCOVERY_TIMEOUT,
) -> ResolvedSubject:
    """Resolve AT Protocol subject (handle or DID) to its DID and PDS.

    Parses input, resolves handle to DID if needed, then resolves DID.

    Args:
        session: HTTP client session
        subject: Handle or DID, optionally prefixed with `at://` or `@`
        plc_hostname: PLC directory hostname
        handle_resolver: Base URL used for handle resolution

    Returns:
        ResolvedSubject for the identity
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        raise DiscoveryError(f"cannot resolve empty subject {subject!r}")

    handle: Optional[str] = None
    if parsed_subject.subject_type == SubjectType.hostname:
        handle = parsed_subject.subject
        did = await resolve_handle(session, handle, handle_resolver, timeout)
        logger.debug("Resolved handle %s to %s", handle, did)
    else:
        did = parsed_subject.subject

    resolved = await resolve_did(session, plc_hostname, did, timeout)
    if resolved.handle is None and handle is not None:
        resolved.handle = handle
    return resolved


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string, None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if len(subject) == 0:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)
    elif subject.startswith("did:"):
        raise UnsupportedDidMethod(subject)

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())
