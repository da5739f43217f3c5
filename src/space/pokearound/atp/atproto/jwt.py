"""
JWT and DPoP utilities for AT Protocol authentication.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession) JWTs
as specified in RFC 9449. Every outbound call made with an OAuth session carries one
of these proofs: the nonce-less variant for the PAR and token endpoints, and the
access-token-bound variant (with an `ath` claim) for every PDS call.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit
from jwcrypto import jwt, jwk
from ulid import ULID

DPOP_PROOF_LIFETIME = 300


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for DPoP JWT signing with a unique
    key identifier for tracking.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion as a dictionary for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def serialize_dpop_key(dpop_key: jwk.JWK) -> Dict[str, Any]:
    """Export a DPoP key pair in a JSON storable form.

    The private half includes the `d` parameter, so the result must be stored
    encrypted or kept short-lived.
    """
    return {
        "private": dpop_key.export(private_key=True, as_dict=True),
        "public": dpop_key.export_public(as_dict=True),
    }


def deserialize_dpop_key(data: Dict[str, Any]) -> jwk.JWK:
    """Rebuild a signing-capable key from `serialize_dpop_key` output."""
    private = data.get("private", data)
    return jwk.JWK(**private)


def hash_access_token(access_token: str) -> str:
    """Compute the `ath` claim: base64url(SHA-256(access_token)) without padding."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def normalize_htu(http_uri: str) -> str:
    """Strip the query and fragment from a request URI."""
    parts = urlsplit(str(http_uri))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public key dictionary from generate_dpop_key()

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "typ": "dpop+jwt",
        "alg": "ES256",
        "jwk": public_key_dict,
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = DPOP_PROOF_LIFETIME,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "post", "GET"), upper-cased in the claim
        http_uri: Target HTTP URI; query and fragment are dropped
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 300)
        nonce: Server-provided nonce from a previous DPoP-Nonce header
        access_token: When given, its hash is bound through the `ath` claim

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    iat = int(issued_at.timestamp())
    claims = {
        "jti": secrets.token_urlsafe(16),
        "htm": str(http_method).upper(),
        "htu": normalize_htu(http_uri),
        "iat": iat,
        "exp": iat + expires_in_seconds,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = hash_access_token(access_token)

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    public_key_dict: Optional[Dict[str, Any]] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = DPOP_PROOF_LIFETIME,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> str:
    """Create a complete, signed DPoP JWT for one HTTP request.

    Usage:
        ```python
        dpop_key, public_key = generate_dpop_key()
        dpop_token = create_dpop_jwt(
            dpop_key,
            "POST",
            "https://bsky.social/oauth/par"
        )
        headers["DPoP"] = dpop_token
        ```
    """
    if public_key_dict is None:
        public_key_dict = dpop_key.export_public(as_dict=True)

    header = create_dpop_header(public_key_dict)
    claims = create_dpop_claims(
        http_method, http_uri, issued_at, expires_in_seconds, nonce, access_token
    )

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)

    return dpop_jwt.serialize()


def create_dpop_proof(
    dpop_key: jwk.JWK,
    public_key_dict: Optional[Dict[str, Any]],
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
) -> str:
    """Proof for the PAR and token endpoints (no access token binding)."""
    return create_dpop_jwt(
        dpop_key, http_method, http_uri, public_key_dict=public_key_dict, nonce=nonce
    )


def create_dpop_proof_with_ath(
    dpop_key: jwk.JWK,
    public_key_dict: Optional[Dict[str, Any]],
    http_method: str,
    http_uri: str,
    access_token: str,
    nonce: Optional[str] = None,
) -> str:
    """Proof for resource server calls, bound to the access token."""
    return create_dpop_jwt(
        dpop_key,
        http_method,
        http_uri,
        public_key_dict=public_key_dict,
        nonce=nonce,
        access_token=access_token,
    )
