"""
Proof Key for Code Exchange (RFC 7636) helpers.

Only the S256 challenge method is supported, which is the only one AT Protocol
authorization servers accept.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Tuple


def generate_verifier() -> str:
    """Return 32 random bytes as unpadded URL-safe base64 (43 characters)."""
    return secrets.token_urlsafe(32)


def generate_challenge(verifier: str) -> str:
    hashed = hashlib.sha256(verifier.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    return encoded.decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret verifier sent in the token request
        - pkce_challenge: The challenge sent in the pushed authorization request
    """
    pkce_verifier = generate_verifier()
    return (pkce_verifier, generate_challenge(pkce_verifier))


def verify(verifier: str, challenge: str) -> bool:
    """Constant-time check that `challenge` is the S256 challenge of `verifier`."""
    return hmac.compare_digest(
        generate_challenge(verifier).encode("utf-8"), challenge.encode("utf-8")
    )
