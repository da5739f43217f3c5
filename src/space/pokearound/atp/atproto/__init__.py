"""
AT Protocol Integration

This package provides the OAuth client and repository access for AT Protocol.

Key Components:
- oauth.py: Pushed authorization request, code exchange, refresh and logout
- chain.py: Middleware chain for outgoing requests (DPoP, nonce retry, metrics)
- jwt.py: ES256 DPoP key handling and proof creation
- pkce.py: PKCE verifier and S256 challenge
- pds.py: Protected resource and authorization server metadata discovery
- session.py: The authenticated session and its refresh window
- client.py: XRPC record operations against a PDS
- lexicon.py: Link and bookmark record encoding
- tid.py: Timestamp identifiers used as record keys

The login flow follows these steps:
1. Resolve the subject (handle or DID) to a DID and PDS
2. Discover the authorization server from the PDS
3. Push the authorization request with a PKCE challenge and DPoP proof
4. Exchange the returned code for DPoP-bound tokens
5. Refresh the tokens before they expire

Authorization and resource servers may demand a server-issued nonce in DPoP proofs.
Each request is retried once with the nonce the server supplies, and the latest nonce
is kept on the session for the next call.
"""
