"""
PokeAround AT Protocol

This package signs PokeAround into AT Protocol repositories and publishes curated
links there. It authenticates with OAuth (PAR, PKCE and DPoP-bound tokens), keeps
sessions fresh, and talks to a user's PDS over XRPC.

Packages:
- atproto: OAuth flow, DPoP proofs, sessions, record codec and the PDS client
- resolve: Handle and DID resolution
- model: Database models for stored sessions and links
- app: Operational server, configuration, metrics and the link sync worker
"""
