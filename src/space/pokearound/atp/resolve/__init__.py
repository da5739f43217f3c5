"""
Identity Resolution

This package resolves AT Protocol identifiers (handles, DIDs) to the DID and the
PDS that hosts the identity's repository.

Key Components:
- handle.py: Handle and DID resolution implementation
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - XRPC resolution via com.atproto.identity.resolveHandle on a resolver server

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints

The resolution flow typically follows these steps:
1. Parse the input to determine if it's a handle or DID
2. For handles, ask the resolver server for the DID
3. Fetch the DID document and pick the #atproto_pds service endpoint
"""
