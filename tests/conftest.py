"""
Shared test configuration and fixtures.

Provides a throwaway SQLite database, settings suitable for tests, and a fake
authorization server + PDS served by aiohttp's TestServer so the OAuth flow and the
repository client can be exercised over real HTTP.
"""

import base64
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer
from cryptography.fernet import Fernet
from jwcrypto import jwk, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from space.pokearound.atp.app.config import Settings
from space.pokearound.atp.atproto.jwt import generate_dpop_key
from space.pokearound.atp.model.base import Base


def decode_segment(segment: str) -> Dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


def verify_dpop(token: str) -> Dict[str, Any]:
    """Verify a DPoP proof against its embedded key and return header and claims."""
    header = decode_segment(token.split(".")[0])
    key = jwk.JWK(**header["jwk"])
    parsed = jwt.JWT(jwt=token, key=key)
    return {"header": header, "claims": json.loads(parsed.claims)}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        client_id="https://pokearound.test/client-metadata.json",
        redirect_uri="https://pokearound.test/auth/callback",
        encryption_key=Fernet(Fernet.generate_key()),
        metrics_backend="none",
        pg_dsn="sqlite+aiosqlite://",
        service_did="did:plc:service",
        sync_enabled=True,
        sync_min_score=50,
        sync_batch_size=20,
    )


@pytest.fixture
def dpop_key() -> jwk.JWK:
    key, _ = generate_dpop_key()
    return key


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Async SQLAlchemy engine on a fresh SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def database_session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class FakeAtprotoServer:
    """
    Authorization server and PDS in one aiohttp application.

    Endpoints that require a DPoP nonce answer with `use_dpop_nonce` until a proof
    carries `self.nonce`. Every received request is recorded in `self.requests` as
    (path, DPoP claims, form or JSON body, headers).
    """

    def __init__(self) -> None:
        self.nonce = "abc"
        self.require_nonce = {"/oauth/par": True, "/oauth/token": True}
        self.pds_nonce: Optional[str] = "pds-1"
        self.rotate_pds_nonce: Optional[str] = None
        self.always_challenge = False
        self.par_status = 201
        self.token_status = 200
        self.token_response: Dict[str, Any] = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_type": "DPoP",
            "expires_in": 3600,
            "scope": "atproto transition:generic",
            "sub": "did:plc:alice",
        }
        self.records: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Dict[str, Any]] = []
        self.server: Optional[TestServer] = None

        app = web.Application()
        app.add_routes(
            [
                web.get(
                    "/.well-known/oauth-protected-resource", self.protected_resource
                ),
                web.get(
                    "/.well-known/oauth-authorization-server",
                    self.authorization_server,
                ),
                web.post("/oauth/par", self.par),
                web.post("/oauth/token", self.token),
                web.post("/xrpc/com.atproto.repo.createRecord", self.create_record),
                web.get("/xrpc/com.atproto.repo.getRecord", self.get_record),
                web.get("/xrpc/com.atproto.repo.listRecords", self.list_records),
                web.post("/xrpc/com.atproto.repo.deleteRecord", self.delete_record),
            ]
        )
        self.app = app

    @property
    def url(self) -> str:
        assert self.server is not None
        return f"{self.server.scheme}://{self.server.host}:{self.server.port}"

    def calls(self, path: str) -> List[Dict[str, Any]]:
        return [request for request in self.requests if request["path"] == path]

    async def _record(self, request: web.Request, body: Any) -> Dict[str, Any]:
        proof = request.headers.get("DPoP", None)
        claims = verify_dpop(proof)["claims"] if proof else None
        entry = {
            "path": request.path,
            "claims": claims,
            "body": body,
            "headers": dict(request.headers),
        }
        self.requests.append(entry)
        return entry

    def _nonce_challenge(self, status: int, nonce: Optional[str]) -> web.Response:
        headers = {"DPoP-Nonce": nonce} if nonce else {}
        return web.json_response(
            {"error": "use_dpop_nonce", "error_description": "nonce required"},
            status=status,
            headers=headers,
        )

    async def protected_resource(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"resource": self.url, "authorization_servers": [self.url]}
        )

    async def authorization_server(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "issuer": self.url,
                "authorization_endpoint": f"{self.url}/oauth/authorize",
                "token_endpoint": f"{self.url}/oauth/token",
                "pushed_authorization_request_endpoint": f"{self.url}/oauth/par",
                "dpop_signing_alg_values_supported": ["ES256"],
            }
        )

    async def _oauth_endpoint(self, request: web.Request, status: int, body: Any):
        entry = await self._record(request, dict(await request.post()))
        claims = entry["claims"] or {}
        if self.always_challenge or (
            self.require_nonce.get(request.path, False)
            and claims.get("nonce") != self.nonce
        ):
            return self._nonce_challenge(400, self.nonce)
        return web.json_response(body, status=status, headers={"DPoP-Nonce": self.nonce})

    async def par(self, request: web.Request) -> web.Response:
        body: Any = {"request_uri": "urn:ietf:params:oauth:request_uri:req-1", "expires_in": 60}
        if self.par_status != 201:
            body = {"error": "invalid_request"}
        return await self._oauth_endpoint(request, self.par_status, body)

    async def token(self, request: web.Request) -> web.Response:
        body: Any = self.token_response
        if self.token_status != 200:
            body = {"error": "invalid_grant"}
        return await self._oauth_endpoint(request, self.token_status, body)

    async def _pds_guard(self, request: web.Request, body: Any) -> Optional[web.Response]:
        entry = await self._record(request, body)
        claims = entry["claims"] or {}
        if self.always_challenge or (
            self.pds_nonce is not None and claims.get("nonce") != self.pds_nonce
        ):
            return self._nonce_challenge(401, self.pds_nonce)
        return None

    def _pds_headers(self) -> Dict[str, str]:
        if self.rotate_pds_nonce is not None:
            self.pds_nonce = self.rotate_pds_nonce
            self.rotate_pds_nonce = None
        if self.pds_nonce is None:
            return {}
        return {"DPoP-Nonce": self.pds_nonce}

    async def create_record(self, request: web.Request) -> web.Response:
        body = await request.json()
        challenge = await self._pds_guard(request, body)
        if challenge is not None:
            return challenge
        if body["record"].get("url") == "https://fail.example":
            return web.json_response({"error": "InvalidRecord"}, status=400)
        uri = f"at://{body['repo']}/{body['collection']}/{body['rkey']}"
        self.records[uri] = body["record"]
        return web.json_response(
            {"uri": uri, "cid": "bafyreicid"}, headers=self._pds_headers()
        )

    async def get_record(self, request: web.Request) -> web.Response:
        challenge = await self._pds_guard(request, dict(request.query))
        if challenge is not None:
            return challenge
        query = request.query
        uri = f"at://{query['repo']}/{query['collection']}/{query['rkey']}"
        if uri not in self.records:
            return web.json_response({"error": "RecordNotFound"}, status=404)
        return web.json_response(
            {"uri": uri, "cid": "bafyreicid", "value": self.records[uri]},
            headers=self._pds_headers(),
        )

    async def list_records(self, request: web.Request) -> web.Response:
        challenge = await self._pds_guard(request, dict(request.query))
        if challenge is not None:
            return challenge
        prefix = f"at://{request.query['repo']}/{request.query['collection']}/"
        records = [
            {"uri": uri, "cid": "bafyreicid", "value": value}
            for uri, value in self.records.items()
            if uri.startswith(prefix)
        ]
        return web.json_response({"records": records}, headers=self._pds_headers())

    async def delete_record(self, request: web.Request) -> web.Response:
        body = await request.json()
        challenge = await self._pds_guard(request, body)
        if challenge is not None:
            return challenge
        uri = f"at://{body['repo']}/{body['collection']}/{body['rkey']}"
        self.records.pop(uri, None)
        return web.json_response({}, headers=self._pds_headers())


@pytest_asyncio.fixture
async def fake_server():
    fake = FakeAtprotoServer()
    server = TestServer(fake.app)
    await server.start_server()
    fake.server = server

    yield fake

    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with ClientSession() as session:
        yield session
