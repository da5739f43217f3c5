"""
Unit tests for the outbound request middleware chain.

Tests cover request/response wrappers, DPoP proof injection, the bounded nonce
retry, metrics recording, and transport error wrapping.
"""

import asyncio
import json
from typing import Any, Dict
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientConnectionError, ClientResponse, ClientSession, hdrs
from jwcrypto import jwt
from multidict import CIMultiDict, CIMultiDictProxy

from space.pokearound.atp.app.metrics import MetricsClient
from space.pokearound.atp.atproto.chain import (
    ChainMiddlewareClient,
    ChainRequest,
    ChainResponse,
    EndOfLineChainMiddleware,
    GenerateDpopMiddleware,
    MetricsMiddleware,
    RequestMiddlewareBase,
)
from space.pokearound.atp.atproto.errors import DpopNonceError, TransportError
from space.pokearound.atp.atproto.jwt import hash_access_token


def create_headers_proxy(headers: Dict[str, str]) -> CIMultiDictProxy:
    return CIMultiDictProxy(CIMultiDict(headers))


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    content_type: str = "application/json",
    body: Any = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    headers_dict.setdefault(hdrs.CONTENT_TYPE, content_type)
    mock_response.headers = create_headers_proxy(headers_dict)

    if content_type.startswith("application/json"):
        text = body if isinstance(body, str) else json.dumps(body or {})
        mock_response.text = AsyncMock(return_value=text)
        if isinstance(body, str):
            mock_response.json = AsyncMock(side_effect=ValueError("bad json"))
        else:
            mock_response.json = AsyncMock(return_value=body or {})
    elif content_type.startswith("text/"):
        mock_response.text = AsyncMock(return_value=str(body))
    else:
        mock_response.read = AsyncMock(return_value=body or b"")

    mock_response.raise_for_status = Mock()
    mock_response.closed = False
    mock_response.close = Mock()
    return mock_response


def nonce_challenge(nonce: str | None = "server-nonce", status: int = 400) -> ClientResponse:
    headers = {"DPoP-Nonce": nonce} if nonce else {}
    return create_mock_response(
        status=status, headers=headers, body={"error": "use_dpop_nonce"}
    )


def proof_claims(request_headers: Dict[str, str], dpop_key) -> Dict[str, Any]:
    parsed = jwt.JWT(jwt=request_headers["DPoP"], key=dpop_key)
    return json.loads(parsed.claims)


class TestChainRequest:
    def test_from_chain_request_copies_headers(self):
        original = ChainRequest(
            method="POST",
            url="https://example.com",
            headers={"DPoP": "one"},
            kwargs={"data": {"a": "b"}},
        )

        copy = ChainRequest.from_chain_request(original)
        copy.headers["DPoP"] = "two"

        assert original.headers == {"DPoP": "one"}
        assert copy.kwargs == original.kwargs
        assert copy is not original

    def test_from_chain_request_without_headers(self):
        copy = ChainRequest.from_chain_request(ChainRequest("GET", "https://example.com"))
        assert copy.headers == {}


class TestChainResponse:
    @pytest.mark.asyncio
    async def test_json(self):
        chain_response = await ChainResponse.from_aiohttp_response(
            create_mock_response(body={"key": "value"})
        )
        assert chain_response.body == {"key": "value"}
        assert chain_response.json_body() == {"key": "value"}

    @pytest.mark.asyncio
    async def test_invalid_json_falls_back_to_text(self):
        chain_response = await ChainResponse.from_aiohttp_response(
            create_mock_response(body="<html>oops</html>")
        )
        assert chain_response.body == "<html>oops</html>"
        assert chain_response.json_body() == {}

    @pytest.mark.asyncio
    async def test_text(self):
        chain_response = await ChainResponse.from_aiohttp_response(
            create_mock_response(content_type="text/plain", body="hello")
        )
        assert chain_response.body == "hello"

    @pytest.mark.asyncio
    async def test_binary(self):
        chain_response = await ChainResponse.from_aiohttp_response(
            create_mock_response(content_type="application/octet-stream", body=b"\x00")
        )
        assert chain_response.body == b"\x00"

    def test_dpop_nonce(self):
        assert ChainResponse.empty(200, {"DPoP-Nonce": "n"}).dpop_nonce == "n"
        assert ChainResponse.empty(200, {"dpop-nonce": "n"}).dpop_nonce == "n"
        assert ChainResponse.empty(200).dpop_nonce is None

    def test_is_nonce_challenge(self):
        headers = create_headers_proxy({})
        body = {"error": "use_dpop_nonce"}

        assert ChainResponse(400, headers, body).is_nonce_challenge()
        assert ChainResponse(401, headers, body).is_nonce_challenge()
        assert not ChainResponse(400, headers, body).is_nonce_challenge((401,))
        assert not ChainResponse(500, headers, body).is_nonce_challenge()
        assert not ChainResponse(400, headers, {"error": "invalid_request"}).is_nonce_challenge()
        assert not ChainResponse(400, headers, "use_dpop_nonce").is_nonce_challenge()


class TestGenerateDpopMiddleware:
    @pytest.mark.asyncio
    async def test_sets_dpop_header(self, dpop_key):
        middleware = GenerateDpopMiddleware(dpop_key)
        chain_response = ChainResponse.empty(200)
        next_handler = AsyncMock(return_value=(Mock(), chain_response))
        request = ChainRequest("POST", "https://as.example/oauth/par?x=1")

        result = await middleware.handle(next_handler, request)

        assert len(result) == 2
        claims = proof_claims(request.headers, dpop_key)
        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://as.example/oauth/par"
        assert "nonce" not in claims
        assert hdrs.AUTHORIZATION not in request.headers

    @pytest.mark.asyncio
    async def test_access_token_binding(self, dpop_key):
        middleware = GenerateDpopMiddleware(dpop_key, access_token="token", nonce="n1")
        next_handler = AsyncMock(return_value=(Mock(), ChainResponse.empty(200)))
        request = ChainRequest("GET", "https://pds.example/xrpc/m")

        await middleware.handle(next_handler, request)

        assert request.headers[hdrs.AUTHORIZATION] == "DPoP token"
        claims = proof_claims(request.headers, dpop_key)
        assert claims["ath"] == hash_access_token("token")
        assert claims["nonce"] == "n1"

    @pytest.mark.asyncio
    async def test_challenge_produces_one_retry(self, dpop_key):
        middleware = GenerateDpopMiddleware(dpop_key)
        challenge = ChainResponse(
            400, create_headers_proxy({"DPoP-Nonce": "abc"}), {"error": "use_dpop_nonce"}
        )
        next_handler = AsyncMock(return_value=(Mock(), challenge))
        request = ChainRequest("POST", "https://as.example/oauth/par", headers={})

        first = await middleware.handle(next_handler, request)
        assert len(first) == 3
        retry_request = first[2]
        assert retry_request is not request
        assert middleware.nonce == "abc"

        second = await middleware.handle(next_handler, retry_request)
        assert len(second) == 2
        assert proof_claims(retry_request.headers, dpop_key)["nonce"] == "abc"
        assert middleware.challenges == 2

    @pytest.mark.asyncio
    async def test_challenge_without_nonce_is_not_retried(self, dpop_key):
        middleware = GenerateDpopMiddleware(dpop_key)
        challenge = ChainResponse(400, create_headers_proxy({}), {"error": "use_dpop_nonce"})
        next_handler = AsyncMock(return_value=(Mock(), challenge))

        result = await middleware.handle(next_handler, ChainRequest("POST", "https://as.example"))

        assert len(result) == 2

    @pytest.mark.asyncio
    async def test_ignores_other_statuses(self, dpop_key):
        middleware = GenerateDpopMiddleware(dpop_key, nonce_statuses=(401,))
        challenge = ChainResponse(
            400, create_headers_proxy({"DPoP-Nonce": "abc"}), {"error": "use_dpop_nonce"}
        )
        next_handler = AsyncMock(return_value=(Mock(), challenge))

        result = await middleware.handle(next_handler, ChainRequest("GET", "https://pds.example"))

        assert len(result) == 2
        assert middleware.nonce == "abc"


class TestMetricsMiddleware:
    @pytest.mark.asyncio
    async def test_records_count_and_time(self):
        metrics_client = Mock(spec=MetricsClient)
        middleware = MetricsMiddleware(metrics_client, "test.request")
        next_handler = AsyncMock(return_value=(Mock(), ChainResponse.empty(201)))

        await middleware.handle(next_handler, ChainRequest("POST", "https://example.com"))

        metrics_client.increment.assert_called_once_with(
            "test.request.count", 1, tag_dict={"method": "POST", "status": 201}
        )
        assert metrics_client.timer.call_args.args[0] == "test.request.time"

    @pytest.mark.asyncio
    async def test_records_exceptions(self):
        metrics_client = Mock(spec=MetricsClient)
        middleware = MetricsMiddleware(metrics_client, "test.request")
        next_handler = AsyncMock(side_effect=TransportError("https://example.com", OSError()))

        with pytest.raises(TransportError):
            await middleware.handle(next_handler, ChainRequest("GET", "https://example.com"))

        names = [call.args[0] for call in metrics_client.increment.call_args_list]
        assert names == ["test.request.exception", "test.request.count"]


class TestEndOfLineChainMiddleware:
    @pytest.mark.asyncio
    async def test_makes_request(self):
        mock_response = create_mock_response(body={"ok": True})
        request_func = AsyncMock(return_value=mock_response)
        middleware = EndOfLineChainMiddleware(request_func, Mock())

        client_response, chain_response = await middleware.handle(
            ChainRequest("POST", "https://example.com", headers={"DPoP": "x"}, kwargs={"data": {"a": "b"}})
        )

        assert client_response is mock_response
        assert chain_response.body == {"ok": True}
        call = request_func.call_args
        assert call.args == ("post", "https://example.com")
        assert call.kwargs["headers"] == {"DPoP": "x"}
        assert call.kwargs["data"] == {"a": "b"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ClientConnectionError("refused"), asyncio.TimeoutError()])
    async def test_wraps_transport_failures(self, error):
        request_func = AsyncMock(side_effect=error)
        middleware = EndOfLineChainMiddleware(request_func, Mock())

        with pytest.raises(TransportError) as excinfo:
            await middleware.handle(ChainRequest("GET", "https://example.com"))

        assert excinfo.value.url == "https://example.com"
        assert excinfo.value.cause is error


class TestChainMiddlewareClient:
    @pytest.mark.asyncio
    async def test_retries_once_with_nonce(self, dpop_key):
        mock_session = AsyncMock(spec=ClientSession)
        mock_session.request = AsyncMock(
            side_effect=[nonce_challenge("abc"), create_mock_response(status=201, body={"request_uri": "urn:x"})]
        )
        dpop_middleware = GenerateDpopMiddleware(dpop_key)
        client = ChainMiddlewareClient(mock_session, middleware=[dpop_middleware])

        async with client.post("https://as.example/oauth/par", data={"a": "b"}) as (
            _,
            chain_response,
        ):
            assert chain_response.status == 201

        assert mock_session.request.call_count == 2
        retry_headers = mock_session.request.call_args_list[1].kwargs["headers"]
        assert proof_claims(retry_headers, dpop_key)["nonce"] == "abc"
        assert mock_session.request.call_args_list[1].kwargs["data"] == {"a": "b"}

    @pytest.mark.asyncio
    async def test_second_challenge_is_returned(self, dpop_key):
        mock_session = AsyncMock(spec=ClientSession)
        mock_session.request = AsyncMock(
            side_effect=[nonce_challenge("one"), nonce_challenge("two"), nonce_challenge("three")]
        )
        client = ChainMiddlewareClient(
            mock_session, middleware=[GenerateDpopMiddleware(dpop_key)]
        )

        async with client.get("https://as.example/") as (_, chain_response):
            assert chain_response.is_nonce_challenge()

        assert mock_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_attempt_limit(self):
        class AlwaysRetry(RequestMiddlewareBase):
            async def handle(self, next, request):
                response = await next(request)
                return response[0], response[1], ChainRequest.from_chain_request(request)

        mock_session = AsyncMock(spec=ClientSession)
        mock_session.request = AsyncMock(side_effect=lambda *a, **k: nonce_challenge())
        client = ChainMiddlewareClient(mock_session, middleware=[AlwaysRetry()], attempt_max=2)

        with pytest.raises(DpopNonceError):
            await client.get("https://as.example/")
        assert mock_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_closes_response(self):
        mock_response = create_mock_response()
        mock_session = AsyncMock(spec=ClientSession)
        mock_session.request = AsyncMock(return_value=mock_response)
        client = ChainMiddlewareClient(mock_session)

        async with client.get("https://example.com"):
            pass

        mock_response.close.assert_called_once()
