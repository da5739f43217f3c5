from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Collection,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
    Union,
    Protocol,
)
import logging
from aiohttp import ClientError, ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk
from multidict import CIMultiDict, CIMultiDictProxy

from space.pokearound.atp.atproto.errors import DpopNonceError, TransportError
from space.pokearound.atp.atproto.jwt import create_dpop_jwt

RequestFunc = Callable[..., Awaitable[ClientResponse]]

DPOP_NONCE_HEADER = "DPoP-Nonce"
USE_DPOP_NONCE = "use_dpop_nonce"

logger = logging.getLogger(__name__)


class _LoggerStub(Protocol):
    """_Logger defines which methods logger object should have."""

    @abstractmethod
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass


_LoggerType = Union[_LoggerStub, logging.Logger]


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers or {}),
            trace_request_ctx=request.trace_request_ctx,
            kwargs=request.kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            raw = await response.text()
            try:
                return ChainResponse(
                    status=status, headers=headers, body=await response.json()
                )
            except ValueError:
                return ChainResponse(status=status, headers=headers, body=raw)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @staticmethod
    def empty(status: int, headers: Optional[Dict[str, str]] = None) -> "ChainResponse":
        return ChainResponse(
            status=status, headers=CIMultiDictProxy(CIMultiDict(headers or {}))
        )

    @property
    def dpop_nonce(self) -> Optional[str]:
        if self.headers is None:
            return None
        return self.headers.get(DPOP_NONCE_HEADER, None)

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def is_nonce_challenge(self, statuses: Collection[int] = (400, 401)) -> bool:
        return self.status in statuses and self.body_matches_kv("error", USE_DPOP_NONCE)

    def json_body(self) -> Dict[str, Any]:
        if isinstance(self.body, dict):
            return self.body
        return {}


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class MetricsMiddleware(RequestMiddlewareBase):
    """Records outbound request count and latency."""

    def __init__(self, metrics_client: Any, name: str = "atp.client.request") -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._name = name

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        except Exception as e:
            self._metrics_client.increment(
                f"{self._name}.exception",
                1,
                tag_dict={"exception": type(e).__name__, "method": request.method},
            )
            raise
        finally:
            self._metrics_client.timer(
                f"{self._name}.time",
                time() - start_time,
                tag_dict={"method": request.method},
            )
            self._metrics_client.increment(
                f"{self._name}.count",
                1,
                tag_dict={"method": request.method, "status": status},
            )


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """Signs a fresh DPoP proof for every attempt and negotiates the nonce.

    The latest `DPoP-Nonce` header seen on any response is kept in `nonce`, so the
    caller can carry it forward into its session. A `use_dpop_nonce` challenge
    produces a retry request once; a second challenge is handed back to the caller
    unchanged.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        public_key_dict: Optional[Dict[str, Any]] = None,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
        nonce_statuses: Collection[int] = (400, 401),
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._public_key_dict = public_key_dict or dpop_key.export_public(as_dict=True)
        self._access_token = access_token
        self._nonce_statuses = nonce_statuses
        self.nonce = nonce
        self.challenges = 0

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        dpop_assertion_token = create_dpop_jwt(
            self._dpop_key,
            request.method,
            str(request.url),
            public_key_dict=self._public_key_dict,
            nonce=self.nonce,
            access_token=self._access_token,
        )

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = dpop_assertion_token
        if self._access_token is not None:
            request.headers[hdrs.AUTHORIZATION] = f"DPoP {self._access_token}"

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        fresh_nonce = chain_response.dpop_nonce
        if fresh_nonce:
            self.nonce = fresh_nonce

        if chain_response.is_nonce_challenge(self._nonce_statuses):
            self.challenges += 1
            logger.debug(
                "DPoP nonce challenge %d from %s", self.challenges, request.url
            )
            if self.challenges == 1 and fresh_nonce and new_request is None:
                new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: _LoggerType,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug(f"Making request: {request.method} {request.url}")

        try:
            response: ClientResponse = await self._request_func(
                request.method.lower(),
                request.url,
                headers=request.headers,
                trace_request_ctx={
                    **(request.trace_request_ctx or {}),
                },
                **(request.kwargs or {}),
            )
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportError(str(request.url), e) from e

        if self._raise_for_status:
            response.raise_for_status()

        try:
            return response, await ChainResponse.from_aiohttp_response(response)
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportError(str(request.url), e) from e


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: _LoggerType,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger
        self._raise_for_status = raise_for_status

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            if current_attempt > self._attempt_max:
                assert self._chain_response is not None
                raise DpopNonceError(
                    self._chain_response.status,
                    self._chain_response.body,
                    f"max attempts reached for {chain_request.url}",
                )

            self._logger.debug(
                "Attempt %d out of %d", current_attempt, self._attempt_max
            )

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            chain_request = new_request

            if self._raise_for_status:
                client_response.raise_for_status()

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        logger: _LoggerType | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._logger: _LoggerType = logger or logging.getLogger("aiohttp_chain")
        self._raise_for_status = raise_for_status
        self._attempt_max = attempt_max

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=method.upper(),
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            raise_for_status=raise_for_status,
            attempt_max=self._attempt_max,
        )
