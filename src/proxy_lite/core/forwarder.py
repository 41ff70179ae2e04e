from typing import AsyncIterator, Optional, Protocol
from urllib.parse import urlsplit

import structlog
from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession

from ..errors import RequestError, TransportError
from .messages import ProxyRequest, ProxyResponse
from .utils import without_framing

logger = structlog.get_logger()


class HttpClient(Protocol):
    """Sends one request to its origin and returns the origin's response."""

    async def send(self, request: ProxyRequest) -> ProxyResponse: ...

    async def close(self) -> None: ...


class CurlHttpClient:
    """``HttpClient`` backed by a curl_cffi ``AsyncSession``.

    Redirects are left to the client and no ``Accept-Encoding`` is added, so
    the body reaches the client exactly as the origin encoded it.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._session: Optional[AsyncSession] = None

    def _get_session(self) -> AsyncSession:
        if self._session is None:
            self._session = AsyncSession(timeout=self.timeout)
        return self._session

    async def send(self, request: ProxyRequest) -> ProxyResponse:
        session = self._get_session()
        try:
            response = await session.request(
                method=request.method,
                url=request.target,
                headers=without_framing(request.headers),
                data=request.body or None,
                allow_redirects=False,
                accept_encoding=None,
                stream=True,
            )
        except (CurlError, OSError) as e:
            raise TransportError(f"{request.method} {request.target} failed: {e}") from e

        # latin-1 round-trips any header byte back out of the server
        response.headers.encoding = "latin-1"
        return ProxyResponse(
            status_code=response.status_code,
            headers=list(response.headers.multi_items()),
            body=_stream_body(response, request.target),
            reason=response.reason or "",
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


async def _stream_body(response, url: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_content():
            yield chunk
    except (CurlError, OSError) as e:
        raise TransportError(f"reading body of {url} failed: {e}") from e
    finally:
        await response.aclose()


class HttpForwarder:
    """Forwards non-CONNECT requests to their origin."""

    def __init__(self, client: HttpClient):
        self.client = client

    @staticmethod
    def absolute_target(request: ProxyRequest) -> str:
        authority = request.authority
        if not authority:
            raise RequestError(f"Missing authority in URI: {request.target!r}")
        parts = urlsplit(request.target)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return f"http://{authority}{path}"

    async def forward(self, request: ProxyRequest) -> ProxyResponse:
        target = self.absolute_target(request)
        outbound = ProxyRequest(
            method=request.method,
            target=target,
            headers=request.headers,
            body=request.body,
            http_version=request.http_version,
        )
        logger.debug("forwarding", method=outbound.method, url=target)
        try:
            return await self.client.send(outbound)
        except TransportError as e:
            logger.error("forward_failed", method=outbound.method, url=target, error=str(e))
            raise
