import asyncio
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union
from urllib.parse import urlsplit

from .utils import get_header

Headers = List[Tuple[str, str]]
Body = Union[bytes, AsyncIterator[bytes]]
# Called with the raw client stream once a response has switched protocols.
UpgradeHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter, bytes], Awaitable[None]]


class ProxyRequest:
    """An inbound request as received from the client."""

    def __init__(
        self,
        method: str,
        target: str,
        headers: Headers,
        body: bytes = b"",
        http_version: str = "1.1",
    ):
        self.method = method.upper()
        self.target = target
        self.headers = headers
        self.body = body
        self.http_version = http_version

    @property
    def authority(self) -> Optional[str]:
        """``host[:port]`` carried by the request target itself, if any."""
        if self.method == "CONNECT":
            authority = self.target
        else:
            parts = urlsplit(self.target)
            if not (parts.scheme and self.target.lower().startswith(f"{parts.scheme}://")):
                return None
            authority = parts.netloc
        # userinfo never takes part in routing or filtering
        authority = authority.rpartition("@")[2]
        return authority or None

    @property
    def host(self) -> str:
        return self.authority or get_header(self.headers, "host") or ""

    def __repr__(self) -> str:
        return f"ProxyRequest({self.method} {self.target})"


class ProxyResponse:
    """A response to write back to the client.

    ``body`` is either complete bytes or an async iterator that is drained
    chunk by chunk. When ``upgrade`` is set, the response switches the client
    connection to raw bytes and the callback takes ownership of it.
    """

    def __init__(
        self,
        status_code: int,
        headers: Optional[Headers] = None,
        body: Body = b"",
        reason: str = "",
        upgrade: Optional[UpgradeHandler] = None,
    ):
        self.status_code = status_code
        self.headers = headers if headers is not None else []
        self.body = body
        self.reason = reason
        self.upgrade = upgrade

    async def iter_body(self) -> AsyncIterator[bytes]:
        if isinstance(self.body, (bytes, bytearray)):
            if self.body:
                yield bytes(self.body)
            return
        async for chunk in self.body:
            if chunk:
                yield chunk

    def __repr__(self) -> str:
        return f"ProxyResponse({self.status_code} {self.reason})"


def text_response(status_code: int, reason: str, message: str) -> ProxyResponse:
    body = message.encode("utf-8")
    return ProxyResponse(
        status_code,
        headers=[
            ("Content-Type", "text/plain"),
            ("Content-Length", str(len(body))),
        ],
        body=body,
        reason=reason,
    )


def blocked_response(host: str) -> ProxyResponse:
    return text_response(
        403,
        "Forbidden",
        f"Access to {host} is blocked by proxy filter rules",
    )


def error_response(status_code: int, reason: str, error: Exception) -> ProxyResponse:
    return text_response(status_code, reason, f"{status_code} {reason}: {error}")
