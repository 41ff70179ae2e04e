import asyncio
from typing import Optional

import structlog

from ..errors import RequestError, TransportError
from .messages import ProxyRequest, ProxyResponse
from .utils import split_authority

logger = structlog.get_logger()

BUFFER_SIZE = 64 * 1024
DEFAULT_CONNECT_PORT = 443


class TunnelEstablisher:
    """Opens opaque byte tunnels for CONNECT requests.

    The 200 is handed back before the origin is contacted. The origin
    connection is made only after the client connection has switched to raw
    bytes, so an unreachable origin shows up as a closed tunnel plus a log
    entry rather than as an error status.
    """

    def __init__(self, connect_timeout: Optional[float] = None):
        self.connect_timeout = connect_timeout

    async def establish(self, request: ProxyRequest) -> ProxyResponse:
        addr = request.authority
        if not addr:
            raise RequestError("CONNECT request missing authority in URI")
        try:
            host, port = split_authority(addr, DEFAULT_CONNECT_PORT)
        except ValueError as e:
            raise RequestError(str(e)) from e
        if not host:
            raise RequestError(f"CONNECT target {addr!r} has no host")

        logger.info("tunnel_requested", target=addr)

        async def on_upgrade(client_reader, client_writer, pending: bytes) -> None:
            await self.run(host, port, client_reader, client_writer, pending)

        return ProxyResponse(200, reason="Connection established", upgrade=on_upgrade)

    async def open_origin(self, host: str, port: int):
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"connect to {host}:{port} failed: {e!r}") from e

    async def run(
        self,
        host: str,
        port: int,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        pending: bytes = b"",
    ) -> None:
        target = f"{host}:{port}"
        try:
            origin_reader, origin_writer = await self.open_origin(host, port)
        except TransportError as e:
            logger.error("tunnel_connect_failed", target=target, error=str(e))
            await _close(client_writer)
            return

        try:
            if pending:
                origin_writer.write(pending)
                await origin_writer.drain()
            sent, received = await relay(client_reader, client_writer, origin_reader, origin_writer)
            logger.info("tunnel_closed", target=target, bytes_up=sent + len(pending), bytes_down=received)
        except (OSError, TransportError) as e:
            logger.error("tunnel_error", target=target, error=str(e))
        finally:
            await _close(origin_writer)
            await _close(client_writer)


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    """Copy bytes until EOF, then half-close the destination."""
    total = 0
    while True:
        chunk = await reader.read(BUFFER_SIZE)
        if not chunk:
            break
        writer.write(chunk)
        await writer.drain()
        total += len(chunk)
    if writer.can_write_eof() and not writer.is_closing():
        writer.write_eof()
    return total


async def relay(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    origin_reader: asyncio.StreamReader,
    origin_writer: asyncio.StreamWriter,
):
    """Relay both directions concurrently.

    Returns ``(client_to_origin, origin_to_client)`` byte counts once both
    directions reached EOF. The first I/O error in either direction cancels
    the other one and is re-raised.
    """
    upstream = asyncio.create_task(pipe(client_reader, origin_writer))
    downstream = asyncio.create_task(pipe(origin_reader, client_writer))
    try:
        done, _ = await asyncio.wait(
            {upstream, downstream}, return_when=asyncio.FIRST_EXCEPTION
        )
    finally:
        for task in (upstream, downstream):
            if not task.done():
                task.cancel()
        await asyncio.gather(upstream, downstream, return_exceptions=True)

    for task in done:
        if task.exception() is not None:
            raise task.exception()
    return upstream.result(), downstream.result()


async def _close(writer: asyncio.StreamWriter) -> None:
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
