import asyncio
from typing import Optional, Set

import h11
import structlog

from ..errors import ProtocolError, RequestError, TransportError
from ..models import ProxySettings
from .dispatcher import Dispatcher
from .forwarder import CurlHttpClient, HttpClient, HttpForwarder
from .messages import ProxyRequest, ProxyResponse, error_response
from .rules import FilterRules
from .tunnel import TunnelEstablisher

logger = structlog.get_logger()

BUFFER_SIZE = 64 * 1024


class ProxyServer:
    """Accepts proxy clients and serves each connection in its own task."""

    def __init__(
        self,
        rules: FilterRules,
        settings: Optional[ProxySettings] = None,
        client: Optional[HttpClient] = None,
    ):
        self.settings = settings or ProxySettings()
        self.rules = rules
        self.client = client or CurlHttpClient(timeout=self.settings.request_timeout)
        self.dispatcher = Dispatcher(
            rules,
            HttpForwarder(self.client),
            TunnelEstablisher(connect_timeout=self.settings.connect_timeout),
        )
        self.server: Optional[asyncio.AbstractServer] = None
        self.running = False
        self._connections: Set[asyncio.Task] = set()

    @property
    def bound_port(self) -> Optional[int]:
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        if self.running:
            return
        self.server = await asyncio.start_server(
            self._handle_client,
            host=self.settings.host,
            port=self.settings.port,
        )
        self.running = True
        logger.info(
            "proxy_started",
            host=self.settings.host,
            port=self.bound_port,
            filter_mode=self.rules.mode.value,
            domains=len(self.rules.domains),
        )

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await self.server.serve_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self.server.close()
        for task in list(self._connections):
            task.cancel()
        await asyncio.gather(*self._connections, return_exceptions=True)
        await self.server.wait_closed()
        await self.client.close()
        logger.info("proxy_stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._connections.add(task)
        peer = writer.get_extra_info("peername")
        log = logger.bind(client=f"{peer[0]}:{peer[1]}" if peer else "unknown")
        log.debug("connection_opened")
        try:
            await self._serve_connection(reader, writer, log)
        except OSError as e:
            log.info("connection_error", error=repr(e))
        except Exception:
            # Contained here so one connection can never take down the listener.
            log.exception("connection_error")
        finally:
            self._connections.discard(task)
            if not writer.is_closing():
                writer.close()
            log.debug("connection_closed")

    async def _serve_connection(self, reader, writer, log) -> None:
        conn = h11.Connection(h11.SERVER)
        while True:
            try:
                request = await self._read_request(conn, reader, writer)
            except ProtocolError as e:
                log.warning("protocol_error", error=str(e))
                await self._send_protocol_error(conn, writer, e)
                return
            if request is None:
                return

            try:
                response = await self.dispatcher.dispatch(request)
            except RequestError as e:
                log.warning("request_failed", method=request.method, target=request.target, error=str(e))
                response = error_response(400, "Bad Request", e)
            except TransportError as e:
                response = error_response(502, "Bad Gateway", e)

            try:
                head = response_head(response)
            except UnicodeEncodeError as e:
                log.error("bad_response_head", target=request.target, error=str(e))
                response = error_response(502, "Bad Gateway", e)
                head = response_head(response)

            try:
                await self._send_response(conn, writer, response, head)
            except (TransportError, h11.LocalProtocolError) as e:
                log.error("response_aborted", target=request.target, error=str(e))
                return

            if conn.our_state is h11.SWITCHED_PROTOCOL:
                pending, _ = conn.trailing_data
                await response.upgrade(reader, writer, bytes(pending))
                return

            if conn.our_state is h11.DONE and conn.their_state is h11.DONE:
                conn.start_next_cycle()
            else:
                return

    async def _next_event(self, conn: h11.Connection, reader: asyncio.StreamReader):
        while True:
            try:
                event = conn.next_event()
            except h11.RemoteProtocolError as e:
                raise ProtocolError(str(e)) from e
            if event is h11.NEED_DATA:
                conn.receive_data(await reader.read(BUFFER_SIZE))
                continue
            return event

    async def _read_request(
        self, conn: h11.Connection, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> Optional[ProxyRequest]:
        """Read one request head and its complete body, or None on a clean close.

        A client that sent ``Expect: 100-continue`` is told to go ahead before
        the body is read.
        """
        event = await self._next_event(conn, reader)
        if isinstance(event, h11.ConnectionClosed):
            return None
        if not isinstance(event, h11.Request):
            raise ProtocolError(f"unexpected event {event!r}")

        head = event
        if conn.they_are_waiting_for_100_continue:
            writer.write(conn.send(h11.InformationalResponse(status_code=100, headers=[])))
            await writer.drain()

        body = bytearray()
        while True:
            event = await self._next_event(conn, reader)
            if isinstance(event, h11.Data):
                body += event.data
            elif isinstance(event, h11.EndOfMessage):
                break
            else:
                raise ProtocolError("connection closed before the request body ended")

        return ProxyRequest(
            method=head.method.decode("ascii"),
            target=head.target.decode("ascii", errors="replace"),
            headers=[
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in head.headers.raw_items()
            ],
            body=bytes(body),
            http_version=head.http_version.decode("ascii"),
        )

    async def _send_response(
        self,
        conn: h11.Connection,
        writer: asyncio.StreamWriter,
        response: ProxyResponse,
        head: Optional[h11.Response] = None,
    ) -> None:
        writer.write(conn.send(head or response_head(response)))
        if conn.our_state is h11.SWITCHED_PROTOCOL:
            await writer.drain()
            return

        async for chunk in response.iter_body():
            writer.write(conn.send(h11.Data(data=chunk)))
            await writer.drain()
        writer.write(conn.send(h11.EndOfMessage()))
        await writer.drain()

    async def _send_protocol_error(self, conn: h11.Connection, writer: asyncio.StreamWriter, error: Exception) -> None:
        if conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
            return
        try:
            await self._send_response(conn, writer, error_response(400, "Bad Request", error))
        except (h11.LocalProtocolError, OSError):
            pass


def response_head(response: ProxyResponse) -> h11.Response:
    """Encode a response's status line and headers for h11.

    Raises ``UnicodeEncodeError`` for text that has no latin-1 form.
    """
    return h11.Response(
        status_code=response.status_code,
        headers=[(name.encode("latin-1"), value.encode("latin-1")) for name, value in response.headers],
        reason=response.reason.encode("latin-1"),
    )
