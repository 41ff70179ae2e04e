import asyncio
import socket
import struct

from proxy_lite.core.messages import ProxyRequest, ProxyResponse


class FakeClient:
    """Records outbound requests and answers with a canned response."""

    def __init__(self, status_code=200, headers=None, body=b"hello", error=None):
        self.requests = []
        self.status_code = status_code
        self.headers = headers if headers is not None else [("Content-Type", "text/plain")]
        self.body = body
        self.error = error
        self.closed = False

    async def send(self, request: ProxyRequest) -> ProxyResponse:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return ProxyResponse(self.status_code, headers=list(self.headers), body=self.body, reason="OK")

    async def close(self):
        self.closed = True


class SpyTunnels:
    """Stands in for the tunnel establisher and records every call."""

    def __init__(self):
        self.requests = []

    async def establish(self, request):
        self.requests.append(request)
        return ProxyResponse(200, reason="Connection established")


async def start_echo_server():
    """Loopback origin that echoes bytes back until the peer half-closes."""
    received = bytearray()

    async def handle(reader, writer):
        while True:
            data = await reader.read(1024)
            if not data:
                break
            received.extend(data)
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1], received


def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def start_resetting_origin():
    """Loopback origin that answers its first read with a TCP reset."""

    async def handle(reader, writer):
        await reader.read(1024)
        sock = writer.get_extra_info("socket")
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        writer.transport.abort()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def start_raw_origin(response: bytes):
    """Loopback origin that answers one request head with fixed bytes."""
    requests = []

    async def handle(reader, writer):
        requests.append(await reader.readuntil(b"\r\n\r\n"))
        writer.write(response)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1], requests
