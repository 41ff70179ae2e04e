import asyncio

import pytest
from structlog.testing import capture_logs

from helpers import start_echo_server, start_resetting_origin, unused_port
from proxy_lite.core.messages import ProxyRequest
from proxy_lite.core.tunnel import TunnelEstablisher
from proxy_lite.errors import RequestError


async def start_front(tunnels, host, port, pending=b""):
    """Loopback listener that hands each client straight to the tunnel."""

    async def handle(reader, writer):
        await tunnels.run(host, port, reader, writer, pending)

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_establish_acknowledges_without_connecting():
    """The 200 is produced even though nothing listens on the target port."""
    tunnels = TunnelEstablisher()
    request = ProxyRequest("CONNECT", f"127.0.0.1:{unused_port()}", [])

    response = await tunnels.establish(request)

    assert response.status_code == 200
    assert response.body == b""
    assert response.upgrade is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["", "example.com:https", ":443"])
async def test_establish_rejects_bad_targets(target):
    with pytest.raises(RequestError):
        await TunnelEstablisher().establish(ProxyRequest("CONNECT", target, []))


@pytest.mark.asyncio
async def test_relay_copies_both_directions():
    origin, origin_port, received = await start_echo_server()
    tunnels = TunnelEstablisher(connect_timeout=5)
    front, front_port = await start_front(tunnels, "127.0.0.1", origin_port, pending=b"early:")
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", front_port)
        writer.write(b"\x16\x03\x01binary\x00payload")
        await writer.drain()
        writer.write_eof()

        echoed = await asyncio.wait_for(reader.read(), timeout=5)

        assert echoed == b"early:\x16\x03\x01binary\x00payload"
        assert bytes(received) == echoed
        writer.close()
    finally:
        front.close()
        origin.close()


@pytest.mark.asyncio
async def test_unreachable_origin_closes_client():
    tunnels = TunnelEstablisher(connect_timeout=5)
    front, front_port = await start_front(tunnels, "127.0.0.1", unused_port())
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", front_port)
        data = await asyncio.wait_for(reader.read(), timeout=5)
        assert data == b""
        writer.close()
    finally:
        front.close()


@pytest.mark.asyncio
async def test_origin_reset_mid_relay_closes_both_sides():
    """A reset from the origin ends the relay without waiting for the client."""
    origin, origin_port = await start_resetting_origin()
    tunnels = TunnelEstablisher(connect_timeout=5)
    finished = asyncio.Event()

    async def handle(reader, writer):
        try:
            await tunnels.run("127.0.0.1", origin_port, reader, writer)
        finally:
            finished.set()

    front = await asyncio.start_server(handle, "127.0.0.1", 0)
    front_port = front.sockets[0].getsockname()[1]
    try:
        with capture_logs() as logs:
            reader, writer = await asyncio.open_connection("127.0.0.1", front_port)
            writer.write(b"\x16\x03\x01hello")
            await writer.drain()

            # the client never half-closes, so only the reset can end the tunnel
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            await asyncio.wait_for(finished.wait(), timeout=5)
            writer.close()

        events = [entry["event"] for entry in logs]
        assert "tunnel_error" in events
        assert "tunnel_closed" not in events
    finally:
        front.close()
        origin.close()
