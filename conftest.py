import asyncio
import contextlib
import socket
from types import SimpleNamespace

import pytest

from proxy_server import ProxyConfig, ProxyServer


@pytest.fixture
def start_proxy():
    """Start a ProxyServer on an ephemeral loopback port."""

    @contextlib.asynccontextmanager
    async def _start(**overrides):
        server = ProxyServer(ProxyConfig(addr="127.0.0.1", port="0", **overrides))
        port = await server.start()
        try:
            yield server, port
        finally:
            await server.stop()

    return _start


async def read_raw_body(reader, head: bytes) -> bytes:
    """Read a request body as it is framed on the wire (chunk lines included)."""
    lines = head.lower().split(b"\r\n")
    if any(line.startswith(b"transfer-encoding:") and b"chunked" in line for line in lines):
        raw = bytearray()
        while True:
            size_line = await reader.readline()
            raw += size_line
            size = int(size_line.split(b";", 1)[0], 16)
            if size == 0:
                raw += await reader.readuntil(b"\r\n")
                return bytes(raw)
            raw += await reader.readexactly(size + 2)
    for line in lines:
        if line.startswith(b"content-length:"):
            return await reader.readexactly(int(line.split(b":", 1)[1]))
    return b""


@pytest.fixture
def start_origin():
    """HTTP origin answering every request with a canned response, then closing.

    Yields ``(port, received)`` where *received* collects the raw request
    bytes (head + body) the origin saw.
    """

    @contextlib.asynccontextmanager
    async def _start(response: bytes):
        received: list[bytes] = []

        async def handle(reader, writer):
            try:
                head = await reader.readuntil(b"\r\n\r\n")
                received.append(head + await read_raw_body(reader, head))
                writer.write(response)
                await writer.drain()
            except (asyncio.IncompleteReadError, ConnectionError):
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        try:
            yield server.sockets[0].getsockname()[1], received
        finally:
            server.close()
            await server.wait_closed()

    return _start


@pytest.fixture
def start_destination():
    """Raw TCP echo server standing in for a CONNECT destination.

    ``banner`` is sent as soon as a connection arrives.  With
    ``close_after_banner`` the server hangs up right after it.
    """

    @contextlib.asynccontextmanager
    async def _start(banner: bytes = b"", close_after_banner: bool = False):
        state = SimpleNamespace(
            received=bytearray(),
            connected=asyncio.Event(),
            closed=asyncio.Event(),
        )

        async def handle(reader, writer):
            state.connected.set()
            try:
                if banner:
                    writer.write(banner)
                    await writer.drain()
                if close_after_banner:
                    return
                while True:
                    data = await reader.read(65536)
                    if not data:
                        break
                    state.received.extend(data)
                    writer.write(data)
                    await writer.drain()
            except ConnectionError:
                pass
            finally:
                writer.close()
                state.closed.set()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        state.port = server.sockets[0].getsockname()[1]
        try:
            yield state
        finally:
            server.close()
            await server.wait_closed()

    return _start


@pytest.fixture
def unused_port():
    """A loopback port nothing listens on."""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
