"""
proxy_server.py: Forward HTTP/HTTPS proxy with CONNECT tunnelling.

Architecture
------------
A ``ProxyServer`` binds one TCP port that any HTTP client can use as its
HTTP/HTTPS proxy.  The listener speaks HTTP/1.x only; HTTP/2 prior
knowledge is refused with a ``GOAWAY``.  Nothing is decrypted: HTTPS goes
through an opaque CONNECT tunnel.

Key components:

* **ProxyConfig**: immutable settings built once at startup and shared
  read-only by every connection.
* **AuthGate**: optional ``Proxy-Authorization: Basic`` check against the
  configured ``user:password``.
* **_ProxyHandler**: accepts individual client connections, reads
  requests and dispatches CONNECT vs plain HTTP.
* **TunnelRelay**: dials the CONNECT target, hijacks the client socket and
  relays raw bytes in both directions.
* **HttpForwarder**: replays a plain request to its origin (optionally
  appending the client IP to ``X-Forwarded-For``) and streams the response
  back.

Threading model
~~~~~~~~~~~~~~~
Everything runs on a single asyncio event loop.  ``asyncio.start_server``
gives every client connection its own task; each established tunnel adds
two more (one per direction).  ``ProxyConfig`` is the only state shared
between connections and it is never mutated after construction.
"""

from __future__ import annotations

import asyncio
import base64
import hmac
import logging
import ssl
import traceback
import h2.config
import h2.connection
import h2.errors
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, AsyncIterator, Coroutine, Iterator, Optional
from urllib.parse import urlsplit


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class ProxyConfig:
    """Process-wide proxy settings.

    Built once before the server starts accepting connections and never
    mutated afterwards, so handlers read it without locking.

    Attributes
    ----------
    addr:
        Listen address.
    port:
        Listen port, kept as the string it was configured with.
    auth:
        ``user:password`` credential.  ``None`` or empty disables
        authentication.  The format is not checked here; the value is
        compared verbatim against the decoded client credential.
    tproxy:
        Transparent-proxy mode: append the real client IP to
        ``X-Forwarded-For`` on forwarded requests.
    debug:
        Log every received request.
    connect_timeout:
        Maximum time (seconds) for the TCP dial to a CONNECT target or an
        origin server.
    read_buffer_size:
        Size of each ``reader.read()`` while relaying bodies and tunnels.
    """

    addr: str = "0.0.0.0"
    port: str = "8888"
    auth: Optional[str] = None
    tproxy: bool = False
    debug: bool = False

    connect_timeout: float = 10.0
    read_buffer_size: int = 65536

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth)


DEFAULT_CONFIG = ProxyConfig()

PROXY_AUTH_REALM = "WProxy Basic Authentication"


# ============================================================================
# Exceptions
# ============================================================================


class ProxyError(Exception):
    """Base class for errors raised by the proxy core."""


class RequestParseError(ProxyError):
    """The client sent a request line or header block we cannot parse."""


class UnsupportedVersionError(RequestParseError):
    """The client spoke something other than HTTP/1.x."""

    def __init__(self, version: str):
        self.version = version
        super().__init__(f"unsupported protocol version {version!r}")


class HijackError(ProxyError):
    """The client connection cannot be detached from HTTP framing."""


class OriginError(ProxyError):
    """The origin could not be asked, or answered with garbage."""


# ============================================================================
# Data Classes
# ============================================================================


class Headers:
    """Ordered multi-map of HTTP header fields.

    Lookups ignore case; iteration yields ``(name, value)`` pairs in wire
    order with the original casing.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Optional[list[tuple[str, str]]] = None) -> None:
        self._items: list[tuple[str, str]] = list(items or [])

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        nl = name.lower()
        for k, v in self._items:
            if k.lower() == nl:
                return v
        return default

    def get_all(self, name: str) -> list[str]:
        nl = name.lower()
        return [v for k, v in self._items if k.lower() == nl]

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def set(self, name: str, value: str) -> None:
        """Replace every field called *name* with a single ``name: value``.

        The new field takes the position of the first one it replaces, or
        goes last if there was none.
        """
        nl = name.lower()
        updated: list[tuple[str, str]] = []
        placed = False
        for k, v in self._items:
            if k.lower() != nl:
                updated.append((k, v))
            elif not placed:
                updated.append((name, value))
                placed = True
        if not placed:
            updated.append((name, value))
        self._items = updated

    def remove(self, name: str) -> None:
        nl = name.lower()
        self._items = [(k, v) for k, v in self._items if k.lower() != nl]

    def has_token(self, name: str, token: str) -> bool:
        """True if any comma-separated element of *name* equals *token*."""
        token = token.lower()
        for value in self.get_all(name):
            if any(t.strip().lower() == token for t in value.split(",")):
                return True
        return False

    def copy(self) -> Headers:
        return Headers(self._items)

    def serialize(self) -> bytes:
        return b"".join(f"{k}: {v}\r\n".encode("latin-1") for k, v in self._items)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


@dataclass
class InboundRequest:
    """A parsed client request head.

    The body stays on the client stream until ``iter_body()`` reads it, so
    it is never buffered whole; ``read_request()`` is the buffering variant.
    """

    method: str
    target: str
    version: str
    headers: Headers
    body: bytes = b""
    remote_addr: Optional[tuple[Any, ...]] = None
    chunked: bool = field(default=False, repr=False)
    content_length: int = field(default=0, repr=False)
    body_started: bool = field(default=False, init=False, repr=False)
    body_done: bool = field(default=False, init=False, repr=False)

    @property
    def host(self) -> str:
        """The authority this request is aimed at (CONNECT target, URL host or ``Host``)."""
        if self.method == "CONNECT":
            return self.target
        netloc = urlsplit(self.target).netloc
        if netloc:
            return netloc.rpartition("@")[2]
        return self.headers.get("Host", "") or ""

    @property
    def keep_alive(self) -> bool:
        if self.version == "HTTP/1.1":
            return not self.headers.has_token("Connection", "close")
        return self.headers.has_token("Connection", "keep-alive")

    @property
    def is_h2_preface(self) -> bool:
        return self.method == "PRI" and self.target == "*" and self.version == "HTTP/2.0"

    @property
    def has_body(self) -> bool:
        return self.chunked or self.content_length > 0

    @property
    def expects_continue(self) -> bool:
        return (
            self.version == "HTTP/1.1"
            and (self.headers.get("Expect") or "").lower() == "100-continue"
        )

    async def iter_body(self, reader: StreamReader, size: int = 65536) -> AsyncIterator[bytes]:
        """Yield the request payload from *reader* in pieces of at most *size*.

        Chunk framing is removed.  The body can be read only once;
        ``body_started`` is set on the first call and ``body_done`` once the
        whole body has been consumed.
        """
        if self.body_started:
            raise RuntimeError("request body already consumed")
        self.body_started = True
        if self.body:
            yield self.body
        elif self.chunked:
            async for piece in _iter_chunked(reader, size):
                yield piece
        else:
            remaining = self.content_length
            while remaining > 0:
                piece = await reader.read(min(remaining, size))
                if not piece:
                    raise asyncio.IncompleteReadError(b"", remaining)
                remaining -= len(piece)
                yield piece
        self.body_done = True


@dataclass
class ResponseHead:
    """Status line and header block of an origin response."""

    version: str
    status: int
    reason: str
    headers: Headers

    @property
    def keep_alive(self) -> bool:
        if self.version.upper() == "HTTP/1.1":
            return not self.headers.has_token("Connection", "close")
        return self.headers.has_token("Connection", "keep-alive")


# ============================================================================
# Wire helpers
# ============================================================================


def format_addr(addr: Optional[tuple[Any, ...]]) -> str:
    """Render a socket address as ``host:port`` (``[v6]:port`` for IPv6)."""
    if not addr:
        return "unknown"
    host, port = addr[0], addr[1]
    if ":" in str(host):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_host_port(hostport: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises ``ValueError`` when the port is missing or not a number.
    """
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        port_str = rest[1:]
    else:
        host, sep, port_str = hostport.rpartition(":")
        if not sep:
            raise ValueError(f"address {hostport}: missing port in address")
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons in address")
    if not port_str.isdigit() or int(port_str) > 65535:
        raise ValueError(f"address {hostport}: invalid port")
    return host, int(port_str)


async def _read_header_block(reader: StreamReader) -> Headers:
    headers = Headers()
    while True:
        line = await reader.readline()
        if not line:
            raise RequestParseError("unexpected EOF in header block")
        if line in (b"\r\n", b"\n"):
            return headers
        decoded = line.decode("latin-1").rstrip("\r\n")
        if decoded[:1] in (" ", "\t") or ":" not in decoded:
            raise RequestParseError(f"malformed header line {decoded!r}")
        k, v = decoded.split(":", 1)
        if not k or k != k.strip():
            raise RequestParseError(f"malformed header name {k!r}")
        headers.add(k, v.strip())


async def _iter_chunked(reader: StreamReader, size: int = 65536) -> AsyncIterator[bytes]:
    """Yield the payload of a chunked body, at most *size* bytes at a time."""
    while True:
        size_line = await reader.readline()
        if not size_line:
            raise asyncio.IncompleteReadError(b"", None)
        try:
            remaining = int(size_line.split(b";", 1)[0].strip(), 16)
        except ValueError:
            raise RequestParseError(f"bad chunk size line {size_line!r}") from None
        if remaining < 0:
            raise RequestParseError(f"bad chunk size line {size_line!r}")
        if remaining == 0:
            # trailers, up to the terminating blank line
            while True:
                line = await reader.readline()
                if not line or line in (b"\r\n", b"\n"):
                    return
        while remaining > 0:
            piece = await reader.read(min(remaining, size))
            if not piece:
                raise asyncio.IncompleteReadError(b"", remaining)
            remaining -= len(piece)
            yield piece
        await reader.readline()  # chunk-terminating CRLF


async def read_chunked_body(reader: StreamReader) -> bytes:
    """Read a chunked-encoded body, returning the reassembled bytes."""
    return b"".join([piece async for piece in _iter_chunked(reader)])


async def read_request_head(
    reader: StreamReader, remote_addr: Optional[tuple[Any, ...]] = None
) -> Optional[InboundRequest]:
    """Read the request line and header block of one HTTP/1.x request.

    The body, if any, is left on *reader*; its framing is recorded on the
    returned request (``chunked`` / ``content_length``).

    Returns ``None`` on a clean EOF before the request line.  Raises
    ``RequestParseError`` for malformed input and
    ``UnsupportedVersionError`` for anything that is not HTTP/1.x, except
    the HTTP/2 connection preface, which is returned so the caller can
    answer it with a ``GOAWAY``.
    """
    try:
        line = await reader.readline()
        # RFC 9112 2.2: ignore empty lines before the request line
        while line in (b"\r\n", b"\n"):
            line = await reader.readline()
        if not line:
            return None

        parts = line.decode("latin-1").rstrip("\r\n").split(" ")
        if len(parts) != 3 or not all(parts):
            raise RequestParseError(f"malformed request line {line!r}")
        method, target, version = parts
        if not version.startswith("HTTP/"):
            raise RequestParseError(f"malformed HTTP version {version!r}")

        headers = await _read_header_block(reader)
    except asyncio.LimitOverrunError:
        raise RequestParseError("request line or header too long") from None
    except ValueError as e:
        # StreamReader.readline() turns a limit overrun into ValueError
        raise RequestParseError(str(e)) from None

    request = InboundRequest(method, target, version, headers, remote_addr=remote_addr)
    if request.is_h2_preface:
        return request
    if not version.startswith("HTTP/1."):
        raise UnsupportedVersionError(version)
    if method == "CONNECT":
        return request

    te = headers.get_all("Transfer-Encoding")
    if te:
        # the last coding has to be chunked for the body length to be known
        codings = [t.strip().lower() for v in te for t in v.split(",") if t.strip()]
        if not codings or codings[-1] != "chunked":
            raise RequestParseError(f"unsupported transfer encoding {te!r}")
        request.chunked = True
    else:
        cl = headers.get("Content-Length")
        if cl is not None:
            if not cl.isdigit():
                raise RequestParseError(f"bad Content-Length {cl!r}")
            request.content_length = int(cl)
    return request


async def read_request(
    reader: StreamReader, remote_addr: Optional[tuple[Any, ...]] = None
) -> Optional[InboundRequest]:
    """Read one complete HTTP/1.x request (line + headers + body).

    Same contract as ``read_request_head()``, with the body read into
    ``InboundRequest.body``.
    """
    request = await read_request_head(reader, remote_addr)
    if request is None or not request.has_body:
        return request
    try:
        body = b"".join([piece async for piece in request.iter_body(reader)])
    except asyncio.IncompleteReadError:
        raise RequestParseError("unexpected EOF in request body") from None
    except ValueError as e:
        raise RequestParseError(str(e)) from None
    request.body = body
    return request


def build_error_response(
    status: int,
    message: str,
    headers: tuple[tuple[str, str], ...] = (),
    close: bool = False,
) -> bytes:
    """Serialise a plain-text error response (``message`` + newline as body)."""
    body = (message + "\n").encode("utf-8")
    out = Headers([
        ("Content-Type", "text/plain; charset=utf-8"),
        ("X-Content-Type-Options", "nosniff"),
    ])
    for k, v in headers:
        out.set(k, v)
    out.add("Content-Length", str(len(body)))
    if close:
        out.add("Connection", "close")
    status_line = f"HTTP/1.1 {status} {HTTPStatus(status).phrase}\r\n".encode("latin-1")
    return status_line + out.serialize() + b"\r\n" + body


# ============================================================================
# Connection Wrapper
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Provides an idempotent ``close()`` (so a socket shared by two relay
    directions is closed exactly once) and ``hijack()``, which detaches the
    raw streams from HTTP request/response framing.
    """

    __slots__ = ("reader", "writer", "hijacked", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self.hijacked = False
        self._closed = False

    @property
    def peername(self) -> Optional[tuple[Any, ...]]:
        return self.writer.get_extra_info("peername")

    def hijack(self) -> tuple[StreamReader, StreamWriter]:
        """Surrender the raw duplex stream to the caller.

        After this the HTTP layer never reads, writes or closes the
        connection again.  Only plain socket transports can be hijacked.
        """
        if self.hijacked:
            raise HijackError("connection already hijacked")
        if self.closed:
            raise HijackError("connection is closed")
        transport = self.writer.transport
        if transport.get_extra_info("socket") is None:
            raise HijackError("transport has no underlying socket")
        if transport.get_extra_info("ssl_object") is not None:
            raise HijackError("cannot hijack a TLS transport")
        self.hijacked = True
        return self.reader, self.writer

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        Parameters
        ----------
        force:
            If ``True``, abort the transport immediately instead of a
            graceful close.  Used during shutdown where the peer may be
            gone already.

        A TLS transport whose session is already dead is aborted directly:
        ``writer.close()`` would otherwise surface an ``SSLError`` through
        the loop's exception handler.
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if transport is None:
                return
            if force:
                transport.abort()
                return
            if transport.is_closing():
                return
            ssl_obj = transport.get_extra_info("ssl_object")
            if ssl_obj is not None:
                try:
                    ssl_obj.version()
                except Exception:
                    transport.abort()
                    return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            try:
                transport = self.writer.transport
                if transport and not transport.is_closing():
                    transport.abort()
            except Exception as e:
                logger.debug(e)
            logger.trace("Connection close timed out, aborted")
        except Exception as e:
            logger.debug("Connection close error: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()


async def send_error(
    conn: ManagedConnection,
    status: int,
    message: str,
    headers: tuple[tuple[str, str], ...] = (),
    close: bool = False,
) -> None:
    """Best-effort error response; a vanished client is only logged."""
    if conn.closed:
        return
    try:
        conn.writer.write(build_error_response(status, message, headers, close))
        await conn.writer.drain()
    except (ConnectionError, OSError) as e:
        logger.debug("Could not send %d to client: %s", status, e)


# ============================================================================
# Authentication Gate
# ============================================================================


def check_basic_auth(header: str, credential: bytes) -> bool:
    """Validate a ``Proxy-Authorization`` value against *credential*.

    Anything other than ``Basic <base64>`` with a payload equal to the
    credential fails; malformed input is never an error.
    """
    scheme, sep, encoded = header.partition(" ")
    if not sep or scheme != "Basic":
        return False
    try:
        payload = base64.b64decode(encoded, validate=True)
    except ValueError:
        return False
    return hmac.compare_digest(payload, credential)


class AuthGate:
    """Proxy authentication against the configured ``user:password``.

    With no credential configured every request passes.
    """

    __slots__ = ("_credential",)

    challenge = f'Basic realm="{PROXY_AUTH_REALM}"'

    def __init__(self, credential: Optional[str]):
        self._credential = credential.encode("utf-8") if credential else None

    @property
    def enabled(self) -> bool:
        return self._credential is not None

    def check(self, header: Optional[str]) -> bool:
        if self._credential is None:
            return True
        if not header:
            return False
        return check_basic_auth(header, self._credential)


# ============================================================================
# Tunnel Relay (CONNECT)
# ============================================================================


class TunnelRelay:
    """Opaque byte-for-byte tunnel between the client and a CONNECT target.

    The proxy never looks inside: TLS to the destination is negotiated by
    the client itself.
    """

    __slots__ = ("config", "_proxy")

    def __init__(self, proxy: ProxyServer, config: ProxyConfig = DEFAULT_CONFIG):
        self._proxy = proxy
        self.config = config

    async def handle(self, client: ManagedConnection, request: InboundRequest) -> bool:
        """Establish the tunnel for *request*.

        Sequence:
        1. Dial ``host:port`` from the CONNECT target (``connect_timeout``).
        2. Hijack the client socket.
        3. Send ``200``: strictly after the dial, strictly before relaying.
        4. Start one relay task per direction and return without waiting.

        Returns whether the client connection is still usable for another
        HTTP request (only when the tunnel was never established).
        """
        target_addr = request.target
        try:
            target = await self._dial(target_addr)
        except asyncio.TimeoutError:
            logger.warning("[CONNECT %s] Dial timed out", target_addr)
            await send_error(client, 503, f"dial tcp {target_addr}: i/o timeout")
            return request.keep_alive
        except (OSError, ValueError) as e:
            logger.warning("[CONNECT %s] Dial failed: %s", target_addr, e)
            await send_error(client, 503, f"dial tcp {target_addr}: {e}")
            return request.keep_alive

        try:
            reader, writer = client.hijack()
        except HijackError as e:
            logger.error("[CONNECT %s] %s", target_addr, e)
            await target.close()
            await send_error(client, 500, "Hijacking not supported")
            return False

        tunnel_client = ManagedConnection(reader, writer)
        self._proxy._track_connection(tunnel_client)
        self._proxy._track_connection(target)
        try:
            writer.write(b"HTTP/1.1 200 OK\r\n\r\n")
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug("[CONNECT %s] Client gone before tunnel: %s", target_addr, e)
            for conn in (tunnel_client, target):
                self._proxy._untrack_connection(conn)
                await conn.close()
            return False

        logger.trace("[CONNECT %s] Tunnel established", target_addr)
        self._proxy._spawn_relay(self.transfer(target, tunnel_client, f"{target_addr} <- client"))
        self._proxy._spawn_relay(self.transfer(tunnel_client, target, f"{target_addr} -> client"))
        return False

    async def _dial(self, hostport: str) -> ManagedConnection:
        host, port = split_host_port(hostport)
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=self.config.connect_timeout,
        )
        return ManagedConnection(reader, writer)

    async def transfer(
        self, destination: ManagedConnection, source: ManagedConnection, label: str = ""
    ) -> None:
        """Copy *source* into *destination* until EOF or error.

        Whatever ends the copy, both connections are closed afterwards so
        the sibling direction stops promptly too.
        """
        total = 0
        try:
            while True:
                data = await source.reader.read(self.config.read_buffer_size)
                if not data:
                    break
                destination.writer.write(data)
                await destination.writer.drain()
                total += len(data)
        except (ConnectionError, OSError) as e:
            logger.trace("[TUNNEL %s] I/O error: %s", label, e)
        finally:
            for conn in (destination, source):
                self._proxy._untrack_connection(conn)
                await conn.close()
            logger.trace("[TUNNEL %s] Closed after %d bytes", label, total)


# ============================================================================
# HTTP Forwarder
# ============================================================================


def forwarded_for_value(headers: Headers, client_ip: str) -> str:
    """Return the ``X-Forwarded-For`` chain with *client_ip* appended."""
    existing = headers.get_all("X-Forwarded-For")
    if existing:
        return ", ".join(existing) + ", " + client_ip
    return client_ip


class HttpForwarder:
    """Forwards a plain (non-CONNECT) request and relays the response.

    One origin connection per request; no redirects are followed and
    nothing is cached.  The response body is streamed with whatever framing
    the origin used: ``Content-Length``, chunked, or close-delimited.
    """

    __slots__ = ("config", "_proxy", "_ssl_context")

    def __init__(self, proxy: ProxyServer, config: ProxyConfig = DEFAULT_CONFIG):
        self._proxy = proxy
        self.config = config
        self._ssl_context: Optional[ssl.SSLContext] = None

    async def handle(self, client: ManagedConnection, request: InboundRequest) -> bool:
        """Forward *request* and stream the answer back to *client*.

        Returns whether *client* may carry another request.
        """
        if self.config.tproxy and request.remote_addr:
            client_ip = str(request.remote_addr[0])
            request.headers.set(
                "X-Forwarded-For", forwarded_for_value(request.headers, client_ip)
            )

        origin: Optional[ManagedConnection] = None
        try:
            try:
                origin, authority, path = await self._connect_origin(request.target)
                await self._send_request(origin, client, request, authority, path)
                head = await self._read_response_head(origin)
            except asyncio.TimeoutError:
                logger.warning("[HTTP %s] Origin timed out", request.target)
                await send_error(client, 503, f"dial tcp {request.host}: i/o timeout")
                return request.keep_alive
            except (OSError, ValueError, EOFError, ProxyError) as e:
                logger.warning("[HTTP %s] Round trip failed: %s", request.target, e)
                await send_error(client, 503, str(e) or type(e).__name__)
                return request.keep_alive

            return await self._relay_response(origin, client, request, head)

        finally:
            if origin:
                await origin.close()

    # -- internal ----------------------------------------------------------

    async def _connect_origin(
        self, target_url: str
    ) -> tuple[ManagedConnection, str, str]:
        """Open a connection to the origin named by the absolute *target_url*.

        Returns the connection, the ``Host`` authority and the origin-form
        request target.
        """
        parsed = urlsplit(target_url)
        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https"):
            raise OriginError(f'unsupported protocol scheme "{parsed.scheme}"')
        host = parsed.hostname
        if not host:
            raise OriginError("http: no Host in request URL")
        port = parsed.port or (443 if scheme == "https" else 80)
        authority = parsed.netloc.rpartition("@")[2]

        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"

        tls: Optional[ssl.SSLContext] = None
        if scheme == "https":
            if self._ssl_context is None:
                self._ssl_context = ssl.create_default_context()
            tls = self._ssl_context

        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=tls),
            timeout=self.config.connect_timeout,
        )
        return ManagedConnection(reader, writer), authority, path

    async def _send_request(
        self,
        conn: ManagedConnection,
        client: ManagedConnection,
        request: InboundRequest,
        authority: str,
        path: str,
    ) -> None:
        """Send the request in origin-form, streaming the body from *client*.

        A chunked body goes out chunked again (one chunk per piece read),
        so ``Transfer-Encoding`` is passed on unchanged.
        """
        headers = request.headers.copy()
        headers.set("Host", authority)

        conn.writer.write(f"{request.method} {path} HTTP/1.1\r\n".encode("latin-1"))
        conn.writer.write(headers.serialize())
        conn.writer.write(b"\r\n")
        await conn.writer.drain()
        if not request.has_body:
            return

        if request.expects_continue:
            client.writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
            await client.writer.drain()

        async for piece in request.iter_body(client.reader, self.config.read_buffer_size):
            if request.chunked:
                conn.writer.write(f"{len(piece):x}\r\n".encode("latin-1"))
                conn.writer.write(piece)
                conn.writer.write(b"\r\n")
            else:
                conn.writer.write(piece)
            await conn.writer.drain()
        if request.chunked:
            conn.writer.write(b"0\r\n\r\n")
            await conn.writer.drain()

    async def _read_response_head(self, conn: ManagedConnection) -> ResponseHead:
        """Read the status line + headers, skipping interim 1xx responses."""
        while True:
            line = await conn.reader.readline()
            if not line:
                raise OriginError("origin closed the connection without a response")
            parts = line.decode("latin-1").rstrip("\r\n").split(" ", 2)
            if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
                raise OriginError(f"malformed HTTP status line {line!r}")
            version, status = parts[0], int(parts[1])
            reason = parts[2] if len(parts) == 3 else ""
            try:
                headers = await _read_header_block(conn.reader)
            except RequestParseError as e:
                raise OriginError(f"malformed HTTP response: {e}") from None
            if 100 <= status < 200 and status != 101:
                continue
            return ResponseHead(version, status, reason, headers)

    async def _relay_response(
        self,
        origin: ManagedConnection,
        client: ManagedConnection,
        request: InboundRequest,
        head: ResponseHead,
    ) -> bool:
        """Write the response head and stream the body to *client*."""
        no_body = (
            request.method == "HEAD"
            or head.status in (204, 304)
            or 100 <= head.status < 200
        )
        chunked = head.headers.has_token("Transfer-Encoding", "chunked")
        content_length = -1
        cl = head.headers.get("Content-Length")
        if cl is not None and not chunked:
            content_length = int(cl) if cl.isdigit() else -1

        keep_alive = request.keep_alive and head.keep_alive and head.status != 101
        if not no_body and not chunked and content_length < 0:
            # close-delimited body
            keep_alive = False

        headers = head.headers
        # HTTP/1.0 clients cannot parse chunked framing: send the payload
        # close-delimited instead
        dechunk = chunked and not no_body and request.version == "HTTP/1.0"
        if dechunk:
            headers = _without_chunked_coding(headers)
            keep_alive = False

        reason = head.reason or _reason_phrase(head.status)
        size = self.config.read_buffer_size
        try:
            client.writer.write(f"HTTP/1.1 {head.status} {reason}\r\n".encode("latin-1"))
            client.writer.write(headers.serialize())
            client.writer.write(b"\r\n")

            if no_body:
                await client.writer.drain()
                return keep_alive

            if dechunk:
                async for piece in _iter_chunked(origin.reader, size):
                    client.writer.write(piece)
                    await client.writer.drain()

            elif chunked:
                while True:
                    size_line = await origin.reader.readline()
                    if not size_line:
                        return False
                    client.writer.write(size_line)
                    chunk_size = int(size_line.split(b";", 1)[0].strip(), 16)
                    if chunk_size == 0:
                        while True:
                            trailer = await origin.reader.readline()
                            client.writer.write(trailer)
                            if not trailer or trailer in (b"\r\n", b"\n"):
                                break
                        break
                    while chunk_size > 0:
                        chunk = await origin.reader.read(min(chunk_size, size))
                        if not chunk:
                            return False
                        client.writer.write(chunk)
                        await client.writer.drain()
                        chunk_size -= len(chunk)
                    client.writer.write(await origin.reader.readline())

            elif content_length >= 0:
                remaining = content_length
                while remaining > 0:
                    chunk = await origin.reader.read(min(remaining, size))
                    if not chunk:
                        keep_alive = False
                        break
                    client.writer.write(chunk)
                    await client.writer.drain()
                    remaining -= len(chunk)

            else:
                while True:
                    chunk = await origin.reader.read(size)
                    if not chunk:
                        break
                    client.writer.write(chunk)
                    await client.writer.drain()

            await client.writer.drain()

        except (ConnectionError, OSError, EOFError, ValueError, RequestParseError) as e:
            logger.debug("[HTTP %s] Relay aborted: %s", request.target, e)
            return False

        logger.trace("[HTTP %s] %d", request.target, head.status)
        return keep_alive


def _without_chunked_coding(headers: Headers) -> Headers:
    """Copy of *headers* with ``chunked`` dropped from ``Transfer-Encoding``."""
    codings = [
        t.strip()
        for value in headers.get_all("Transfer-Encoding")
        for t in value.split(",")
        if t.strip() and t.strip().lower() != "chunked"
    ]
    out = headers.copy()
    if codings:
        out.set("Transfer-Encoding", ", ".join(codings))
    else:
        out.remove("Transfer-Encoding")
    return out


def _reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


# ============================================================================
# Core Proxy Handler (Request Dispatcher)
# ============================================================================


class _ProxyHandler:
    """Accepts individual client connections and dispatches their requests.

    CONNECT goes to the ``TunnelRelay``; every other method goes to the
    ``HttpForwarder``.  Authentication, when configured, is fully evaluated
    before either is touched.
    """

    __slots__ = ("_proxy", "config", "auth", "tunnel", "http")

    def __init__(self, proxy: ProxyServer, config: ProxyConfig):
        self._proxy = proxy
        self.config = config
        self.auth = AuthGate(config.auth)
        self.tunnel = TunnelRelay(proxy, config)
        self.http = HttpForwarder(proxy, config)

    async def handle_client(
        self, reader: StreamReader, writer: StreamWriter
    ) -> None:
        """Entry point for each new client connection (called by ``asyncio.Server``)."""
        client = ManagedConnection(reader, writer)
        self._proxy._track_connection(client)
        remote_addr = client.peername

        try:
            keep_alive = True
            while keep_alive and not client.closed:
                try:
                    request = await read_request_head(reader, remote_addr)
                except UnsupportedVersionError as e:
                    logger.debug("[%s] %s", format_addr(remote_addr), e)
                    await send_error(client, 505, "HTTP Version Not Supported", close=True)
                    break
                except RequestParseError as e:
                    logger.debug("[%s] Bad request: %s", format_addr(remote_addr), e)
                    await send_error(client, 400, "Bad Request", close=True)
                    break
                if request is None:
                    break
                keep_alive = await self.dispatch(client, request)
                if keep_alive and not client.hijacked:
                    keep_alive = await self._finish_body(client, request)

        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            logger.debug("[%s] Connection closed: %s", format_addr(remote_addr), e)
        except Exception as e:
            logger.error(
                "[%s] Client handler error: %s\n%s",
                format_addr(remote_addr),
                e,
                traceback.format_exc(),
            )
        finally:
            self._proxy._untrack_connection(client)
            if not client.hijacked:
                await client.close()

    async def dispatch(self, client: ManagedConnection, request: InboundRequest) -> bool:
        """Run one request through auth and the matching strategy.

        Returns whether the client connection may carry another request.
        """
        if request.is_h2_preface:
            await self._reject_http2(client)
            return False

        if not self.auth.check(request.headers.get("Proxy-Authorization")):
            logger.debug(
                "[AUTH] Rejected %s %s from %s",
                request.method,
                request.host,
                format_addr(request.remote_addr),
            )
            await send_error(
                client,
                407,
                "Authorization required",
                headers=(("Proxy-Authenticate", AuthGate.challenge),),
            )
            return request.keep_alive

        if self.config.debug:
            logger.debug(
                "Received request %s %s %s",
                request.method,
                request.host,
                format_addr(request.remote_addr),
            )

        if request.method == "CONNECT":
            return await self.tunnel.handle(client, request)
        return await self.http.handle(client, request)

    async def _finish_body(self, client: ManagedConnection, request: InboundRequest) -> bool:
        """Skip a request body nobody read so the next request can be parsed.

        Returns ``False`` when the connection has to be closed instead: the
        body was only partly read, or the client is still waiting for a
        ``100 Continue`` it never got.
        """
        if not request.has_body or request.body_done:
            return True
        if request.body_started or request.expects_continue:
            return False
        try:
            async for _ in request.iter_body(client.reader, self.config.read_buffer_size):
                pass
        except (EOFError, RequestParseError, ValueError) as e:
            logger.debug("[%s] Discarding body failed: %s", format_addr(request.remote_addr), e)
            return False
        return True

    async def _reject_http2(self, client: ManagedConnection) -> None:
        """Answer an HTTP/2 prior-knowledge preface with GOAWAY(HTTP_1_1_REQUIRED)."""
        try:
            async with asyncio.timeout(2.0):
                await client.reader.readexactly(len(b"SM\r\n\r\n"))
        except (asyncio.TimeoutError, asyncio.IncompleteReadError):
            pass

        conn = h2.connection.H2Connection(
            config=h2.config.H2Configuration(client_side=False)
        )
        conn.initiate_connection()
        conn.close_connection(error_code=h2.errors.ErrorCodes.HTTP_1_1_REQUIRED)
        try:
            client.writer.write(conn.data_to_send())
            await client.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug("Could not send GOAWAY: %s", e)
        logger.debug("[%s] Refused HTTP/2 prior knowledge", format_addr(client.peername))


# ============================================================================
# ProxyServer
# ============================================================================


class ProxyServer:
    """The forward proxy listener.

    Usage::

        proxy = ProxyServer(ProxyConfig(addr="127.0.0.1", port="8888"))
        port = await proxy.start()

        # configure a client: http_proxy=http://127.0.0.1:{port}

        await proxy.stop()
    """

    def __init__(self, config: ProxyConfig = DEFAULT_CONFIG):
        self.config = config
        self.port: Optional[int] = None

        self._handler: Optional[_ProxyHandler] = None
        self._server: Optional[asyncio.Server] = None
        self._active_connections: set[ManagedConnection] = set()
        self._relay_tasks: set[asyncio.Task[None]] = set()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Start listening.  Returns the bound port number."""
        self._handler = _ProxyHandler(self, self.config)
        self._server = await asyncio.start_server(
            self._handler.handle_client,
            self.config.addr,
            int(self.config.port),
            reuse_address=True,
        )
        sock = self._server.sockets[0]
        self.port = sock.getsockname()[1]
        logger.info("WProxy is running on %s:%s", self.config.addr, self.port)
        if self.config.auth_enabled:
            logger.info("Proxy authentication enabled")
        if self.config.tproxy:
            logger.info("Transparent proxy mode enabled")
        return self.port

    async def stop(self) -> None:
        """Stop accepting new connections and close all active ones."""
        server, self._server = self._server, None
        if server is not None:
            server.close()
        await self.close_all_connections()
        if server is not None:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for the listener to close")
        self._handler = None
        logger.info("WProxy stopped (was :%s)", self.port)

    @property
    def relay_count(self) -> int:
        """Number of live tunnel relay tasks (two per tunnel)."""
        return len(self._relay_tasks)

    # -- connection tracking -----------------------------------------------

    async def close_all_connections(self) -> None:
        """Force-close every tracked connection and cancel relay tasks.

        Does **not** stop the listener.
        """
        tasks = list(self._relay_tasks)
        for t in tasks:
            t.cancel()

        connections = list(self._active_connections)
        self._active_connections.clear()
        if connections:
            logger.info("Force-closing %d active connection(s)", len(connections))
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *(conn.close(force=True) for conn in connections),
                    *tasks,
                    return_exceptions=True,
                ),
                timeout=5.0,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out closing connections, %d may linger",
                sum(1 for c in connections if not c.closed),
            )

    def _spawn_relay(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._relay_tasks.add(task)
        task.add_done_callback(self._relay_tasks.discard)
        return task

    def _track_connection(self, conn: ManagedConnection) -> None:
        self._active_connections.add(conn)

    def _untrack_connection(self, conn: ManagedConnection) -> None:
        self._active_connections.discard(conn)


# ============================================================================
# Logging
# ============================================================================

TRACE = 5

LEVEL_COLORS = {
    TRACE: "\033[0;37m",
    logging.DEBUG: "\033[0m",
    logging.INFO: "\033[34m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[1;31m",
    logging.CRITICAL: "\033[1;37;41m",
}
RESET = "\033[0m"


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        """Per-tunnel and per-response detail, below DEBUG."""
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    """Colours the level name and message, and adds an ``elapsed`` column.

    The record itself is left untouched so other handlers (and pytest's
    ``caplog``) still see the plain message.
    """

    def __init__(self, fmt: Optional[str] = None, use_color: bool = True) -> None:
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        if self.use_color:
            c = LEVEL_COLORS.get(record.levelno, RESET)
            record.msg = f"{c}{record.getMessage()}{RESET}"
            record.args = None
            record.levelname = f"{c}{record.levelname:<8}{RESET}"
        return super().format(record)


def configure_logging(debug: bool = False, level: Optional[int] = None) -> None:
    """Set the proxy log level: INFO normally, DEBUG with ``debug``."""
    if level is None:
        level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)


logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]
logger.setLevel(logging.INFO)

_handler = logging.StreamHandler()
_handler.setLevel(TRACE)
_handler.setFormatter(
    ColoredFormatter(
        "%(elapsed)s | %(levelname)-8s | %(funcName)s[%(lineno)d] | %(message)s",
        use_color=_handler.stream.isatty(),
    )
)
logger.addHandler(_handler)
