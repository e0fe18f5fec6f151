"""
Forwarding of plain (non-CONNECT) proxy requests to the origin server.
"""
import ssl
from typing import AsyncIterable, AsyncIterator, List, NamedTuple, Optional
from urllib.parse import urlsplit

import trio, h11

from ._adapter import MAX_RECV, unless_peer_leaves
from ._errors import InvalidTarget, UpstreamProtocolError, UpstreamTimeout, UpstreamUnreachable
from ._headers import Header
from ._request import InboundRequest


DEFAULT_PORTS = {"http": 80, "https": 443}


class ForwardTarget(NamedTuple):
    scheme: str
    host: str
    port: int
    authority: str  # what goes into the Host header
    path: str  # origin-form: path and query


def parse_absolute_target(target: str) -> ForwardTarget:
    """
    Take apart an absolute-URI request target, as in
    `GET http://example.com:8080/index.html?q=1 HTTP/1.1`.
    """
    parts = urlsplit(target)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        raise InvalidTarget(f"Not an absolute http(s) URI: {target!r}")
    try:
        port = parts.port
    except ValueError as e:
        raise InvalidTarget(f"Invalid port in {target!r}: {e}")

    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query

    return ForwardTarget(
        scheme=scheme,
        host=parts.hostname,
        port=port if port is not None else DEFAULT_PORTS[scheme],
        authority=parts.netloc.rpartition("@")[2],
        path=path,
    )


def outbound_headers(request: InboundRequest, target: ForwardTarget) -> List[Header]:
    """
    Headers for the request to the origin, given an already sanitized request.

    Host is replaced by the target's authority (RFC 7230, §5.4), and the body
    framing which sanitizing removed is put back in a form h11 understands.
    """
    headers = [(b"Host", target.authority.encode("ascii"))]
    for name, value in request.headers:
        lowered = name.lower()
        if lowered == b"host":
            continue
        if request.chunked and lowered == b"content-length":
            continue
        headers.append((name, value))
    if request.chunked:
        headers.append((b"Transfer-Encoding", b"chunked"))
    headers.append((b"Connection", b"close"))
    return headers


async def open_upstream(target: ForwardTarget, timeout: float) -> trio.abc.Stream:
    """Open a TCP (or TLS, for https) connection to the origin."""
    stream: Optional[trio.abc.Stream] = None
    try:
        with trio.fail_after(timeout):
            stream = await trio.open_tcp_stream(target.host, target.port)
            if target.scheme == "https":
                stream = trio.SSLStream(
                    stream,
                    ssl.create_default_context(),
                    server_hostname=target.host,
                    https_compatible=True,
                )
                await stream.do_handshake()
    except trio.TooSlowError:
        if stream is not None:
            await trio.aclose_forcefully(stream)
        raise UpstreamTimeout(f"Connection to {target.host}:{target.port} timed out")
    except (OSError, trio.BrokenResourceError) as e:
        if stream is not None:
            await trio.aclose_forcefully(stream)
        raise UpstreamUnreachable(f"Connection to {target.host}:{target.port} failed: {e}")
    return stream


class ForwardExchange:
    """
    One request/response cycle with the origin: an h11 client connection
    on its own upstream stream, used exactly once.
    """

    def __init__(self, stream: trio.abc.Stream, response_timeout: float) -> None:
        self.stream = stream
        self.conn = h11.Connection(h11.CLIENT)
        self.response_timeout = response_timeout
        self.response: Optional[h11.Response] = None

    async def __aenter__(self) -> "ForwardExchange":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await trio.aclose_forcefully(self.stream)

    async def send(self, event: h11.Event) -> None:
        data = self.conn.send(event)
        if not data:
            return
        try:
            await self.stream.send_all(data)
        except trio.BrokenResourceError as e:
            raise UpstreamUnreachable(f"Lost the connection to upstream: {e}")

    async def next_event(self) -> h11.Event:
        while True:
            try:
                event = self.conn.next_event()
            except h11.RemoteProtocolError as e:
                raise UpstreamProtocolError(f"Malformed response from upstream: {e}")
            if event is not h11.NEED_DATA:
                return event

            try:
                with trio.fail_after(self.response_timeout):
                    data = await self.stream.receive_some(MAX_RECV)
            except trio.TooSlowError:
                raise UpstreamTimeout(f"Upstream did not respond within {self.response_timeout}s")
            except trio.BrokenResourceError:
                data = b""
            self.conn.receive_data(data)

    async def send_request(self, request: InboundRequest, target: ForwardTarget, body: AsyncIterable[bytes]) -> None:
        await self.send(h11.Request(
            method=request.method,
            target=target.path,
            headers=outbound_headers(request, target),
        ))
        async for chunk in body:
            await self.send(h11.Data(data=chunk))
        await self.send(h11.EndOfMessage())

    async def receive_response(self) -> h11.Response:
        while True:
            event = await self.next_event()
            if type(event) is h11.InformationalResponse:
                continue  # 100 Continue and friends stay between us and the origin
            if type(event) is h11.Response:
                self.response = event
                return event
            if type(event) is h11.ConnectionClosed:
                raise UpstreamProtocolError("Upstream closed the connection without responding")
            raise UpstreamProtocolError(f"Unexpected event from upstream: {event!r}")

    async def receive_body(self) -> AsyncIterator[bytes]:
        while True:
            event = await self.next_event()
            if type(event) is h11.Data:
                yield bytes(event.data)
            elif type(event) is h11.EndOfMessage:
                return
            else:
                raise UpstreamProtocolError(f"Unexpected event in response body: {event!r}")


async def forward(
        request: InboundRequest,
        body: AsyncIterable[bytes],
        *,
        dial_timeout: float,
        response_timeout: float,
        client: Optional[trio.abc.ReceiveStream] = None,
    ) -> ForwardExchange:
    """
    Send `request` (with headers already sanitized) to the origin its
    target names, and wait for the response head.

    Returns the exchange, with `.response` set; the caller streams the body
    out of it and closes it. If `client` is given, the wait for the response
    is abandoned as soon as the client hangs up.
    """
    target = parse_absolute_target(request.target)
    stream = await open_upstream(target, dial_timeout)
    exchange = ForwardExchange(stream, response_timeout)
    try:
        await exchange.send_request(request, target, body)
        if client is None:
            await exchange.receive_response()
        else:
            # Anything more from the client is unwanted: this connection
            # carries exactly one request.
            await unless_peer_leaves(client, exchange.receive_response, keep=0)
    except BaseException:
        await exchange.aclose()
        raise
    return exchange
