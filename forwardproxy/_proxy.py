import errno, logging, threading
from dataclasses import replace
from typing import Optional

import trio, h11

from ._adapter import TrioHTTPConnection, unless_peer_leaves
from ._auth import verify
from ._config import ProxyConfig, parse_host_and_port
from ._errors import AuthError, ClientTimeout, ParseError, ProxyError
from ._forward import forward
from ._headers import sanitize
from ._request import InboundRequest
from ._tunnel import TunnelSession, dial, parse_authority


log = logging.getLogger("forwardproxy")

# Sent as-is, whatever HTTP version the client spoke.
CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


def peer_name(stream: trio.abc.Stream) -> str:
    if not isinstance(stream, trio.SocketStream):
        return "-"
    try:
        host, port = stream.socket.getpeername()[:2]
    except OSError:  # already disconnected
        return "-"
    return f"{host}:{port}"


################################################################
#                  The proxy itself
################################################################

async def handle(stream: trio.abc.Stream, config: ProxyConfig) -> None:
    """
    Handles one proxied request from start to end: either a plain HTTP
    exchange with an origin server, or a CONNECT tunnel.

    Never raises (short of cancellation); whatever goes wrong is reported
    to the client if the connection is still speaking HTTP.
    """
    start_time = trio.current_time()
    w = TrioHTTPConnection(stream, shutdown_timeout=config.shutdown_timeout, debug=config.debug)
    request: Optional[InboundRequest] = None
    outcome = "closed"
    client = peer_name(stream)

    try:
        w.info(f"Connection from {client}")
        request = await read_request(w, config)
        if request is None:
            w.info("Client closed the TCP connection")
            return

        decision = verify(config, request.headers)
        if not decision.allowed:
            raise AuthError(f"Proxy authentication required ({decision.reason})")

        if request.method == "CONNECT":
            outcome = await handle_connect(w, request, config)
        else:
            outcome = await handle_forward(w, request, config)

    except ProxyError as e:
        w.info(f"Handling exception: {e!r}")
        outcome = str(e.status_code) if e.status_code is not None else "client gone"
        if e.status_code is not None:
            headers = []
            if isinstance(e, AuthError):
                headers.append(("Proxy-Authenticate", f'Basic realm="{config.realm}"'))
            await w.send_error(e.status_code, str(e), headers)
    except (trio.BrokenResourceError, trio.ClosedResourceError):
        w.info("Client abruptly closed connection; dropping request.")
        outcome = "client gone"
    except Exception as e:
        log.exception("Internal error while handling %s", request.target if request else "a request")
        outcome = "500"
        await w.send_error(500, f"Internal Server Error: {type(e).__name__}")
    finally:
        await w.ensure_shutdown()
        if config.debug:
            end_time = trio.current_time()
            log.debug(
                "method=%s target=%s outcome=%s duration=%.6f client=%s",
                request.method if request else "-",
                request.target if request else "-",
                outcome,
                end_time - start_time,
                client,
            )


async def read_request(w: TrioHTTPConnection, config: ProxyConfig) -> Optional[InboundRequest]:
    """
    Read the request head. Returns None if the client left without sending one.
    """
    try:
        with trio.fail_after(config.request_timeout):
            # Regular event sequence:
            # -----------------------
            #   1. Request (= start of request)
            #   2. Data* (optional)
            #   3. EndOfMessage (= end of request)
            #
            # At any moment: ConnectionClosed or exception
            e = await w.next_event()
            assert isinstance(e, (h11.Request, h11.ConnectionClosed)), "This assertion should always hold"

            if isinstance(e, h11.ConnectionClosed):
                return None
            request = InboundRequest.from_event(e)

            if request.method == "CONNECT":
                # A CONNECT body means nothing; skip it,
                # so that h11 gets ready to switch protocols.
                while type(await w.next_event()) is not h11.EndOfMessage:
                    pass
    except trio.TooSlowError:
        raise ClientTimeout("Client is too slow, terminating connection")
    except h11.RemoteProtocolError as e:
        raise ParseError(str(e), e.error_status_hint)

    return request


async def handle_connect(w: TrioHTTPConnection, request: InboundRequest, config: ProxyConfig) -> str:
    host, port = parse_authority(request.target)

    w.info(f"Making TCP connection to {host}:{port}")
    upstream, early_data = await unless_peer_leaves(w.stream, dial, host, port, config.dial_timeout)

    try:
        # h11 has to see the 200 to switch protocols. Its bytes go unused:
        # for HTTP/1.0 clients they carry an extra Connection header.
        w.conn.send(h11.Response(status_code=200, reason=b"Connection Established", headers=[]))
        await w.stream.send_all(CONNECT_ESTABLISHED)
    except BaseException:
        await trio.aclose_forcefully(upstream)
        raise
    assert w.conn.our_state == w.conn.their_state == h11.SWITCHED_PROTOCOL

    trailing_data, _ = w.conn.trailing_data
    await TunnelSession(w.stream, upstream, bytes(trailing_data) + early_data).run()
    w.info("TCP connection ended")
    return "tunnel closed"


async def handle_forward(w: TrioHTTPConnection, request: InboundRequest, config: ProxyConfig) -> str:
    outbound = replace(request, headers=tuple(sanitize(request.headers)))

    w.info(f"Forwarding {request.method} {request.target}")
    exchange = await forward(
        outbound,
        w.receive_body(config.request_timeout),
        dial_timeout=config.dial_timeout,
        response_timeout=config.response_timeout,
        client=w.stream,
    )

    async with exchange:
        response = exchange.response
        assert response is not None
        headers = sanitize(response.headers.raw_items())
        headers.append((b"Connection", b"close"))
        await w.send(h11.Response(
            status_code=response.status_code,
            reason=response.reason,
            headers=headers,
        ))
        async for chunk in exchange.receive_body():
            await w.send(h11.Data(data=chunk))
        await w.send(h11.EndOfMessage())

    return str(response.status_code)


################################################################
#                  User-friendly objects
################################################################

# Errors that mean "out of resources right now", not "this listener is broken".
ACCEPT_CAPACITY_ERRNOS = {
    errno.EMFILE,
    errno.ENFILE,
    errno.ENOMEM,
    errno.ENOBUFS,
}

ACCEPT_RETRY_DELAY = 0.100


class ForwardProxy:
    """
    A forward HTTP proxy, relaying plain HTTP requests and tunnelling CONNECT.

    Runs on a trio event loop.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config

    async def serve(self, *, task_status: trio.TaskStatus = trio.TASK_STATUS_IGNORED) -> None:
        """Listen on the address from the configuration."""
        host, port = parse_host_and_port(self.config.listen_address)
        await self.listen(host, port, task_status=task_status)

    async def listen(self, host: str, port: int, *, task_status: trio.TaskStatus = trio.TASK_STATUS_IGNORED) -> None:
        """
        Listen for incoming TCP connections.

        Parameters:
          host: the host interface to listen on
          port: the port to listen on (0 picks a free one)

        With `nursery.start`, this reports the list of listeners once they
        are ready to accept connections.
        """
        listeners = await trio.open_tcp_listeners(port, host=host)
        for listener in listeners:
            address, bound_port = listener.socket.getsockname()[:2]
            log.info("Listening on http://%s:%s (debug=%s)", address, bound_port, self.config.debug)

        # At most `max_connections` are being handled at once. A slot is
        # taken before accepting, so the rest wait in the kernel's backlog.
        limiter = trio.CapacityLimiter(self.config.max_connections)
        async with trio.open_nursery() as nursery:
            for listener in listeners:
                nursery.start_soon(self._accept_loop, listener, limiter, nursery)
            task_status.started(listeners)

    async def _accept_loop(self, listener: trio.SocketListener, limiter: trio.CapacityLimiter, nursery: trio.Nursery) -> None:
        async with listener:
            while True:
                token = object()
                await limiter.acquire_on_behalf_of(token)
                try:
                    stream = await listener.accept()
                except OSError as e:
                    limiter.release_on_behalf_of(token)
                    if e.errno not in ACCEPT_CAPACITY_ERRNOS:
                        raise
                    log.warning("Error accepting connection (%s); retrying in %ss", e, ACCEPT_RETRY_DELAY)
                    await trio.sleep(ACCEPT_RETRY_DELAY)
                    continue
                nursery.start_soon(self._handle_one, stream, limiter, token)

    async def _handle_one(self, stream: trio.SocketStream, limiter: trio.CapacityLimiter, token: object) -> None:
        try:
            await handle(stream, self.config)
        finally:
            limiter.release_on_behalf_of(token)


async def run_synchronously_cancellable_proxy(
        proxy: ForwardProxy,
        host: str,
        port: int,
        stop: threading.Event,
        stop_check_interval: float,
    ) -> None:
    """
    Serve `proxy` on host:port until `stop` is set, polling it every
    `stop_check_interval` seconds. Setting it cancels every open tunnel
    and exchange along with the listeners.

    The event is how a thread outside trio asks for shutdown; trio code
    should cancel a scope around `proxy.listen` instead.
    """

    async def listen_for_stop(cancel_scope: trio.CancelScope) -> None:
        while not stop.is_set():
            await trio.sleep(stop_check_interval)
        cancel_scope.cancel()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(listen_for_stop, nursery.cancel_scope)
        nursery.start_soon(proxy.listen, host, port)


class SynchronousForwardProxy:
    """
    ForwardProxy on a background thread with its own trio loop, listening
    on `config.listen_address`. For programs (and test suites) that are
    not written with trio.

    stop() does not drain: clients mid-request or mid-tunnel are cut off.
    """

    def __init__(self, config: ProxyConfig, stop_check_interval: float = 0.010):
        """
        The serving thread looks for a stop request every `stop_check_interval` seconds.
        """
        host, port = parse_host_and_port(config.listen_address)
        self._proxy = ForwardProxy(config)
        self._started = False
        self._stop = threading.Event()
        self._thread = threading.Thread(
            name=f"forwardproxy-{config.listen_address}",
            target=trio.run,
            args=(run_synchronously_cancellable_proxy, self._proxy, host, port, self._stop, stop_check_interval),
        )

    def start(self) -> None:
        """Launch the serving thread. Calling it again does nothing."""
        if not self._started:
            self._thread.start()
            self._started = True

    def stop(self) -> None:
        """Signal the serving thread to stop, and wait for it to finish."""
        self._stop.set()
        if self._started:
            self._thread.join()
