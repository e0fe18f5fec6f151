import trio, random, threading, socket, base64, logging
import trio.testing, pytest, h11
from datetime import timedelta
from functools import partial, wraps
from hypothesis import given, settings, HealthCheck, assume
from hypothesis.strategies import data, integers, binary, floats, lists, builds, sets, text, tuples, sampled_from, randoms

from typing import Set, Tuple, List, Callable

from forwardproxy._tunnel import splice


@given(integers(1, 100), data(), randoms())
async def test_splice(num_iterations: int, data, rand: random.Random):
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def spliceit(near, far):
        await splice(near, far)

    async def testit(a, b):
        for i in range(num_iterations):
            a, b = rand.sample((a, b), k=2)

            to_send = data.draw(binary(min_size=1))  # we must send something or receive_some will block
            await a.send_all(to_send)
            received = await b.receive_some(len(to_send))

            assert to_send == received

        # Half-close one end: the other end sees EOF,
        # but the opposite direction keeps working.
        a, b = rand.sample((a, b), k=2)
        await a.send_eof()
        assert await b.receive_some(1) == b""

        await b.send_all(b"still there")
        assert await a.receive_some(100) == b"still there"

        await b.aclose()
        await a.aclose()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(spliceit, near, far)
        nursery.start_soon(testit, client, server)


async def test_splice_tears_down_when_one_side_breaks():
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def testit():
        await server.aclose()
        assert await client.receive_some(1) == b""  # server's close shows up as EOF
        await client.send_all(b"into the void")  # ...and writing towards it breaks the tunnel

    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(splice, near, far)
            nursery.start_soon(testit)

    with pytest.raises(trio.ClosedResourceError):
        await near.send_all(b"x")
    with pytest.raises(trio.ClosedResourceError):
        await far.send_all(b"x")


from forwardproxy._adapter import unless_peer_leaves, MAX_RECV
from forwardproxy._errors import ClientDisconnected

async def test_chatty_peer_is_buffered_only_so_far(autojump_clock):
    client, proxy_side = trio.testing.memory_stream_pair()

    async def slow() -> str:
        await trio.sleep(5)
        return "done"

    async with trio.open_nursery() as nursery:
        nursery.start_soon(client.send_all, b"x" * (16 * MAX_RECV))
        result, kept = await unless_peer_leaves(proxy_side, slow)

    assert result == "done"
    assert kept == b"x" * MAX_RECV
    # The rest is still waiting in the stream, in order.
    assert await proxy_side.receive_some(1) == b"x"


async def test_discarding_peer_bytes_still_notices_departure(autojump_clock):
    client, proxy_side = trio.testing.memory_stream_pair()

    async def flood_and_leave():
        await client.send_all(b"x" * (16 * MAX_RECV))
        await client.aclose()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(flood_and_leave)
        with pytest.raises(ClientDisconnected):
            await unless_peer_leaves(proxy_side, trio.sleep_forever, keep=0)


from forwardproxy._proxy import ForwardProxy, SynchronousForwardProxy, run_synchronously_cancellable_proxy
from forwardproxy._config import ProxyConfig, Credentials, Host, Port, parse_host_and_port

# Thread scheduling varies, so we cannot reliably (nor quickly) test
# if SynchronousForwardProxy cancellation works, i.e. that:
#
#     1. the proxy _will_ be cancelled
#     2. it will happen in no more than `stop_check_interval` seconds
#
# However, by putting the cancellation logic in a separate function,
# we can get most of the way there.

@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=timedelta(seconds=1))
@given(stop_check_interval=floats(0.001, 10.000))
async def test_cancellation_seen_promptly(stop_check_interval: float, autojump_clock):

    host = "127.0.0.1"
    port = 0  # any free one

    p = ForwardProxy(ProxyConfig())
    stop = threading.Event()

    proxy_cancelled = False

    async def runner() -> None:
        nonlocal proxy_cancelled
        await run_synchronously_cancellable_proxy(p, host, port, stop, stop_check_interval)
        proxy_cancelled = True

    async def killer() -> None:
        await trio.to_thread.run_sync(stop.set)  # from another thread, as in SynchronousForwardProxy
        assert stop.is_set(), "This should always be the case, as it's a threading.Event"
        await trio.sleep(1.001 * stop_check_interval)
        assert proxy_cancelled, "After `stop_check_interval`, the proxy should have been cancelled"

    async with trio.open_nursery() as nursery:
        nursery.start_soon(runner)
        nursery.start_soon(killer)


def test_synchronous_proxy_starts_and_stops():
    proxy = SynchronousForwardProxy(ProxyConfig(listen_address="127.0.0.1:0"))
    proxy.start()
    proxy.stop()
    assert not proxy._thread.is_alive()


################################################################
#            Generating valid hostnames and ports
################################################################
def new_label(length: int, rand: random.Random) -> str:
    """
    Return a "label" element according to RFC 1035, of specified length (>0).
    """
    if length <= 0:
        raise ValueError("There are no valid zero- or negative-length labels")
    letter = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    letter_digit = letter + "0123456789"
    letter_digit_hyphen = letter_digit + "-"

    if length == 1:
        label = rand.choice(letter)
    else:
        label = (rand.choice(letter)
            + "".join(rand.choice(letter_digit_hyphen) for _ in range(length - 2))
            + rand.choice(letter_digit)
        )
    return label

def new_hostname(chunk_lengths: List[int], rand: random.Random) -> Host:
    """
    Return a valid hostname according to RFC 1035.

    `chunk_lengths` must be a non-empty list of positive integers.
    """
    if not chunk_lengths or any(l <= 0 for l in chunk_lengths):
        raise ValueError()

    return Host(".".join(new_label(l, rand) for l in chunk_lengths))

def hosts():
    return builds(new_hostname, lists(integers(1, 10), min_size=1, max_size=10), randoms())

def ports(start: int = 1024, end: int = 65535):
    return builds(Port, integers(start, end))


################################################################
#                     Configuration
################################################################

@given(hosts(), ports(0))
def test_parse_host_and_port(host: Host, port: Port) -> None:
    assert parse_host_and_port(f"{host}:{port}") == (host, port)

def test_parse_host_and_port_with_ipv6_literal() -> None:
    assert parse_host_and_port("[::1]:8080") == ("::1", 8080)
    assert parse_host_and_port("[::1]", default_port=443) == ("::1", 443)

def test_parse_host_and_port_default_port() -> None:
    assert parse_host_and_port("example.com", default_port=80) == ("example.com", 80)

@pytest.mark.parametrize("address", [
    "", "example.com", ":80", "example.com:", "example.com:65536", "example.com:8a",
    "example.com: 80", "a:b:c", "[::1", "[::1]x", "[]:80",
])
def test_parse_host_and_port_rejects(address: str) -> None:
    with pytest.raises(ValueError):
        parse_host_and_port(address)

@pytest.mark.parametrize("kwargs", [
    dict(credentials=Credentials("", "secret")),
    dict(credentials=Credentials("alice", "")),
    dict(listen_address="nowhere"),
    dict(dial_timeout=0),
    dict(response_timeout=-1),
    dict(max_connections=0),
])
def test_config_invariants(kwargs) -> None:
    with pytest.raises(ValueError):
        ProxyConfig(**kwargs)

def test_config_defaults() -> None:
    config = ProxyConfig()
    assert config.listen_address == "0.0.0.0:8080"
    assert config.credentials is None
    assert config.debug is False


from forwardproxy.__main__ import parse_arguments

def test_command_line_defaults() -> None:
    assert parse_arguments([]) == ProxyConfig()

def test_command_line_with_everything() -> None:
    config = parse_arguments(["--listen", "127.0.0.1:3128", "--username", "alice", "--password", "secret", "--debug"])
    assert config.listen_address == "127.0.0.1:3128"
    assert config.credentials == Credentials("alice", "secret")
    assert config.debug

@pytest.mark.parametrize("argv", [
    ["--username", "alice"],
    ["--password", "secret"],
    ["--listen", "not-an-address"],
])
def test_command_line_rejects(argv: List[str]) -> None:
    with pytest.raises(SystemExit):
        parse_arguments(argv)


################################################################
#                  Authentication
################################################################

from forwardproxy._auth import verify, ALLOWED, MISSING, MALFORMED, INVALID

def basic(username: str, password: str) -> bytes:
    return b"Basic " + base64.b64encode(f"{username}:{password}".encode("utf-8"))

CREDENTIALED = ProxyConfig(credentials=Credentials("alice", "s3cret"))

@given(lists(tuples(binary(), binary())))
def test_no_credentials_lets_everyone_in(headers) -> None:
    assert verify(ProxyConfig(), headers) == ALLOWED

def test_correct_credentials_are_allowed() -> None:
    assert verify(CREDENTIALED, [(b"Proxy-Authorization", basic("alice", "s3cret"))]) == ALLOWED
    assert verify(CREDENTIALED, [(b"proxy-authorization", b"basic " + basic("alice", "s3cret")[6:])]) == ALLOWED

@pytest.mark.parametrize("headers, reason", [
    ([], MISSING),
    ([(b"Authorization", basic("alice", "s3cret"))], MISSING),
    ([(b"Proxy-Authorization", b"Bearer abcdef")], MALFORMED),
    ([(b"Proxy-Authorization", b"Basic !!!not base64!!!")], MALFORMED),
    ([(b"Proxy-Authorization", b"Basic " + base64.b64encode(b"\xff\xfe:\xfd"))], MALFORMED),
    ([(b"Proxy-Authorization", basic("alice", "wrong"))], INVALID),
    ([(b"Proxy-Authorization", basic("bob", "s3cret"))], INVALID),
    ([(b"Proxy-Authorization", b"Basic " + base64.b64encode(b"alice"))], INVALID),
])
def test_bad_credentials_are_rejected(headers, reason: str) -> None:
    decision = verify(CREDENTIALED, headers)
    assert not decision.allowed
    assert decision.reason == reason

@given(text(min_size=1), text(min_size=1), text(), text())
def test_only_the_exact_credentials_get_in(username: str, password: str, guess_user: str, guess_password: str) -> None:
    assume(f"{guess_user}:{guess_password}" != f"{username}:{password}")
    config = ProxyConfig(credentials=Credentials(username, password))

    assert verify(config, [(b"Proxy-Authorization", basic(username, password))]).allowed
    assert not verify(config, [(b"Proxy-Authorization", basic(guess_user, guess_password))]).allowed


################################################################
#                  Header sanitizing
################################################################

from forwardproxy._headers import sanitize

def test_sanitize_drops_headers_listed_in_connection() -> None:
    headers = [
        (b"Host", b"example.com"),
        (b"Connection", b"close, X-Foo"),
        (b"X-Foo", b"bar"),
        (b"Accept", b"*/*"),
        (b"x-foo", b"again"),
    ]
    assert sanitize(headers) == [(b"Host", b"example.com"), (b"Accept", b"*/*")]

def test_sanitize_drops_hop_by_hop_headers() -> None:
    headers = [
        (b"Proxy-Authorization", b"Basic xyz"),
        (b"Proxy-Connection", b"keep-alive"),
        (b"Keep-Alive", b"timeout=5"),
        (b"Transfer-Encoding", b"chunked"),
        (b"User-Agent", b"curl/8.0"),
        (b"TE", b"trailers"),
        (b"Upgrade", b"websocket"),
    ]
    assert sanitize(headers) == [(b"User-Agent", b"curl/8.0")]

def test_sanitize_leaves_its_input_alone() -> None:
    headers = [(b"Connection", b"X-Foo"), (b"X-Foo", b"bar")]
    original = list(headers)
    sanitize(headers)
    assert headers == original

def test_sanitize_reads_every_connection_header() -> None:
    headers = [(b"Connection", b"X-A"), (b"Connection", b" x-b ,"), (b"X-A", b"1"), (b"X-B", b"2"), (b"X-C", b"3")]
    assert sanitize(headers) == [(b"X-C", b"3")]

END_TO_END = [b"Accept", b"Cookie", b"Host", b"User-Agent", b"X-Custom", b"Content-Length", b"Via"]

@given(lists(tuples(sampled_from(END_TO_END), binary(max_size=20))))
def test_sanitize_keeps_end_to_end_headers_in_order(headers) -> None:
    assert sanitize(headers) == headers


################################################################
#                     Fake DNS resolution
################################################################

class ResolveAllToLocalhost(trio.abc.HostnameResolver):
    """A fake resolver, which resolves all hostnames to 127.0.0.1."""

    async def getaddrinfo(self, host, port, family=0, type=0, proto=0, flags=0):
        # Synchronous, but should always return promptly.
        return socket.getaddrinfo("127.0.0.1", port, family, type, proto, flags)

    async def getnameinfo(self, sockaddr, flags):
        return await trio.socket.getnameinfo(sockaddr, flags)


class HangingResolver(trio.abc.HostnameResolver):
    """A fake resolver which never answers."""

    async def getaddrinfo(self, host, port, family=0, type=0, proto=0, flags=0):
        await trio.sleep_forever()

    async def getnameinfo(self, sockaddr, flags):
        await trio.sleep_forever()


def with_resolver(resolver: trio.abc.HostnameResolver) -> Callable[[Callable], Callable]:
    """Decorates an async function to run with `resolver` as the resolver."""
    def decorator(f: Callable) -> Callable:
        @wraps(f)  # preserves function signature
        async def wrapper(*args, **kwargs):
            original_resolver = trio.socket.set_custom_hostname_resolver(resolver)
            try:
                return (await f(*args, **kwargs))
            finally:
                trio.socket.set_custom_hostname_resolver(original_resolver)
        return wrapper
    return decorator

resolve_all_to_localhost = with_resolver(ResolveAllToLocalhost())
resolve_nothing = with_resolver(HangingResolver())


################################################################
#                  "HTTP client/server" functions
################################################################

from forwardproxy._proxy import handle

CONNECT_OK = b"HTTP/1.1 200 Connection Established\r\n\r\n"

def connect_request(host: str, port: int, extra_headers: bytes = b"") -> bytes:
    hostname = f"{host}:{port}"
    return f"CONNECT {hostname} HTTP/1.1\r\nHost: {hostname}\r\n".encode() + extra_headers + b"\r\n"

async def connect(stream: trio.abc.Stream, host: Host, port: Port, expected: bytes, method: str = "CONNECT") -> None:
    """Connect, assert it's OK, quit."""
    hostname = f"{host}:{port}"
    async with stream:
        await stream.send_all(f"{method} {hostname} HTTP/1.1\r\nHost: {hostname}\r\n\r\n".encode())
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def connect_slowly(stream: trio.abc.Stream, host: Host, port: Port, expected: bytes) -> None:
    """Like `connect`, does it very slowly."""
    async with stream:
        await trio.sleep(1.5 * ProxyConfig().request_timeout)
        try:
            # This will blow up if the server already closed the connection.
            await stream.send_all(f"CONNECT {host}:{port} HTTP/1.1\r\nHost: whatever\r\n\r\n".encode())
        except trio.BrokenResourceError:
            pass
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def connect_with_bytes(stream: trio.abc.Stream, expected: bytes, to_send: bytes) -> None:
    """Like `connect`, but sends the given bytes instead of an actual HTTP request."""
    async with stream:
        await stream.send_all(to_send)
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)

async def accept_and_close_connection(s: trio.socket.SocketType) -> None:
    conn, _ = await s.accept()
    conn.close()
    s.close()

async def read_until_eof(stream: trio.abc.ReceiveStream) -> bytes:
    data = b""
    while True:
        chunk = await stream.receive_some(65536)
        if not chunk:
            return data
        data += chunk

async def receive_exactly(stream: trio.abc.ReceiveStream, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = await stream.receive_some(n - len(data))
        if not chunk:
            break
        data += chunk
    return data

async def proxy_exchange(config: ProxyConfig, raw_request: bytes) -> bytes:
    """Send `raw_request` through `handle`, return everything that comes back."""
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    response = b""

    async def client() -> None:
        nonlocal response
        async with client_stream:
            await client_stream.send_all(raw_request)
            response = await read_until_eof(client_stream)

    async with trio.open_nursery() as nursery:
        nursery.start_soon(client)
        nursery.start_soon(handle, proxy_stream, config)
    return response

def parse_response(raw: bytes) -> Tuple[h11.Response, bytes]:
    """Parse a response as a client that sent a GET would."""
    conn = h11.Connection(h11.CLIENT)
    conn.send(h11.Request(method="GET", target="/", headers=[("Host", "test")]))
    conn.send(h11.EndOfMessage())
    conn.receive_data(raw)
    conn.receive_data(b"")

    response = conn.next_event()
    assert isinstance(response, h11.Response), response
    body = b""
    while True:
        event = conn.next_event()
        if isinstance(event, h11.Data):
            body += event.data
        elif isinstance(event, h11.EndOfMessage):
            return response, body
        else:
            raise AssertionError(f"Unexpected event: {event!r}")

async def listening_socket() -> trio.socket.SocketType:
    sock = trio.socket.socket()
    await sock.bind(("127.0.0.1", 0))
    sock.listen()
    return sock

async def closed_port() -> int:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]

async def serve_once(sock: trio.socket.SocketType, response: bytes, received: List[Tuple[h11.Request, bytes]]) -> None:
    """Play origin server: read one request, answer with the raw `response`."""
    conn, _ = await sock.accept()
    async with trio.SocketStream(conn) as stream:
        h = h11.Connection(h11.SERVER)
        request, body = None, b""
        while True:
            event = h.next_event()
            if event is h11.NEED_DATA:
                h.receive_data(await stream.receive_some(65536))
            elif isinstance(event, h11.Request):
                request = event
            elif isinstance(event, h11.Data):
                body += event.data
            else:
                break
        received.append((request, body))
        await stream.send_all(response)


################################################################
#               Tests for handle(): CONNECT
################################################################

# Summary
# =======
# CONNECT to a reachable host:port:
#   200 Connection Established, then a plain byte pipe
#
# CONNECT to an unreachable or unresolvable upstream:
#   502 (whether it refuses or times out)
#
# Missing or wrong credentials: 407, nothing dialled
#
# Anything else should fail with a 4xx error
#   client timeouts: 408 (Too Slow)
#   target without a port: 400
#   malformed request: 400 (Bad Request)

@given(hosts=sets(hosts(), min_size=1), rand=randoms())
@settings(deadline=None)
@resolve_all_to_localhost
async def test_connect_to_reachable_host(hosts: Set[Host], rand: random.Random) -> None:

    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()

        _, port = sock.getsockname()
        host: Host = rand.choice(list(hosts))

        async def client(stream: trio.abc.Stream) -> None:
            async with stream:
                await stream.send_all(connect_request(host, port))
                assert await receive_exactly(stream, len(CONNECT_OK)) == CONNECT_OK

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(client, client_stream)
            nursery.start_soon(handle, proxy_stream, ProxyConfig())
            nursery.start_soon(accept_and_close_connection, sock)


@given(hosts=sets(hosts(), min_size=1), rand=randoms())
@settings(deadline=None)
@resolve_all_to_localhost
async def test_connect_to_nonexistent_upstream_host(hosts: Set[Host], rand: random.Random) -> None:

    expected = b"HTTP/1.1 502"

    host: Host = rand.choice(list(hosts))
    port = await closed_port()

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect, client_stream, host, port, expected)
        nursery.start_soon(handle, proxy_stream, ProxyConfig())


@resolve_nothing
async def test_connect_to_upstream_that_never_resolves() -> None:

    expected = b"HTTP/1.1 502"

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    with trio.fail_after(5):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(connect, client_stream, "hangs.example", 443, expected)
            nursery.start_soon(handle, proxy_stream, ProxyConfig(dial_timeout=0.1))


@resolve_nothing
async def test_client_leaving_cancels_the_dial() -> None:

    async def client(stream: trio.abc.Stream) -> None:
        async with stream:
            await stream.send_all(connect_request("hangs.example", 443))

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    with trio.fail_after(5):  # far less than dial_timeout
        async with trio.open_nursery() as nursery:
            nursery.start_soon(client, client_stream)
            nursery.start_soon(handle, proxy_stream, ProxyConfig(dial_timeout=60))


async def test_connect_without_port() -> None:
    raw = await proxy_exchange(ProxyConfig(), b"CONNECT example.com HTTP/1.1\r\nHost: example.com\r\n\r\n")
    response, _ = parse_response(raw)
    assert response.status_code == 400


@given(hosts=sets(hosts(), min_size=1), port=ports(), rand=randoms())
@settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
@resolve_all_to_localhost
async def test_connect_where_client_times_out(hosts: Set[Host], port: Port, rand: random.Random, autojump_clock) -> None:

    expected = b"HTTP/1.1 408"

    host: Host = rand.choice(list(hosts))

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect_slowly, client_stream, host, port, expected)
        nursery.start_soon(handle, proxy_stream, ProxyConfig())


@given(rand=randoms())
async def test_connect_with_random_input(rand: random.Random) -> None:

    expected = b"HTTP/1.1 400"

    #   malformed request: 400 (Bad Request)
    random_length = rand.randint(0, 100)
    random_bytes = bytes(rand.getrandbits(8) for _ in range(random_length))
    random_bytes += b"\r\n\r\n"  # we must terminate the line, or the server will time out

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect_with_bytes, client_stream, expected, random_bytes)
        nursery.start_soon(handle, proxy_stream, ProxyConfig())


async def test_connect_without_credentials_is_challenged() -> None:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()
        _, port = sock.getsockname()

        raw = await proxy_exchange(CREDENTIALED, connect_request("127.0.0.1", port))

        # Nothing was dialled: nobody is waiting to be accepted.
        with trio.move_on_after(0.1) as cancel_scope:
            await sock.accept()
        assert cancel_scope.cancelled_caught

    assert raw.count(b"HTTP/1.1") == 1
    response, _ = parse_response(raw)
    assert response.status_code == 407
    assert dict(response.headers)[b"proxy-authenticate"].startswith(b"Basic")


async def test_connect_with_credentials() -> None:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()
        _, port = sock.getsockname()

        request = connect_request("127.0.0.1", port, b"Proxy-Authorization: " + basic("alice", "s3cret") + b"\r\n")

        async def client(stream: trio.abc.Stream) -> None:
            async with stream:
                await stream.send_all(request)
                assert await receive_exactly(stream, len(CONNECT_OK)) == CONNECT_OK

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(client, client_stream)
            nursery.start_soon(handle, proxy_stream, CREDENTIALED)
            nursery.start_soon(accept_and_close_connection, sock)


async def test_bytes_sent_along_with_connect_reach_upstream() -> None:
    received = b""

    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()
        _, port = sock.getsockname()

        async def upstream() -> None:
            nonlocal received
            conn, _ = await sock.accept()
            async with trio.SocketStream(conn) as stream:
                received = await receive_exactly(stream, len(b"\x16\x03\x01hello"))
                await stream.send_all(b"\x16\x03\x03world")

        async def client(stream: trio.abc.Stream) -> None:
            async with stream:
                # Eager clients send the start of the TLS handshake right away.
                await stream.send_all(connect_request("127.0.0.1", port) + b"\x16\x03\x01hello")
                reply = await receive_exactly(stream, len(CONNECT_OK) + len(b"\x16\x03\x03world"))
                assert reply == CONNECT_OK + b"\x16\x03\x03world"

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        with trio.fail_after(5):
            async with trio.open_nursery() as nursery:
                nursery.start_soon(upstream)
                nursery.start_soon(client, client_stream)
                nursery.start_soon(handle, proxy_stream, ProxyConfig())

    assert received == b"\x16\x03\x01hello"


async def test_connect_from_http_10_client_gets_the_bare_status_line() -> None:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        sock.listen()
        _, port = sock.getsockname()

        async def upstream() -> None:
            conn, _ = await sock.accept()
            async with trio.SocketStream(conn) as stream:
                await stream.send_all(b"up")

        async def client(stream: trio.abc.Stream) -> None:
            async with stream:
                await stream.send_all(f"CONNECT 127.0.0.1:{port} HTTP/1.0\r\n\r\n".encode())
                assert await receive_exactly(stream, len(CONNECT_OK) + 2) == CONNECT_OK + b"up"

        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        with trio.fail_after(5):
            async with trio.open_nursery() as nursery:
                nursery.start_soon(upstream)
                nursery.start_soon(client, client_stream)
                nursery.start_soon(handle, proxy_stream, ProxyConfig())


async def test_debug_log_has_one_event_per_connection(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="forwardproxy")
    await proxy_exchange(ProxyConfig(credentials=CREDENTIALED.credentials, debug=True), connect_request("example.com", 443))

    events = [r.getMessage() for r in caplog.records if r.getMessage().startswith("method=")]
    assert len(events) == 1
    assert "method=CONNECT target=example.com:443 outcome=407 duration=" in events[0]


################################################################
#               Tests for handle(): plain HTTP
################################################################

def get_request(port: int, path: str = "/", extra_headers: bytes = b"", method: str = "GET") -> bytes:
    return (
        f"{method} http://127.0.0.1:{port}{path} HTTP/1.1\r\n"
        f"Host: 127.0.0.1:{port}\r\n"
    ).encode() + extra_headers + b"\r\n"


@given(status=sampled_from([200, 201, 204, 404, 500]), body=binary(max_size=5000))
@settings(deadline=None, max_examples=25)
async def test_forward_round_trip(status: int, body: bytes) -> None:
    if status == 204:
        body = b""
    response = f"HTTP/1.1 {status} Whatever\r\nContent-Length: {len(body)}\r\nX-Origin: yes\r\n\r\n".encode() + body
    received: List[Tuple[h11.Request, bytes]] = []

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, response, received)
            raw = await proxy_exchange(ProxyConfig(), get_request(port, "/index.html?q=1"))

    got, got_body = parse_response(raw)
    assert got.status_code == status
    assert got_body == body
    assert dict(got.headers)[b"x-origin"] == b"yes"
    assert dict(got.headers)[b"connection"] == b"close"

    [(request, _)] = received
    assert request.method == b"GET"
    assert request.target == b"/index.html?q=1"


async def test_forward_strips_hop_by_hop_headers() -> None:
    received: List[Tuple[h11.Request, bytes]] = []
    extra = (
        b"Connection: keep-alive, X-Secret\r\n"
        b"X-Secret: hush\r\n"
        b"Proxy-Connection: keep-alive\r\n"
        b"Proxy-Authorization: " + basic("alice", "s3cret") + b"\r\n"
        b"X-Keep: me\r\n"
    )

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n", received)
            raw = await proxy_exchange(CREDENTIALED, get_request(port, extra_headers=extra))

    assert parse_response(raw)[0].status_code == 200

    [(request, _)] = received
    headers = dict(request.headers)
    assert headers[b"host"] == f"127.0.0.1:{port}".encode()
    assert headers[b"x-keep"] == b"me"
    assert headers[b"connection"] == b"close"
    for name in (b"x-secret", b"proxy-connection", b"proxy-authorization"):
        assert name not in headers


async def test_forward_response_headers_are_sanitized() -> None:
    received: List[Tuple[h11.Request, bytes]] = []
    response = (
        b"HTTP/1.1 200 OK\r\n"
        b"Content-Length: 2\r\n"
        b"Connection: X-Internal\r\n"
        b"X-Internal: hush\r\n"
        b"Keep-Alive: timeout=5\r\n"
        b"X-Public: hi\r\n"
        b"\r\nok"
    )

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, response, received)
            raw = await proxy_exchange(ProxyConfig(), get_request(port))

    got, body = parse_response(raw)
    headers = dict(got.headers)
    assert body == b"ok"
    assert headers[b"x-public"] == b"hi"
    assert b"x-internal" not in headers
    assert b"keep-alive" not in headers


async def test_forward_chunked_response() -> None:
    received: List[Tuple[h11.Request, bytes]] = []
    response = (
        b"HTTP/1.1 200 OK\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
        b"5\r\nhello\r\n"
        b"6\r\n world\r\n"
        b"0\r\n\r\n"
    )

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, response, received)
            raw = await proxy_exchange(ProxyConfig(), get_request(port))

    got, body = parse_response(raw)
    assert got.status_code == 200
    assert body == b"hello world"


@pytest.mark.parametrize("framing, body_on_the_wire", [
    (b"Content-Length: 11\r\n", b"hello world"),
    (b"Transfer-Encoding: chunked\r\n", b"5\r\nhello\r\n6\r\n world\r\n0\r\n\r\n"),
])
async def test_forward_request_body(framing: bytes, body_on_the_wire: bytes) -> None:
    received: List[Tuple[h11.Request, bytes]] = []

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, b"HTTP/1.1 201 Created\r\nContent-Length: 0\r\n\r\n", received)
            request = get_request(port, "/upload", extra_headers=framing, method="POST") + body_on_the_wire
            raw = await proxy_exchange(ProxyConfig(), request)

    assert parse_response(raw)[0].status_code == 201
    [(request, body)] = received
    assert request.method == b"POST"
    assert body == b"hello world"


async def test_forward_to_unreachable_origin() -> None:
    port = await closed_port()
    raw = await proxy_exchange(ProxyConfig(), get_request(port))
    assert parse_response(raw)[0].status_code == 502


async def test_forward_to_silent_origin_times_out() -> None:
    with await listening_socket() as sock:
        port = sock.getsockname()[1]

        async def accept_and_ignore() -> None:
            conn, _ = await sock.accept()
            with conn:
                await trio.sleep_forever()

        async with trio.open_nursery() as nursery:
            nursery.start_soon(accept_and_ignore)
            raw = await proxy_exchange(ProxyConfig(response_timeout=0.2), get_request(port))
            nursery.cancel_scope.cancel()

    assert parse_response(raw)[0].status_code == 504


async def test_forward_garbage_from_origin() -> None:
    received: List[Tuple[h11.Request, bytes]] = []

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, b"this is not HTTP at all\r\n\r\n", received)
            raw = await proxy_exchange(ProxyConfig(), get_request(port))

    assert parse_response(raw)[0].status_code == 502


async def test_forward_to_https_origin_without_tls() -> None:
    with await listening_socket() as sock:
        port = sock.getsockname()[1]

        async def answer_in_plain_http() -> None:
            conn, _ = await sock.accept()
            async with trio.SocketStream(conn) as stream:
                try:
                    await stream.receive_some(65536)  # the ClientHello
                    await stream.send_all(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\n\r\n")
                except trio.BrokenResourceError:
                    pass

        request = f"GET https://127.0.0.1:{port}/ HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n\r\n".encode()
        with trio.fail_after(5):
            async with trio.open_nursery() as nursery:
                nursery.start_soon(answer_in_plain_http)
                raw = await proxy_exchange(ProxyConfig(), request)

    assert parse_response(raw)[0].status_code == 502


HTTP_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "OPTIONS", "TRACE", "PATCH"]

@given(host=hosts(), port=ports(), method=sampled_from(HTTP_METHODS + ["DJWAODUIJAW"]))
async def test_forward_without_absolute_target(host: Host, port: Port, method: str) -> None:

    expected = b"HTTP/1.1 400"

    # An authority or a bare path is no good for anything but CONNECT.
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect, client_stream, host, port, expected, method)
        nursery.start_soon(handle, proxy_stream, ProxyConfig())


async def test_forward_without_credentials_is_challenged() -> None:
    received: List[Tuple[h11.Request, bytes]] = []

    with await listening_socket() as sock:
        port = sock.getsockname()[1]
        async with trio.open_nursery() as nursery:
            nursery.start_soon(serve_once, sock, b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n", received)
            raw = await proxy_exchange(CREDENTIALED, get_request(port))
            nursery.cancel_scope.cancel()

    assert received == []
    assert raw.count(b"HTTP/1.1") == 1
    response, _ = parse_response(raw)
    assert response.status_code == 407
    assert dict(response.headers)[b"proxy-authenticate"] == b'Basic realm="forwardproxy"'


################################################################
#               Forward target parsing
################################################################

from forwardproxy._forward import parse_absolute_target, outbound_headers
from forwardproxy._errors import InvalidTarget
from forwardproxy._request import InboundRequest

def test_parse_absolute_target() -> None:
    t = parse_absolute_target("http://example.com")
    assert (t.scheme, t.host, t.port, t.authority, t.path) == ("http", "example.com", 80, "example.com", "/")

    t = parse_absolute_target("HTTPS://user:pw@[::1]:8443/a/b?c=d")
    assert (t.scheme, t.host, t.port, t.authority, t.path) == ("https", "::1", 8443, "[::1]:8443", "/a/b?c=d")

@pytest.mark.parametrize("target", [
    "/just/a/path", "example.com:443", "ftp://example.com/", "http:///nohost", "http://example.com:99999/",
])
def test_parse_absolute_target_rejects(target: str) -> None:
    with pytest.raises(InvalidTarget):
        parse_absolute_target(target)

def test_outbound_headers_reframe_chunked_bodies() -> None:
    request = InboundRequest(
        method="POST",
        target="http://example.com/upload",
        headers=((b"Host", b"wrong.example"), (b"Content-Length", b"5"), (b"X-A", b"1")),
        http_version="1.1",
        chunked=True,
    )
    assert outbound_headers(request, parse_absolute_target(request.target)) == [
        (b"Host", b"example.com"),
        (b"X-A", b"1"),
        (b"Transfer-Encoding", b"chunked"),
        (b"Connection", b"close"),
    ]


################################################################
#               Tests for the listener
################################################################

async def tagged_echo(tag: bytes, stream: trio.SocketStream) -> None:
    """Say who we are, then echo everything back."""
    try:
        async with stream:
            await stream.send_all(tag)
            async for chunk in stream:
                await stream.send_all(chunk)
    except trio.BrokenResourceError:
        pass

async def start_echo_server(nursery: trio.Nursery, tag: bytes) -> int:
    listeners = await nursery.start(partial(trio.serve_tcp, partial(tagged_echo, tag), 0, host="127.0.0.1"))
    return listeners[0].socket.getsockname()[1]

async def start_proxy(nursery: trio.Nursery, config: ProxyConfig) -> int:
    listeners = await nursery.start(ForwardProxy(config).listen, "127.0.0.1", 0)
    return listeners[0].socket.getsockname()[1]

async def open_tunnel(proxy_port: int, upstream_port: int, tag: bytes) -> trio.SocketStream:
    stream = await trio.open_tcp_stream("127.0.0.1", proxy_port)
    await stream.send_all(connect_request("127.0.0.1", upstream_port))
    assert await receive_exactly(stream, len(CONNECT_OK) + len(tag)) == CONNECT_OK + tag
    return stream


async def test_concurrent_tunnels_never_cross() -> None:
    rand = random.Random(1234)

    async def talk(proxy_port: int, upstream_port: int, tag: bytes) -> None:
        async with await open_tunnel(proxy_port, upstream_port, tag) as stream:
            for _ in range(50):
                payload = tag + bytes(rand.getrandbits(8) for _ in range(rand.randint(1, 2000)))
                await stream.send_all(payload)
                assert await receive_exactly(stream, len(payload)) == payload
                await trio.sleep(0)  # let the other session interleave

    with trio.fail_after(10):
        async with trio.open_nursery() as nursery:
            alpha = await start_echo_server(nursery, b"alpha")
            beta = await start_echo_server(nursery, b"beta")
            proxy_port = await start_proxy(nursery, ProxyConfig())

            async with trio.open_nursery() as clients:
                clients.start_soon(talk, proxy_port, alpha, b"alpha")
                clients.start_soon(talk, proxy_port, beta, b"beta")

            nursery.cancel_scope.cancel()


async def test_connections_beyond_the_cap_wait_their_turn() -> None:
    with trio.fail_after(10):
        async with trio.open_nursery() as nursery:
            upstream_port = await start_echo_server(nursery, b"up")
            proxy_port = await start_proxy(nursery, ProxyConfig(max_connections=1))

            first = await open_tunnel(proxy_port, upstream_port, b"up")

            second = await trio.open_tcp_stream("127.0.0.1", proxy_port)
            await second.send_all(connect_request("127.0.0.1", upstream_port))
            with trio.move_on_after(0.3) as cancel_scope:
                await second.receive_some(1)
            assert cancel_scope.cancelled_caught, "The second connection should not be served yet"

            await first.aclose()
            assert await receive_exactly(second, len(CONNECT_OK) + 2) == CONNECT_OK + b"up"
            await second.aclose()

            nursery.cancel_scope.cancel()


async def test_forward_through_the_listener() -> None:
    received: List[Tuple[h11.Request, bytes]] = []

    with trio.fail_after(10):
        with await listening_socket() as sock:
            origin_port = sock.getsockname()[1]
            async with trio.open_nursery() as nursery:
                nursery.start_soon(serve_once, sock, b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhello", received)
                proxy_port = await start_proxy(nursery, ProxyConfig())

                async with await trio.open_tcp_stream("127.0.0.1", proxy_port) as stream:
                    await stream.send_all(get_request(origin_port))
                    raw = await read_until_eof(stream)

                nursery.cancel_scope.cancel()

    response, body = parse_response(raw)
    assert response.status_code == 200
    assert body == b"hello"


async def test_debug_log_names_the_client(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="forwardproxy")

    def events() -> List[str]:
        return [r.getMessage() for r in caplog.records if r.getMessage().startswith("method=")]

    with trio.fail_after(10):
        async with trio.open_nursery() as nursery:
            proxy_port = await start_proxy(nursery, ProxyConfig(debug=True))

            async with await trio.open_tcp_stream("127.0.0.1", proxy_port) as stream:
                client_port = stream.socket.getsockname()[1]
                await stream.send_all(connect_request("example.com", 0))
                raw = await read_until_eof(stream)

            # The event is logged once the proxy is done shutting down.
            while not events():
                await trio.sleep(0.010)

            nursery.cancel_scope.cancel()

    assert parse_response(raw)[0].status_code == 400
    assert "method=CONNECT target=example.com:0 outcome=400" in events()[0]
    assert events()[0].endswith(f" client=127.0.0.1:{client_port}")
