import trio
from typing import Tuple

from ._adapter import MAX_RECV
from ._config import Host, Port, parse_host_and_port
from ._errors import DialFailed, InvalidAuthority


def parse_authority(target: str) -> Tuple[Host, Port]:
    """
    Parse a CONNECT target. Unlike other request targets, it must be
    exactly `host:port`, and the port is not optional.
    """
    try:
        host, port = parse_host_and_port(target)
    except ValueError as e:
        raise InvalidAuthority(f"Malformed CONNECT target: {e}")
    if port == 0:
        raise InvalidAuthority(f"Invalid port number in CONNECT target: {target!r}")
    return host, port


async def dial(host: str, port: int, timeout: float) -> trio.SocketStream:
    try:
        with trio.fail_after(timeout):
            return await trio.open_tcp_stream(host, int(port))  # takes _exactly_ int
    except trio.TooSlowError:
        raise DialFailed(f"TCP connection to {host}:{port} timed out")
    except OSError as e:
        raise DialFailed(f"TCP connection to {host}:{port} failed: {e}")


class TunnelSession:
    """
    An established CONNECT tunnel. Owns both streams until it's done.

    `early_data` is whatever the client sent before the tunnel was
    confirmed (typically the start of a TLS handshake); it is delivered
    upstream before anything else.
    """

    def __init__(self, client: trio.abc.Stream, upstream: trio.abc.Stream, early_data: bytes = b"") -> None:
        self.client = client
        self.upstream = upstream
        self.early_data = early_data

    async def run(self) -> None:
        if self.early_data:
            try:
                await self.upstream.send_all(self.early_data)
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                await trio.aclose_forcefully(self.upstream)
                await trio.aclose_forcefully(self.client)
                return
        await splice(self.client, self.upstream)


async def splice(a: trio.abc.Stream, b: trio.abc.Stream) -> None:
    """
    "Splices" two streams into one.
    That is, it forwards everything from a to b, and vice versa.

    End-of-file in one direction is passed on as a half-close, and the
    other direction carries on. Once both directions are finished, or
    either one breaks, both streams are closed and this returns.
    """
    async with a:
        async with b:
            async with trio.open_nursery() as nursery:
                # From RFC 7231, §4.3.6:
                # ----------------------
                # A tunnel is closed when a tunnel intermediary detects that
                # either side has closed its connection: the intermediary MUST
                # attempt to send any outstanding data that came from the
                # closed side to the other side, close both connections,
                # and then discard any remaining data left undelivered.
                #
                # We are a bit more lenient and honour half-closes, which
                # some protocols rely on. A real close shows up as a broken
                # stream soon enough, and that cancels both directions.
                nursery.start_soon(relay, a, b, nursery.cancel_scope)
                nursery.start_soon(relay, b, a, nursery.cancel_scope)


async def relay(source: trio.abc.ReceiveStream, sink: trio.abc.SendStream, cancel_scope: trio.CancelScope) -> None:
    try:
        while True:
            chunk = await source.receive_some(MAX_RECV)
            if not chunk:
                break  # nothing more to read
            await sink.send_all(chunk)

        if isinstance(sink, trio.abc.HalfCloseableStream):
            await sink.send_eof()
            return
    except (trio.BrokenResourceError, trio.ClosedResourceError):
        pass

    cancel_scope.cancel()
