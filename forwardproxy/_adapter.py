"""
Glue between h11 and trio streams, for the client-facing side.
"""
import logging
from itertools import count
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Tuple, TypeVar, Union
from wsgiref.handlers import format_date_time

import trio, h11

from ._errors import ClientDisconnected, ClientTimeout, ParseError
from . import __version__


MAX_RECV = 2 ** 16

log = logging.getLogger("forwardproxy")

T = TypeVar("T")
HeaderLike = Tuple[Union[str, bytes], Union[str, bytes]]


class TrioHTTPConnection:
    """
    One server-side HTTP/1.1 connection: an h11 state machine on a trio stream.
    """

    _next_id = count()

    def __init__(self, stream: trio.abc.Stream, shutdown_timeout: float, debug: bool = False) -> None:
        self.stream = stream
        self.conn = h11.Connection(h11.SERVER)
        self.shutdown_timeout = shutdown_timeout
        self.debug = debug
        self.ident = f"forwardproxy/{__version__}".encode("ascii")
        self.request_method = b""
        self._obj_id = next(TrioHTTPConnection._next_id)
        self._shut_down = False

    async def send(self, event: h11.Event) -> None:
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        assert data is not None
        try:
            await self.stream.send_all(data)
        except BaseException:
            self.conn.send_failed()
            raise

    async def _read_from_peer(self) -> None:
        if self.conn.they_are_waiting_for_100_continue:
            self.info("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(status_code=100, headers=self.basic_headers())
            await self.send(go_ahead)
        try:
            data = await self.stream.receive_some(MAX_RECV)
        except trio.BrokenResourceError:
            data = b""
        self.conn.receive_data(data)

    async def next_event(self) -> Any:
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            if type(event) is h11.Request:
                self.request_method = event.method
            return event

    async def receive_body(self, timeout: float) -> AsyncIterator[bytes]:
        """
        Yield the request body chunk by chunk, until EndOfMessage.

        Each chunk must arrive within `timeout` seconds.
        """
        while True:
            try:
                with trio.fail_after(timeout):
                    event = await self.next_event()
            except trio.TooSlowError:
                raise ClientTimeout("Client is too slow sending the request body")
            except h11.RemoteProtocolError as e:
                raise ParseError(str(e), e.error_status_hint)

            if type(event) is h11.Data:
                yield bytes(event.data)
            elif type(event) is h11.EndOfMessage:
                return
            else:
                raise ParseError(f"Unexpected event in request body: {event!r}")

    def can_respond(self) -> bool:
        """True while we are still allowed to start a response."""
        return self.conn.our_state in {h11.IDLE, h11.SEND_RESPONSE}

    async def send_error(self, status_code: int, message: str, headers: Iterable[HeaderLike] = ()) -> None:
        """
        Send a small plain-text error response, if the connection still allows it.
        """
        if not self.can_respond():
            self.info(f"Cannot send {status_code}, our state is {self.conn.our_state}")
            return

        body = message.encode("utf-8")
        response_headers: List[HeaderLike] = [
            *self.basic_headers(),
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
            *headers,
        ]
        try:
            await self.send(h11.Response(status_code=status_code, headers=response_headers))
            if self.request_method != b"HEAD":
                await self.send(h11.Data(data=body))
            await self.send(h11.EndOfMessage())
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            self.info(f"Client went away before {status_code} could be sent")
        except h11.LocalProtocolError as e:
            self.info(f"Could not send {status_code}: {e}")

    async def ensure_shutdown(self) -> None:
        """
        Close the connection gracefully: half-close our side, give the client
        `shutdown_timeout` seconds to finish, then close for good.

        Safe to call more than once, and on streams already closed elsewhere.
        """
        if self._shut_down:
            return
        self._shut_down = True

        try:
            await self.stream.send_eof()
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            await trio.aclose_forcefully(self.stream)
            return

        with trio.move_on_after(self.shutdown_timeout):
            try:
                while True:
                    got = await self.stream.receive_some(MAX_RECV)
                    if not got:
                        break
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                pass
        await trio.aclose_forcefully(self.stream)

    def basic_headers(self) -> List[HeaderLike]:
        return [
            ("Date", format_date_time(None).encode("ascii")),
            ("Server", self.ident),
        ]

    def info(self, message: str) -> None:
        if self.debug:
            log.debug("%s: %s", self._obj_id, message)


async def unless_peer_leaves(
        stream: trio.abc.ReceiveStream,
        async_fn: Callable[..., Awaitable[T]],
        *args: Any,
        keep: int = MAX_RECV,
    ) -> Tuple[T, bytes]:
    """
    Run `async_fn(*args)`, but cancel it if `stream` reaches end-of-file
    or breaks in the meantime. Raises ClientDisconnected if the peer left.

    `stream` is read while waiting, and up to `keep` bytes of what the peer
    sends are returned alongside the result. Once that many have arrived,
    the stream is left alone (and the peer stalls) until `async_fn` is done,
    so a departure from then on goes unnoticed. With `keep=0`, everything
    is read and thrown away, and watching never stops.
    """
    received = bytearray()

    async def watch(cancel_scope: trio.CancelScope) -> None:
        while True:
            room = keep - len(received)
            if keep and not room:
                return
            try:
                chunk = await stream.receive_some(room if keep else MAX_RECV)
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                chunk = b""
            if not chunk:
                cancel_scope.cancel()
                return
            if keep:
                received.extend(chunk)

    finished = False
    error = None
    async with trio.open_nursery() as nursery:
        nursery.start_soon(watch, nursery.cancel_scope)
        # Errors are carried out of the nursery by hand, so that callers
        # see them bare instead of wrapped in an ExceptionGroup.
        try:
            result = await async_fn(*args)
            finished = True
        except Exception as e:
            error = e
        nursery.cancel_scope.cancel()

    if error is not None:
        raise error
    if not finished:
        raise ClientDisconnected("Client closed the connection while we were waiting")
    return result, bytes(received)
