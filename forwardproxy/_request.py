from dataclasses import dataclass
from typing import Tuple

import h11

from ._errors import ParseError
from ._headers import Header, first_header


@dataclass(frozen=True)
class InboundRequest:
    """
    The request head a client sent us.

    `target` is an absolute URI for plain HTTP, or `host:port` for CONNECT.
    `headers` keep their original casing, order and duplicates.
    `chunked` remembers whether the body came with a Transfer-Encoding,
    since sanitizing the headers throws that information away.
    """
    method: str
    target: str
    headers: Tuple[Header, ...]
    http_version: str
    chunked: bool = False

    @classmethod
    def from_event(cls, event: h11.Request) -> "InboundRequest":
        try:
            target = event.target.decode("ascii")
        except UnicodeDecodeError:
            raise ParseError(f"Non-ASCII request target: {event.target!r}")

        headers = tuple((bytes(name), bytes(value)) for name, value in event.headers.raw_items())
        return cls(
            method=event.method.decode("ascii"),  # h11 only lets tokens through
            target=target,
            headers=headers,
            http_version=event.http_version.decode("ascii"),
            chunked=first_header(headers, b"transfer-encoding") is not None,
        )
