from typing import Iterable, List, Optional, Tuple


Header = Tuple[bytes, bytes]

# From RFC 7230, §6.1:
# --------------------
# Intermediaries MUST parse a received Connection header field before a
# message is forwarded and, for each connection-option in this field,
# remove any header field(s) from the message with the same name as the
# connection-option, and then remove the Connection header field itself.
#
# The static part below is the usual hop-by-hop set, plus the proxy-only
# headers. Transfer-Encoding goes too: h11 frames bodies on its own.
HOP_BY_HOP = frozenset({
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"proxy-connection",
    b"te",
    b"trailer",
    b"transfer-encoding",
    b"upgrade",
})


def connection_tokens(headers: Iterable[Header]) -> List[bytes]:
    """Header names listed in any `Connection` header, lowercased."""
    tokens = []
    for name, value in headers:
        if name.lower() == b"connection":
            tokens.extend(t.strip().lower() for t in value.split(b","))
    return [t for t in tokens if t]


def sanitize(headers: Iterable[Header]) -> List[Header]:
    """
    Return a copy of `headers` without the hop-by-hop ones.

    Everything else is kept as-is, in its original order and casing.
    """
    headers = list(headers)
    dropped = HOP_BY_HOP.union(connection_tokens(headers))
    return [(name, value) for name, value in headers if name.lower() not in dropped]


def first_header(headers: Iterable[Header], name: bytes) -> Optional[bytes]:
    """The value of the first header called `name` (case-insensitive), if any."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None
