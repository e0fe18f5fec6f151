"""
Per-connection failures.

Each one knows which HTTP status the client should see, as long as the
connection is still speaking HTTP. A `status_code` of None means there is
nobody left to tell.
"""
from typing import Optional


class ProxyError(Exception):
    status_code: Optional[int] = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class AuthError(ProxyError):
    status_code = 407


class ParseError(ProxyError):
    status_code = 400


class ClientTimeout(ProxyError):
    status_code = 408


class ClientDisconnected(ProxyError):
    status_code = None


class ForwardError(ProxyError):
    status_code = 502


class InvalidTarget(ForwardError):
    status_code = 400


class UpstreamUnreachable(ForwardError):
    status_code = 502


class UpstreamTimeout(ForwardError):
    status_code = 504


class UpstreamProtocolError(ForwardError):
    status_code = 502


class TunnelError(ProxyError):
    status_code = 502


class InvalidAuthority(TunnelError):
    status_code = 400


class DialFailed(TunnelError):
    status_code = 502
