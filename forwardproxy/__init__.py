"""
A small forward HTTP proxy, with CONNECT tunnelling and Basic proxy auth.
"""

__version__ = "0.1.0"

from ._proxy import (
    ForwardProxy,
    SynchronousForwardProxy,
    handle,
)
from ._config import (
    Port,
    Host,
    Credentials,
    ProxyConfig,
    parse_host_and_port,
)
from ._auth import (
    AuthDecision,
    verify,
)
from ._headers import sanitize
from ._request import InboundRequest
from ._forward import ForwardExchange, forward
from ._tunnel import TunnelSession, splice
from ._errors import (
    ProxyError,
    AuthError,
    ParseError,
    ClientTimeout,
    ClientDisconnected,
    ForwardError,
    InvalidTarget,
    UpstreamUnreachable,
    UpstreamTimeout,
    UpstreamProtocolError,
    TunnelError,
    InvalidAuthority,
    DialFailed,
)
