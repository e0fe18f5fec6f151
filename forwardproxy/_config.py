from dataclasses import dataclass
from typing import NamedTuple, NewType, Optional, Tuple


Host = NewType("Host", str)
Port = NewType("Port", int)

DEFAULT_LISTEN_ADDRESS = "0.0.0.0:8080"


class Credentials(NamedTuple):
    username: str
    password: str


@dataclass(frozen=True)
class ProxyConfig:
    """
    Everything the proxy needs to know, fixed at startup.

    All timeouts are in seconds.
    """
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    credentials: Optional[Credentials] = None
    debug: bool = False

    request_timeout: float = 10
    dial_timeout: float = 10
    response_timeout: float = 30
    shutdown_timeout: float = 10
    max_connections: int = 1024
    realm: str = "forwardproxy"

    def __post_init__(self) -> None:
        if self.credentials is not None:
            username, password = self.credentials
            if not username or not password:
                raise ValueError("Both username and password must be non-empty")
        parse_host_and_port(self.listen_address)
        for name in ("request_timeout", "dial_timeout", "response_timeout", "shutdown_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")


def parse_host_and_port(address: str, default_port: Optional[int] = None) -> Tuple[Host, Port]:
    """
    Split `host:port` into its parts.

    IPv6 literals must be bracketed, as in `[::1]:8080`. If the port is
    missing, `default_port` is used; if that is None too, it's an error.

    Raises ValueError on anything malformed.
    """
    if address.startswith("["):
        end = address.find("]")
        if end == -1:
            raise ValueError(f"Unterminated IPv6 literal: {address!r}")
        host, rest = address[1:end], address[end + 1:]
        if rest and not rest.startswith(":"):
            raise ValueError(f"Malformed address: {address!r}")
        port_string = rest[1:] if rest else None
    elif address.count(":") > 1:
        raise ValueError(f"Malformed address: {address!r}")
    elif ":" in address:
        host, port_string = address.split(":")
    else:
        host, port_string = address, None

    if not host:
        raise ValueError(f"Missing host: {address!r}")

    if port_string is None:
        if default_port is None:
            raise ValueError(f"Missing port: {address!r}")
        port = default_port
    else:
        # int() alone would also accept " 80", "+80" and "8_0"
        if not (port_string.isascii() and port_string.isdigit()):
            raise ValueError(f"Invalid port number: {port_string!r}")
        port = int(port_string)

    if port not in range(65536):
        raise ValueError(f"Invalid port number: {port}")

    return Host(host), Port(port)
