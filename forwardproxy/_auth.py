import base64, binascii, hmac
from typing import Iterable, NamedTuple, Optional

from ._config import ProxyConfig
from ._headers import Header, first_header


MISSING = "missing"
MALFORMED = "malformed"
INVALID = "invalid"


class AuthDecision(NamedTuple):
    allowed: bool
    reason: Optional[str] = None  # one of MISSING, MALFORMED, INVALID when rejected


ALLOWED = AuthDecision(True)


def rejected(reason: str) -> AuthDecision:
    return AuthDecision(False, reason)


def verify(config: ProxyConfig, headers: Iterable[Header]) -> AuthDecision:
    """
    Check `Proxy-Authorization: Basic <base64(user:pass)>` against the
    configured credentials.

    Without configured credentials, everyone is allowed in.
    """
    if config.credentials is None:
        return ALLOWED

    value = first_header(headers, b"proxy-authorization")
    if value is None:
        return rejected(MISSING)

    scheme, _, token = value.strip().partition(b" ")
    if scheme.lower() != b"basic":
        return rejected(MALFORMED)

    try:
        decoded = base64.b64decode(token.strip(), validate=True)
        decoded.decode("utf-8")
    except (binascii.Error, ValueError):  # UnicodeDecodeError is a ValueError
        return rejected(MALFORMED)

    username, password = config.credentials
    expected = f"{username}:{password}".encode("utf-8")
    if not hmac.compare_digest(decoded, expected):
        return rejected(INVALID)

    return ALLOWED
