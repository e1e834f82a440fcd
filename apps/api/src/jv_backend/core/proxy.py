"""
Client address resolution behind a reverse proxy.

The service always runs behind the hosting platform's proxy, so the
left-most X-Forwarded-For entry is trusted as the client address.
"""

from starlette.types import Scope

UNKNOWN_CLIENT = "unknown"


def client_ip(scope: Scope) -> str:
    """Return the originating client IP for an HTTP scope."""
    for name, value in scope.get("headers") or ():
        if name == b"x-forwarded-for":
            first = value.decode("latin-1").split(",")[0].strip()
            if first:
                return first
            break

    client = scope.get("client")
    if client:
        return client[0]
    return UNKNOWN_CLIENT
