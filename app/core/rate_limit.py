"""Per-client rate limits for the read-only status endpoints (slowapi)."""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

STATUS_ENDPOINT_LIMIT = "30/minute"


def client_address(request: Request) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return get_remote_address(request)


limiter = Limiter(key_func=client_address)
