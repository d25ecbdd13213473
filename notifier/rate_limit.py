"""Rate limiting singleton using slowapi."""

from fastapi import Request
from slowapi import Limiter


def _get_real_ip(request: Request) -> str:
    """Extract client IP, supporting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_operator_key(request: Request) -> str:
    """Limit operators individually when the UI forwards their identity."""
    actor = request.headers.get("X-Actor", "").strip()
    return f"actor:{actor}" if actor else _get_real_ip(request)


limiter = Limiter(key_func=_get_real_ip)