"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. Only the destructive maintenance
route (DELETE /cleanup) opts in; read routes and the event stream are
unlimited.

Usage in routes:
    from fastapi import Request
    from crisis_monitor.core.rate_limit import limiter

    @router.delete("/cleanup")
    @limiter.limit("5/minute")
    async def cleanup(request: Request):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
