"""
api/limiter.py -- slowapi rate limiter construction.

One Limiter per application instance, built from Settings and stored on
app.state.limiter, where SlowAPIMiddleware looks for it by convention.
Every route shares the same in-memory counter store and the same default
limit (RATE_LIMIT, "100 per 15 minutes" in production). Routes that must
never be throttled (health checks) are wrapped with limiter.exempt().
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import Settings


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        storage_uri="memory://",
        enabled=settings.rate_limit_enabled,
    )
