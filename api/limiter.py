"""
api/limiter.py -- Process-wide slowapi limiter for the token endpoint.

create_app() mounts SlowAPIMiddleware and points app.state.limiter here;
api/routes/v1/tokens.py decorates POST /auth/token with login_rate_limit.
Counters live in memory and are keyed by client IP, so every app built in
one process shares them.

Per-login lockout (auth/lockout.py) bounds guessing against one account;
this limit bounds one caller spraying many accounts.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for the token endpoint, read per request so settings stay authoritative."""
    return get_settings().login_rate_limit
