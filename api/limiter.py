"""
api/limiter.py -- The one slowapi Limiter shared by the app and its routes.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware); the public
account routes decorate themselves with @limiter.limit(login_rate_limit).
Counters live in process memory and are keyed by client IP.

login_rate_limit is passed as a callable so slowapi reads
Settings.login_rate_limit per request instead of freezing it at import.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string (e.g. "10/minute") for sign-in, recovery and bootstrap."""
    return get_settings().login_rate_limit
