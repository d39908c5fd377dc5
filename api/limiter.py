"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

RATE_LIMIT_ENABLED=false turns every limit into a no-op (test suites, or a
deployment that rate-limits at the proxy).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)

# Per-route limit strings, e.g. "10/minute".
LOGIN_LIMIT = _settings.login_rate_limit
VERIFY_LIMIT = _settings.two_factor_verify_rate_limit
RESEND_LIMIT = _settings.two_factor_resend_rate_limit
