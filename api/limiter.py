"""
api/limiter.py -- Shared slowapi rate limiter for the credential endpoints.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/v1/auth.py applies AUTH_RATE_LIMIT with @limiter.limit() to every
route that accepts a password, an ID token or an email address [H2].

One shared instance, one in-memory counter store. Counters are per process;
behind several workers the effective limit is multiplied by the worker count.
Tests call limiter.reset() to start every case from zero.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Per client IP, per route.
AUTH_RATE_LIMIT = "10/minute"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
