"""
api/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it (SlowAPIMiddleware looks for app.state.limiter) and
api/routes/v1/auth.py applies per-route limits to the credential endpoints
with @limiter.limit(). One shared instance means one in-memory counter store;
per-module instances would each count separately and never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
