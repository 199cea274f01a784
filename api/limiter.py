"""
api/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it as middleware; api/routes/v1/users.py applies it to
the login and registration routes with @limiter.limit().

One module-level instance keeps a single counter store for every route.
Limits key on the client address, so a credential-stuffing run from one host
is throttled before the per-account lockout in auth/service.py engages.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
