"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. Limits are per client address, so repeated login attempts
from one IP are throttled regardless of which username they target.

Client address:
  By default the socket peer, which client-supplied headers cannot change.
  Behind a reverse proxy every request arrives from the proxy, so set
  TRUST_PROXY_HEADERS=true there; the key then becomes the same first-hop
  address the session fingerprint uses.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from auth.dependencies import get_client_ip
from auth.fingerprint import normalize_ip
from core.config import get_settings


def client_address_key(request: Request) -> str:
    if get_settings().trust_proxy_headers:
        forwarded = normalize_ip(get_client_ip(request))
        if forwarded:
            return forwarded
    return get_remote_address(request)


limiter = Limiter(key_func=client_address_key, storage_uri="memory://")
