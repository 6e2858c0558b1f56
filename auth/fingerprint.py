"""
auth/fingerprint.py -- Client fingerprints for session binding.

A fingerprint is HMAC-SHA256 over the normalized client IP and user agent,
keyed by a value derived from SECRET_KEY. It is a heuristic signal, not an
identity: clients behind the same NAT with the same browser collide, which is
an accepted false negative. The keyed hash means a leaked token does not
reveal the raw IP/user-agent pair.

Missing headers become empty components rather than errors, so clients that
omit them are still served.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac

USER_AGENT_MAX_LENGTH = 512

_DELIMITER = "|"
# Domain separation: the fingerprint key is never the raw signing key.
_KEY_CONTEXT = b"ecvms.fingerprint.v1"


def normalize_ip(raw: str | None) -> str:
    """Reduce a client address (or X-Forwarded-For list) to a bare host.

    - "203.0.113.7, 10.0.0.1"  -> "203.0.113.7"  (first hop is the client)
    - "203.0.113.7:51234"      -> "203.0.113.7"
    - "[2001:db8::1]:443"      -> "2001:db8::1"
    - "2001:db8::1"            -> "2001:db8::1"  (bare IPv6 is left alone)
    """
    if not raw:
        return ""
    host = raw.split(",", 1)[0].strip()
    if host.startswith("["):
        end = host.find("]")
        return host[1:end].lower() if end != -1 else host.lower()
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.lower()


def normalize_user_agent(raw: str | None) -> str:
    if not raw:
        return ""
    return raw.strip()[:USER_AGENT_MAX_LENGTH]


def _fingerprint_key(secret_key: str) -> bytes:
    return hmac.new(secret_key.encode("utf-8"), _KEY_CONTEXT, hashlib.sha256).digest()


def compute_fingerprint(ip: str | None, user_agent: str | None, secret_key: str) -> str:
    """Return a 64-char hex fingerprint. Equal normalized inputs give equal output."""
    data = f"{normalize_ip(ip)}{_DELIMITER}{normalize_user_agent(user_agent)}"
    return hmac.new(_fingerprint_key(secret_key), data.encode("utf-8"), hashlib.sha256).hexdigest()


def fingerprints_match(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), actual.encode("utf-8"))
