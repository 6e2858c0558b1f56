"""
auth/tokens.py -- Session token codec and cookie helpers.

Wire format:
    base64url(payload-json) + "." + base64url(HMAC-SHA256(secret, encoded-payload))

Both segments are unpadded base64url so the token survives header and cookie
encoding unmodified. The signature covers the exact encoded payload bytes;
the payload is signed, not encrypted.

Security design decisions:
  Deterministic encoding: payload keys are always written in the same order
      with compact separators, so the same payload always yields the same token.

  Signing: itsdangerous.Signer with key_derivation="none", so the signature
      is the plain HMAC-SHA256 of the encoded payload under the secret.

  Constant-time verification: the expected signature is re-encoded and
      compared with hmac.compare_digest against the signature *text*. Comparing
      text rather than decoded bytes means a non-canonical base64 spelling of
      a valid signature is rejected too.

  No oracle: decode_session() returns None for every failure -- bad segment
      count, bad alphabet, bad signature, bad JSON, bad shape, old schema.
      Callers cannot tell which check failed.

  Schema version: bumping SCHEMA_VERSION invalidates every outstanding token
      at once. It is the only global revocation mechanism.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re

from itsdangerous import Signer
from itsdangerous.encoding import base64_encode

from auth.models import Role, SessionPayload
from core.config import ConfigurationError, get_settings

SCHEMA_VERSION = 1
SESSION_COOKIE = "session"

_SEPARATOR = "."
_B64URL_RE = re.compile(r"[A-Za-z0-9_-]+")

# ---------------------------------------------------------------------------
# base64url
# ---------------------------------------------------------------------------


def _b64url_encode(raw: bytes) -> str:
    return base64_encode(raw).decode("ascii")


def _b64url_decode(segment: str) -> bytes | None:
    # itsdangerous' base64_decode ignores characters outside the alphabet,
    # so the alphabet and length are checked here instead.
    if not _B64URL_RE.fullmatch(segment) or len(segment) % 4 == 1:
        return None
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return None


def _signer(secret_key: str) -> Signer:
    # key_derivation="none": HMAC keyed directly with the secret, no salt.
    return Signer(secret_key, sep=_SEPARATOR, key_derivation="none", digest_method=hashlib.sha256)


def _sign(encoded_payload: str, secret_key: str) -> str:
    return _signer(secret_key).get_signature(encoded_payload).decode("ascii")


def _require_key(secret_key: str) -> None:
    if not secret_key:
        raise ConfigurationError("Session signing key is not configured.")


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode_session(payload: SessionPayload, secret_key: str) -> str:
    """Serialize and sign a session payload.

    Raises ConfigurationError if secret_key is empty. That is a deployment
    error, not a per-request one.
    """
    _require_key(secret_key)
    body: dict = {
        "username": payload.username,
        "role": payload.role.value,
        "issued_at": payload.issued_at,
        "schema_version": payload.schema_version,
    }
    if payload.fingerprint is not None:
        body["fingerprint"] = payload.fingerprint
    encoded = _b64url_encode(json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    return f"{encoded}{_SEPARATOR}{_sign(encoded, secret_key)}"


def decode_session(token: str, secret_key: str) -> SessionPayload | None:
    """Verify and decode a session token. Returns None on any failure."""
    _require_key(secret_key)
    if not isinstance(token, str):
        return None
    parts = token.split(_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    encoded, signature = parts

    # Verify before parsing anything. Non-ASCII input cannot match the
    # ASCII expected signature, but must still go through compare_digest.
    expected = _sign(encoded, secret_key) if encoded.isascii() else ""
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "surrogatepass")):
        return None

    raw = _b64url_decode(encoded)
    if raw is None:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return _payload_from_dict(data)


def _payload_from_dict(data: object) -> SessionPayload | None:
    """Shape validation. Any violation makes the whole token invalid."""
    if not isinstance(data, dict):
        return None
    username = data.get("username")
    role = Role.parse(data.get("role"))
    issued_at = data.get("issued_at")
    version = data.get("schema_version")
    fingerprint = data.get("fingerprint")

    if not isinstance(username, str) or not username.strip():
        return None
    if role is None:
        return None
    # bool is an int subclass; neither True nor 1.0 is a timestamp.
    if type(issued_at) is not int or issued_at < 0:
        return None
    if type(version) is not int or version != SCHEMA_VERSION:
        return None
    if fingerprint is not None and not isinstance(fingerprint, str):
        return None
    return SessionPayload(
        username=username,
        role=role,
        issued_at=issued_at,
        schema_version=version,
        fingerprint=fingerprint,
    )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: never longer than the session lifetime, so cookie and token
        expire together.
    """
    settings = get_settings()
    lifetime = settings.session_max_age_seconds
    duration = min(max_age, lifetime) if max_age > 0 else lifetime
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=duration,
        path="/",
    )


def clear_session_cookie(response) -> None:
    settings = get_settings()
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )
