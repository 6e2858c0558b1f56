"""
auth/sessions.py -- Session issuance, authentication and role checks.

SessionGuard composes the codec, the fingerprint binder and the clock into
the two operations the rest of the application consumes:

    issue_session(username, role, ip, user_agent) -> token
    authenticate(token, ip, user_agent)            -> SessionPayload | AuthFailure

Sessions are stateless: nothing is looked up in the user directory after
login. Lifecycle is Issued -> Valid -> Expired; there is no per-token
revocation, only the global SCHEMA_VERSION bump.

Fingerprint policy:
  log_only (default): a fingerprint mismatch is logged and the request is
      served. Mobile clients change IPs often; hard binding would log them out.
  reject: a mismatch fails with AuthFailure.fingerprint_mismatch.
  Tokens issued without client information carry no fingerprint and skip
  the check under either policy.

SessionGuard holds only immutable configuration, so one instance is shared
by every request handler without locking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from auth.errors import AuthFailure
from auth.fingerprint import compute_fingerprint, fingerprints_match
from auth.models import Role, SessionPayload
from auth.tokens import SCHEMA_VERSION, decode_session, encode_session
from core.config import ConfigurationError, Settings, now_ms

logger = logging.getLogger("ecvms.auth")

FINGERPRINT_POLICIES = ("log_only", "reject")


class SessionGuard:
    """Issues and verifies session tokens.

    Usage:
        guard = SessionGuard.from_settings(get_settings())
        token = guard.issue_session("alice", Role.admin, ip, user_agent)
        result = guard.authenticate(token, ip, user_agent)
        if isinstance(result, AuthFailure): ...
    """

    def __init__(
        self,
        secret_key: str,
        max_age_ms: int,
        fingerprint_policy: str = "log_only",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not secret_key:
            raise ConfigurationError("Session signing key is not configured.")
        if fingerprint_policy not in FINGERPRINT_POLICIES:
            raise ConfigurationError(f"Unknown fingerprint policy: {fingerprint_policy!r}")
        self._secret_key = secret_key
        self.max_age_ms = max_age_ms
        self.fingerprint_policy = fingerprint_policy
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], int] = now_ms) -> SessionGuard:
        return cls(
            secret_key=settings.secret_key,
            max_age_ms=settings.session_max_age_seconds * 1000,
            fingerprint_policy=settings.fingerprint_policy,
            clock=clock,
        )

    def fingerprint(self, ip: str | None, user_agent: str | None) -> str:
        return compute_fingerprint(ip, user_agent, self._secret_key)

    def issue_session(
        self,
        username: str,
        role: Role,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Mint a token for a freshly authenticated user.

        The fingerprint is embedded only when the caller knows something about
        the client. The caller is responsible for delivering the token.
        """
        fingerprint = None
        if ip is not None or user_agent is not None:
            fingerprint = self.fingerprint(ip, user_agent)
        payload = SessionPayload(
            username=username,
            role=role,
            issued_at=self._clock(),
            schema_version=SCHEMA_VERSION,
            fingerprint=fingerprint,
        )
        return encode_session(payload, self._secret_key)

    def authenticate(
        self,
        token: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionPayload | AuthFailure:
        if not token:
            return AuthFailure.invalid_token
        payload = decode_session(token, self._secret_key)
        if payload is None:
            return AuthFailure.invalid_token

        age = self._clock() - payload.issued_at
        if age > self.max_age_ms:
            logger.info("Session for %s expired (age=%dms)", payload.username, age)
            return AuthFailure.expired

        if payload.fingerprint is not None:
            current = self.fingerprint(ip, user_agent)
            if not fingerprints_match(payload.fingerprint, current):
                logger.warning(
                    "Session fingerprint mismatch for %s (ip=%s, policy=%s)",
                    payload.username,
                    ip or "unknown",
                    self.fingerprint_policy,
                )
                if self.fingerprint_policy == "reject":
                    return AuthFailure.fingerprint_mismatch

        return payload


def authorize(payload: SessionPayload, required_role: Role) -> bool:
    """Flat two-tier check: Admin routes need Admin, Staff routes accept either."""
    if required_role is Role.admin:
        return payload.role is Role.admin
    return payload.role in (Role.admin, Role.staff)
