"""
auth/errors.py -- Typed failure values for the auth core.

Expected outcomes (bad token, expiry, duplicate username, wrong password) are
returned as values, not raised. The only exception in the taxonomy is
core.config.ConfigurationError, which is fatal at startup.

The route layer maps each code to an HTTP status and a user-facing message.
AuthFailure codes are never shown to end users -- every one of them becomes
the same generic 401.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthFailure(str, Enum):
    """Why SessionGuard.authenticate() refused a token."""

    invalid_token = "invalid_token"  # malformed, bad signature, bad shape, old schema
    expired = "expired"
    fingerprint_mismatch = "fingerprint_mismatch"


class DirectoryErrorCode(str, Enum):
    invalid_username = "invalid_username"
    invalid_password = "invalid_password"
    invalid_role = "invalid_role"
    already_exists = "already_exists"
    not_found = "not_found"
    last_admin_forbidden = "last_admin_forbidden"
    self_delete_forbidden = "self_delete_forbidden"
    password_mismatch = "password_mismatch"


@dataclass(frozen=True)
class DirectoryError:
    """A refused directory operation. No mutation happened."""

    code: DirectoryErrorCode
    message: str
