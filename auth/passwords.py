"""
auth/passwords.py -- Password hashing and credential validation rules.

Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
Settings.bcrypt_rounds so tests can run with the minimum of 4 rounds.

DUMMY_HASH enables timing equalization: lookups of unknown usernames still
run one bcrypt comparison, so response time does not reveal whether an
account exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import re

import bcrypt

from core.config import get_settings

USERNAME_PATTERN = re.compile(r"^[a-z0-9._-]{3,32}$")
PASSWORD_MIN_LENGTH = 4
# bcrypt ignores everything past 72 bytes.
PASSWORD_MAX_BYTES = 72

_COMMON_PASSWORDS = frozenset({"1234", "123456", "password", "admin", "demo", "test"})


def normalize_username(username: str) -> str:
    """Canonical lookup key: trimmed and case-folded."""
    return username.strip().lower()


def validate_username(username: str) -> str | None:
    """Return an error message, or None if the username is acceptable."""
    key = normalize_username(username)
    if not key:
        return "Username is required"
    if not USERNAME_PATTERN.match(key):
        return "Username must be 3-32 chars: letters, numbers, dot, dash, underscore only"
    return None


def validate_password(password: str, *, reject_common: bool = False) -> str | None:
    """Return an error message, or None if the password is acceptable.

    reject_common is used on self-service password changes so users cannot
    rotate onto one of the well-known demo passwords.
    """
    if not password:
        return "Password is required"
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        return f"Password must be {PASSWORD_MAX_BYTES} bytes or less"
    if reject_common and password.lower() in _COMMON_PASSWORDS:
        return "Password is too common"
    return None


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed hashes (e.g. a bad bootstrap value) verify as False.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def looks_like_bcrypt_hash(value: str) -> bool:
    return value.startswith(("$2a$", "$2b$", "$2y$")) and len(value) == 60


# Computed once at module load so the first unknown-user lookup is not
# measurably slower than later ones.
DUMMY_HASH: str = hash_password("ecvms_timing_dummy")
