"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Stores and the
session guard do the work; these classes only own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """The two authorization tiers. There is no hierarchy beyond these."""

    admin = "Admin"
    staff = "Staff"

    @classmethod
    def parse(cls, value: object) -> Role | None:
        """Return the Role for an exact wire value, or None if unrecognized."""
        for role in cls:
            if value == role.value:
                return role
        return None


@dataclass(frozen=True)
class SessionPayload:
    """The identity carried inside a session token.

    Payload contents are signed, not encrypted -- never put secrets here.
    fingerprint is the keyed hash of the issuing client's IP and user agent,
    or None when the token was issued without client information.
    """

    username: str
    role: Role
    issued_at: int  # epoch milliseconds
    schema_version: int
    fingerprint: str | None = None


@dataclass
class UserRecord:
    """A directory entry as persisted, including the bcrypt hash.

    username keeps the casing it was created with; username_key is the
    normalized form used for uniqueness and lookups.
    """

    username: str
    username_key: str
    password_hash: str
    role: Role
    created_by: str
    created_at: str
    updated_at: str
    id: int | None = None

    def public(self) -> PublicUser:
        return PublicUser(
            username=self.username,
            role=self.role,
            created_by=self.created_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class PublicUser:
    """A directory entry as handed to callers: everything but the hash."""

    username: str
    role: Role
    created_by: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class UserSeed:
    """A pre-hashed user record supplied at bootstrap (env or CLI)."""

    username: str
    password_hash: str
    role: Role
