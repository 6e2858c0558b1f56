"""
auth/bootstrap.py -- Seed the user directory from configuration.

Two sources, checked in order:
  1. AUTH_USERS_JSON -- a JSON array of {"username", "passwordHash", "role"}.
  2. ADMIN_PASSWORD_HASH / STAFF_PASSWORD_HASH with ADMIN_USERNAME /
     STAFF_USERNAME (legacy single-admin deployments).

Only bcrypt hashes are accepted; plaintext passwords never appear in the
environment. Roles other than "Admin" collapse to Staff. A malformed
AUTH_USERS_JSON is logged and ignored rather than stopping startup, because
the directory may already hold users from a previous run.

If the directory still has no Admin afterwards, the API starts in first-run
setup mode (see api.main).
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from auth.models import Role, UserSeed
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("ecvms.auth")


class _SeedEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    username: str = Field(min_length=1)
    password_hash: str = Field(alias="passwordHash", min_length=1)
    role: str = "Staff"


def _to_seed(entry: _SeedEntry) -> UserSeed:
    return UserSeed(
        username=entry.username,
        password_hash=entry.password_hash,
        role=Role.admin if entry.role == Role.admin.value else Role.staff,
    )


def seeds_from_json(raw: str) -> list[UserSeed]:
    """Parse AUTH_USERS_JSON. Malformed entries are dropped individually."""
    try:
        values = json.loads(raw)
    except ValueError:
        logger.error("Invalid AUTH_USERS_JSON: not valid JSON")
        return []
    if not isinstance(values, list):
        logger.error("Invalid AUTH_USERS_JSON: expected a JSON array")
        return []

    adapter = TypeAdapter(_SeedEntry)
    seeds: list[UserSeed] = []
    for value in values:
        try:
            seeds.append(_to_seed(adapter.validate_python(value)))
        except ValidationError:
            logger.warning("Skipping malformed AUTH_USERS_JSON entry")
    return seeds


def seeds_from_legacy_env(settings: Settings) -> list[UserSeed]:
    seeds: list[UserSeed] = []
    if settings.admin_password_hash.strip():
        seeds.append(UserSeed(settings.admin_username, settings.admin_password_hash.strip(), Role.admin))
    if settings.staff_password_hash.strip():
        seeds.append(UserSeed(settings.staff_username, settings.staff_password_hash.strip(), Role.staff))
    return seeds


def bootstrap_users(store: UserStore, settings: Settings) -> int:
    """Seed the store from settings. Returns the number of users added."""
    if settings.auth_users_json.strip():
        seeds = seeds_from_json(settings.auth_users_json)
        if seeds:
            return store.seed_users(seeds, created_by="env")
    seeds = seeds_from_legacy_env(settings)
    if seeds:
        return store.seed_users(seeds, created_by="env")
    return 0
