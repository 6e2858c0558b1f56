"""
auth/store.py -- SQLAlchemy Core persistence layer for the user directory.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_record
is the mapper. Route and dependency code never touches SQL directly.

Invariants:
  Uniqueness: username_key (trimmed, lowercased) carries a UNIQUE index, and
      create_user() checks it inside the write transaction first so the
      caller gets a typed already_exists instead of an IntegrityError.

  Last admin: once an Admin exists, delete_user() and update_role() refuse
      to remove or demote the only one. The count and the mutation happen in
      the same transaction.

Concurrency:
  Every write runs under one threading.Lock (single writer per process)
  inside one BEGIN IMMEDIATE transaction (single writer per database file),
  so check-then-act sequences see a consistent snapshot even when several
  workers or the CLI share the file. Two concurrent deletes of the last two
  admins cannot both pass the count.
  bcrypt hashing is done before the lock is taken so slow hashing does not
  serialize unrelated writers. Readers use their own pooled connections and
  only ever see committed rows (SQLite WAL).

Security:
  All queries use bound parameters. No f-strings in SQL. Password hashes
  never leave this module except through UserRecord, and callers receive
  PublicUser values.

DB path: auth/ecvms_auth.db by default.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DirectoryError, DirectoryErrorCode
from auth.models import PublicUser, Role, UserRecord, UserSeed
from auth.passwords import (
    DUMMY_HASH,
    hash_password,
    looks_like_bcrypt_hash,
    normalize_username,
    validate_password,
    validate_username,
    verify_password,
)

logger = logging.getLogger("ecvms.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ecvms_auth.db'}"
# Execution option marking a connection whose transaction must start as a writer.
_IMMEDIATE = "ecvms_begin_immediate"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # insertion order
    Column("username", String(32), nullable=False),  # display casing
    Column("username_key", String(32), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(10), nullable=False),
    Column("created_by", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_connect(dbapi_conn, connection_record) -> None:
    """Enable WAL and hand transaction control to SQLAlchemy.

    pysqlite only opens a transaction at the first INSERT/UPDATE/DELETE, so
    a SELECT that precedes the write would run outside it. With
    isolation_level=None the driver stays out of the way and _on_begin
    emits BEGIN itself. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _on_begin(conn) -> None:
    """Writers take the database write lock up front (BEGIN IMMEDIATE).

    The lock is held across the check and the mutation, so another process
    sharing the file (a second worker, the CLI) waits instead of reading a
    count that is about to change. Readers use a deferred BEGIN.
    """
    if conn.get_execution_options().get(_IMMEDIATE):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(code: DirectoryErrorCode, message: str) -> DirectoryError:
    return DirectoryError(code=code, message=message)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for UserRecord entities.

    Usage:
        store = UserStore()
        result = store.create_user("alice", "s3cret!", Role.admin, created_by="system")
        if isinstance(result, DirectoryError): ...
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _on_connect)
            event.listen(self.engine, "begin", _on_begin)
        _metadata.create_all(self.engine)
        # Same pool and listeners; only the BEGIN it emits differs.
        self._writer: Engine = self.engine.execution_options(**{_IMMEDIATE: True})
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get_record(self, conn: Connection, username_key: str) -> UserRecord | None:
        row = conn.execute(_users.select().where(_users.c.username_key == username_key)).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_record(self, username: str) -> UserRecord | None:
        """Look up a full record (including the hash) by case-insensitive username."""
        with self.engine.connect() as conn:
            return self._get_record(conn, normalize_username(username))

    def get_user(self, username: str) -> PublicUser | None:
        record = self.get_record(username)
        return record.public() if record is not None else None

    def list_users(self) -> list[PublicUser]:
        """Return all users in insertion order, without hashes."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_record(r).public() for r in rows]

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def count_admins(self) -> int:
        with self.engine.connect() as conn:
            return self._count_admins(conn)

    def has_admin(self) -> bool:
        return self.count_admins() > 0

    @staticmethod
    def _count_admins(conn: Connection, excluding_key: str | None = None) -> int:
        query = select(func.count()).select_from(_users).where(_users.c.role == Role.admin.value)
        if excluding_key is not None:
            query = query.where(_users.c.username_key != excluding_key)
        return conn.execute(query).scalar() or 0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def verify_current_password(self, username: str, candidate: str) -> bool:
        """Return True only if the user exists and the password matches.

        Unknown users still cost one bcrypt comparison against DUMMY_HASH so
        the two failure cases are indistinguishable by value and by timing.
        """
        record = self.get_record(username)
        if record is None:
            verify_password(candidate, DUMMY_HASH)
            logger.debug("Password check for unknown user %r", username)
            return False
        if not verify_password(candidate, record.password_hash):
            logger.debug("Password mismatch for %s", record.username)
            return False
        return True

    def authenticate(self, username: str, password: str) -> PublicUser | None:
        """Login check. Same timing equalization as verify_current_password()."""
        if not self.verify_current_password(username, password):
            return None
        return self.get_user(username)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, username: str, password: str, role: Role, created_by: str) -> PublicUser | DirectoryError:
        """Create a user. Plaintext is hashed before storage and then dropped."""
        username_error = validate_username(username)
        if username_error:
            return _error(DirectoryErrorCode.invalid_username, username_error)
        password_error = validate_password(password)
        if password_error:
            return _error(DirectoryErrorCode.invalid_password, password_error)
        if not isinstance(role, Role):
            return _error(DirectoryErrorCode.invalid_role, "Invalid role")

        display = username.strip()
        key = normalize_username(username)
        password_hash = hash_password(password)
        now = _now_iso()
        record = UserRecord(
            username=display,
            username_key=key,
            password_hash=password_hash,
            role=role,
            created_by=normalize_username(created_by) or "system",
            created_at=now,
            updated_at=now,
        )

        with self._write_lock:
            try:
                with self._writer.begin() as conn:
                    if self._get_record(conn, key) is not None:
                        return _error(DirectoryErrorCode.already_exists, "Username already exists")
                    result = conn.execute(_users.insert().values(**_record_to_values(record)))
                    record.id = result.inserted_primary_key[0]
            except IntegrityError:
                # Another process sharing the database won the race.
                return _error(DirectoryErrorCode.already_exists, "Username already exists")

        logger.info("User %s (%s) created by %s", record.username, role.value, record.created_by)
        return record.public()

    def delete_user(self, username: str, requested_by: str) -> PublicUser | DirectoryError:
        """Delete a user, refusing self-deletion and removal of the last Admin."""
        username_error = validate_username(username)
        if username_error:
            return _error(DirectoryErrorCode.invalid_username, username_error)
        key = normalize_username(username)
        if key == normalize_username(requested_by):
            return _error(DirectoryErrorCode.self_delete_forbidden, "You cannot delete your own account")

        with self._write_lock, self._writer.begin() as conn:
            target = self._get_record(conn, key)
            if target is None:
                return _error(DirectoryErrorCode.not_found, "User not found")
            if target.role is Role.admin and self._count_admins(conn, excluding_key=key) == 0:
                return _error(DirectoryErrorCode.last_admin_forbidden, "Cannot delete the last Admin account")
            conn.execute(_users.delete().where(_users.c.username_key == key))

        logger.info("User %s deleted by %s", target.username, normalize_username(requested_by))
        return target.public()

    def update_role(self, username: str, role: Role, requested_by: str) -> PublicUser | DirectoryError:
        """Change a user's role, refusing to demote the last Admin."""
        if not isinstance(role, Role):
            return _error(DirectoryErrorCode.invalid_role, "Invalid role")
        key = normalize_username(username)
        with self._write_lock, self._writer.begin() as conn:
            target = self._get_record(conn, key)
            if target is None:
                return _error(DirectoryErrorCode.not_found, "User not found")
            if target.role is role:
                return target.public()
            if target.role is Role.admin and self._count_admins(conn, excluding_key=key) == 0:
                return _error(DirectoryErrorCode.last_admin_forbidden, "Cannot demote the last Admin account")
            now = _now_iso()
            conn.execute(_users.update().where(_users.c.username_key == key).values(role=role.value, updated_at=now))
            target.role = role
            target.updated_at = now

        logger.info("User %s role set to %s by %s", target.username, role.value, normalize_username(requested_by))
        return target.public()

    def update_password(self, username: str, new_password: str) -> PublicUser | DirectoryError:
        """Replace the stored hash. Fails not_found if the user was deleted meanwhile."""
        password_error = validate_password(new_password)
        if password_error:
            return _error(DirectoryErrorCode.invalid_password, password_error)
        key = normalize_username(username)
        password_hash = hash_password(new_password)

        with self._write_lock, self._writer.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.username_key == key)
                .values(password_hash=password_hash, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                return _error(DirectoryErrorCode.not_found, "User not found")
            record = self._get_record(conn, key)

        logger.info("Password updated for %s", record.username)
        return record.public()

    def change_password(self, username: str, current_password: str, new_password: str) -> PublicUser | DirectoryError:
        """Self-service rotation: verify the current password, then update.

        The error for a wrong current password does not reveal whether the
        account exists.
        """
        password_error = validate_password(new_password, reject_common=True)
        if password_error:
            return _error(DirectoryErrorCode.invalid_password, password_error)
        if not self.verify_current_password(username, current_password):
            return _error(DirectoryErrorCode.password_mismatch, "Current password is incorrect")
        return self.update_password(username, new_password)

    def seed_users(self, seeds: Iterable[UserSeed], created_by: str) -> int:
        """Insert pre-hashed bootstrap records. Returns how many were added.

        Seeds with an invalid username or a value that is not a bcrypt hash
        are skipped with a warning; existing usernames are left untouched.
        """
        added = 0
        with self._write_lock, self._writer.begin() as conn:
            for seed in seeds:
                if validate_username(seed.username) or not looks_like_bcrypt_hash(seed.password_hash):
                    logger.warning("Skipping invalid bootstrap user %r", seed.username)
                    continue
                key = normalize_username(seed.username)
                if self._get_record(conn, key) is not None:
                    continue
                now = _now_iso()
                record = UserRecord(
                    username=seed.username.strip(),
                    username_key=key,
                    password_hash=seed.password_hash,
                    role=seed.role,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                )
                conn.execute(_users.insert().values(**_record_to_values(record)))
                added += 1
        if added:
            logger.info("Seeded %d user(s) from %s", added, created_by)
        return added

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _record_to_values(record: UserRecord) -> dict:
    return {
        "username": record.username,
        "username_key": record.username_key,
        "password_hash": record.password_hash,
        "role": record.role.value,
        "created_by": record.created_by,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _row_to_record(row) -> UserRecord:
    # Anything other than "Admin" in the column is treated as the lower tier.
    return UserRecord(
        id=row.id,
        username=row.username,
        username_key=row.username_key,
        password_hash=row.password_hash,
        role=Role.parse(row.role) or Role.staff,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
