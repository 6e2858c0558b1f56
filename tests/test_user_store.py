"""
tests/test_user_store.py -- Unit tests for UserStore.

Coverage:
  - create: case-insensitive uniqueness, display casing kept, validation codes
  - delete: last-admin guard, self-delete guard, not_found
  - update_role: last-admin demotion guard, no-op when unchanged
  - update_password / change_password: not_found, mismatch, common passwords
  - verify_current_password: true / false / nonexistent user
  - list_users: insertion order, no hashes
  - seed_users: bcrypt-only, existing users untouched
  - concurrency: N racing creates -> exactly one success;
                 racing deletes of the last two admins -> exactly one success,
                 also across two stores sharing one database file
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from auth.errors import DirectoryError, DirectoryErrorCode
from auth.models import PublicUser, Role, UserSeed
from auth.passwords import hash_password
from auth.store import UserStore


def _code(result) -> DirectoryErrorCode | None:
    return result.code if isinstance(result, DirectoryError) else None


def _create_admin(store: UserStore, username: str) -> PublicUser:
    result = store.create_user(username, "pass1234", Role.admin, created_by="system")
    assert isinstance(result, PublicUser), result
    return result


class TestCreateUser:
    def test_create_returns_public_user(self, user_store: UserStore) -> None:
        result = user_store.create_user("alice", "wonderland", Role.admin, created_by="system")
        assert isinstance(result, PublicUser)
        assert result.username == "alice"
        assert result.role is Role.admin
        assert result.created_by == "system"
        assert not hasattr(result, "password_hash")

    def test_hash_stored_not_plaintext(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        record = user_store.get_record("alice")
        assert record is not None
        assert record.password_hash.startswith("$2b$")
        assert "wonderland" not in record.password_hash

    def test_case_insensitive_duplicate(self, user_store: UserStore) -> None:
        first = user_store.create_user("Admin1", "pass1234", Role.admin, created_by="system")
        second = user_store.create_user("admin1", "other123", Role.staff, created_by="system")
        assert isinstance(first, PublicUser)
        assert _code(second) is DirectoryErrorCode.already_exists
        assert len(user_store.list_users()) == 1

    def test_display_casing_preserved_lookup_insensitive(self, user_store: UserStore) -> None:
        user_store.create_user("  Bob.Smith ", "builder1", Role.staff, created_by="system")
        user = user_store.get_user("BOB.SMITH")
        assert user is not None
        assert user.username == "Bob.Smith"

    @pytest.mark.parametrize("username", ["", "ab", "a" * 33, "bad name", "semi;colon", "émile"])
    def test_invalid_username(self, user_store: UserStore, username: str) -> None:
        result = user_store.create_user(username, "validpass", Role.staff, created_by="system")
        assert _code(result) is DirectoryErrorCode.invalid_username

    @pytest.mark.parametrize("password", ["", "abc", "x" * 73])
    def test_invalid_password(self, user_store: UserStore, password: str) -> None:
        result = user_store.create_user("carol", password, Role.staff, created_by="system")
        assert _code(result) is DirectoryErrorCode.invalid_password
        assert user_store.get_user("carol") is None

    def test_invalid_role(self, user_store: UserStore) -> None:
        result = user_store.create_user("carol", "validpass", "Owner", created_by="system")  # type: ignore[arg-type]
        assert _code(result) is DirectoryErrorCode.invalid_role


class TestDeleteUser:
    def test_last_admin_cannot_be_deleted(self, user_store: UserStore) -> None:
        user_store.create_user("root", "rootpass", Role.admin, created_by="system")
        result = user_store.delete_user("root", requested_by="someone")
        assert _code(result) is DirectoryErrorCode.last_admin_forbidden
        assert user_store.get_user("root") is not None

    def test_one_of_two_admins_can_be_deleted(self, user_store: UserStore) -> None:
        _create_admin(user_store, "adm1")
        _create_admin(user_store, "adm2")
        result = user_store.delete_user("adm1", requested_by="adm2")
        assert isinstance(result, PublicUser)
        assert user_store.count_admins() == 1
        assert _code(user_store.delete_user("adm2", requested_by="x99")) is DirectoryErrorCode.last_admin_forbidden

    def test_self_delete_forbidden(self, user_store: UserStore) -> None:
        _create_admin(user_store, "adm1")
        _create_admin(user_store, "adm2")
        result = user_store.delete_user("ADM1", requested_by="adm1")
        assert _code(result) is DirectoryErrorCode.self_delete_forbidden
        assert user_store.get_user("adm1") is not None

    def test_not_found(self, user_store: UserStore) -> None:
        assert _code(user_store.delete_user("ghost", requested_by="root")) is DirectoryErrorCode.not_found

    def test_staff_can_be_deleted(self, user_store: UserStore) -> None:
        user_store.create_user("root", "rootpass", Role.admin, created_by="system")
        user_store.create_user("worker", "workpass", Role.staff, created_by="root")
        assert isinstance(user_store.delete_user("Worker", requested_by="root"), PublicUser)
        assert user_store.get_user("worker") is None


class TestUpdateRole:
    def test_promote_staff(self, user_store: UserStore) -> None:
        user_store.create_user("root", "rootpass", Role.admin, created_by="system")
        user_store.create_user("worker", "workpass", Role.staff, created_by="root")
        result = user_store.update_role("worker", Role.admin, requested_by="root")
        assert isinstance(result, PublicUser)
        assert result.role is Role.admin
        assert user_store.count_admins() == 2

    def test_last_admin_cannot_be_demoted(self, user_store: UserStore) -> None:
        user_store.create_user("root", "rootpass", Role.admin, created_by="system")
        result = user_store.update_role("root", Role.staff, requested_by="root")
        assert _code(result) is DirectoryErrorCode.last_admin_forbidden
        assert user_store.has_admin()

    def test_same_role_is_noop(self, user_store: UserStore) -> None:
        user_store.create_user("root", "rootpass", Role.admin, created_by="system")
        result = user_store.update_role("root", Role.admin, requested_by="root")
        assert isinstance(result, PublicUser)
        assert result.role is Role.admin

    def test_not_found(self, user_store: UserStore) -> None:
        assert _code(user_store.update_role("ghost", Role.admin, requested_by="root")) is DirectoryErrorCode.not_found

    @pytest.mark.parametrize("role", ["Admin", "Owner", None])
    def test_non_role_value_is_invalid_role(self, user_store: UserStore, role) -> None:
        user_store.create_user("root", "rootpass", Role.admin, created_by="system")
        user_store.create_user("worker", "workpass", Role.staff, created_by="root")
        result = user_store.update_role("worker", role, requested_by="root")
        assert _code(result) is DirectoryErrorCode.invalid_role
        assert user_store.get_user("worker").role is Role.staff


class TestPasswords:
    def test_verify_current_password(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        assert user_store.verify_current_password("alice", "wonderland")
        assert user_store.verify_current_password("ALICE", "wonderland")
        assert not user_store.verify_current_password("alice", "Wonderland")
        assert not user_store.verify_current_password("nobody", "wonderland")

    def test_authenticate(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        user = user_store.authenticate("alice", "wonderland")
        assert user is not None and user.role is Role.staff
        assert user_store.authenticate("alice", "nope1234") is None
        assert user_store.authenticate("nobody", "wonderland") is None

    def test_update_password(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        assert isinstance(user_store.update_password("alice", "looking-glass"), PublicUser)
        assert user_store.verify_current_password("alice", "looking-glass")
        assert not user_store.verify_current_password("alice", "wonderland")

    def test_update_password_not_found(self, user_store: UserStore) -> None:
        assert _code(user_store.update_password("ghost", "whatever1")) is DirectoryErrorCode.not_found

    def test_update_password_validates(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        assert _code(user_store.update_password("alice", "ab")) is DirectoryErrorCode.invalid_password

    def test_change_password(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        assert isinstance(user_store.change_password("alice", "wonderland", "looking-glass"), PublicUser)
        assert user_store.verify_current_password("alice", "looking-glass")

    def test_change_password_wrong_current(self, user_store: UserStore) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        result = user_store.change_password("alice", "guess1234", "looking-glass")
        assert _code(result) is DirectoryErrorCode.password_mismatch
        assert user_store.verify_current_password("alice", "wonderland")

    def test_change_password_unknown_user_looks_like_mismatch(self, user_store: UserStore) -> None:
        result = user_store.change_password("ghost", "guess1234", "looking-glass")
        assert _code(result) is DirectoryErrorCode.password_mismatch

    @pytest.mark.parametrize("new", ["password", "1234", "Admin"])
    def test_change_password_rejects_common(self, user_store: UserStore, new: str) -> None:
        user_store.create_user("alice", "wonderland", Role.staff, created_by="system")
        assert _code(user_store.change_password("alice", "wonderland", new)) is DirectoryErrorCode.invalid_password


class TestListAndCounts:
    def test_empty_store(self, user_store: UserStore) -> None:
        assert user_store.list_users() == []
        assert not user_store.has_users()
        assert not user_store.has_admin()

    def test_insertion_order(self, user_store: UserStore) -> None:
        for name in ("zed", "amy", "mo_1"):
            user_store.create_user(name, "pass1234", Role.staff, created_by="system")
        users = user_store.list_users()
        assert [u.username for u in users] == ["zed", "amy", "mo_1"]
        assert all(isinstance(u, PublicUser) for u in users)
        assert user_store.has_users()
        assert user_store.count_admins() == 0


class TestSeedUsers:
    def test_seed_inserts_bcrypt_only(self, user_store: UserStore) -> None:
        seeds = [
            UserSeed("boss", hash_password("bosspass"), Role.admin),
            UserSeed("helper", "plaintext-not-a-hash", Role.staff),
            UserSeed("x", hash_password("shortname"), Role.staff),
        ]
        assert user_store.seed_users(seeds, created_by="env") == 1
        assert user_store.verify_current_password("boss", "bosspass")
        assert user_store.get_user("helper") is None
        assert user_store.get_user("boss").created_by == "env"

    def test_seed_leaves_existing_users(self, user_store: UserStore) -> None:
        user_store.create_user("boss", "original", Role.admin, created_by="setup")
        added = user_store.seed_users([UserSeed("BOSS", hash_password("replaced"), Role.staff)], created_by="env")
        assert added == 0
        assert user_store.verify_current_password("boss", "original")
        assert user_store.get_user("boss").role is Role.admin


class TestConcurrency:
    def test_concurrent_creates_exactly_one_succeeds(self, user_store: UserStore) -> None:
        n = 8
        barrier = threading.Barrier(n)

        def create(i: int):
            barrier.wait()
            name = "racer" if i % 2 == 0 else "RACER"
            return user_store.create_user(name, f"pass{i:04d}", Role.staff, created_by="system")

        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(create, range(n)))

        successes = [r for r in results if isinstance(r, PublicUser)]
        failures = [r for r in results if isinstance(r, DirectoryError)]
        assert len(successes) == 1
        assert all(f.code is DirectoryErrorCode.already_exists for f in failures)
        assert len(user_store.list_users()) == 1

    def test_concurrent_delete_of_two_admins_keeps_one(self, user_store: UserStore) -> None:
        _create_admin(user_store, "adm1")
        _create_admin(user_store, "adm2")
        barrier = threading.Barrier(2)

        def delete(name: str):
            barrier.wait()
            return user_store.delete_user(name, requested_by="adm3")

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(delete, ["adm1", "adm2"]))

        assert sum(isinstance(r, PublicUser) for r in results) == 1
        assert [_code(r) for r in results if isinstance(r, DirectoryError)] == [DirectoryErrorCode.last_admin_forbidden]
        assert user_store.count_admins() == 1

    def test_concurrent_promote_and_demote_never_leaves_zero_admins(self, user_store: UserStore) -> None:
        _create_admin(user_store, "adm1")
        _create_admin(user_store, "adm2")
        barrier = threading.Barrier(2)

        def demote(name: str):
            barrier.wait()
            return user_store.update_role(name, Role.staff, requested_by="adm3")

        with ThreadPoolExecutor(max_workers=2) as pool:
            list(pool.map(demote, ["adm1", "adm2"]))

        assert user_store.count_admins() == 1

    def test_two_stores_on_one_file_keep_last_admin(self, db_url: str, monkeypatch) -> None:
        """Separate stores share no threading.Lock, like two worker processes.

        Each delete pauses between counting admins and deleting. Only the
        database write lock keeps the second count from running before the
        first delete commits.
        """
        first = UserStore(db_url=db_url)
        second = UserStore(db_url=db_url)
        try:
            _create_admin(first, "adm1")
            _create_admin(first, "adm2")

            barrier = threading.Barrier(2)
            count_admins = UserStore._count_admins

            def paused_count(conn, excluding_key=None):
                result = count_admins(conn, excluding_key)
                try:
                    barrier.wait(timeout=0.5)
                except threading.BrokenBarrierError:
                    pass
                return result

            monkeypatch.setattr(UserStore, "_count_admins", staticmethod(paused_count))

            with ThreadPoolExecutor(max_workers=2) as pool:
                results = list(
                    pool.map(
                        lambda pair: pair[0].delete_user(pair[1], requested_by="adm3"),
                        [(first, "adm1"), (second, "adm2")],
                    )
                )

            assert sum(isinstance(r, PublicUser) for r in results) == 1
            assert [_code(r) for r in results if isinstance(r, DirectoryError)] == [
                DirectoryErrorCode.last_admin_forbidden
            ]
            assert first.count_admins() == 1
        finally:
            first.close()
            second.close()
