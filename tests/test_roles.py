"""Unit tests for auth/roles.py -- RoleCapacityEnforcer.

Covers:
- assign_role() succeeds below the cap and fails RoleLimitExceeded at it
- N threads racing for one free slot -> exactly one wins (file-backed SQLite)
- missing account / role -> ResourceNotFound
- create_role(): duplicate names, the reserved ADMIN name and the full set
- update_role(): cap and permission changes; ADMIN permissions are fixed
- delete_role(): members become unassigned; ADMIN cannot be deleted
- bootstrap_admin(): ADMIN with max 1 member and every permission, once
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from auth.accounts import new_account
from auth.errors import NameAlreadyTaken, ResourceNotFound, RoleLimitExceeded, ValidationError
from auth.models import Account, Role
from auth.permissions import ADMIN_ROLE_NAME, FULL_PERMISSIONS, Permission
from auth.roles import RoleCapacityEnforcer
from auth.store import TrustStore
from auth.tokens import hash_password

_HASH = hash_password("irrelevant-pass")


def _accounts(store: TrustStore, n: int, prefix: str = "user") -> list[int]:
    return [store.create_account(Account(email=f"{prefix}{i}@example.com", hashed_password=_HASH)) for i in range(n)]


@pytest.fixture
def roles(store: TrustStore) -> RoleCapacityEnforcer:
    return RoleCapacityEnforcer(store)


class TestAssignRole:
    def test_fills_up_to_cap_then_refuses(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("staff", 2, ["READ_SELF"]))
        a, b, c = _accounts(store, 3)

        assert roles.assign_role(a, role_id).name == "STAFF"
        roles.assign_role(b, role_id)
        with pytest.raises(RoleLimitExceeded) as exc_info:
            roles.assign_role(c, role_id)

        assert exc_info.value.message == "The maximum number of users for role 'STAFF' has been reached."
        assert store.get_account(c).role_id is None
        assert store.count_role_members(role_id) == 2

    def test_zero_cap_role_accepts_nobody(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("frozen", 0, []))
        (a,) = _accounts(store, 1)
        with pytest.raises(RoleLimitExceeded):
            roles.assign_role(a, role_id)

    def test_moving_between_roles_frees_the_slot(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        first = roles.create_role(Role.from_names("first", 1, []))
        second = roles.create_role(Role.from_names("second", 1, []))
        a, b = _accounts(store, 2)
        roles.assign_role(a, first)
        roles.assign_role(a, second)
        roles.assign_role(b, first)
        assert store.count_role_members(first) == 1
        assert store.count_role_members(second) == 1

    def test_missing_role(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        (a,) = _accounts(store, 1)
        with pytest.raises(ResourceNotFound):
            roles.assign_role(a, 999)

    def test_missing_account(self, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("staff", 2, []))
        with pytest.raises(ResourceNotFound):
            roles.assign_role(999, role_id)

    def test_assign_by_name(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        roles.create_role(Role.from_names("staff", 2, []))
        (a,) = _accounts(store, 1)
        roles.assign_role_by_name(a, "Staff")
        assert roles.get_role(store.get_account(a).role_id).name == "STAFF"


class TestConcurrentAssignment:
    def test_exactly_one_wins_last_slot(self, tmp_path) -> None:
        store = TrustStore(f"sqlite:///{tmp_path / 'race.db'}")
        try:
            roles = RoleCapacityEnforcer(store)
            role_id = roles.create_role(Role.from_names("solo", 1, ["READ_SELF"]))
            contenders = _accounts(store, 8, prefix="racer")

            def attempt(account_id: int) -> str:
                try:
                    roles.assign_role(account_id, role_id)
                    return "ok"
                except RoleLimitExceeded:
                    return "full"

            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(attempt, contenders))

            assert results.count("ok") == 1
            assert results.count("full") == 7
            assert store.count_role_members(role_id) == 1
        finally:
            store.close()


class TestCreateRole:
    def test_duplicate_name(self, roles: RoleCapacityEnforcer) -> None:
        roles.create_role(Role.from_names("staff", 2, []))
        with pytest.raises(NameAlreadyTaken):
            roles.create_role(Role.from_names("STAFF", 5, ["READ_SELF"]))

    def test_admin_name_reserved(self, roles: RoleCapacityEnforcer) -> None:
        with pytest.raises(NameAlreadyTaken):
            roles.create_role(Role.from_names("admin", 5, ["READ_SELF"]))

    def test_full_set_reserved(self, roles: RoleCapacityEnforcer) -> None:
        with pytest.raises(ValidationError):
            roles.create_role(Role(name="superstaff", max_members=5, permissions=FULL_PERMISSIONS))

    def test_permissions_round_trip(self, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("staff", 2, ["READ_SELF", "UPDATE_SELF"]))
        assert roles.get_role(role_id).permissions == frozenset({Permission.READ_SELF, Permission.UPDATE_SELF})
        assert [r.name for r in roles.list_roles()] == ["STAFF"]


class TestUpdateAndDelete:
    def test_update_cap_and_permissions(self, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("staff", 2, ["READ_SELF"]))
        updated = roles.update_role(role_id, max_members=4, permission_names=["read_general"])
        assert updated.max_members == 4
        assert updated.permissions == frozenset({Permission.READ_GENERAL})

    def test_update_rejects_unknown_token(self, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("staff", 2, ["READ_SELF"]))
        with pytest.raises(ValidationError, match="NOPE"):
            roles.update_role(role_id, permission_names=["NOPE"])
        assert roles.get_role(role_id).permissions == frozenset({Permission.READ_SELF})

    def test_update_missing(self, roles: RoleCapacityEnforcer) -> None:
        with pytest.raises(ResourceNotFound):
            roles.update_role(999, max_members=1)

    def test_admin_permissions_are_fixed(self, roles: RoleCapacityEnforcer) -> None:
        roles.bootstrap_admin(new_account("root@example.com", "rootpass123"))
        admin = roles.get_role_by_name(ADMIN_ROLE_NAME)
        with pytest.raises(ValidationError):
            roles.update_role(admin.id, permission_names=["READ_SELF"])
        assert roles.get_role(admin.id).permissions == FULL_PERMISSIONS

    def test_delete_unassigns_members(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        role_id = roles.create_role(Role.from_names("staff", 2, []))
        a, b = _accounts(store, 2)
        roles.assign_role(a, role_id)
        roles.assign_role(b, role_id)

        roles.delete_role(role_id)

        assert store.get_account(a).role_id is None
        assert store.get_account(b).role_id is None
        with pytest.raises(ResourceNotFound):
            roles.get_role(role_id)

    def test_delete_missing(self, roles: RoleCapacityEnforcer) -> None:
        with pytest.raises(ResourceNotFound):
            roles.delete_role(999)

    def test_admin_cannot_be_deleted(self, roles: RoleCapacityEnforcer) -> None:
        roles.bootstrap_admin(new_account("root@example.com", "rootpass123"))
        with pytest.raises(ValidationError):
            roles.delete_role(roles.get_role_by_name(ADMIN_ROLE_NAME).id)


class TestBootstrapAdmin:
    def test_creates_admin_role_and_member(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        account_id = roles.bootstrap_admin(new_account("root@example.com", "rootpass123"))
        admin = roles.get_role_by_name(ADMIN_ROLE_NAME)
        assert admin.max_members == 1
        assert admin.permissions == FULL_PERMISSIONS
        assert store.get_account(account_id).role_id == admin.id

    def test_second_bootstrap_fails(self, roles: RoleCapacityEnforcer) -> None:
        roles.bootstrap_admin(new_account("root@example.com", "rootpass123"))
        with pytest.raises(ValidationError, match="Super user already exists."):
            roles.bootstrap_admin(new_account("other@example.com", "otherpass123"))

    def test_admin_holds_one_member(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        roles.bootstrap_admin(new_account("root@example.com", "rootpass123"))
        (a,) = _accounts(store, 1)
        with pytest.raises(RoleLimitExceeded):
            roles.assign_role_by_name(a, ADMIN_ROLE_NAME)

    def test_taken_email(self, store: TrustStore, roles: RoleCapacityEnforcer) -> None:
        store.create_account(Account(email="root@example.com", hashed_password=_HASH))
        with pytest.raises(NameAlreadyTaken):
            roles.bootstrap_admin(new_account("root@example.com", "rootpass123"))
        assert roles.list_roles() == []
