"""
auth/store.py -- SQLAlchemy Core persistence layer for account trust entities.

Pattern: Repository + Data Mapper.
TrustStore is the repository; the _row_to_* functions are the mappers.
Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Transactions:
  Two operations are check-then-act over shared state and run inside a single
  engine.begin() block:

    assign_role()  -- count members, compare with max_members, write role_id.
                      The role row is locked FOR UPDATE first so concurrent
                      assigners to the same role queue behind each other.
    consume_code() -- test-and-set is_active 1 -> 0 (rowcount checked) and
                      apply the purpose's effect in the same commit.

  SQLite ignores FOR UPDATE, so for SQLite engines pysqlite's implicit BEGIN
  is disabled and every transaction opens with BEGIN IMMEDIATE instead (the
  SQLAlchemy pysqlite "serializable" recipe). The write lock is taken up
  front and other writers wait on the busy timeout rather than interleaving
  between the read and the write.

  Raising inside engine.begin() rolls the whole unit back.

Layer rule: no imports from api/, core/ or notify/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.errors import CodeAlreadyConsumed, CodeNotFound, ResourceNotFound, RoleLimitExceeded, ValidationError
from auth.models import Account, CodeOutcome, CodePurpose, Role, VerificationCode
from auth.permissions import Permission

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'crowdcontrol.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("max_members", Integer, nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("permission", String(50), nullable=False),
    UniqueConstraint("role_id", "permission", name="uq_role_permission"),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("first_name", String(50), nullable=False, server_default=""),
    Column("last_name", String(50), nullable=False, server_default=""),
    Column("hashed_password", Text, nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id")),  # NULL = unassigned
    Column("is_enabled", Integer, nullable=False, server_default="0"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("failed_logins", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_codes = Table(
    "verification_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("purpose", String(16), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _sqlite_on_connect(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL.

    isolation_level=None stops pysqlite from emitting its own deferred BEGIN;
    _sqlite_on_begin() emits BEGIN IMMEDIATE instead. WAL lets readers proceed
    while a writer holds the lock. PRAGMAs are per-connection.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _sqlite_on_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _flags_to_int(fields: dict) -> dict:
    """Copy of fields with the boolean flags stored as 0/1."""
    values = dict(fields)
    for flag in ("is_enabled", "is_locked"):
        if flag in values:
            values[flag] = 1 if values[flag] else 0
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TrustStore:
    """Repository for Account, Role and VerificationCode entities.

    Usage:
        store = TrustStore("sqlite:///crowdcontrol.db")
        account_id = store.create_account(Account(email="a@b.c", hashed_password=hash_password("pw")))
        account = store.get_account_by_email("a@b.c")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _sqlite_on_connect)
            event.listen(self.engine, "begin", _sqlite_on_begin)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the e-mail already exists.
        """
        with self.engine.begin() as conn:
            return self._insert_account(conn, account)

    def get_account(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        """Look up an account by exact e-mail (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.id)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable fields on an existing account.

        Accepted fields: email, first_name, last_name, hashed_password,
        is_enabled, is_locked, failed_logins. Booleans are stored as 0/1.
        Role changes go through assign_role() / clear_role().

        Returns True if a row was updated, False if account_id was not found.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(**_flags_to_int(fields))
            )
        return result.rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        """Delete an account and every verification code it owns."""
        with self.engine.begin() as conn:
            conn.execute(_codes.delete().where(_codes.c.account_id == account_id))
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def record_failed_login(self, account_id: int, threshold: int) -> bool:
        """Bump the failed-login counter; lock once it reaches threshold.

        threshold <= 0 only counts. Returns True if this call locked the account.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_logins=_accounts.c.failed_logins + 1)
            )
            if threshold <= 0:
                return False
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.is_locked == 0)
                    & (_accounts.c.failed_logins >= threshold)
                )
                .values(is_locked=1)
            )
        return result.rowcount > 0

    def set_locked(self, account_id: int, locked: bool) -> bool:
        """Set the lock flag. Unlocking also clears the failed-login counter."""
        values: dict = {"is_locked": 1 if locked else 0}
        if not locked:
            values["failed_logins"] = 0
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role and its permission rows. Returns the new role ID.

        Raises sqlalchemy.exc.IntegrityError if the name already exists.
        """
        with self.engine.begin() as conn:
            return self._insert_role(conn, role)

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._permissions_for(conn, row.id))

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name.strip().upper())).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._permissions_for(conn, row.id))

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            perm_rows = conn.execute(select(_role_permissions.c.role_id, _role_permissions.c.permission)).fetchall()
        grouped: dict[int, list[str]] = {}
        for role_id, permission in perm_rows:
            grouped.setdefault(role_id, []).append(permission)
        return [_row_to_role(r, grouped.get(r.id, [])) for r in rows]

    def update_role(
        self,
        role_id: int,
        max_members: int | None = None,
        permissions: frozenset[Permission] | None = None,
    ) -> bool:
        """Replace max_members and/or the permission set. False if role_id is unknown."""
        with self.engine.begin() as conn:
            exists = conn.execute(select(_roles.c.id).where(_roles.c.id == role_id)).fetchone()
            if exists is None:
                return False
            if max_members is not None:
                conn.execute(_roles.update().where(_roles.c.id == role_id).values(max_members=max_members))
            if permissions is not None:
                conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
                self._insert_permissions(conn, role_id, permissions)
        return True

    def delete_role(self, role_id: int) -> bool:
        """Unassign every member, then delete the role. One transaction."""
        with self.engine.begin() as conn:
            exists = conn.execute(select(_roles.c.id).where(_roles.c.id == role_id)).fetchone()
            if exists is None:
                return False
            conn.execute(_accounts.update().where(_accounts.c.role_id == role_id).values(role_id=None))
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return True

    def count_role_members(self, role_id: int) -> int:
        with self.engine.connect() as conn:
            return self._count_members(conn, role_id)

    def assign_role(self, account_id: int, role_id: int, fields: dict | None = None) -> Role:
        """Give account_id the role if the role has a free slot. Returns the role.

        fields, if given, are written to the account in the same transaction
        (same keys as update_account()), so they commit or fail together with
        the assignment.

        Raises ResourceNotFound if either record is missing and
        RoleLimitExceeded if members >= max_members. Nothing is written
        on failure.
        """
        with self.engine.begin() as conn:
            role_row = conn.execute(_roles.select().where(_roles.c.id == role_id).with_for_update()).fetchone()
            if role_row is None:
                raise ResourceNotFound("Role not found.")
            account_row = conn.execute(select(_accounts.c.id).where(_accounts.c.id == account_id)).fetchone()
            if account_row is None:
                raise ResourceNotFound("User not found.")
            if self._count_members(conn, role_id) >= role_row.max_members:
                raise RoleLimitExceeded(role_row.name)
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(role_id=role_id, **_flags_to_int(fields or {}))
            )
            return _row_to_role(role_row, self._permissions_for(conn, role_id))

    def clear_role(self, account_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(role_id=None))
        return result.rowcount > 0

    def bootstrap_admin(self, account: Account, role: Role) -> int:
        """Create the administrator role, the account and the assignment at once.

        Raises ValidationError if a role with that name already exists.
        A concurrent bootstrap that slips past the check fails on the unique
        name constraint (sqlalchemy.exc.IntegrityError) and rolls back.
        """
        with self.engine.begin() as conn:
            existing = conn.execute(select(_roles.c.id).where(_roles.c.name == role.name)).fetchone()
            if existing is not None:
                raise ValidationError("Super user already exists.")
            role_id = self._insert_role(conn, role)
            account.role_id = role_id
            return self._insert_account(conn, account)

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    def create_code(self, code: VerificationCode) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _codes.insert().values(
                    code=code.code,
                    purpose=code.purpose.value,
                    account_id=code.account_id,
                    is_active=1 if code.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_code(self, code: str) -> VerificationCode | None:
        with self.engine.connect() as conn:
            row = conn.execute(_codes.select().where(_codes.c.code == code)).fetchone()
        return _row_to_code(row) if row is not None else None

    def consume_code(self, code: str, expected_purpose: CodePurpose | None = None) -> CodeOutcome:
        """Deactivate an active code and apply its effect in one commit.

        ACTIVATE enables the owning account. RECOVER only deactivates; the
        returned outcome authorizes a password reset.

        Raises CodeNotFound, CodeAlreadyConsumed, or ValidationError when
        expected_purpose is given and does not match (the code stays active).
        """
        with self.engine.begin() as conn:
            row = conn.execute(_codes.select().where(_codes.c.code == code)).fetchone()
            if row is None:
                raise CodeNotFound()
            if not row.is_active:
                raise CodeAlreadyConsumed()
            purpose = CodePurpose(row.purpose)
            if expected_purpose is not None and purpose is not expected_purpose:
                raise ValidationError("Code is not valid for this operation.")

            flipped = conn.execute(
                _codes.update()
                .where((_codes.c.id == row.id) & (_codes.c.is_active == 1))
                .values(is_active=0, consumed_at=_now_iso())
            )
            if flipped.rowcount == 0:
                raise CodeAlreadyConsumed()

            if purpose is CodePurpose.ACTIVATE:
                enabled = conn.execute(
                    _accounts.update().where(_accounts.c.id == row.account_id).values(is_enabled=1)
                )
                if enabled.rowcount == 0:
                    raise ResourceNotFound("User not found.")
                return CodeOutcome(purpose=purpose, account_id=row.account_id)
            return CodeOutcome(purpose=purpose, account_id=row.account_id, reset_authorized=True)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Connection-scoped helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _count_members(conn, role_id: int) -> int:
        result = conn.execute(select(func.count()).select_from(_accounts).where(_accounts.c.role_id == role_id))
        return result.scalar() or 0

    @staticmethod
    def _permissions_for(conn, role_id: int) -> list[str]:
        rows = conn.execute(
            select(_role_permissions.c.permission).where(_role_permissions.c.role_id == role_id)
        ).fetchall()
        return [r[0] for r in rows]

    @staticmethod
    def _insert_permissions(conn, role_id: int, permissions: frozenset[Permission]) -> None:
        if permissions:
            conn.execute(
                _role_permissions.insert(),
                [{"role_id": role_id, "permission": p.value} for p in sorted(permissions, key=lambda p: p.value)],
            )

    def _insert_role(self, conn, role: Role) -> int:
        result = conn.execute(_roles.insert().values(name=role.name, max_members=role.max_members))
        role_id = result.inserted_primary_key[0]
        self._insert_permissions(conn, role_id, role.permissions)
        return role_id

    @staticmethod
    def _insert_account(conn, account: Account) -> int:
        result = conn.execute(
            _accounts.insert().values(
                email=account.email,
                first_name=account.first_name,
                last_name=account.last_name,
                hashed_password=account.hashed_password,
                role_id=account.role_id,
                is_enabled=1 if account.is_enabled else 0,
                is_locked=1 if account.is_locked else 0,
                failed_logins=account.failed_logins,
                created_at=_now_iso(),
            )
        )
        return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        role_id=row.role_id,
        is_enabled=bool(row.is_enabled),
        is_locked=bool(row.is_locked),
        failed_logins=row.failed_logins,
        created_at=row.created_at,
    )


def _row_to_role(row, permission_names: list[str]) -> Role:
    # Stored names were validated on the way in; parsing again keeps the
    # mapper honest if a row was edited by hand.
    return Role.from_names(name=row.name, max_members=row.max_members, permission_names=permission_names, id=row.id)


def _row_to_code(row) -> VerificationCode:
    return VerificationCode(
        id=row.id,
        code=row.code,
        purpose=CodePurpose(row.purpose),
        account_id=row.account_id,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
