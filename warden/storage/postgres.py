from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Set, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreError, StoreTimeoutError
from warden.storage.models import (
    Permission,
    PrincipalStatus,
    RefreshSession,
    Role,
    User,
    utcnow,
)

# Every principal lookup that must ignore deactivated accounts appends this.
ACTIVE_USER_FILTER = "status = 'active' AND deleted_at IS NULL"

REQUIRED_TABLES = (
    "app_user",
    "user_credential",
    "refresh_session",
    "role",
    "permission",
    "role_permission",
    "user_role",
)

# Removes the oldest sessions of one principal beyond ``keep`` in one statement.
_DELETE_OLDEST_SQL = """
    DELETE FROM refresh_session
    WHERE id IN (
        SELECT id FROM refresh_session
        WHERE user_id = %(user_id)s
        ORDER BY created_at ASC, id ASC
        LIMIT GREATEST(
            (SELECT COUNT(*) FROM refresh_session WHERE user_id = %(user_id)s) - %(keep)s,
            0
        )
    )
"""


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        status=PrincipalStatus(row.get("status", "active")),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_session(row: dict) -> RefreshSession:
    return RefreshSession(
        id=str(row["id"]),
        token=row["token"],
        user_id=str(row["user_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _row_to_role(row: dict) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_permission(row: dict) -> Permission:
    return Permission(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed principal, session and role store.

    Compound session operations run in one transaction that first takes a
    row lock on the owning ``app_user`` row, which serialises issuance and
    rotation per principal without blocking other principals.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("store_pool_timeout", operation=operation)
            raise StoreTimeoutError("store connection unavailable", operation=operation) from exc
        except errors.QueryCanceled as exc:
            self.logger.error("store_statement_timeout", operation=operation)
            raise StoreTimeoutError("store operation timed out", operation=operation) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreError("store unavailable", operation=operation) from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail start-up when the auth tables have not been migrated."""

        with self._connect("verify_schema") as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.sh to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # principals
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str = "argon2id"
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect("create_user") as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, status)
                    VALUES (%s, %s, %s, 'active')
                    RETURNING *
                    """,
                    (user_id, normalized, name),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_user(self, user_id: str, *, include_deactivated: bool = False) -> Optional[User]:
        query = "SELECT * FROM app_user WHERE id = %s"
        if not include_deactivated:
            query += f" AND {ACTIVE_USER_FILTER}"
        with self._connect("get_user") as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE email = %s AND {ACTIVE_USER_FILTER}",
                (email.strip().lower(),),
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_login_record(self, email: str) -> Optional[Tuple[User, str]]:
        with self._connect("get_login_record") as conn:
            row = conn.execute(
                f"""
                SELECT u.*, c.password_hash FROM app_user u
                JOIN user_credential c ON c.user_id = u.id
                WHERE u.email = %s AND {ACTIVE_USER_FILTER}
                """,
                (email.strip().lower(),),
            ).fetchone()
        return (_row_to_user(row), row["password_hash"]) if row else None

    def list_users(self) -> List[User]:
        with self._connect("list_users") as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user WHERE {ACTIVE_USER_FILTER} ORDER BY created_at, id"
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        try:
            with self._connect("update_user") as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user
                    SET name = COALESCE(%s, name),
                        email = COALESCE(%s, email),
                        updated_at = now()
                    WHERE id = %s AND {ACTIVE_USER_FILTER}
                    RETURNING *
                    """,
                    (name, email.strip().lower() if email else None, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row) if row else None

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect("get_password_hash") as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        try:
            with self._connect("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def deactivate_user(self, user_id: str) -> Optional[User]:
        with self._connect("deactivate_user") as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE app_user
                SET status = 'deactivated', deleted_at = now(), updated_at = now()
                WHERE id = %s AND {ACTIVE_USER_FILTER}
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM refresh_session WHERE user_id = %s", (user_id,))
        return _row_to_user(row)

    # refresh sessions
    def create_session(self, user_id: str, token: str, expires_at: datetime) -> RefreshSession:
        try:
            with self._connect("create_session") as conn, conn.transaction():
                if not self._lock_principal(conn, user_id):
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                return self._insert_session(conn, user_id, token, expires_at)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE token = %s", (token,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def delete_session(self, token: str) -> bool:
        with self._connect("delete_session") as conn:
            result = conn.execute("DELETE FROM refresh_session WHERE token = %s", (token,))
            return result.rowcount > 0

    def count_sessions(self, user_id: str) -> int:
        with self._connect("count_sessions") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM refresh_session WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["c"]) if row else 0

    def list_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._connect("list_sessions") as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_session WHERE user_id = %s ORDER BY created_at ASC, id ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def delete_oldest_sessions(self, user_id: str, keep_count: int) -> int:
        with self._connect("delete_oldest_sessions") as conn:
            result = conn.execute(
                _DELETE_OLDEST_SQL, {"user_id": user_id, "keep": max(keep_count, 0)}
            )
            return result.rowcount

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect("delete_user_sessions") as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def _lock_principal(self, conn: psycopg.Connection, user_id: str) -> bool:
        """Row-lock an active principal; False when it is absent or tombstoned.

        Deactivation updates the same row, so once this returns True the
        principal stays active until the transaction ends.
        """
        row = conn.execute(
            f"SELECT id FROM app_user WHERE id = %s AND {ACTIVE_USER_FILTER} FOR UPDATE",
            (user_id,),
        ).fetchone()
        return row is not None

    def _insert_session(
        self, conn: psycopg.Connection, user_id: str, token: str, expires_at: datetime
    ) -> RefreshSession:
        # clock_timestamp() rather than now(): ordering must follow commit order
        # under the principal lock, not transaction start.
        row = conn.execute(
            """
            INSERT INTO refresh_session (id, token, user_id, created_at, expires_at)
            VALUES (%s, %s, %s, clock_timestamp(), %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), token, user_id, expires_at),
        ).fetchone()
        return _row_to_session(row)

    def _issue_locked(
        self,
        conn: psycopg.Connection,
        user_id: str,
        token: str,
        expires_at: datetime,
        max_devices: int,
    ) -> Tuple[RefreshSession, int]:
        evicted = conn.execute(
            _DELETE_OLDEST_SQL, {"user_id": user_id, "keep": max_devices - 1}
        ).rowcount
        return self._insert_session(conn, user_id, token, expires_at), evicted

    def issue_session(
        self, user_id: str, token: str, expires_at: datetime, max_devices: int
    ) -> Tuple[RefreshSession, int]:
        try:
            with self._connect("issue_session") as conn, conn.transaction():
                if not self._lock_principal(conn, user_id):
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                return self._issue_locked(conn, user_id, token, expires_at, max_devices)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})

    def rotate_session(
        self, old_token: str, new_token: str, expires_at: datetime, max_devices: int
    ) -> Optional[Tuple[RefreshSession, int]]:
        try:
            with self._connect("rotate_session") as conn, conn.transaction():
                owner = conn.execute(
                    "SELECT user_id FROM refresh_session WHERE token = %s", (old_token,)
                ).fetchone()
                if not owner:
                    return None
                user_id = str(owner["user_id"])
                if not self._lock_principal(conn, user_id):
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                # Re-checked under the lock: a concurrent rotation may have won.
                deleted = conn.execute(
                    "DELETE FROM refresh_session WHERE token = %s AND user_id = %s",
                    (old_token, user_id),
                ).rowcount
                if not deleted:
                    return None
                return self._issue_locked(conn, user_id, new_token, expires_at, max_devices)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})

    # roles and permissions
    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            with self._connect("create_role") as conn:
                row = conn.execute(
                    "INSERT INTO role (id, name, description) VALUES (%s, %s, %s) RETURNING *",
                    (str(uuid.uuid4()), name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return _row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect("get_role") as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return _row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect("get_role_by_name") as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return _row_to_role(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect("list_roles") as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [_row_to_role(row) for row in rows]

    def update_role(
        self, role_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Role]:
        try:
            with self._connect("update_role") as conn:
                row = conn.execute(
                    """
                    UPDATE role
                    SET name = COALESCE(%s, name), description = COALESCE(%s, description)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, role_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return _row_to_role(row) if row else None

    def delete_roles(self, role_ids: List[str]) -> int:
        # Grants and assignments go with the role through ON DELETE CASCADE
        with self._connect("delete_roles") as conn:
            result = conn.execute(
                "DELETE FROM role WHERE id = ANY(%s)", (list(set(role_ids)),)
            )
            return result.rowcount

    def delete_role(self, role_id: str) -> bool:
        return self.delete_roles([role_id]) == 1

    def sync_role_permissions(self, role_id: str, permission_ids: List[str]) -> None:
        wanted = sorted(set(permission_ids))
        with self._connect("sync_role_permissions") as conn, conn.transaction():
            role = conn.execute(
                "SELECT id FROM role WHERE id = %s FOR UPDATE", (role_id,)
            ).fetchone()
            if not role:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            found = conn.execute(
                "SELECT id FROM permission WHERE id = ANY(%s)", (wanted,)
            ).fetchall()
            unknown = sorted(set(wanted) - {str(row["id"]) for row in found})
            if unknown:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_ids": unknown}
                )
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            for permission_id in wanted:
                conn.execute(
                    "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                    (role_id, permission_id),
                )

    def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        try:
            with self._connect("create_permission") as conn:
                row = conn.execute(
                    "INSERT INTO permission (id, name, description) VALUES (%s, %s, %s) RETURNING *",
                    (str(uuid.uuid4()), name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return _row_to_permission(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect("get_permission") as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return _row_to_permission(row) if row else None

    def update_permission(
        self, permission_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Permission]:
        try:
            with self._connect("update_permission") as conn:
                row = conn.execute(
                    """
                    UPDATE permission
                    SET name = COALESCE(%s, name), description = COALESCE(%s, description)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, permission_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return _row_to_permission(row) if row else None

    def delete_permission(self, permission_id: str) -> bool:
        with self._connect("delete_permission") as conn:
            result = conn.execute("DELETE FROM permission WHERE id = %s", (permission_id,))
            return result.rowcount > 0

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect("get_permission_by_name") as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (name,)
            ).fetchone()
        return _row_to_permission(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect("list_permissions") as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY name").fetchall()
        return [_row_to_permission(row) for row in rows]

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect("list_role_permissions") as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = %s
                ORDER BY p.name
                """,
                (role_id,),
            ).fetchall()
        return [_row_to_permission(row) for row in rows]

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect("grant_permission") as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )

    def assign_role(self, user_id: str, role_id: str) -> None:
        try:
            with self._connect("assign_role") as conn, conn.transaction():
                active = conn.execute(
                    f"SELECT id FROM app_user WHERE id = %s AND {ACTIVE_USER_FILTER}",
                    (user_id,),
                ).fetchone()
                if not active:
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": role_id})

    def sync_user_roles(self, user_id: str, role_ids: List[str]) -> None:
        wanted = sorted(set(role_ids))
        with self._connect("sync_user_roles") as conn, conn.transaction():
            if not self._lock_principal(conn, user_id):
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            found = conn.execute("SELECT id FROM role WHERE id = ANY(%s)", (wanted,)).fetchall()
            unknown = sorted(set(wanted) - {str(row["id"]) for row in found})
            if unknown:
                raise ConstraintViolation("role does not exist", {"role_ids": unknown})
            conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            for role_id in wanted:
                conn.execute(
                    "INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)",
                    (user_id, role_id),
                )

    def revoke_role(self, user_id: str, role_id: str) -> bool:
        with self._connect("revoke_role") as conn:
            result = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return result.rowcount > 0

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect("list_user_roles") as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_role ur
                JOIN role r ON r.id = ur.role_id
                WHERE ur.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_role(row) for row in rows]

    def list_user_permissions(self, user_id: str) -> Set[str]:
        with self._connect("list_user_permissions") as conn:
            rows: List[Any] = conn.execute(
                """
                SELECT DISTINCT p.name FROM user_role ur
                JOIN role_permission rp ON rp.role_id = ur.role_id
                JOIN permission p ON p.id = rp.permission_id
                WHERE ur.user_id = %s
                """,
                (user_id,),
            ).fetchall()
        return {row["name"] for row in rows}
