from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from dashauth.logging import get_logger, token_prefix
from dashauth.storage.errors import ConstraintViolation, StoreUnavailable
from dashauth.storage.models import (
    Department,
    EmployeePrincipal,
    OwnerKind,
    Session,
    UserPrincipal,
    new_session_token,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS department (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        secret_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS employee (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        secret_hash TEXT,
        department_id TEXT REFERENCES department (id) ON DELETE SET NULL,
        position TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        token TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        owner_kind TEXT NOT NULL CHECK (owner_kind IN ('user', 'employee')),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        recovered BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_owner_idx ON auth_session (owner_kind, owner_id)",
)


class PostgresStore:
    """Postgres-backed principal and session store.

    Sessions reference their owner polymorphically through
    ``(owner_kind, owner_id)``, so there is no foreign key from
    ``auth_session`` to either principal table.
    """

    def __init__(
        self,
        dsn: str,
        *,
        clock: Callable[[], datetime] = utcnow,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self._clock = clock
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection; connectivity failures become StoreUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout) as exc:
            self.logger.error(
                "session_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # principals
    def create_department(self, name: str) -> Department:
        department = Department(id=str(uuid.uuid4()), name=name, created_at=self._clock())
        with self._connect("create_department") as conn:
            conn.execute(
                "INSERT INTO department (id, name, created_at) VALUES (%s, %s, %s)",
                (department.id, department.name, department.created_at),
            )
        return department

    def get_department(self, department_id: str) -> Optional[Department]:
        with self._connect("get_department") as conn:
            row = conn.execute(
                "SELECT * FROM department WHERE id = %s", (department_id,)
            ).fetchone()
        if not row:
            return None
        return Department(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    def create_user(
        self, name: str, email: str, secret_hash: str, *, role: str = "user"
    ) -> UserPrincipal:
        user = UserPrincipal(
            id=str(uuid.uuid4()),
            name=name,
            email=email.strip().lower(),
            secret_hash=secret_hash,
            role=role,
            created_at=self._clock(),
        )
        try:
            with self._connect("create_user") as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, secret_hash, role, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user.id, user.name, user.email, user.secret_hash, user.role, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def create_employee(
        self,
        name: str,
        email: str,
        secret_hash: Optional[str] = None,
        *,
        department_id: Optional[str] = None,
        position: Optional[str] = None,
    ) -> EmployeePrincipal:
        employee = EmployeePrincipal(
            id=str(uuid.uuid4()),
            name=name,
            email=email.strip().lower(),
            secret_hash=secret_hash,
            department_id=department_id,
            position=position,
            created_at=self._clock(),
        )
        try:
            with self._connect("create_employee") as conn:
                conn.execute(
                    """
                    INSERT INTO employee (id, name, email, secret_hash, department_id, position, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        employee.id,
                        employee.name,
                        employee.email,
                        employee.secret_hash,
                        employee.department_id,
                        employee.position,
                        employee.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "department does not exist", {"department_id": department_id}
            )
        return employee

    @staticmethod
    def _row_to_user(row: dict) -> UserPrincipal:
        return UserPrincipal(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row["email"],
            secret_hash=row["secret_hash"],
            role=row.get("role") or "user",
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_employee(row: dict) -> EmployeePrincipal:
        department_id = row.get("department_id")
        return EmployeePrincipal(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row["email"],
            secret_hash=row.get("secret_hash"),
            department_id=str(department_id) if department_id else None,
            position=row.get("position"),
            created_at=row["created_at"],
        )

    def get_user(self, user_id: str) -> Optional[UserPrincipal]:
        with self._connect("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_employee(self, employee_id: str) -> Optional[EmployeePrincipal]:
        with self._connect("get_employee") as conn:
            row = conn.execute(
                "SELECT * FROM employee WHERE id = %s", (employee_id,)
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserPrincipal]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_employee_by_email(self, email: str) -> Optional[EmployeePrincipal]:
        with self._connect("get_employee_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM employee WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect("delete_user") as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def delete_employee(self, employee_id: str) -> bool:
        with self._connect("delete_employee") as conn:
            result = conn.execute("DELETE FROM employee WHERE id = %s", (employee_id,))
            return result.rowcount > 0

    # sessions
    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            token=row["token"],
            owner_id=str(row["owner_id"]),
            owner_kind=OwnerKind(row["owner_kind"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            recovered=bool(row.get("recovered", False)),
        )

    @staticmethod
    def _insert_session(conn, sess: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (token, owner_id, owner_kind, created_at, expires_at, recovered)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                sess.token,
                sess.owner_id,
                sess.owner_kind.value,
                sess.created_at,
                sess.expires_at,
                sess.recovered,
            ),
        )

    def create_session(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        ttl: timedelta,
        *,
        token: Optional[str] = None,
        recovered: bool = False,
    ) -> Session:
        sess = Session.new(
            owner_id,
            owner_kind,
            ttl,
            now=self._clock(),
            token=token or new_session_token(),
            recovered=recovered,
        )
        try:
            with self._connect("create_session") as conn:
                self._insert_session(conn, sess)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"token_prefix": token_prefix(sess.token)}
            )
        return sess

    def evict_all_for_owner(
        self, owner_id: str, owner_kind: OwnerKind, *, keep_token: Optional[str] = None
    ) -> int:
        with self._connect("evict_all_for_owner") as conn:
            if keep_token:
                result = conn.execute(
                    """
                    DELETE FROM auth_session
                    WHERE owner_id = %s AND owner_kind = %s AND token <> %s
                    """,
                    (owner_id, OwnerKind(owner_kind).value, keep_token),
                )
            else:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE owner_id = %s AND owner_kind = %s",
                    (owner_id, OwnerKind(owner_kind).value),
                )
            return result.rowcount

    def replace_owner_session(
        self, owner_id: str, owner_kind: OwnerKind, ttl: timedelta
    ) -> Session:
        """Evict every session of the owner and insert a fresh one in one transaction.

        A transaction-scoped advisory lock keyed by the owner serializes
        concurrent logins for the same principal.
        """
        kind = OwnerKind(owner_kind)
        sess = Session.new(owner_id, kind, ttl, now=self._clock())
        with self._connect("replace_owner_session") as conn:
            with conn.transaction():
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{kind.value}:{owner_id}",),
                )
                result = conn.execute(
                    "DELETE FROM auth_session WHERE owner_id = %s AND owner_kind = %s",
                    (owner_id, kind.value),
                )
                self._insert_session(conn, sess)
        if result.rowcount:
            self.logger.info(
                "owner_sessions_evicted",
                owner_id=owner_id,
                owner_kind=kind.value,
                evicted=result.rowcount,
            )
        return sess

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, token: str, ttl: timedelta) -> Optional[Session]:
        with self._connect("touch_session") as conn:
            row = conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE token = %s RETURNING *",
                (self._clock() + ttl, token),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, token: str) -> bool:
        with self._connect("delete_session") as conn:
            result = conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))
            return result.rowcount > 0

    def purge_expired(self, token: str) -> bool:
        with self._connect("purge_expired") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE token = %s AND expires_at < %s",
                (token, self._clock()),
            )
            return result.rowcount > 0

    def count_active_sessions(self) -> int:
        with self._connect("count_active_sessions") as conn:
            row = conn.execute(
                "SELECT count(*) AS active FROM auth_session WHERE expires_at >= %s",
                (self._clock(),),
            ).fetchone()
        return int(row["active"]) if row else 0
