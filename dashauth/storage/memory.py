from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from dashauth.logging import get_logger, token_prefix
from dashauth.storage.errors import ConstraintViolation, StoreUnavailable
from dashauth.storage.models import (
    Department,
    EmployeePrincipal,
    OwnerKind,
    Session,
    UserPrincipal,
    utcnow,
)


class MemoryStore:
    """In-process backing store for principals and sessions.

    Every operation runs under one re-entrant lock, so evict + create for a
    single owner is atomic with respect to any other request.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.users: Dict[str, UserPrincipal] = {}
        self.employees: Dict[str, EmployeePrincipal] = {}
        self.departments: Dict[str, Department] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so replace_owner_session can call evict/create while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    # principals
    def create_department(self, name: str) -> Department:
        with self._data_lock:
            department = Department(id=str(uuid.uuid4()), name=name, created_at=self._clock())
            self.departments[department.id] = department
            self._persist_state()
            return department

    def get_department(self, department_id: str) -> Optional[Department]:
        with self._data_lock:
            return self.departments.get(department_id)

    def create_user(
        self, name: str, email: str, secret_hash: str, *, role: str = "user"
    ) -> UserPrincipal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserPrincipal(
                id=str(uuid.uuid4()),
                name=name,
                email=normalized,
                secret_hash=secret_hash,
                role=role,
                created_at=self._clock(),
            )
            self.users[user.id] = user
            self._persist_state()
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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(e.email == normalized for e in self.employees.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if department_id and department_id not in self.departments:
                raise ConstraintViolation(
                    "department does not exist", {"department_id": department_id}
                )
            employee = EmployeePrincipal(
                id=str(uuid.uuid4()),
                name=name,
                email=normalized,
                secret_hash=secret_hash,
                department_id=department_id,
                position=position,
                created_at=self._clock(),
            )
            self.employees[employee.id] = employee
            self._persist_state()
            return employee

    def get_user(self, user_id: str) -> Optional[UserPrincipal]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_employee(self, employee_id: str) -> Optional[EmployeePrincipal]:
        with self._data_lock:
            return self.employees.get(employee_id)

    def get_user_by_email(self, email: str) -> Optional[UserPrincipal]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_employee_by_email(self, email: str) -> Optional[EmployeePrincipal]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (e for e in self.employees.values() if e.email == normalized), None
            )

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_employee(self, employee_id: str) -> bool:
        with self._data_lock:
            removed = self.employees.pop(employee_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # sessions
    def create_session(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        ttl: timedelta,
        *,
        token: Optional[str] = None,
        recovered: bool = False,
    ) -> Session:
        with self._data_lock:
            sess = Session.new(
                owner_id,
                owner_kind,
                ttl,
                now=self._clock(),
                token=token,
                recovered=recovered,
            )
            if sess.token in self.sessions:
                raise ConstraintViolation(
                    "session token already exists",
                    {"token_prefix": token_prefix(sess.token)},
                )
            self.sessions[sess.token] = sess
            self._persist_state()
            return sess

    def evict_all_for_owner(
        self, owner_id: str, owner_kind: OwnerKind, *, keep_token: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                token
                for token, sess in self.sessions.items()
                if sess.owner_id == owner_id
                and sess.owner_kind == owner_kind
                and token != keep_token
            ]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def replace_owner_session(
        self, owner_id: str, owner_kind: OwnerKind, ttl: timedelta
    ) -> Session:
        """Evict every session of the owner and create a fresh one atomically."""
        with self._data_lock:
            evicted = self.evict_all_for_owner(owner_id, owner_kind)
            sess = self.create_session(owner_id, owner_kind, ttl)
        if evicted:
            self.logger.info(
                "owner_sessions_evicted",
                owner_id=owner_id,
                owner_kind=owner_kind.value,
                evicted=evicted,
            )
        return sess

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token)

    def touch_session(self, token: str, ttl: timedelta) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess:
                return None
            sess = replace(sess, expires_at=self._clock() + ttl)
            self.sessions[token] = sess
            self._persist_state()
            return sess

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def purge_expired(self, token: str) -> bool:
        """Delete the session only if it is still expired at purge time."""
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess or not sess.is_expired(self._clock()):
                return False
            self.sessions.pop(token, None)
            self._persist_state()
            return True

    def count_active_sessions(self) -> int:
        with self._data_lock:
            now = self._clock()
            return sum(1 for sess in self.sessions.values() if not sess.is_expired(now))

    def list_sessions_for_owner(
        self, owner_id: str, owner_kind: OwnerKind
    ) -> List[Session]:
        with self._data_lock:
            return [
                sess
                for sess in self.sessions.values()
                if sess.owner_id == owner_id and sess.owner_kind == owner_kind
            ]

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "employees": [self._serialize_employee(e) for e in self.employees.values()],
            "departments": [
                {"id": d.id, "name": d.name, "created_at": d.created_at.isoformat()}
                for d in self.departments.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable("persist", exc) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("session_store_state_unreadable", path=str(path), error=str(exc))
            raise StoreUnavailable("load", exc) from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.employees = {
            e["id"]: self._deserialize_employee(e) for e in data.get("employees", [])
        }
        self.departments = {
            d["id"]: Department(
                id=d["id"],
                name=d["name"],
                created_at=datetime.fromisoformat(d["created_at"]),
            )
            for d in data.get("departments", [])
        }
        self.sessions = {
            s["token"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    @staticmethod
    def _serialize_user(user: UserPrincipal) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "secret_hash": user.secret_hash,
            "role": user.role,
            "created_at": user.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> UserPrincipal:
        return UserPrincipal(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            secret_hash=data["secret_hash"],
            role=data.get("role", "user"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_employee(employee: EmployeePrincipal) -> dict:
        return {
            "id": employee.id,
            "name": employee.name,
            "email": employee.email,
            "secret_hash": employee.secret_hash,
            "department_id": employee.department_id,
            "position": employee.position,
            "created_at": employee.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_employee(data: dict) -> EmployeePrincipal:
        return EmployeePrincipal(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            secret_hash=data.get("secret_hash"),
            department_id=data.get("department_id"),
            position=data.get("position"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_session(session: Session) -> dict:
        return {
            "token": session.token,
            "owner_id": session.owner_id,
            "owner_kind": session.owner_kind.value,
            "created_at": session.created_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
            "recovered": session.recovered,
        }

    @staticmethod
    def _deserialize_session(data: dict) -> Session:
        return Session(
            token=data["token"],
            owner_id=str(data["owner_id"]),
            owner_kind=OwnerKind(data["owner_kind"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            recovered=data.get("recovered", False),
        )
