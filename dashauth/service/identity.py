from __future__ import annotations

from typing import Callable, Dict, Optional, Protocol

from dashauth.logging import get_logger
from dashauth.service.errors import OwnerMissing
from dashauth.storage.models import (
    Department,
    EmployeePrincipal,
    OwnerKind,
    PublicProfile,
    Session,
    UserPrincipal,
)

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserPrincipal]: ...

    def get_employee(self, employee_id: str) -> Optional[EmployeePrincipal]: ...

    def get_department(self, department_id: str) -> Optional[Department]: ...


class IdentityResolver:
    """Turns a session into the owner's public profile.

    Lookup is dispatched on ``owner_kind``; adding a principal type means
    adding one entry to the dispatch table.
    """

    def __init__(self, store: PrincipalStore) -> None:
        self.store = store
        self._resolvers: Dict[OwnerKind, Callable[[str], Optional[PublicProfile]]] = {
            OwnerKind.USER: self._resolve_user,
            OwnerKind.EMPLOYEE: self._resolve_employee,
        }

    def resolve(self, session: Session) -> PublicProfile:
        resolver = self._resolvers[session.owner_kind]
        profile = resolver(session.owner_id)
        if profile is None:
            logger.warning(
                "session_owner_missing",
                owner_id=session.owner_id,
                owner_kind=session.owner_kind.value,
            )
            raise OwnerMissing()
        return profile

    def profile_for(self, principal: UserPrincipal | EmployeePrincipal) -> PublicProfile:
        if isinstance(principal, EmployeePrincipal):
            return self._employee_profile(principal)
        return self._user_profile(principal)

    @staticmethod
    def _user_profile(user: UserPrincipal) -> PublicProfile:
        return PublicProfile(
            id=user.id,
            kind=OwnerKind.USER,
            name=user.name,
            email=user.email,
            role=user.role,
        )

    def _employee_profile(self, employee: EmployeePrincipal) -> PublicProfile:
        department_name = None
        if employee.department_id:
            department = self.store.get_department(employee.department_id)
            department_name = department.name if department else None
        return PublicProfile(
            id=employee.id,
            kind=OwnerKind.EMPLOYEE,
            name=employee.name,
            email=employee.email,
            role=employee.role,
            department_id=employee.department_id,
            department_name=department_name,
            position=employee.position,
        )

    def _resolve_user(self, owner_id: str) -> Optional[PublicProfile]:
        user = self.store.get_user(owner_id)
        return self._user_profile(user) if user else None

    def _resolve_employee(self, owner_id: str) -> Optional[PublicProfile]:
        employee = self.store.get_employee(owner_id)
        return self._employee_profile(employee) if employee else None
