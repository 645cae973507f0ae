"""
Scope Resolver - organization/department visibility for a request.

compute_scope() derives the caller's standing scope from their resolved
permissions and their own organization/department. authorize() checks a
requested target against that scope and returns the filter downstream
queries must apply. A request for someone else's organization or department
is refused, never narrowed back to the caller's own.

system.admin is the only system-admin signal. A user with no organization
and no department is not an admin by that fact alone.
"""

from dataclasses import dataclass
from typing import AbstractSet, Optional
from uuid import UUID
import logging

from .errors import ForbiddenError
from .permissions import DEPARTMENT_MANAGE, ORGANIZATION_MANAGE, SYSTEM_ADMIN, VIEW_ALL_DEPARTMENTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Who is asking: identity plus home organization/department."""
    user_id: UUID
    organization_id: Optional[UUID] = None
    department_id: Optional[UUID] = None


@dataclass(frozen=True)
class AccessScope:
    """
    Standing visibility of a principal.

    organization_id None means unrestricted (system admins only).
    department_id None means no restriction below the organization.
    """
    organization_id: Optional[UUID]
    department_id: Optional[UUID]
    is_system_admin: bool = False
    is_org_admin: bool = False
    is_dept_admin: bool = False
    can_view_all_departments: bool = False
    home_organization_id: Optional[UUID] = None
    home_department_id: Optional[UUID] = None

    @property
    def can_cross_departments(self) -> bool:
        return self.is_system_admin or self.is_org_admin or self.can_view_all_departments

    def to_dict(self) -> dict:
        return {
            "organization_id": str(self.organization_id) if self.organization_id else None,
            "department_id": str(self.department_id) if self.department_id else None,
            "is_system_admin": self.is_system_admin,
            "is_org_admin": self.is_org_admin,
            "is_dept_admin": self.is_dept_admin,
            "can_view_all_departments": self.can_view_all_departments,
            "home_organization_id": str(self.home_organization_id) if self.home_organization_id else None,
            "home_department_id": str(self.home_department_id) if self.home_department_id else None,
        }


@dataclass(frozen=True)
class QueryScope:
    """Filter a single request must apply. None fields do not filter."""
    organization_id: Optional[UUID] = None
    department_id: Optional[UUID] = None


class ScopeResolver:
    """Stateless; safe to share."""

    def compute_scope(self, principal: Principal, permissions: AbstractSet[str]) -> AccessScope:
        is_system_admin = SYSTEM_ADMIN in permissions
        is_org_admin = ORGANIZATION_MANAGE in permissions

        department_id = None
        if principal.department_id is not None and not (is_system_admin or is_org_admin):
            department_id = principal.department_id

        return AccessScope(
            organization_id=None if is_system_admin else principal.organization_id,
            department_id=department_id,
            is_system_admin=is_system_admin,
            is_org_admin=is_org_admin,
            is_dept_admin=DEPARTMENT_MANAGE in permissions,
            can_view_all_departments=VIEW_ALL_DEPARTMENTS in permissions,
            home_organization_id=principal.organization_id,
            home_department_id=principal.department_id,
        )

    def authorize(
        self,
        scope: AccessScope,
        organization_id: Optional[UUID] = None,
        department_id: Optional[UUID] = None,
    ) -> QueryScope:
        """
        Check a requested target and return the effective query filter.

        Raises:
            ForbiddenError: the target lies outside the caller's scope.
        """
        if scope.is_system_admin:
            return QueryScope(organization_id=organization_id, department_id=department_id)

        if scope.organization_id is None:
            raise ForbiddenError("User is not attached to an organization")

        if organization_id is not None and organization_id != scope.organization_id:
            logger.warning(f"Cross-organization request denied: {organization_id} outside {scope.organization_id}")
            raise ForbiddenError(
                "Access to another organization requires system administration",
                required_permission=SYSTEM_ADMIN,
            )

        if department_id is None:
            return QueryScope(organization_id=scope.organization_id, department_id=scope.department_id)

        if (
            scope.department_id is not None
            and department_id != scope.department_id
            and not scope.can_cross_departments
        ):
            logger.warning(f"Cross-department request denied: {department_id} outside {scope.department_id}")
            raise ForbiddenError(
                "Access to another department requires organization administration",
                required_permission=ORGANIZATION_MANAGE,
            )

        return QueryScope(organization_id=scope.organization_id, department_id=department_id)
