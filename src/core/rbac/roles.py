"""
Role Stores - role definitions and user role assignments.

RoleStore manages role definitions and their permission sets.
RoleAssignmentStore maps users to roles. Assignments carry an optional
organization/department scope and an active flag; they have no validity
window and are never hard-deleted.

Neither store touches the permission cache. Callers (AccessControlService)
invalidate every affected user after a mutation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .db import _commit, _exec, _flush
from .errors import ConflictError, NotFoundError
from .models import Role, RolePermission, UserRoleAssignment
from .permissions import PermissionCatalog

logger = logging.getLogger(__name__)


# =============================================================================
# ROLE DEFINITIONS
# =============================================================================

class RoleStore:
    """DB-backed role definition store."""

    def __init__(self, db: AsyncSession, catalog: Optional[PermissionCatalog] = None):
        self.db = db
        self.catalog = catalog or PermissionCatalog(db)

    async def get_role(self, role_id: UUID) -> Optional[Role]:
        result = await _exec(self.db, select(Role).where(Role.id == role_id))
        return result.scalar_one_or_none()

    async def list_roles(
        self,
        *,
        organization_id: Optional[UUID] = None,
        include_system: bool = True,
        active_only: bool = True,
    ) -> List[Role]:
        stmt = select(Role).options(
            selectinload(Role.role_permissions).selectinload(RolePermission.permission)
        )
        if active_only:
            stmt = stmt.where(Role.is_active.is_(True))
        if organization_id is not None:
            if include_system:
                stmt = stmt.where((Role.organization_id == organization_id) | Role.is_system_role.is_(True))
            else:
                stmt = stmt.where(Role.organization_id == organization_id)
        elif not include_system:
            stmt = stmt.where(Role.is_system_role.is_(False))
        stmt = stmt.order_by(Role.is_system_role.desc(), Role.name)
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())

    async def create_role(
        self,
        *,
        name: str,
        created_by: Optional[UUID],
        permission_codes: Iterable[str] = (),
        description: Optional[str] = None,
        is_system_role: bool = False,
        organization_id: Optional[UUID] = None,
    ) -> Role:
        """Create a role. System roles are platform-wide and take no organization."""
        if is_system_role and organization_id is not None:
            raise ConflictError("System roles cannot be scoped to an organization")

        permissions = await self._require_permissions(permission_codes)

        role = Role(
            name=name,
            description=description,
            is_system_role=is_system_role,
            organization_id=organization_id,
            is_active=True,
            created_by=created_by,
        )
        self.db.add(role)
        await _flush(self.db)

        for permission in permissions:
            self.db.add(RolePermission(role_id=role.id, permission_id=permission.id, granted_by=created_by))

        await _commit(self.db)
        logger.info(f"Role '{name}' created with {len(permissions)} permissions")
        return role

    async def set_role_permissions(
        self,
        role_id: UUID,
        permission_codes: Iterable[str],
        updated_by: Optional[UUID],
    ) -> List[str]:
        """
        Replace a role's permission set.

        Every user holding the role is affected; the caller must invalidate
        them all (see RoleAssignmentStore.list_role_holders).

        Returns:
            The sorted list of codes now attached to the role.

        Raises:
            NotFoundError: role or any permission code unknown (nothing written).
        """
        role = await self.get_role(role_id)
        if role is None:
            raise NotFoundError("role", role_id)

        permissions = await self._require_permissions(permission_codes)

        wanted = {permission.id for permission in permissions}
        result = await _exec(self.db, select(RolePermission).where(RolePermission.role_id == role_id))
        existing = {rp.permission_id: rp for rp in result.scalars().all()}

        for permission_id, role_permission in existing.items():
            if permission_id not in wanted:
                await self.db.delete(role_permission)
        for permission_id in wanted - set(existing):
            self.db.add(RolePermission(role_id=role_id, permission_id=permission_id, granted_by=updated_by))
        role.updated_at = datetime.utcnow()

        await _commit(self.db)
        codes = sorted(permission.name for permission in permissions)
        logger.info(f"Role {role_id} permissions replaced ({len(codes)} codes)")
        return codes

    async def _require_permissions(self, permission_codes: Iterable[str]) -> list:
        codes = list(dict.fromkeys(permission_codes))
        found = await self.catalog.get_permissions_by_codes(codes)
        missing = [code for code in codes if code not in found]
        if missing:
            raise NotFoundError("permission", ", ".join(sorted(missing)))
        return [found[code] for code in codes]


# =============================================================================
# ROLE ASSIGNMENTS
# =============================================================================

class RoleAssignmentStore:
    """DB-backed user role assignment store."""

    def __init__(self, db: AsyncSession, catalog: Optional[PermissionCatalog] = None):
        self.db = db
        self.catalog = catalog or PermissionCatalog(db)

    async def get_active_role_assignments(self, user_id: UUID) -> List[UserRoleAssignment]:
        """Active assignments of active roles. No time filtering: roles have no validity window."""
        stmt = (
            select(UserRoleAssignment)
            .join(Role, UserRoleAssignment.role_id == Role.id)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active.is_(True),
                Role.is_active.is_(True),
            )
            .options(selectinload(UserRoleAssignment.role))
            .order_by(UserRoleAssignment.assigned_at)
        )
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())

    async def get_assignment(self, user_id: UUID, role_id: UUID) -> Optional[UserRoleAssignment]:
        stmt = select(UserRoleAssignment).where(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == role_id,
        )
        result = await _exec(self.db, stmt)
        return result.scalar_one_or_none()

    async def assign_role(
        self,
        *,
        user_id: UUID,
        role_id: UUID,
        assigned_by: Optional[UUID],
        organization_id: Optional[UUID] = None,
        department_id: Optional[UUID] = None,
    ) -> UserRoleAssignment:
        """
        Assign (or re-activate) a role for a user.

        One row per (user, role); reassignment updates the scope in place.
        """
        result = await _exec(self.db, select(Role).where(Role.id == role_id))
        role = result.scalar_one_or_none()
        if role is None or not role.is_active:
            raise NotFoundError("role", role_id)

        if role.is_system_role and (organization_id is not None or department_id is not None):
            raise ConflictError("System role assignments cannot carry an organization or department")
        if not role.is_system_role and organization_id is None:
            # Permissions still resolve; scope enforcement belongs to ScopeResolver
            logger.warning(f"Role {role.name} assigned to user {user_id} without an organization")

        assignment = await self.get_assignment(user_id, role_id)
        if assignment is None:
            assignment = UserRoleAssignment(user_id=user_id, role_id=role_id)
            self.db.add(assignment)

        assignment.organization_id = organization_id
        assignment.department_id = department_id
        assignment.assigned_by = assigned_by
        assignment.assigned_at = datetime.utcnow()
        assignment.is_active = True

        await _commit(self.db)
        logger.info(f"Role {role.name} assigned to user {user_id}")
        return assignment

    async def deactivate_assignment(self, user_id: UUID, role_id: UUID) -> UserRoleAssignment:
        assignment = await self.get_assignment(user_id, role_id)
        if assignment is None or not assignment.is_active:
            raise NotFoundError("role assignment", f"{user_id}/{role_id}")

        assignment.is_active = False
        await _commit(self.db)
        logger.info(f"Role {role_id} deactivated for user {user_id}")
        return assignment

    async def deactivate_user_assignments(self, user_id: UUID) -> int:
        """Soft-deactivate every assignment of a user (user deletion)."""
        stmt = (
            update(UserRoleAssignment)
            .where(UserRoleAssignment.user_id == user_id, UserRoleAssignment.is_active.is_(True))
            .values(is_active=False)
        )
        result = await _exec(self.db, stmt)
        await _commit(self.db)
        return result.rowcount or 0

    async def list_role_holders(self, role_id: UUID) -> List[UUID]:
        """Users with an active assignment of the role."""
        stmt = (
            select(UserRoleAssignment.user_id)
            .where(UserRoleAssignment.role_id == role_id, UserRoleAssignment.is_active.is_(True))
            .distinct()
        )
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())
