"""
Permission Catalog - read-only view of permission and permission-group definitions.

Provides:
- Well-known permission codes used by scope resolution
- System permission definitions (seeded from code)
- Filtered permission listing and role -> permission expansion
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID
import logging

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .db import _commit, _exec, _flush
from .models import Permission, PermissionGroup, RolePermission

logger = logging.getLogger(__name__)


# =============================================================================
# WELL-KNOWN PERMISSION CODES
# =============================================================================

SYSTEM_ADMIN = "system.admin"
ORGANIZATION_MANAGE = "organization.manage"
DEPARTMENT_MANAGE = "department.manage"
VIEW_ALL_DEPARTMENTS = "view_all_departments"


# =============================================================================
# SYSTEM PERMISSION CATALOG
# =============================================================================

@dataclass(frozen=True)
class PermissionDefinition:
    """Definition of a system permission."""
    code: str
    description: str
    group: str

    @property
    def resource(self) -> str:
        return self.code.split(".", 1)[0] if "." in self.code else self.code

    @property
    def action(self) -> str:
        return self.code.split(".", 1)[1] if "." in self.code else "view"


SYSTEM_PERMISSION_GROUPS: Dict[str, str] = {
    "System Administration": "Core system administration and configuration",
    "Organization Management": "Organizations, departments and structure",
    "User Management": "User accounts and their permissions",
    "Role & Permission Management": "Roles, permissions and assignments",
    "Device Management": "Devices, device models and connectivity",
    "Data Management": "Telemetry data produced by devices",
    "Alerts & Notifications": "Warning rules and notifications",
    "Reports & Analytics": "Reports and data analysis",
}


def _definitions(group: str, *entries: tuple) -> List[PermissionDefinition]:
    return [PermissionDefinition(code=code, description=desc, group=group) for code, desc in entries]


SYSTEM_PERMISSIONS: List[PermissionDefinition] = [
    *_definitions(
        "System Administration",
        (SYSTEM_ADMIN, "Unrestricted platform access; bypasses scope restrictions"),
        ("system.configure", "Change platform configuration"),
        ("system.logs", "Read system logs"),
        ("system.audit", "Read the audit trail"),
    ),
    *_definitions(
        "Organization Management",
        (ORGANIZATION_MANAGE, "Administer the caller's organization across departments"),
        ("organization.read", "View organization details"),
        ("organization.create", "Create organizations"),
        ("organization.update", "Update organizations"),
        ("organization.delete", "Delete organizations"),
        (DEPARTMENT_MANAGE, "Administer the caller's department"),
        ("department.read", "View departments"),
        ("department.create", "Create departments"),
        ("department.update", "Update departments"),
        ("department.delete", "Delete departments"),
        (VIEW_ALL_DEPARTMENTS, "Read data of every department in the organization"),
    ),
    *_definitions(
        "User Management",
        ("user.read", "View users"),
        ("user.create", "Create users"),
        ("user.update", "Update users"),
        ("user.delete", "Deactivate users"),
        ("user.manage", "Full user management"),
    ),
    *_definitions(
        "Role & Permission Management",
        ("role.read", "View roles"),
        ("role.manage", "Create roles and change their permissions"),
        ("role.assign", "Assign roles to users"),
        ("permission.read", "View permissions and user overrides"),
        ("permission.manage", "Grant or revoke permissions for users"),
    ),
    *_definitions(
        "Device Management",
        ("device.read", "View devices"),
        ("device.create", "Register devices"),
        ("device.update", "Update devices"),
        ("device.delete", "Delete devices"),
        ("device.manage", "Full device management"),
        ("device.control", "Send commands to devices"),
        ("device_model.manage", "Manage device models"),
        ("mqtt.configure", "Manage device connectivity configuration"),
        ("warranty.manage", "Manage device warranties"),
    ),
    *_definitions(
        "Data Management",
        ("device_data.read", "Read device telemetry"),
        ("device_data.export", "Export device telemetry"),
    ),
    *_definitions(
        "Alerts & Notifications",
        ("alert.read", "View device warnings"),
        ("alert.manage", "Configure warning rules and notifications"),
    ),
    *_definitions(
        "Reports & Analytics",
        ("report.read", "View reports"),
        ("report.export", "Export reports"),
    ),
]


# =============================================================================
# CATALOG (DATABASE VIEW)
# =============================================================================

@dataclass
class PermissionFilter:
    """Filter for permission listings. Empty fields do not filter."""
    resource: Optional[str] = None
    action: Optional[str] = None
    group_id: Optional[UUID] = None
    search: Optional[str] = None
    active_only: bool = True


class PermissionCatalog:
    """
    Read view of permission and role definitions.

    No caching here: definitions change rarely and are read far less often
    than effective permission sets.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_permissions(self, filter: Optional[PermissionFilter] = None) -> List[Permission]:
        filter = filter or PermissionFilter()
        stmt = select(Permission)
        if filter.active_only:
            stmt = stmt.where(Permission.is_active.is_(True))
        if filter.resource:
            stmt = stmt.where(Permission.resource == filter.resource)
        if filter.action:
            stmt = stmt.where(Permission.action == filter.action)
        if filter.group_id:
            stmt = stmt.where(Permission.group_id == filter.group_id)
        if filter.search:
            pattern = f"%{filter.search}%"
            stmt = stmt.where(or_(Permission.name.ilike(pattern), Permission.description.ilike(pattern)))
        stmt = stmt.order_by(Permission.resource, Permission.name)
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())

    async def get_permission_by_code(self, code: str, active_only: bool = True) -> Optional[Permission]:
        stmt = select(Permission).where(Permission.name == code)
        if active_only:
            stmt = stmt.where(Permission.is_active.is_(True))
        result = await _exec(self.db, stmt)
        return result.scalar_one_or_none()

    async def get_permissions_by_codes(self, codes: Iterable[str]) -> Dict[str, Permission]:
        """Active permissions keyed by code; unknown codes are simply absent."""
        codes = set(codes)
        if not codes:
            return {}
        stmt = select(Permission).where(Permission.name.in_(codes), Permission.is_active.is_(True))
        result = await _exec(self.db, stmt)
        return {permission.name: permission for permission in result.scalars().all()}

    async def get_role_permissions(self, role_id: UUID) -> List[Permission]:
        """Active permissions attached to a role."""
        stmt = (
            select(Permission)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id, Permission.is_active.is_(True))
            .order_by(Permission.name)
        )
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())

    async def get_role_permission_codes(self, role_ids: Iterable[UUID]) -> Dict[UUID, Set[str]]:
        """Expand several roles in one query: {role_id: {code, ...}}."""
        role_ids = list(role_ids)
        codes: Dict[UUID, Set[str]] = {role_id: set() for role_id in role_ids}
        if not role_ids:
            return codes
        stmt = (
            select(RolePermission.role_id, Permission.name)
            .join(Permission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id.in_(role_ids), Permission.is_active.is_(True))
        )
        result = await _exec(self.db, stmt)
        for role_id, code in result.all():
            codes[role_id].add(code)
        return codes

    async def list_permission_groups(self, active_only: bool = True) -> List[PermissionGroup]:
        stmt = select(PermissionGroup)
        if active_only:
            stmt = stmt.where(PermissionGroup.is_active.is_(True))
        stmt = stmt.order_by(PermissionGroup.sort_order, PermissionGroup.name)
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())

    async def seed_system_permissions(self) -> int:
        """
        Upsert SYSTEM_PERMISSION_GROUPS and SYSTEM_PERMISSIONS. Returns permissions touched.

        Existing rows keep their is_active flag; a permission an administrator
        disabled stays disabled.
        """
        groups: Dict[str, PermissionGroup] = {}
        for order, (name, description) in enumerate(SYSTEM_PERMISSION_GROUPS.items(), start=1):
            result = await _exec(self.db, select(PermissionGroup).where(PermissionGroup.name == name))
            group = result.scalar_one_or_none()
            if group is None:
                group = PermissionGroup(name=name, is_active=True)
                self.db.add(group)
            group.description = description
            group.sort_order = order
            groups[name] = group
        await _flush(self.db)

        count = 0
        for definition in SYSTEM_PERMISSIONS:
            permission = await self.get_permission_by_code(definition.code, active_only=False)
            if permission is None:
                permission = Permission(name=definition.code, is_active=True)
                self.db.add(permission)
            permission.description = definition.description
            permission.resource = definition.resource
            permission.action = definition.action
            permission.group_id = groups[definition.group].id
            permission.updated_at = datetime.utcnow()
            count += 1

        await _commit(self.db)
        logger.info(f"Seeded {count} system permissions")
        return count
