"""
RBAC Database Models - SQLAlchemy ORM models for device platform access control.

Tables:
- permission_groups: UI grouping of permissions
- permissions: Permission catalog (code = name, e.g. "device.delete")
- roles: System roles and organization-scoped custom roles
- role_permissions: Role-to-permission mappings
- user_roles: User-to-role assignments (soft-deactivated, never deleted)
- user_permissions: Per-user grant/revoke overrides with validity window
- rbac_audit_log: Trail of permission mutations and denied requests
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime,
    Text, ForeignKey, Index, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship

from database.models import Base, JSONB


# =============================================================================
# ENUMERATIONS
# =============================================================================

class OverrideAction(str, PyEnum):
    """Direction of a per-user permission override."""
    GRANT = "grant"      # is_active = true: adds a permission roles don't confer
    REVOKE = "revoke"    # is_active = false: removes a permission roles confer


class AuditAction(str, PyEnum):
    """Actions logged in the RBAC audit trail."""
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    ROLE_PERMISSIONS_UPDATED = "role_permissions_updated"
    USER_DEACTIVATED = "user_deactivated"
    ACCESS_DENIED = "access_denied"


# =============================================================================
# PERMISSION GROUP
# =============================================================================

class PermissionGroup(Base):
    """Display grouping for permissions (system administration, devices, ...)."""
    __tablename__ = "permission_groups"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, default=100)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    permissions = relationship("Permission", back_populates="group")

    def __repr__(self):
        return f"<PermissionGroup(name={self.name})>"


# =============================================================================
# PERMISSION MODEL
# =============================================================================

class Permission(Base):
    """
    Permission definitions.

    The name column is the permission code (resource.action). Rows are only
    changed through administrative mutation, never by the resolver.
    """
    __tablename__ = "permissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    resource = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=False)

    group_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("permission_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Disabled permissions confer nothing, whatever references them
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    group = relationship("PermissionGroup", back_populates="permissions")
    role_permissions = relationship(
        "RolePermission",
        back_populates="permission",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_permission_resource_action", "resource", "action"),
    )

    @property
    def code(self) -> str:
        return self.name

    def __repr__(self):
        return f"<Permission(code={self.name})>"


# =============================================================================
# ROLE MODEL
# =============================================================================

class Role(Base):
    """
    Named bundle of permissions.

    System roles (is_system_role=True) are platform-wide and carry no
    organization. Custom roles belong to one organization.
    """
    __tablename__ = "roles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    is_system_role = Column(Boolean, default=False, nullable=False, index=True)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_by = Column(Uuid(as_uuid=True), nullable=True)

    role_permissions = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan"
    )
    assignments = relationship("UserRoleAssignment", back_populates="role")

    __table_args__ = (
        UniqueConstraint("name", "organization_id", name="uq_role_name_org"),
    )

    def __repr__(self):
        return f"<Role(name={self.name}, system={self.is_system_role})>"


# =============================================================================
# ROLE-PERMISSION MAPPING
# =============================================================================

class RolePermission(Base):
    """Role-to-Permission mapping."""
    __tablename__ = "role_permissions"

    role_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("roles.id", ondelete="CASCADE"),
        primary_key=True
    )
    permission_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        primary_key=True
    )

    granted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    granted_by = Column(Uuid(as_uuid=True), nullable=True)

    role = relationship("Role", back_populates="role_permissions")
    permission = relationship("Permission", back_populates="role_permissions")

    __table_args__ = (
        Index("ix_role_permission_permission", "permission_id"),
    )

    def __repr__(self):
        return f"<RolePermission(role={self.role_id}, permission={self.permission_id})>"


# =============================================================================
# USER ROLE ASSIGNMENT
# =============================================================================

class UserRoleAssignment(Base):
    """
    User-to-Role assignment.

    Roles have no validity window; an assignment is either active or not.
    Revocation and user deletion flip is_active to False.
    """
    __tablename__ = "user_roles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )
    role_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False
    )

    # Assignment scope - NULL for system roles
    organization_id = Column(Uuid(as_uuid=True), nullable=True)
    department_id = Column(Uuid(as_uuid=True), nullable=True)

    assigned_by = Column(Uuid(as_uuid=True), nullable=True)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    role = relationship("Role", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
        Index("ix_user_role_user_active", "user_id", "is_active"),
        Index("ix_user_role_role", "role_id"),
    )

    def __repr__(self):
        return f"<UserRoleAssignment(user={self.user_id}, role={self.role_id}, active={self.is_active})>"


# =============================================================================
# USER PERMISSION OVERRIDE
# =============================================================================

class UserPermission(Base):
    """
    Per-user permission override.

    is_active=True grants the permission, is_active=False revokes it. There is
    exactly one row per (user, permission); a new grant or revoke updates it
    in place.
    """
    __tablename__ = "user_permissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    granted_by = Column(Uuid(as_uuid=True), nullable=True)
    granted_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Validity window - NULL bounds are open
    valid_from = Column(DateTime, default=datetime.utcnow, nullable=True)
    valid_until = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    notes = Column(Text, nullable=True)

    permission = relationship("Permission")

    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", name="uq_user_permission"),
    )

    @property
    def action(self) -> OverrideAction:
        return OverrideAction.GRANT if self.is_active else OverrideAction.REVOKE

    def is_valid_at(self, as_of: datetime) -> bool:
        """Whether the row takes part in resolution at as_of (bounds inclusive)."""
        if self.valid_from is not None and self.valid_from > as_of:
            return False
        if self.valid_until is not None and self.valid_until < as_of:
            return False
        return True

    def __repr__(self):
        return f"<UserPermission(user={self.user_id}, permission={self.permission_id}, action={self.action.value})>"


# =============================================================================
# RBAC AUDIT LOG
# =============================================================================

class RBACAuditLog(Base):
    """Audit trail for permission mutations and denied cross-scope requests."""
    __tablename__ = "rbac_audit_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    action = Column(String(50), nullable=False, index=True)
    actor_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    target_user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    permission_code = Column(String(100), nullable=True)
    role_id = Column(Uuid(as_uuid=True), nullable=True)
    details = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<RBACAuditLog(action={self.action}, target={self.target_user_id})>"
