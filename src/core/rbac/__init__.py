"""
Access control for the device platform.

Resolves each user's effective permission set from roles and per-user
overrides, derives the organization/department scope of a request, and
caches resolved sets per user.

Usage:
    from core.rbac import AccessContext, RequirePermission, get_query_scope

    @router.get("/devices")
    async def list_devices(
        ctx: AccessContext = Depends(RequirePermission("device.read")),
        scope: QueryScope = Depends(get_query_scope),
    ):
        ...
"""

from .models import (
    PermissionGroup,
    Permission,
    Role,
    RolePermission,
    UserRoleAssignment,
    UserPermission,
    RBACAuditLog,
    OverrideAction,
    AuditAction,
)

from .errors import (
    RBACError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    StoreFailureError,
)

from .permissions import (
    SYSTEM_ADMIN,
    ORGANIZATION_MANAGE,
    DEPARTMENT_MANAGE,
    VIEW_ALL_DEPARTMENTS,
    SYSTEM_PERMISSIONS,
    PermissionCatalog,
    PermissionFilter,
)

from .roles import RoleStore, RoleAssignmentStore
from .grants import DirectGrantStore, OperationResult, OverrideView
from .resolver import PermissionResolver, ResolvedPermission
from .scope import Principal, AccessScope, QueryScope, ScopeResolver
from .cache import PermissionCache
from .context import AccessContext
from .services import AccessControlService
from .middleware import PrincipalMiddleware

from .dependencies import (
    get_access_context,
    get_access_control,
    get_db,
    get_query_scope,
    require_permissions,
    require_any_permission,
    RequirePermission,
)

__all__ = [
    # Models
    "PermissionGroup",
    "Permission",
    "Role",
    "RolePermission",
    "UserRoleAssignment",
    "UserPermission",
    "RBACAuditLog",
    "OverrideAction",
    "AuditAction",
    # Errors
    "RBACError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "StoreFailureError",
    # Catalog
    "SYSTEM_ADMIN",
    "ORGANIZATION_MANAGE",
    "DEPARTMENT_MANAGE",
    "VIEW_ALL_DEPARTMENTS",
    "SYSTEM_PERMISSIONS",
    "PermissionCatalog",
    "PermissionFilter",
    # Stores
    "RoleStore",
    "RoleAssignmentStore",
    "DirectGrantStore",
    "OperationResult",
    "OverrideView",
    # Resolution
    "PermissionResolver",
    "ResolvedPermission",
    "Principal",
    "AccessScope",
    "QueryScope",
    "ScopeResolver",
    "PermissionCache",
    "AccessContext",
    "AccessControlService",
    # Web
    "PrincipalMiddleware",
    "get_access_context",
    "get_access_control",
    "get_db",
    "get_query_scope",
    "require_permissions",
    "require_any_permission",
    "RequirePermission",
]
