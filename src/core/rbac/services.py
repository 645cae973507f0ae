"""
Access Control Service - service root of the RBAC core.

Owns the PermissionCache and its sweep lifecycle (start/stop). Every other
method takes the request's AsyncSession, so one service instance serves the
whole application.

Mutations follow one order: write, invalidate every affected user, then
append an audit row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import RBACSettings, get_rbac_settings
from database.models import Department, User

from .cache import PermissionCache
from .context import AccessContext
from .db import _commit, _exec
from .errors import ConflictError, ForbiddenError, NotFoundError
from .grants import DirectGrantStore, OperationResult, OverrideView
from .models import AuditAction, RBACAuditLog, Role, UserPermission, UserRoleAssignment
from .permissions import SYSTEM_ADMIN, PermissionCatalog
from .resolver import PermissionResolver, ResolvedPermission
from .roles import RoleAssignmentStore, RoleStore
from .scope import Principal, QueryScope, ScopeResolver

logger = logging.getLogger(__name__)


class AccessControlService:
    """Facade over catalog, stores, resolver, scope resolver and cache."""

    def __init__(
        self,
        cache: Optional[PermissionCache] = None,
        scope_resolver: Optional[ScopeResolver] = None,
        settings: Optional[RBACSettings] = None,
    ):
        settings = settings or get_rbac_settings()
        # PermissionCache defines __len__, so an empty one is falsy
        self.cache = cache if cache is not None else PermissionCache.from_settings(settings)
        self.scope_resolver = scope_resolver if scope_resolver is not None else ScopeResolver()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        if self.cache.enabled:
            self.cache.start()
        logger.info("Access control service started")

    async def stop(self) -> None:
        await self.cache.stop()
        self.cache.clear()
        logger.info("Access control service stopped")

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve(
        self,
        db: AsyncSession,
        user_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> FrozenSet[str]:
        """Effective permissions. Point-in-time queries bypass the cache."""
        resolver = PermissionResolver(db)
        if as_of is not None:
            return await resolver.resolve(user_id, as_of)
        return await self.cache.get(user_id, resolver.resolve)

    async def resolve_detailed(
        self,
        db: AsyncSession,
        user_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> List[ResolvedPermission]:
        return await PermissionResolver(db).resolve_detailed(user_id, as_of)

    async def has_permission(self, db: AsyncSession, user_id: UUID, code: str) -> bool:
        return code in await self.resolve(db, user_id)

    async def has_any_permission(self, db: AsyncSession, user_id: UUID, codes: Iterable[str]) -> bool:
        permissions = await self.resolve(db, user_id)
        return any(code in permissions for code in codes)

    async def build_context(self, db: AsyncSession, user_id: UUID) -> AccessContext:
        """
        Resolve once for a request.

        Raises:
            NotFoundError: unknown user.
            ForbiddenError: deactivated user.
        """
        user = await self._require_user(db, user_id)
        if not user.is_active:
            raise ForbiddenError("User account is inactive")

        principal = Principal(
            user_id=user.id,
            organization_id=user.organization_id,
            department_id=user.department_id,
        )
        permissions = await self.resolve(db, user_id)
        scope = self.scope_resolver.compute_scope(principal, permissions)
        return AccessContext(principal=principal, permissions=permissions, scope=scope)

    async def authorize_request(
        self,
        db: AsyncSession,
        ctx: AccessContext,
        organization_id: Optional[UUID] = None,
        department_id: Optional[UUID] = None,
    ) -> QueryScope:
        """
        Check a requested organization/department for this request.

        A requested department must exist and belong to the effective
        organization. Denials are audited and re-raised.
        """
        try:
            query_scope = self.scope_resolver.authorize(ctx.scope, organization_id, department_id)
            if department_id is not None:
                await self._check_department(db, department_id, query_scope.organization_id)
        except ForbiddenError as e:
            await self._audit(
                db,
                AuditAction.ACCESS_DENIED,
                actor_id=ctx.user_id,
                details={
                    "organization_id": str(organization_id) if organization_id else None,
                    "department_id": str(department_id) if department_id else None,
                    "reason": e.message,
                },
            )
            raise
        return query_scope

    async def authorize_user_target(
        self,
        db: AsyncSession,
        ctx: AccessContext,
        user_id: UUID,
        for_update: bool = False,
    ) -> User:
        """
        The target user must exist and sit inside the caller's scope.

        Callers may always read themselves; for_update drops that shortcut so
        changes to one's own permissions go through the regular scope check.
        """
        user = await self._require_user(db, user_id)
        if ctx.is_system_admin or (user.id == ctx.user_id and not for_update):
            return user

        reason = None
        if user.organization_id is None:
            # Platform-level users are visible to system admins only
            reason = "target user has no organization"
        elif (
            user.department_id is None
            and ctx.scope.home_department_id is not None
            and not ctx.scope.can_cross_departments
        ):
            # Organization-level users sit above every department
            reason = "target user is not in the caller's department"

        if reason is not None:
            await self._audit(
                db,
                AuditAction.ACCESS_DENIED,
                actor_id=ctx.user_id,
                target_user_id=user_id,
                details={"reason": reason},
            )
            raise ForbiddenError(f"Target user is outside the caller's scope: {reason}")

        await self.authorize_request(db, ctx, user.organization_id, user.department_id)
        return user

    # =========================================================================
    # DIRECT OVERRIDES
    # =========================================================================

    async def list_overrides(
        self,
        db: AsyncSession,
        user_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> List[OverrideView]:
        await self._require_user(db, user_id)
        return await DirectGrantStore(db).list_overrides(user_id, as_of)

    async def grant(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        user_id: UUID,
        code: str,
        valid_until: Optional[datetime] = None,
        notes: Optional[str] = None,
        valid_from: Optional[datetime] = None,
    ) -> UserPermission:
        """
        Raises:
            ForbiddenError: the actor does not hold the permission themselves.
        """
        await self._require_user(db, user_id)
        await self._require_grantable(db, actor_id, code)
        row = await DirectGrantStore(db).grant(
            user_id, code, actor_id, valid_until=valid_until, notes=notes, valid_from=valid_from,
        )
        self.cache.invalidate(user_id)
        await self._audit(
            db,
            AuditAction.PERMISSION_GRANTED,
            actor_id=actor_id,
            target_user_id=user_id,
            permission_code=code,
            details=_window(row),
        )
        return row

    async def revoke(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        user_id: UUID,
        code: str,
        notes: Optional[str] = None,
        valid_until: Optional[datetime] = None,
        valid_from: Optional[datetime] = None,
    ) -> UserPermission:
        """
        Raises:
            ConflictError: the user does not currently hold the permission.
        """
        await self._require_user(db, user_id)
        await self._require_held(db, user_id, code)

        row = await DirectGrantStore(db).revoke(
            user_id, code, actor_id, notes=notes, valid_until=valid_until, valid_from=valid_from,
        )
        self.cache.invalidate(user_id)
        await self._audit(
            db,
            AuditAction.PERMISSION_REVOKED,
            actor_id=actor_id,
            target_user_id=user_id,
            permission_code=code,
            details=_window(row),
        )
        return row

    async def bulk_update(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        user_id: UUID,
        grants: Iterable[str] = (),
        revokes: Iterable[str] = (),
        notes: Optional[str] = None,
    ) -> List[OperationResult]:
        await self._require_user(db, user_id)

        async def revoke_guard(code: str) -> None:
            await self._require_held(db, user_id, code)

        async def grant_guard(code: str) -> None:
            await self._require_grantable(db, actor_id, code)

        try:
            results = await DirectGrantStore(db).bulk_update(
                user_id, grants, revokes, actor_id, notes=notes,
                revoke_guard=revoke_guard, grant_guard=grant_guard,
            )
        finally:
            self.cache.invalidate(user_id)

        applied = [r for r in results if r.success]
        for result in applied:
            db.add(RBACAuditLog(
                action=(
                    AuditAction.PERMISSION_GRANTED.value
                    if result.action == "grant"
                    else AuditAction.PERMISSION_REVOKED.value
                ),
                actor_id=actor_id,
                target_user_id=user_id,
                permission_code=result.permission,
                details={"bulk": True, "notes": notes},
            ))
        if applied:
            await _commit(db)
        return results

    # =========================================================================
    # ROLES
    # =========================================================================

    async def create_role(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        name: str,
        permission_codes: Iterable[str] = (),
        description: Optional[str] = None,
        is_system_role: bool = False,
        organization_id: Optional[UUID] = None,
    ) -> Role:
        return await RoleStore(db).create_role(
            name=name,
            created_by=actor_id,
            permission_codes=permission_codes,
            description=description,
            is_system_role=is_system_role,
            organization_id=organization_id,
        )

    async def assign_role(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        user_id: UUID,
        role_id: UUID,
        organization_id: Optional[UUID] = None,
        department_id: Optional[UUID] = None,
    ) -> UserRoleAssignment:
        await self._require_user(db, user_id)
        assignment = await RoleAssignmentStore(db).assign_role(
            user_id=user_id,
            role_id=role_id,
            assigned_by=actor_id,
            organization_id=organization_id,
            department_id=department_id,
        )
        self.cache.invalidate(user_id)
        await self._audit(db, AuditAction.ROLE_ASSIGNED, actor_id=actor_id, target_user_id=user_id, role_id=role_id)
        return assignment

    async def remove_role(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        user_id: UUID,
        role_id: UUID,
    ) -> UserRoleAssignment:
        assignment = await RoleAssignmentStore(db).deactivate_assignment(user_id, role_id)
        self.cache.invalidate(user_id)
        await self._audit(db, AuditAction.ROLE_REMOVED, actor_id=actor_id, target_user_id=user_id, role_id=role_id)
        return assignment

    async def update_role_permissions(
        self,
        db: AsyncSession,
        actor_id: Optional[UUID],
        role_id: UUID,
        permission_codes: Iterable[str],
    ) -> List[UUID]:
        """Replace a role's permissions. Returns the holders that were invalidated."""
        codes = await RoleStore(db).set_role_permissions(role_id, permission_codes, actor_id)
        holders = await RoleAssignmentStore(db).list_role_holders(role_id)
        self.cache.invalidate_many(holders)
        await self._audit(
            db,
            AuditAction.ROLE_PERMISSIONS_UPDATED,
            actor_id=actor_id,
            role_id=role_id,
            details={"permissions": codes, "holders": len(holders)},
        )
        return holders

    # =========================================================================
    # USERS
    # =========================================================================

    async def deactivate_user(self, db: AsyncSession, actor_id: Optional[UUID], user_id: UUID) -> int:
        """Deactivate a user and all their role assignments. Returns assignments touched."""
        user = await self._require_user(db, user_id)
        user.is_active = False
        count = await RoleAssignmentStore(db).deactivate_user_assignments(user_id)
        self.cache.invalidate(user_id)
        await self._audit(
            db,
            AuditAction.USER_DEACTIVATED,
            actor_id=actor_id,
            target_user_id=user_id,
            details={"assignments_deactivated": count},
        )
        return count

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _require_user(self, db: AsyncSession, user_id: UUID) -> User:
        result = await _exec(db, select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    async def _require_held(self, db: AsyncSession, user_id: UUID, code: str) -> None:
        # Fresh resolution; a cached set may predate earlier items of the same batch
        if code not in await PermissionResolver(db).resolve(user_id):
            raise ConflictError(f"User does not currently hold permission {code}")

    async def _require_grantable(self, db: AsyncSession, actor_id: Optional[UUID], code: str) -> None:
        # actor_id None marks an internal call (seeding, provisioning)
        if actor_id is None:
            return
        if await PermissionCatalog(db).get_permission_by_code(code) is None:
            raise NotFoundError("permission", code)
        held = await PermissionResolver(db).resolve(actor_id)
        if SYSTEM_ADMIN in held:
            return
        if code == SYSTEM_ADMIN or code not in held:
            logger.warning(f"User {actor_id} tried to grant {code} without holding it")
            raise ForbiddenError(
                f"Cannot grant {code}: it is not among the caller's own permissions",
                required_permission=code,
            )

    async def _check_department(
        self,
        db: AsyncSession,
        department_id: UUID,
        organization_id: Optional[UUID],
    ) -> None:
        result = await _exec(db, select(Department).where(Department.id == department_id))
        department = result.scalar_one_or_none()
        if department is None:
            raise NotFoundError("department", department_id)
        if organization_id is not None and department.organization_id != organization_id:
            raise ForbiddenError("Department does not belong to the requested organization")

    async def _audit(
        self,
        db: AsyncSession,
        action: AuditAction,
        *,
        actor_id: Optional[UUID] = None,
        target_user_id: Optional[UUID] = None,
        permission_code: Optional[str] = None,
        role_id: Optional[UUID] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        db.add(RBACAuditLog(
            action=action.value,
            actor_id=actor_id,
            target_user_id=target_user_id,
            permission_code=permission_code,
            role_id=role_id,
            details=details,
        ))
        await _commit(db)
        if action == AuditAction.ACCESS_DENIED:
            logger.warning(f"Access denied for user {actor_id}: {details}")
        else:
            logger.info(f"RBAC audit: {action.value} actor={actor_id} target={target_user_id or role_id}")


def _window(row: UserPermission) -> Dict[str, Any]:
    return {
        "valid_from": row.valid_from.isoformat() if row.valid_from else None,
        "valid_until": row.valid_until.isoformat() if row.valid_until else None,
        "notes": row.notes,
    }
