"""
Direct Grant Store - per-user permission overrides.

One row per (user, permission). is_active=True grants the permission,
is_active=False revokes it. A grant or revoke updates the existing row in
place, so there is never a moment where neither applies.

A row takes part in resolution when as_of falls inside its validity window
(both bounds inclusive, NULL bounds open).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .db import _commit, _exec
from .errors import ConflictError, NotFoundError, RBACError, StoreFailureError
from .models import OverrideAction, Permission, UserPermission
from .permissions import PermissionCatalog

logger = logging.getLogger(__name__)

ItemGuard = Callable[[str], Awaitable[None]]


@dataclass
class OperationResult:
    """Outcome of one grant/revoke, as reported to the HTTP layer."""

    success: bool
    action: str
    permission: str
    message: str = ""
    error: Optional[str] = None
    override_id: Optional[UUID] = None

    def to_dict(self) -> dict:
        data = {
            "action": self.action,
            "permission": self.permission,
            "success": self.success,
            "message": self.message,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class OverrideView:
    """An override row as seen at a given instant."""

    id: UUID
    permission: str
    action: OverrideAction
    granted_by: Optional[UUID]
    granted_at: datetime
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]
    notes: Optional[str]
    is_expired: bool
    is_current: bool

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "permission": self.permission,
            "action": self.action.value,
            "granted_by": str(self.granted_by) if self.granted_by else None,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "notes": self.notes,
            "is_expired": self.is_expired,
            "is_current": self.is_current,
        }


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; convert aware values to match."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _time_valid(as_of: datetime):
    return and_(
        or_(UserPermission.valid_from.is_(None), UserPermission.valid_from <= as_of),
        or_(UserPermission.valid_until.is_(None), UserPermission.valid_until >= as_of),
    )


class DirectGrantStore:
    """DB-backed per-user override store."""

    def __init__(self, db: AsyncSession, catalog: Optional[PermissionCatalog] = None):
        self.db = db
        self.catalog = catalog or PermissionCatalog(db)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_active_direct_grants(
        self,
        user_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> List[UserPermission]:
        """
        Override rows valid at as_of, grants and revokes alike.

        Rows pointing at an inactive permission are left out; a disabled
        permission neither grants nor revokes anything.
        """
        as_of = naive_utc(as_of) or datetime.utcnow()
        stmt = (
            select(UserPermission)
            .join(Permission, UserPermission.permission_id == Permission.id)
            .where(
                UserPermission.user_id == user_id,
                Permission.is_active.is_(True),
                _time_valid(as_of),
            )
            .options(selectinload(UserPermission.permission))
        )
        result = await _exec(self.db, stmt)
        return list(result.scalars().all())

    async def get_override(self, user_id: UUID, permission_id: UUID) -> Optional[UserPermission]:
        stmt = select(UserPermission).where(
            UserPermission.user_id == user_id,
            UserPermission.permission_id == permission_id,
        )
        result = await _exec(self.db, stmt)
        return result.scalar_one_or_none()

    async def list_overrides(
        self,
        user_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> List[OverrideView]:
        """Every override of a user, expired ones included."""
        as_of = naive_utc(as_of) or datetime.utcnow()
        stmt = (
            select(UserPermission)
            .where(UserPermission.user_id == user_id)
            .options(selectinload(UserPermission.permission))
            .order_by(UserPermission.granted_at.desc())
        )
        result = await _exec(self.db, stmt)

        views = []
        for row in result.scalars().all():
            views.append(OverrideView(
                id=row.id,
                permission=row.permission.name,
                action=row.action,
                granted_by=row.granted_by,
                granted_at=row.granted_at,
                valid_from=row.valid_from,
                valid_until=row.valid_until,
                notes=row.notes,
                is_expired=row.valid_until is not None and row.valid_until < as_of,
                is_current=row.permission.is_active and row.is_valid_at(as_of),
            ))
        return views

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def grant(
        self,
        user_id: UUID,
        code: str,
        granted_by: Optional[UUID],
        valid_until: Optional[datetime] = None,
        notes: Optional[str] = None,
        valid_from: Optional[datetime] = None,
    ) -> UserPermission:
        return await self._upsert(
            user_id, code, OverrideAction.GRANT, granted_by,
            valid_from=valid_from, valid_until=valid_until, notes=notes,
        )

    async def revoke(
        self,
        user_id: UUID,
        code: str,
        revoked_by: Optional[UUID],
        notes: Optional[str] = None,
        valid_until: Optional[datetime] = None,
        valid_from: Optional[datetime] = None,
    ) -> UserPermission:
        return await self._upsert(
            user_id, code, OverrideAction.REVOKE, revoked_by,
            valid_from=valid_from, valid_until=valid_until, notes=notes,
        )

    async def bulk_update(
        self,
        user_id: UUID,
        grants: Iterable[str],
        revokes: Iterable[str],
        actor: Optional[UUID],
        notes: Optional[str] = None,
        revoke_guard: Optional[ItemGuard] = None,
        grant_guard: Optional[ItemGuard] = None,
    ) -> List[OperationResult]:
        """
        Apply grants, then revokes. Each item commits on its own; a failed
        item is rolled back and reported without touching its siblings.

        grant_guard and revoke_guard, when given, are awaited before each
        grant or revoke and may raise an RBACError to refuse that item.
        """
        results: List[OperationResult] = []

        for code in grants:
            async def _grant(c=code):
                if grant_guard is not None:
                    await grant_guard(c)
                return await self.grant(user_id, c, actor, notes=notes)

            results.append(await self._apply(OverrideAction.GRANT, code, _grant))

        for code in revokes:
            async def _revoke(c=code):
                if revoke_guard is not None:
                    await revoke_guard(c)
                return await self.revoke(user_id, c, actor, notes=notes)

            results.append(await self._apply(OverrideAction.REVOKE, code, _revoke))

        failed = sum(1 for r in results if not r.success)
        logger.info(f"Bulk update for user {user_id}: {len(results) - failed} applied, {failed} failed")
        return results

    async def _apply(self, action: OverrideAction, code: str, operation) -> OperationResult:
        try:
            row = await operation()
        except RBACError as e:
            if isinstance(e, StoreFailureError):
                await self.db.rollback()
            logger.warning(f"Bulk {action.value} of {code} failed: {e.message}")
            return OperationResult(
                success=False,
                action=action.value,
                permission=code,
                message=e.message,
                error=e.kind,
            )
        verb = "granted" if action == OverrideAction.GRANT else "revoked"
        return OperationResult(
            success=True,
            action=action.value,
            permission=code,
            message=f"Permission {code} {verb}",
            override_id=row.id,
        )

    async def _upsert(
        self,
        user_id: UUID,
        code: str,
        action: OverrideAction,
        actor: Optional[UUID],
        *,
        valid_from: Optional[datetime],
        valid_until: Optional[datetime],
        notes: Optional[str],
    ) -> UserPermission:
        permission = await self.catalog.get_permission_by_code(code)
        if permission is None:
            raise NotFoundError("permission", code)

        now = datetime.utcnow()
        valid_from = naive_utc(valid_from) or now
        valid_until = naive_utc(valid_until)
        if valid_until is not None and valid_until <= valid_from:
            raise ConflictError(f"valid_until must be after valid_from for {code}")

        row = await self.get_override(user_id, permission.id)
        if row is None:
            row = UserPermission(user_id=user_id, permission_id=permission.id)
            self.db.add(row)

        row.is_active = action == OverrideAction.GRANT
        row.granted_by = actor
        row.granted_at = now
        row.valid_from = valid_from
        row.valid_until = valid_until
        row.notes = notes

        await _commit(self.db)
        logger.info(f"Permission {code} {action.value} for user {user_id} by {actor}")
        return row
