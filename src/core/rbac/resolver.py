"""
Permission Resolver - computes a user's effective permission set.

    effective = (role_derived ∪ granted) \\ revoked

role_derived: active permissions of active roles the user actively holds.
granted / revoked: override rows valid at as_of, split by is_active.

Unknown or inactive users resolve to the empty set (default deny). Role
permissions are scope-independent; scope is ScopeResolver's concern.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import User

from .db import _exec
from .grants import DirectGrantStore
from .models import UserPermission
from .permissions import PermissionCatalog
from .roles import RoleAssignmentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPermission:
    """One effective permission and where it came from."""

    code: str
    source: str  # 'role' or 'direct'
    roles: Tuple[str, ...] = ()
    granted_by: Optional[UUID] = None
    granted_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"code": self.code, "source": self.source}
        if self.roles:
            data["roles"] = list(self.roles)
        if self.source == "direct":
            data.update({
                "granted_by": str(self.granted_by) if self.granted_by else None,
                "granted_at": self.granted_at.isoformat() if self.granted_at else None,
                "valid_until": self.valid_until.isoformat() if self.valid_until else None,
                "notes": self.notes,
            })
        return data


@dataclass
class _Breakdown:
    role_codes: Dict[str, Set[str]] = field(default_factory=dict)  # code -> role names
    granted: Dict[str, UserPermission] = field(default_factory=dict)
    revoked: Dict[str, UserPermission] = field(default_factory=dict)

    def effective(self) -> FrozenSet[str]:
        return frozenset((set(self.role_codes) | set(self.granted)) - set(self.revoked))


class PermissionResolver:
    """Pure computation over the three stores. Never caches."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[PermissionCatalog] = None,
        assignments: Optional[RoleAssignmentStore] = None,
        grants: Optional[DirectGrantStore] = None,
    ):
        self.db = db
        self.catalog = catalog or PermissionCatalog(db)
        self.assignments = assignments or RoleAssignmentStore(db, self.catalog)
        self.grants = grants or DirectGrantStore(db, self.catalog)

    async def get_user(self, user_id: UUID) -> Optional[User]:
        result = await _exec(self.db, select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def resolve(self, user_id: UUID, as_of: Optional[datetime] = None) -> FrozenSet[str]:
        breakdown = await self._breakdown(user_id, as_of)
        if breakdown is None:
            return frozenset()
        return breakdown.effective()

    async def resolve_detailed(
        self,
        user_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> List[ResolvedPermission]:
        """Effective permissions with provenance, sorted by code."""
        breakdown = await self._breakdown(user_id, as_of)
        if breakdown is None:
            return []

        detailed = []
        for code in sorted(breakdown.effective()):
            roles = tuple(sorted(breakdown.role_codes.get(code, ())))
            row = breakdown.granted.get(code)
            if row is not None:
                detailed.append(ResolvedPermission(
                    code=code,
                    source="direct",
                    roles=roles,
                    granted_by=row.granted_by,
                    granted_at=row.granted_at,
                    valid_until=row.valid_until,
                    notes=row.notes,
                ))
            else:
                detailed.append(ResolvedPermission(code=code, source="role", roles=roles))
        return detailed

    async def has_permission(self, user_id: UUID, code: str, as_of: Optional[datetime] = None) -> bool:
        return code in await self.resolve(user_id, as_of)

    async def has_any_permission(
        self,
        user_id: UUID,
        codes: Iterable[str],
        as_of: Optional[datetime] = None,
    ) -> bool:
        permissions = await self.resolve(user_id, as_of)
        return any(code in permissions for code in codes)

    async def _breakdown(self, user_id: UUID, as_of: Optional[datetime]) -> Optional[_Breakdown]:
        as_of = as_of or datetime.utcnow()

        user = await self.get_user(user_id)
        if user is None or not user.is_active:
            logger.debug(f"User {user_id} unknown or inactive; resolving to no permissions")
            return None

        breakdown = _Breakdown()

        assignments = await self.assignments.get_active_role_assignments(user_id)
        role_names = {a.role_id: a.role.name for a in assignments}
        expanded = await self.catalog.get_role_permission_codes(role_names.keys())
        for role_id, codes in expanded.items():
            for code in codes:
                breakdown.role_codes.setdefault(code, set()).add(role_names[role_id])

        for row in await self.grants.get_active_direct_grants(user_id, as_of):
            target = breakdown.granted if row.is_active else breakdown.revoked
            target[row.permission.name] = row

        return breakdown
