"""
Access Context - the resolved authorization state of one request.

Built once per request by AccessControlService.build_context() and passed
explicitly to whatever needs it. Handlers never re-derive permissions.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional
from uuid import UUID

from .errors import ForbiddenError
from .permissions import SYSTEM_ADMIN
from .scope import AccessScope, Principal, QueryScope, ScopeResolver

_scope_resolver = ScopeResolver()


@dataclass(frozen=True)
class AccessContext:
    """Immutable principal + effective permissions + scope."""

    principal: Principal
    permissions: FrozenSet[str]
    scope: AccessScope

    @property
    def user_id(self) -> UUID:
        return self.principal.user_id

    @property
    def is_system_admin(self) -> bool:
        return self.scope.is_system_admin

    def has_permission(self, code: str) -> bool:
        if SYSTEM_ADMIN in self.permissions:
            return True
        return code in self.permissions

    def has_any_permission(self, codes: Iterable[str]) -> bool:
        return any(self.has_permission(code) for code in codes)

    def has_all_permissions(self, codes: Iterable[str]) -> bool:
        return all(self.has_permission(code) for code in codes)

    def require_permission(self, code: str) -> None:
        if not self.has_permission(code):
            raise ForbiddenError(f"Required permission: {code}", required_permission=code)

    def require_any_permission(self, codes: Iterable[str]) -> None:
        codes = list(codes)
        if not self.has_any_permission(codes):
            raise ForbiddenError(f"Requires one of: {', '.join(sorted(codes))}")

    def authorize(
        self,
        organization_id: Optional[UUID] = None,
        department_id: Optional[UUID] = None,
    ) -> QueryScope:
        """Scope check only; department membership is checked by the service."""
        return _scope_resolver.authorize(self.scope, organization_id, department_id)

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.principal.user_id),
            "organization_id": str(self.principal.organization_id) if self.principal.organization_id else None,
            "department_id": str(self.principal.department_id) if self.principal.department_id else None,
            "permissions": sorted(self.permissions),
            "scope": self.scope.to_dict(),
        }
