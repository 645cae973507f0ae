"""
Core RBAC dependencies and request context.

The AccessControlService and the session factory live on app.state (set up
in web.app's lifespan). get_access_context builds the request's AccessContext
once; the require_* helpers check it.
"""

from __future__ import annotations

from typing import AsyncGenerator, Iterable, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .context import AccessContext
from .errors import NotFoundError, RBACError
from .scope import QueryScope
from .services import AccessControlService


def to_http_exception(error: RBACError) -> HTTPException:
    """Translate a core error into an HTTP error with the same payload."""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())


def get_access_control(request: Request) -> AccessControlService:
    return request.app.state.access_control


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; rolled back on error, always closed."""
    session = request.app.state.session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


def get_current_user_id(request: Request) -> UUID:
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


async def get_access_context(
    request: Request,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
) -> AccessContext:
    """Resolve permissions and scope for the current request."""
    try:
        ctx = await service.build_context(db, user_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    except RBACError as e:
        raise to_http_exception(e)
    request.state.access = ctx
    return ctx


def require_permissions(permission_codes: Iterable[str]):
    """Require all specified permissions."""
    required = set(permission_codes)

    async def dependency(ctx: AccessContext = Depends(get_access_context)) -> AccessContext:
        missing = [code for code in required if not ctx.has_permission(code)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}",
            )
        return ctx

    return dependency


def require_any_permission(permission_codes: Iterable[str]):
    """Require at least one permission."""
    required = set(permission_codes)

    async def dependency(ctx: AccessContext = Depends(get_access_context)) -> AccessContext:
        if not ctx.has_any_permission(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(sorted(required))}",
            )
        return ctx

    return dependency


class RequirePermission:
    """Class-based dependency for a single permission."""

    def __init__(self, permission_code: str):
        self.permission_code = permission_code

    async def __call__(self, ctx: AccessContext = Depends(get_access_context)) -> AccessContext:
        if not ctx.has_permission(self.permission_code):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required permission: {self.permission_code}",
            )
        return ctx


async def get_query_scope(
    organization_id: Optional[UUID] = Query(default=None),
    department_id: Optional[UUID] = Query(default=None),
    ctx: AccessContext = Depends(get_access_context),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
) -> QueryScope:
    """Scope filter for list/detail queries from ?organization_id=&department_id=."""
    try:
        return await service.authorize_request(db, ctx, organization_id, department_id)
    except RBACError as e:
        raise to_http_exception(e)
