"""
RBAC API - effective permissions and per-user overrides.

Endpoints:
- GET  /api/rbac/me/permissions
- GET  /api/rbac/users/{user_id}/permissions
- GET  /api/rbac/users/{user_id}/overrides
- POST /api/rbac/users/{user_id}/permissions/grant
- POST /api/rbac/users/{user_id}/permissions/revoke
- POST /api/rbac/users/{user_id}/permissions/bulk

Every /users/{user_id} call also checks that the target user sits inside
the caller's organization/department scope.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .context import AccessContext
from .dependencies import RequirePermission, get_access_context, get_access_control, get_db, to_http_exception
from .errors import ConflictError, RBACError
from .services import AccessControlService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/rbac",
    tags=["RBAC"],
    responses={403: {"description": "Insufficient permissions"}},
)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class GrantRequest(BaseModel):
    """Grant a permission directly to a user."""
    permission: str = Field(..., min_length=1, max_length=100, description="Permission code, e.g. device.delete")
    valid_from: Optional[datetime] = Field(None, description="Start of validity (default: now)")
    valid_until: Optional[datetime] = Field(None, description="End of validity (null = no expiry)")
    notes: Optional[str] = Field(None, max_length=1000)


class RevokeRequest(BaseModel):
    """Revoke a permission the user currently holds."""
    permission: str = Field(..., min_length=1, max_length=100)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = Field(None, description="Revocation lapses after this instant")
    notes: Optional[str] = Field(None, max_length=1000)


class BulkUpdateRequest(BaseModel):
    """Grant and revoke several permissions; each item succeeds or fails on its own."""
    grants: List[str] = Field(default_factory=list)
    revokes: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=1000)


def _http_error(error: RBACError) -> HTTPException:
    if isinstance(error, ConflictError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.to_dict())
    return to_http_exception(error)


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get("/me/permissions")
async def get_my_permissions(ctx: AccessContext = Depends(get_access_context)):
    """Effective permissions and scope of the caller."""
    return ctx.to_dict()


@router.get("/users/{user_id}/permissions")
async def get_user_permissions(
    user_id: UUID,
    detailed: bool = Query(default=False, description="Include the source of each permission"),
    ctx: AccessContext = Depends(RequirePermission("permission.read")),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
):
    try:
        await service.authorize_user_target(db, ctx, user_id)
        if detailed:
            resolved = await service.resolve_detailed(db, user_id)
            return {
                "user_id": str(user_id),
                "permissions": [p.to_dict() for p in resolved],
                "total": len(resolved),
            }
        permissions = await service.resolve(db, user_id)
    except RBACError as e:
        raise _http_error(e)
    return {"user_id": str(user_id), "permissions": sorted(permissions), "total": len(permissions)}


@router.get("/users/{user_id}/overrides")
async def get_user_overrides(
    user_id: UUID,
    ctx: AccessContext = Depends(RequirePermission("permission.read")),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
):
    try:
        await service.authorize_user_target(db, ctx, user_id)
        overrides = await service.list_overrides(db, user_id)
    except RBACError as e:
        raise _http_error(e)
    return {"user_id": str(user_id), "overrides": [o.to_dict() for o in overrides], "total": len(overrides)}


# =============================================================================
# MUTATION ENDPOINTS
# =============================================================================

@router.post("/users/{user_id}/permissions/grant")
async def grant_permission(
    user_id: UUID,
    body: GrantRequest,
    ctx: AccessContext = Depends(RequirePermission("permission.manage")),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
):
    try:
        await service.authorize_user_target(db, ctx, user_id, for_update=True)
        row = await service.grant(
            db,
            ctx.user_id,
            user_id,
            body.permission,
            valid_until=body.valid_until,
            notes=body.notes,
            valid_from=body.valid_from,
        )
    except RBACError as e:
        raise _http_error(e)
    return {
        "success": True,
        "message": f"Permission {body.permission} granted",
        "override_id": str(row.id),
    }


@router.post("/users/{user_id}/permissions/revoke")
async def revoke_permission(
    user_id: UUID,
    body: RevokeRequest,
    ctx: AccessContext = Depends(RequirePermission("permission.manage")),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
):
    try:
        await service.authorize_user_target(db, ctx, user_id, for_update=True)
        row = await service.revoke(
            db,
            ctx.user_id,
            user_id,
            body.permission,
            notes=body.notes,
            valid_until=body.valid_until,
            valid_from=body.valid_from,
        )
    except RBACError as e:
        raise _http_error(e)
    return {
        "success": True,
        "message": f"Permission {body.permission} revoked",
        "override_id": str(row.id),
    }


@router.post("/users/{user_id}/permissions/bulk")
async def bulk_update_permissions(
    user_id: UUID,
    body: BulkUpdateRequest,
    ctx: AccessContext = Depends(RequirePermission("permission.manage")),
    db: AsyncSession = Depends(get_db),
    service: AccessControlService = Depends(get_access_control),
):
    """200 when every item applied, 207 on partial success, 400 when none did."""
    if not body.grants and not body.revokes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")

    try:
        await service.authorize_user_target(db, ctx, user_id, for_update=True)
        results = await service.bulk_update(
            db, ctx.user_id, user_id, grants=body.grants, revokes=body.revokes, notes=body.notes,
        )
    except RBACError as e:
        raise _http_error(e)

    succeeded = sum(1 for r in results if r.success)
    if succeeded == len(results):
        status_code = status.HTTP_200_OK
    elif succeeded == 0:
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_207_MULTI_STATUS

    return JSONResponse(
        status_code=status_code,
        content={
            "success": succeeded == len(results),
            "results": [r.to_dict() for r in results],
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
        },
    )
