"""
api/routes/v1/admin.py -- Administrative user management and audit log.

Routes (all require the system admin role):
  GET    /api/v1/admin/users               -- paginated list (role, is_active, search filters)
  GET    /api/v1/admin/users/stats         -- totals and role distribution
  GET    /api/v1/admin/users/{id}          -- one user
  POST   /api/v1/admin/users               -- provision a user
  PUT    /api/v1/admin/users/{id}          -- update names, email, role, active flag
  DELETE /api/v1/admin/users/{id}          -- delete (never yourself, never the last admin)
  PATCH  /api/v1/admin/users/{id}/role     -- change system role
  PATCH  /api/v1/admin/users/{id}/2fa      -- enable/disable two-factor
  PATCH  /api/v1/admin/users/{id}/password -- reset password (ends every session)
  GET    /api/v1/admin/audit-logs          -- audit trail query, newest first

Security:
  [M4] Self-deactivation, self-demotion and last-admin removal are blocked in
       AdminService, not here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import PasswordReset, RoleChange, TwoFactorToggle, UserCreate, UserUpdate, envelope, pagination
from audit.models import AuditAction, AuditResource
from audit.trail import AuditTrail
from auth.admin import AdminService
from auth.dependencies import request_context, require_admin
from auth.models import Identity, SystemRole

# Auth policy: every route in this module depends on require_admin.
router = APIRouter(prefix="/admin")


def _service(request: Request) -> AdminService:
    return request.app.state.admin_service


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users")
async def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[SystemRole] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = Query(None, max_length=100),
    admin: Identity = Depends(require_admin),
) -> JSONResponse:
    users, total = await _service(request).list_users(
        role=role, is_active=is_active, search=search, page=page, limit=limit
    )
    return envelope(
        {"users": [u.public_projection() for u in users], "pagination": pagination(page, limit, total)},
        "Users retrieved successfully.",
    )


@router.get("/users/stats")
async def user_stats(request: Request, admin: Identity = Depends(require_admin)) -> JSONResponse:
    return envelope(await _service(request).stats(), "User statistics retrieved successfully.")


@router.get("/users/{user_id}")
async def get_user(request: Request, user_id: int, admin: Identity = Depends(require_admin)) -> JSONResponse:
    identity = await _service(request).get(user_id)
    return envelope({"user": identity.public_projection()}, "User retrieved successfully.")


@router.post("/users", status_code=201)
async def create_user(request: Request, body: UserCreate, admin: Identity = Depends(require_admin)) -> JSONResponse:
    identity = await _service(request).create(
        admin,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        context=request_context(request),
    )
    return envelope({"user": identity.public_projection()}, "User created successfully.", status_code=201)


@router.put("/users/{user_id}")
async def update_user(
    request: Request, user_id: int, body: UserUpdate, admin: Identity = Depends(require_admin)
) -> JSONResponse:
    identity = await _service(request).update(
        admin,
        user_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        is_active=body.is_active,
        context=request_context(request),
    )
    return envelope({"user": identity.public_projection()}, "User updated successfully.")


@router.delete("/users/{user_id}")
async def delete_user(request: Request, user_id: int, admin: Identity = Depends(require_admin)) -> JSONResponse:
    await _service(request).delete(admin, user_id, request_context(request))
    return envelope(message="User deleted successfully.")


@router.patch("/users/{user_id}/role")
async def change_role(
    request: Request, user_id: int, body: RoleChange, admin: Identity = Depends(require_admin)
) -> JSONResponse:
    identity = await _service(request).change_role(admin, user_id, body.role, request_context(request))
    return envelope({"user": identity.public_projection()}, "User role updated successfully.")


@router.patch("/users/{user_id}/2fa")
async def toggle_two_factor(
    request: Request, user_id: int, body: TwoFactorToggle, admin: Identity = Depends(require_admin)
) -> JSONResponse:
    identity = await _service(request).set_two_factor(admin, user_id, body.enabled, request_context(request))
    state = "enabled" if body.enabled else "disabled"
    return envelope({"user": identity.public_projection()}, f"Two-factor authentication {state}.")


@router.patch("/users/{user_id}/password")
async def reset_password(
    request: Request, user_id: int, body: PasswordReset, admin: Identity = Depends(require_admin)
) -> JSONResponse:
    await _service(request).reset_password(admin, user_id, body.new_password, request_context(request))
    return envelope(message="Password reset successfully.")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/audit-logs")
async def audit_logs(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor_id: Optional[int] = None,
    action: Optional[AuditAction] = None,
    resource: Optional[AuditResource] = None,
    resource_id: Optional[str] = Query(None, max_length=64),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    admin: Identity = Depends(require_admin),
) -> JSONResponse:
    trail: AuditTrail = request.app.state.audit_trail
    result = await trail.query(
        actor_id=actor_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        start=start,
        end=end,
        page=page,
        limit=limit,
    )
    return envelope(
        {
            "logs": [record.to_dict() for record in result.records],
            "pagination": pagination(result.page, result.limit, result.total),
        },
        "Audit logs retrieved successfully.",
    )
