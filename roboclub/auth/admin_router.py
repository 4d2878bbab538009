"""
Administration routers.

- ``users_router``: user listing, admin updates, deactivation and reactivation
- ``role_approvals_router``: management of the role pre-approval registry
"""
from typing import Dict, Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from roboclub.base_microservice import BaseMicroservice, get_db_session
from roboclub.services import Services, get_services
from roboclub.auth.errors import ValidationError
from roboclub.auth.middleware import (
    Identity, authenticate, require_admin, require_ownership,
)
from roboclub.auth.models import User, ROLES, derive_default_permissions, normalize_email
from roboclub.auth.role_approvals import RoleApprovalUpsert, role_approval_out
from roboclub.auth.users import AdminUserUpdate, user_out

users_router = APIRouter(tags=["users"])
role_approvals_router = APIRouter(tags=["role-approvals"])

base_service = BaseMicroservice("admin")


async def lookup_user(user_id: str, db: AsyncSession) -> Optional[User]:
    """Fresh user fetch for ownership checks on ``/users/{user_id}``."""
    try:
        return await db.get(User, int(user_id), populate_existing=True)
    except ValueError:
        return None


# --- Users ---

@users_router.get("", response_model=Dict[str, Any])
async def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """List users, optionally filtered by role and active flag."""
    if role is not None and role not in ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(ROLES)}")
    result = await services.users.list_users(db, role=role, is_active=is_active, skip=skip, limit=limit)
    return {
        "status": "ok",
        "message": "Users retrieved successfully",
        "data": {
            "users": [user_out(u) for u in result["users"]],
            "total": result["total"],
            "skip": skip,
            "limit": limit,
        },
    }


@users_router.get("/roles", response_model=Dict[str, Any])
async def list_roles(identity: Identity = Depends(authenticate)):
    """List the role ladder with each role's default permissions."""
    return {
        "status": "ok",
        "message": "Roles retrieved successfully",
        "data": [
            {"name": role, "default_permissions": derive_default_permissions(role)}
            for role in ROLES
        ],
    }


@users_router.get("/{user_id}", response_model=Dict[str, Any])
async def get_user(
    user_id: int,
    user: User = Depends(require_ownership(lookup_user, id_field="user_id", owner_fields=("id",), members_field=None)),
):
    """Get a user; callers may read their own record, admins any record."""
    return {
        "status": "ok",
        "message": "User retrieved successfully",
        "data": user_out(user),
    }


@users_router.put("/{user_id}", response_model=Dict[str, Any])
async def update_user(
    user_id: int,
    update_data: AdminUserUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Update any user field, including role and permissions.

    A role change takes effect in guards once the user gets a new access
    token. The user is notified of the new role by email.
    """
    if user_id == identity.id and update_data.is_active is False:
        raise ValidationError("You cannot deactivate your own account")

    user = await services.users.get_or_404(user_id, db)
    previous_role = user.role
    was_active = user.is_active

    try:
        user = await services.users.admin_update(user, update_data, db)
    except Exception as e:
        base_service.log_error(e, context=f"Admin update of user {user_id}")
        raise

    if was_active and not user.is_active:
        await services.tokens.revoke_all(user.id)
    if user.role != previous_role:
        background_tasks.add_task(
            services.notifier.send_role_assigned, user.email, user.full_name, user.role
        )

    services.audit.record(
        "admin_user_update", identity.id, True, request,
        target_user_id=user.id, fields=list(update_data.model_dump(exclude_unset=True).keys()),
    )
    base_service.log_event("user.admin_updated", {
        "admin_id": identity.id,
        "user_id": user.id,
        "previous_role": previous_role,
        "role": user.role,
    })
    return {
        "status": "ok",
        "message": "User updated successfully",
        "data": user_out(user),
    }


@users_router.delete("/{user_id}", response_model=Dict[str, Any])
async def deactivate_user(
    user_id: int,
    request: Request,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """Soft-delete a user: the record stays, the account stops authenticating."""
    if user_id == identity.id:
        raise ValidationError("You cannot deactivate your own account")

    user = await services.users.get_or_404(user_id, db)
    await services.users.deactivate(user, db)
    await services.tokens.revoke_all(user.id)

    services.audit.record("user_deactivated", identity.id, True, request, target_user_id=user.id)
    base_service.log_event("user.deactivated", {"admin_id": identity.id, "user_id": user.id})
    return {
        "status": "ok",
        "message": "User deactivated successfully",
        "data": {"id": user.id, "is_active": False},
    }


@users_router.post("/{user_id}/reactivate", response_model=Dict[str, Any])
async def reactivate_user(
    user_id: int,
    request: Request,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    user = await services.users.get_or_404(user_id, db)
    await services.users.reactivate(user, db)

    services.audit.record("user_reactivated", identity.id, True, request, target_user_id=user.id)
    return {
        "status": "ok",
        "message": "User reactivated successfully",
        "data": user_out(user),
    }


# --- Role approvals ---

@role_approvals_router.get("", response_model=Dict[str, Any])
async def list_role_approvals(
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    approvals = await services.role_approvals.list_all(db)
    return {
        "status": "ok",
        "message": "Role approvals retrieved successfully",
        "data": [role_approval_out(a) for a in approvals],
    }


@role_approvals_router.post("", status_code=201)
async def upsert_role_approval(
    body: RoleApprovalUpsert,
    request: Request,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """Create or replace the approved roles for an email."""
    approval = await services.role_approvals.upsert(
        body.email, body.allowed_roles, db, note=body.note, actor_id=identity.id
    )
    services.audit.record(
        "role_approval_saved", identity.id, True, request,
        email=approval.email, allowed_roles=approval.allowed_roles,
    )
    base_service.log_event("role_approval.saved", {
        "admin_id": identity.id,
        "email": approval.email,
        "allowed_roles": approval.allowed_roles,
    })
    return base_service.mcp_response(
        data=role_approval_out(approval),
        message="Role approval saved",
        status_code=201,
    )


@role_approvals_router.get("/{email}", response_model=Dict[str, Any])
async def get_role_approval(
    email: str,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    approval = await services.role_approvals.get(email, db)
    return {
        "status": "ok",
        "message": "Role approval retrieved successfully",
        "data": role_approval_out(approval),
    }


@role_approvals_router.delete("/{email}", response_model=Dict[str, Any])
async def delete_role_approval(
    email: str,
    request: Request,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    await services.role_approvals.delete(email, db)
    services.audit.record("role_approval_deleted", identity.id, True, request, email=email)
    return {
        "status": "ok",
        "message": "Role approval deleted",
        "data": {"email": normalize_email(email)},
    }
