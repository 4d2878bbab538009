"""
Authentication router.

This module provides FastAPI router for authentication endpoints:
- User registration and login
- Token refresh and logout
- Password change and password reset
- Email verification
- Current user profile
"""
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from roboclub.base_microservice import BaseMicroservice, get_db_session
from roboclub.services import Services, get_services
from roboclub.auth.errors import (
    AuthServiceError, ForbiddenError, UnauthenticatedError, ValidationError,
)
from roboclub.auth.jwt import ACCESS, EMAIL_VERIFICATION, REFRESH
from roboclub.auth.middleware import (
    Identity, authenticate, authenticate_optional, bearer_scheme,
)
from roboclub.auth.models import DEFAULT_ROLE
from roboclub.auth.rate_limit import limit_auth_attempts
from roboclub.auth.role_approvals import login_notice, registration_notice
from roboclub.auth.users import (
    ChangePassword, ForgotPassword, LogoutRequest, ProfileUpdate, RefreshRequest,
    ResetPassword, UserCreate, UserLogin, user_out,
)

# Create router
router = APIRouter(tags=["auth"])

base_service = BaseMicroservice("auth")

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"


# --- Registration and login ---

@router.post("/register", status_code=201)
async def register_user(
    user_data: UserCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Register a new user.

    A requested role other than the default is honored only when an active
    pre-approval covers it; otherwise the user is registered as a student and
    the response carries a ``role_notice``.

    Returns:
        Envelope with user, tokens and optional role notice
    """
    try:
        requested_role = user_data.role or DEFAULT_ROLE
        allowed = await services.role_approvals.is_role_allowed(user_data.email, requested_role, db)
        assigned_role = requested_role if allowed else DEFAULT_ROLE

        user = await services.users.create(user_data, assigned_role, db)
        tokens = await services.tokens.issue(user)

        verification_token = services.tokens.issue_email_verification_token(user)
        background_tasks.add_task(
            services.notifier.send_email_verification, user.email, verification_token
        )

        services.audit.record("register", user.id, True, request, role=assigned_role)
        base_service.log_event("user.registered", {
            "id": user.id,
            "email": user.email,
            "requested_role": requested_role,
            "assigned_role": assigned_role,
        })

        message = "User registered successfully"
        data = {"user": user_out(user), "tokens": tokens.model_dump()}
        if not allowed:
            message = (
                f"User registered successfully. Requested role '{requested_role}' "
                f"is not pre-approved; assigned '{assigned_role}'."
            )
            data["role_notice"] = registration_notice(requested_role, assigned_role)

        return base_service.mcp_response(data=data, message=message, status_code=201)
    except AuthServiceError as e:
        services.audit.record(
            "register", None, False, request, email=user_data.email, reason=e.kind
        )
        raise
    except Exception as e:
        base_service.log_error(e, context="User registration")
        raise


@router.post("/login", response_model=Dict[str, Any], dependencies=[Depends(limit_auth_attempts)])
async def login(
    login_data: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Authenticate a user and return a token pair.

    A ``desired_role`` different from the stored role only produces an
    informational notice; login never changes the stored role.
    """
    user = await services.users.get_by_email(login_data.email, db)

    if not services.users.check_credentials(user, login_data.password):
        services.audit.record(
            "login", user.id if user else None, False, request,
            email=login_data.email, reason="invalid_credentials",
        )
        raise UnauthenticatedError("Invalid email or password")

    if not user.is_active:
        services.audit.record("login", user.id, False, request, reason="account_deactivated")
        raise ForbiddenError("Account is deactivated. Please contact an administrator.")

    try:
        await services.users.update_last_login(user, db)
        tokens = await services.tokens.issue(user)
    except Exception as e:
        base_service.log_error(e, context="User login")
        raise

    services.audit.record("login", user.id, True, request, role=user.role)
    base_service.log_event("user.login", {"id": user.id, "email": user.email})

    data = {"user": user_out(user), "tokens": tokens.model_dump()}
    desired_role = login_data.desired_role
    if desired_role and desired_role != user.role:
        approved = await services.role_approvals.is_role_allowed(user.email, desired_role, db)
        data["role_notice"] = login_notice(desired_role, user.role, approved)

    return {
        "status": "ok",
        "message": "Login successful",
        "data": data,
    }


# --- Tokens ---

@router.post("/refresh", response_model=Dict[str, Any])
async def refresh_token(
    body: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Exchange a refresh token for a new pair; the old refresh token stops working.

    Raises:
        UnauthenticatedError: invalid, expired or revoked token, or the user is
            missing or deactivated
    """
    try:
        tokens = await services.tokens.refresh(body.refresh_token, db)
    except AuthServiceError as e:
        services.audit.record("token_refresh", None, False, request, reason=e.kind)
        raise

    services.audit.record("token_refresh", None, True, request)
    return {
        "status": "ok",
        "message": "Token refreshed successfully",
        "data": {"tokens": tokens.model_dump()},
    }


@router.post("/logout", response_model=Dict[str, Any])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
):
    """
    Revoke server-side session state.

    Always succeeds. Without a session store there is nothing to revoke and
    issued tokens stay valid until they expire.
    """
    user_id = None
    refresh = body.refresh_token if body else None
    if refresh:
        try:
            user_id = services.tokens.decode(refresh, REFRESH).user_id
        except UnauthenticatedError as e:
            base_service.logger.info(f"Logout with unusable refresh token ({e.kind})")

    access = credentials.credentials if credentials else None
    if access:
        if user_id is None:
            try:
                user_id = services.tokens.decode(access, ACCESS).user_id
            except UnauthenticatedError as e:
                base_service.logger.info(f"Logout with unusable access token ({e.kind})")
        await services.tokens.blacklist_access_token(access)

    revoked = False
    if user_id is not None:
        revoked = await services.tokens.revoke_all(user_id)

    services.audit.record("logout", user_id, True, request, stateful=services.tokens.stateful)
    return {
        "status": "ok",
        "message": "Logout successful",
        "data": {"revoked": revoked},
    }


# --- Passwords ---

@router.post("/change-password", response_model=Dict[str, Any])
async def change_password(
    body: ChangePassword,
    request: Request,
    identity: Identity = Depends(authenticate),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Change the caller's password and revoke their sessions.

    Raises:
        UnauthenticatedError: If the current password is wrong
        ValidationError: If the new password equals the current one
    """
    user = await services.users.get_or_404(identity.id, db)
    if not services.users.verify_password(user, body.current_password):
        services.audit.record("password_change", user.id, False, request, reason="wrong_password")
        raise UnauthenticatedError("Current password is incorrect")
    if body.new_password == body.current_password:
        raise ValidationError("New password must be different from the current password")

    await services.users.set_password(user, body.new_password, db)
    await services.tokens.revoke_all(user.id)
    await services.tokens.blacklist_access_token(request.state.access_token)

    services.audit.record("password_change", user.id, True, request)
    base_service.log_event("user.password_changed", {"id": user.id})
    return {
        "status": "ok",
        "message": "Password changed successfully. Please log in again.",
        "data": None,
    }


@router.post("/forgot-password", response_model=Dict[str, Any], dependencies=[Depends(limit_auth_attempts)])
async def forgot_password(
    body: ForgotPassword,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """Send a reset link if the account exists; the reply never says which."""
    user = await services.users.get_by_email(body.email, db)
    if user is not None and user.is_active:
        token = await services.tokens.issue_password_reset_token(user)
        background_tasks.add_task(services.notifier.send_password_reset, user.email, token)
        services.audit.record("password_reset_request", user.id, True, request)
    else:
        services.audit.record(
            "password_reset_request", None, False, request,
            email=body.email, reason="unknown_or_inactive",
        )

    return {
        "status": "ok",
        "message": FORGOT_PASSWORD_MESSAGE,
        "data": None,
    }


@router.get("/reset-password/{token}", response_model=Dict[str, Any])
async def check_reset_token(
    token: str,
    services: Services = Depends(get_services),
):
    """Tell the reset form whether a link is still usable; the token is not spent."""
    try:
        await services.tokens.verify_password_reset_token(token)
    except UnauthenticatedError:
        raise ValidationError("Invalid or expired reset token")

    return {
        "status": "ok",
        "message": "Reset token is valid",
        "data": {"valid": True},
    }


@router.post("/reset-password", response_model=Dict[str, Any], dependencies=[Depends(limit_auth_attempts)])
async def reset_password(
    body: ResetPassword,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Set a new password with a single-use reset token and revoke sessions.

    Raises:
        ValidationError: If the token is invalid, expired or already used
    """
    try:
        token_data = await services.tokens.consume_password_reset_token(body.token)
    except UnauthenticatedError as e:
        services.audit.record("password_reset", None, False, request, reason=e.kind)
        raise ValidationError("Invalid or expired reset token")

    user = await services.users.get_by_id(token_data.user_id, db)
    if user is None or not user.is_active:
        services.audit.record("password_reset", token_data.user_id, False, request, reason="user_unavailable")
        raise ValidationError("Invalid or expired reset token")

    await services.users.set_password(user, body.new_password, db)
    await services.tokens.revoke_all(user.id)

    services.audit.record("password_reset", user.id, True, request)
    base_service.log_event("user.password_reset", {"id": user.id})
    return {
        "status": "ok",
        "message": "Password reset successful. Please log in with your new password.",
        "data": None,
    }


@router.get("/verify-email/{token}", response_model=Dict[str, Any])
async def verify_email(
    token: str,
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """Mark the email of the token's subject as verified."""
    try:
        token_data = services.tokens.decode(token, EMAIL_VERIFICATION)
    except UnauthenticatedError:
        raise ValidationError("Invalid or expired verification token")

    user = await services.users.get_by_id(token_data.user_id, db)
    if user is None:
        raise ValidationError("Invalid or expired verification token")

    changed = await services.users.mark_email_verified(user, db)
    return {
        "status": "ok",
        "message": "Email verified successfully" if changed else "Email already verified",
        "data": {"email_verified": True},
    }


# --- Current user ---

@router.get("/me", response_model=Dict[str, Any])
async def get_current_user_info(
    identity: Identity = Depends(authenticate),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """Get information about the current authenticated user."""
    user = await services.users.get_or_404(identity.id, db)
    return {
        "status": "ok",
        "message": "User information retrieved successfully",
        "data": user_out(user),
    }


@router.put("/me", response_model=Dict[str, Any])
async def update_current_user(
    update_data: ProfileUpdate,
    identity: Identity = Depends(authenticate),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
):
    """
    Update profile fields for the current user.

    Role, permissions, active flag and email are not self-service.
    """
    user = await services.users.get_or_404(identity.id, db)
    user = await services.users.update_profile(user, update_data, db)

    base_service.log_event("user.updated", {
        "id": identity.id,
        "fields_updated": list(update_data.model_dump(exclude_unset=True).keys()),
    })
    return {
        "status": "ok",
        "message": "User updated successfully",
        "data": user_out(user),
    }


@router.get("/session", response_model=Dict[str, Any])
async def session_info(identity: Optional[Identity] = Depends(authenticate_optional)):
    """Report whether the caller is known; never fails on a bad token."""
    return {
        "status": "ok",
        "message": "Authenticated" if identity else "Anonymous",
        "data": {
            "authenticated": identity is not None,
            "user": identity.model_dump() if identity else None,
        },
    }


# --- Health Check ---

@router.get("/ping", response_model=Dict[str, Any])
async def ping(services: Services = Depends(get_services)):
    """
    Health check endpoint for the auth service.

    Returns:
        Envelope with timestamp and session store mode
    """
    return base_service.mcp_response(
        message="Auth service is alive",
        data={
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_store": "enabled" if services.tokens.stateful else "stateless",
        },
    )
