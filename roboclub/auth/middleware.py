"""
Authentication middleware.

This module provides FastAPI dependencies for:
- User validation from bearer access tokens
- Optional authentication for public endpoints
- Role-based and permission-based access control
- Resource ownership and membership checks

Dependencies compose in order: ``authenticate`` always runs before any role,
permission or ownership check.
"""
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from roboclub.base_microservice import get_db_session
from roboclub.services import Services, get_services
from roboclub.auth.errors import (
    AuthServiceError, ForbiddenError, NotFoundError, UnauthenticatedError, ValidationError,
)
from roboclub.auth.jwt import ACCESS
from roboclub.auth.models import User, ADMIN, MENTOR, RESEARCHER, STUDENT, TEAM_MEMBER

# Bearer scheme for access tokens; missing headers are reported by ``authenticate``
bearer_scheme = HTTPBearer(auto_error=False)

ResourceLookup = Callable[[str, AsyncSession], Awaitable[Optional[Any]]]


class Identity(BaseModel):
    """Normalized caller identity attached to ``request.state.identity``."""
    id: int
    email: str
    role: str
    permissions: List[str] = []
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


async def _resolve_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
    db: AsyncSession,
    services: Services,
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise UnauthenticatedError("Access token required")
    token = credentials.credentials
    token_data = await services.tokens.verify(token, ACCESS)

    # Re-fetch so deactivation takes effect even for unexpired tokens
    user = await db.get(User, token_data.user_id, populate_existing=True)
    if user is None:
        raise UnauthenticatedError("User no longer exists")
    if not user.is_active:
        raise UnauthenticatedError("User account is deactivated")

    # Role and permissions come from the token snapshot
    identity = Identity(
        id=user.id,
        email=user.email,
        role=token_data.role or user.role,
        permissions=token_data.permissions,
        first_name=user.first_name,
        last_name=user.last_name,
    )
    request.state.identity = identity
    request.state.user = user
    request.state.access_token = token
    return identity


async def authenticate(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
) -> Identity:
    """
    Require a valid access token for an active user.

    Raises:
        UnauthenticatedError: missing, invalid, expired or revoked token, or
            the user no longer exists or is deactivated
    """
    try:
        identity = await _resolve_identity(request, credentials, db, services)
    except AuthServiceError as e:
        services.audit.record(
            "token_verification", None, False, request, reason=e.kind, message=e.message
        )
        raise
    services.audit.record("token_verification", identity.id, True, request, role=identity.role)
    return identity


async def authenticate_optional(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
    services: Services = Depends(get_services),
) -> Optional[Identity]:
    """Like ``authenticate`` but yields None instead of failing."""
    if credentials is None:
        return None
    try:
        identity = await _resolve_identity(request, credentials, db, services)
    except AuthServiceError as e:
        services.audit.record(
            "optional_token_verification", None, False, request, reason=e.kind
        )
        return None
    services.audit.record("optional_token_verification", identity.id, True, request)
    return identity


def _field(resource: Any, name: str) -> Any:
    if isinstance(resource, dict):
        return resource.get(name)
    return getattr(resource, name, None)


def _member_ids(members: Any) -> List[str]:
    ids = []
    for member in members or []:
        if isinstance(member, (int, str)):
            ids.append(str(member))
        else:
            member_id = _field(member, "user_id")
            if member_id is not None:
                ids.append(str(member_id))
    return ids


class RBACMiddleware:
    """
    Role-Based Access Control middleware.

    Creates FastAPI dependencies for protecting routes based on:
    - Role requirements (any of)
    - Permission requirements (all of)
    - Resource ownership or membership
    """

    @staticmethod
    def has_roles(*roles: str):
        """
        Dependency to check if the user holds one of the specified roles.

        Args:
            roles: Allowed role names (any match is sufficient)

        Returns:
            Dependency function
        """
        async def verify_roles(
            request: Request,
            identity: Identity = Depends(authenticate),
            services: Services = Depends(get_services),
        ) -> Identity:
            if identity.role not in roles:
                services.audit.record(
                    "authorization", identity.id, False, request,
                    reason="role", required=list(roles), role=identity.role,
                )
                raise ForbiddenError(f"Access denied. Required roles: {', '.join(roles)}")
            return identity

        return verify_roles

    @staticmethod
    def has_permissions(*permissions: str):
        """
        Dependency to check if the user has all of the specified permissions.

        Args:
            permissions: Required permission names (all must match)

        Returns:
            Dependency function
        """
        async def verify_permissions(
            request: Request,
            identity: Identity = Depends(authenticate),
            services: Services = Depends(get_services),
        ) -> Identity:
            granted = set(identity.permissions)
            missing = [p for p in permissions if p not in granted]
            if missing:
                services.audit.record(
                    "authorization", identity.id, False, request,
                    reason="permission", missing=missing,
                )
                raise ForbiddenError(
                    f"Access denied. Required permissions: {', '.join(permissions)}"
                )
            return identity

        return verify_permissions

    @staticmethod
    def owns_resource(
        lookup: ResourceLookup,
        id_field: str = "id",
        owner_fields: Sequence[str] = ("user_id", "created_by"),
        members_field: Optional[str] = "team_members",
    ):
        """
        Dependency to check that the caller owns or belongs to a resource.

        The resource is fetched through ``lookup`` on every request. Admins
        always pass; otherwise the caller must match the first populated owner
        field or appear in the membership list, whose entries are either ids or
        objects with a ``user_id``.

        Args:
            lookup: Async function ``(resource_id, db)`` returning the resource or None
            id_field: Path parameter holding the resource id
            owner_fields: Owner attributes, checked in order
            members_field: Membership list attribute, or None

        Returns:
            Dependency function returning the resource
        """
        async def verify_ownership(
            request: Request,
            identity: Identity = Depends(authenticate),
            db: AsyncSession = Depends(get_db_session),
            services: Services = Depends(get_services),
        ) -> Any:
            resource_id = request.path_params.get(id_field)
            if resource_id is None:
                raise ValidationError(f"Missing resource ID parameter: {id_field}")

            resource = await lookup(resource_id, db)
            if resource is None:
                raise NotFoundError()

            allowed = identity.is_admin
            if not allowed:
                owner = next(
                    (_field(resource, f) for f in owner_fields if _field(resource, f) is not None),
                    None,
                )
                allowed = owner is not None and str(owner) == str(identity.id)
            if not allowed and members_field:
                allowed = str(identity.id) in _member_ids(_field(resource, members_field))

            if not allowed:
                services.audit.record(
                    "authorization", identity.id, False, request,
                    reason="ownership", resource_id=resource_id,
                )
                raise ForbiddenError("Access denied. You do not own this resource")

            request.state.resource = resource
            return resource

        return verify_ownership


require_role = RBACMiddleware.has_roles
require_permission = RBACMiddleware.has_permissions
require_ownership = RBACMiddleware.owns_resource

require_admin = require_role(ADMIN)
require_mentor = require_role(MENTOR, RESEARCHER, ADMIN)
require_team_member = require_role(TEAM_MEMBER, MENTOR, RESEARCHER, ADMIN)
require_student = require_role(STUDENT, TEAM_MEMBER, MENTOR, RESEARCHER, ADMIN)
