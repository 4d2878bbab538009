"""
User management service.

This module provides functionality for:
- Request/response schemas for the auth and user routes
- User registration and credential checks
- Profile and admin updates
- Activation state and email verification
"""
import re
import secrets
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from roboclub.base_microservice import utcnow
from roboclub.config import Settings
from roboclub.auth.errors import ConflictError, NotFoundError, ValidationError
from roboclub.auth.models import (
    User, ROLES, ADMIN, check_user_invariants,
    derive_default_permissions, dedupe, normalize_email,
)

# Regex patterns for validation
PASSWORD_PATTERN = r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
NAME_PATTERN = r"^[a-zA-Z\s\-']+$"
PHONE_PATTERN = r"^[\+]?[1-9][\d]{0,15}$"

PASSWORD_MESSAGE = (
    "Password must be at least 8 characters and contain at least one uppercase letter, "
    "one lowercase letter, one number and one special character (@$!%*?&)"
)

SELF_REGISTER_ROLES = tuple(r for r in ROLES if r != ADMIN)


def check_password_strength(password: str) -> str:
    if not re.match(PASSWORD_PATTERN, password):
        raise ValueError(PASSWORD_MESSAGE)
    # bcrypt only reads the first 72 bytes
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return password


def check_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not 2 <= len(value) <= 100:
        raise ValueError("Name must be between 2 and 100 characters")
    if not re.match(NAME_PATTERN, value):
        raise ValueError("Name can only contain letters, spaces, hyphens, and apostrophes")
    return value


def check_phone(value: Optional[str]) -> Optional[str]:
    if value is not None and not re.match(PHONE_PATTERN, value):
        raise ValueError("Please provide a valid phone number")
    return value


# Pydantic models for request validation
class ProfileFields(BaseModel):
    """Optional profile fields shared by registration and updates."""
    student_id: Optional[str] = Field(None, max_length=50)
    department: Optional[str] = Field(None, max_length=100)
    year_of_study: Optional[int] = Field(None, ge=1, le=8)
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def phone_must_be_valid(cls, v):
        return check_phone(v)


class UserCreate(ProfileFields):
    """Model for user registration."""
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str
    last_name: str
    role: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_must_be_strong(cls, v):
        return check_password_strength(v)

    @field_validator("first_name", "last_name")
    @classmethod
    def names_must_be_valid(cls, v):
        return check_name(v)

    @field_validator("role")
    @classmethod
    def role_must_be_self_assignable(cls, v):
        if v is not None and v not in SELF_REGISTER_ROLES:
            raise ValueError(f"Role must be one of: {', '.join(SELF_REGISTER_ROLES)}")
        return v


class UserLogin(BaseModel):
    """Model for user login."""
    email: EmailStr
    password: str = Field(..., min_length=1)
    desired_role: Optional[str] = None

    @field_validator("desired_role")
    @classmethod
    def desired_role_must_exist(cls, v):
        if v is not None and v not in ROLES:
            raise ValueError(f"Desired role must be one of: {', '.join(ROLES)}")
        return v


class ProfileUpdate(ProfileFields):
    """Model for self-service profile updates."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def names_must_be_valid(cls, v):
        return check_name(v)


class AdminUserUpdate(ProfileUpdate):
    """Model for admin updates; may also change role, permissions and flags."""
    role: Optional[str] = None
    permissions: Optional[List[str]] = None
    is_active: Optional[bool] = None
    email_verified: Optional[bool] = None

    @field_validator("role")
    @classmethod
    def role_must_exist(cls, v):
        if v is not None and v not in ROLES:
            raise ValueError(f"Role must be one of: {', '.join(ROLES)}")
        return v


class ChangePassword(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)

    @field_validator("new_password")
    @classmethod
    def password_must_be_strong(cls, v):
        return check_password_strength(v)


class ForgotPassword(BaseModel):
    """Model for password reset request."""
    email: EmailStr


class ResetPassword(BaseModel):
    """Model for password reset confirmation."""
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)

    @field_validator("new_password")
    @classmethod
    def password_must_be_strong(cls, v):
        return check_password_strength(v)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class UserOut(BaseModel):
    """Model for user information returned to clients."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    permissions: List[str] = []
    student_id: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = None
    phone: Optional[str] = None
    is_active: bool
    email_verified: bool
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


def user_out(user: User) -> Dict[str, Any]:
    """Serialize a user for an API response (never includes the hash)."""
    return UserOut.model_validate(user).model_dump(mode="json")


class UserService:
    """
    Service for user management operations.

    Every write path runs ``check_user_invariants`` before committing and
    translates unique-index violations into ConflictError.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        # compared against when a login names an unknown email
        self._dummy_hash = User.get_password_hash(secrets.token_urlsafe(16), settings.bcrypt_rounds)

    async def _commit(self, user: User, db: AsyncSession) -> User:
        try:
            check_user_invariants(user)
        except ValidationError:
            await db.rollback()
            raise
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("User with this email or student ID already exists")
        await db.refresh(user)
        return user

    async def create(self, data: UserCreate, role: str, db: AsyncSession) -> User:
        """
        Register a new user.

        Args:
            data: Registration data
            role: Role to assign, already checked against the approval registry
            db: Database session

        Returns:
            The persisted user

        Raises:
            ConflictError: If the email or student ID already exists
            ValidationError: If the record breaks a user invariant
        """
        email = normalize_email(data.email)
        clauses = [User.email == email]
        if data.student_id:
            clauses.append(User.student_id == data.student_id)
        result = await db.execute(select(User).where(or_(*clauses)))
        existing = result.scalars().first()
        if existing is not None:
            if existing.email == email:
                raise ConflictError("User with this email already exists")
            raise ConflictError("Student ID is already taken")

        user = User(
            email=email,
            first_name=data.first_name,
            last_name=data.last_name,
            role=role,
            permissions=derive_default_permissions(role),
            student_id=data.student_id or None,
            department=data.department,
            year_of_study=data.year_of_study,
            phone=data.phone,
            is_active=True,
            email_verified=False,
        )
        user.set_password(data.password, self.settings.bcrypt_rounds)
        db.add(user)
        return await self._commit(user, db)

    @staticmethod
    def verify_password(user: User, candidate: str) -> bool:
        """Constant-time password check; False on any mismatch."""
        return user.verify_password(candidate)

    def check_credentials(self, user: Optional[User], candidate: str) -> bool:
        """
        Password check for login that costs one bcrypt round-trip whether or
        not the account exists, so response time does not reveal registration.
        """
        if user is None:
            User.check_password(candidate, self._dummy_hash)
            return False
        return user.verify_password(candidate)

    async def update_last_login(self, user: User, db: AsyncSession) -> None:
        user.last_login = utcnow()
        await self._commit(user, db)

    async def get_by_id(self, user_id: int, db: AsyncSession) -> Optional[User]:
        return await db.get(User, user_id)

    async def get_by_email(self, email: str, db: AsyncSession) -> Optional[User]:
        result = await db.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def get_or_404(self, user_id: int, db: AsyncSession) -> User:
        user = await self.get_by_id(user_id, db)
        if user is None:
            raise NotFoundError.for_resource("User")
        return user

    async def list_users(
        self,
        db: AsyncSession,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """
        List users, newest first.

        Returns:
            Dict with ``users`` and ``total``
        """
        filters = []
        if role is not None:
            filters.append(User.role == role)
        if is_active is not None:
            filters.append(User.is_active == is_active)

        total = await db.scalar(select(func.count(User.id)).where(*filters))
        result = await db.execute(
            select(User)
            .where(*filters)
            .order_by(User.created_at.desc(), User.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return {"users": result.scalars().all(), "total": total or 0}

    async def update_profile(self, user: User, data: ProfileUpdate, db: AsyncSession) -> User:
        """Apply self-service changes; role, permissions and flags are not touched."""
        changes = data.model_dump(exclude_unset=True)
        await self._apply_profile(user, changes, db)
        return await self._commit(user, db)

    async def admin_update(self, user: User, data: AdminUserUpdate, db: AsyncSession) -> User:
        """
        Apply an admin update.

        A role change re-derives default permissions only when the resulting
        permission set is empty; an explicit set is kept as given.

        Raises:
            ConflictError: If the new student ID is taken
            ValidationError: If the result breaks a user invariant
        """
        changes = data.model_dump(exclude_unset=True)
        await self._apply_profile(user, changes, db)

        if "permissions" in changes and changes["permissions"] is not None:
            user.permissions = dedupe(changes["permissions"])
        if changes.get("role") is not None:
            user.role = changes["role"]
            if not user.permissions:
                user.permissions = derive_default_permissions(user.role)
        if changes.get("is_active") is not None:
            user.is_active = changes["is_active"]
        if changes.get("email_verified") is not None:
            user.email_verified = changes["email_verified"]

        return await self._commit(user, db)

    async def _apply_profile(self, user: User, changes: Dict[str, Any], db: AsyncSession) -> None:
        student_id = changes.get("student_id")
        if student_id and student_id != user.student_id:
            result = await db.execute(
                select(User).where(User.student_id == student_id, User.id != user.id)
            )
            if result.scalar_one_or_none() is not None:
                raise ConflictError("Student ID is already taken")
        for field in ("first_name", "last_name", "student_id", "department", "year_of_study", "phone"):
            if field in changes:
                if field in ("first_name", "last_name") and changes[field] is None:
                    raise ValidationError(f"{field} cannot be empty")
                setattr(user, field, changes[field])

    async def deactivate(self, user: User, db: AsyncSession) -> User:
        user.is_active = False
        return await self._commit(user, db)

    async def reactivate(self, user: User, db: AsyncSession) -> User:
        if user.is_active:
            raise ValidationError("User is already active")
        user.is_active = True
        return await self._commit(user, db)

    async def set_password(self, user: User, password: str, db: AsyncSession) -> User:
        user.set_password(password, self.settings.bcrypt_rounds)
        return await self._commit(user, db)

    async def mark_email_verified(self, user: User, db: AsyncSession) -> bool:
        """
        Mark the email as verified.

        Returns:
            False if it was already verified
        """
        if user.email_verified:
            return False
        user.email_verified = True
        await self._commit(user, db)
        return True
