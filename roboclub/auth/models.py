"""
Authentication models for RoboClub.

This module defines:
- The fixed role ladder and the permission vocabulary
- SQLAlchemy models for users and role pre-approvals
- Explicit invariant checks run by the services before every write
"""
import re
from typing import List, Iterable

import bcrypt
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON

from roboclub.base_microservice import Base, utcnow
from roboclub.auth.errors import ValidationError

STUDENT = "student"
TEAM_MEMBER = "team_member"
MENTOR = "mentor"
RESEARCHER = "researcher"
COMMUNITY = "community"
ADMIN = "admin"

ROLES = (STUDENT, TEAM_MEMBER, MENTOR, RESEARCHER, COMMUNITY, ADMIN)
DEFAULT_ROLE = STUDENT

PERMISSIONS = (
    "read:projects", "write:projects", "delete:projects", "manage:projects",
    "read:workshops", "write:workshops", "delete:workshops",
    "read:events", "write:events", "delete:events",
    "read:inventory", "write:inventory", "delete:inventory", "manage:inventory",
    "read:requests", "write:requests", "approve:requests",
    "read:news", "write:news", "delete:news",
    "read:media", "write:media", "delete:media",
    "read:users", "write:users", "delete:users",
    "manage:finance",
    "manage:system", "system:admin",
)

_MENTOR_PERMISSIONS = (
    "read:projects", "write:projects", "delete:projects",
    "read:workshops", "write:workshops",
    "read:events", "write:events",
    "read:inventory", "write:inventory",
    "read:requests", "approve:requests",
    "read:news", "write:news",
    "read:media", "write:media",
)

ROLE_PERMISSIONS = {
    STUDENT: (
        "read:projects", "read:workshops", "read:events",
        "read:inventory", "read:news", "read:media",
    ),
    TEAM_MEMBER: (
        "read:projects", "write:projects", "read:workshops", "read:events",
        "read:inventory", "read:news", "read:media",
    ),
    MENTOR: _MENTOR_PERMISSIONS,
    RESEARCHER: (
        "read:projects", "write:projects", "delete:projects",
        "read:workshops", "write:workshops", "delete:workshops",
        "read:events", "write:events", "delete:events",
        "read:inventory", "write:inventory", "delete:inventory",
        "read:requests", "write:requests", "approve:requests",
        "read:news", "write:news", "delete:news",
        "read:media", "write:media", "delete:media",
    ),
    COMMUNITY: (
        "read:projects", "read:workshops", "read:events", "read:news", "read:media",
    ),
    ADMIN: PERMISSIONS,
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def derive_default_permissions(role: str) -> List[str]:
    """Return the default permission set for a role (empty for unknown roles)."""
    return list(ROLE_PERMISSIONS.get(role, ()))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def dedupe(values: Iterable[str]) -> List[str]:
    """De-duplicate while keeping first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class User(Base):
    """Club member account: credentials, role and permission set."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(String(32), nullable=False, default=DEFAULT_ROLE, index=True)
    permissions = Column(JSON, nullable=False, default=list)
    student_id = Column(String(50), unique=True, nullable=True)
    department = Column(String(100), nullable=True, index=True)
    year_of_study = Column(Integer, nullable=True)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def set_password(self, password: str, rounds: int = 12) -> None:
        """Replace the stored hash; the plaintext is not kept."""
        self.password_hash = User.get_password_hash(password, rounds)

    def verify_password(self, password: str) -> bool:
        """Check if provided password matches the stored hash."""
        return User.check_password(password, self.password_hash)

    @staticmethod
    def check_password(password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(
                password.encode("utf-8"),
                password_hash.encode("utf-8")
            )
        except ValueError:
            # malformed hash or over-long candidate
            return False

    @staticmethod
    def get_password_hash(password: str, rounds: int = 12) -> str:
        """Generate password hash using bcrypt."""
        return bcrypt.hashpw(
            password.encode("utf-8"),
            bcrypt.gensalt(rounds=rounds)
        ).decode("utf-8")


class RoleApproval(Base):
    """Admin allow-list entry: roles a given email may hold above the default."""
    __tablename__ = "role_approvals"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    allowed_roles = Column(JSON, nullable=False, default=list)
    note = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def allows(self, role: str) -> bool:
        return self.is_active and role in (self.allowed_roles or [])


def check_roles(roles: Iterable[str], field: str = "role") -> None:
    invalid = [r for r in roles if r not in ROLES]
    if invalid:
        raise ValidationError(
            f"Invalid {field} value(s): {', '.join(invalid)}. "
            f"Must be one of: {', '.join(ROLES)}"
        )


def check_user_invariants(user: User) -> None:
    """
    Validate a user record before it is persisted.

    Raises:
        ValidationError: if any field combination is not allowed
    """
    if not user.email or not EMAIL_PATTERN.match(user.email):
        raise ValidationError("Please provide a valid email address")
    if user.email != normalize_email(user.email):
        raise ValidationError("Email must be stored in normalized form")
    if not user.password_hash:
        raise ValidationError("Password is required")
    check_roles([user.role])
    unknown = [p for p in (user.permissions or []) if p not in PERMISSIONS]
    if unknown:
        raise ValidationError(f"Invalid permission value(s): {', '.join(unknown)}")
    if user.year_of_study is not None and not 1 <= user.year_of_study <= 8:
        raise ValidationError("Year of study must be between 1 and 8")


def check_role_approval_invariants(approval: RoleApproval) -> None:
    """Validate a role approval before it is persisted."""
    if not approval.email or not EMAIL_PATTERN.match(approval.email):
        raise ValidationError("Valid email is required")
    if not approval.allowed_roles:
        raise ValidationError("allowed_roles must be a non-empty list")
    check_roles(approval.allowed_roles, field="allowed_roles")
    if approval.note is not None and len(approval.note) > 500:
        raise ValidationError("Note cannot exceed 500 characters")
