"""
Role pre-approval registry.

Admins pre-authorize specific emails for elevated roles. Registration and
login both consult ``is_role_allowed``; self-registration with an elevated
role is honored only when an active approval covers it.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any, Sequence

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from roboclub.auth.errors import ConflictError, NotFoundError, ValidationError
from roboclub.auth.models import (
    RoleApproval, DEFAULT_ROLE, check_role_approval_invariants, dedupe, normalize_email,
)


class RoleApprovalUpsert(BaseModel):
    """Model for creating or replacing an approval."""
    email: EmailStr
    allowed_roles: List[str]
    note: Optional[str] = Field(None, max_length=500)


class RoleApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    allowed_roles: List[str]
    note: Optional[str] = None
    is_active: bool
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime


def role_approval_out(approval: RoleApproval) -> Dict[str, Any]:
    return RoleApprovalOut.model_validate(approval).model_dump(mode="json")


def registration_notice(requested_role: str, assigned_role: str) -> Dict[str, str]:
    """Notice returned when a requested role was downgraded at registration."""
    return {
        "requested_role": requested_role,
        "assigned_role": assigned_role,
        "message": (
            "Your requested role is not pre-approved. You have been registered as a "
            f"{assigned_role}. An admin can update your role later."
        ),
    }


def login_notice(desired_role: str, current_role: str, approved: bool) -> str:
    """Informational notice for a login whose desired role differs from the stored one."""
    if approved:
        return (
            f"Requested role '{desired_role}' is approved but not yet assigned to your "
            f"account. Continuing as '{current_role}'. An admin can update your role."
        )
    return (
        f"Requested role '{desired_role}' is not pre-approved. Continuing as "
        f"'{current_role}'. Please log in as student or contact admin."
    )


class RoleApprovalRegistry:
    """
    Admin-managed allow-list of elevated roles per email.

    Records are consulted, never mutated, by registration and login.
    """

    async def upsert(
        self,
        email: str,
        allowed_roles: Sequence[str],
        db: AsyncSession,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> RoleApproval:
        """
        Create or replace the approval for an email.

        Args:
            email: Email to approve (normalized to lowercase)
            allowed_roles: Replaces the stored role set (de-duplicated)
            db: Database session
            note: Free-text note
            actor_id: Admin performing the change

        Returns:
            The saved approval

        Raises:
            ValidationError: If the role set is empty or holds an unknown role
        """
        email = normalize_email(email)
        approval = await self.get_any(email, db)
        if approval is None:
            approval = RoleApproval(email=email, is_active=True, created_by=actor_id)
            db.add(approval)
        approval.allowed_roles = dedupe(allowed_roles or [])
        approval.note = note
        approval.updated_by = actor_id

        try:
            check_role_approval_invariants(approval)
        except ValidationError:
            await db.rollback()
            raise
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("A role approval for this email already exists")
        await db.refresh(approval)
        return approval

    async def get_any(self, email: str, db: AsyncSession) -> Optional[RoleApproval]:
        result = await db.execute(
            select(RoleApproval).where(RoleApproval.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def lookup(self, email: str, db: AsyncSession) -> Optional[RoleApproval]:
        """Return the active approval for an email, or None."""
        approval = await self.get_any(email, db)
        if approval is None or not approval.is_active:
            return None
        return approval

    async def get(self, email: str, db: AsyncSession) -> RoleApproval:
        approval = await self.get_any(email, db)
        if approval is None:
            raise NotFoundError.for_resource("RoleApproval")
        return approval

    async def delete(self, email: str, db: AsyncSession) -> None:
        """
        Remove the approval for an email.

        Raises:
            NotFoundError: If no approval exists
        """
        approval = await self.get(email, db)
        await db.delete(approval)
        await db.commit()

    async def list_all(self, db: AsyncSession) -> List[RoleApproval]:
        result = await db.execute(select(RoleApproval).order_by(RoleApproval.email))
        return list(result.scalars().all())

    async def is_role_allowed(self, email: str, role: str, db: AsyncSession) -> bool:
        """The default role is always allowed; any other needs an active approval."""
        if role == DEFAULT_ROLE:
            return True
        approval = await self.lookup(email, db)
        return approval is not None and approval.allows(role)
