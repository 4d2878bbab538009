"""
JWT token handling for authentication.

This module provides functionality for:
- Issuing access/refresh token pairs
- Verifying tokens (signature, expiry, type, revocation)
- Refresh with rotation
- Revocation via the optional session store
- Single-purpose password reset and email verification tokens
"""
import hashlib
import hmac
import logging
import secrets
import time
import uuid
from typing import Optional, Dict, Any, List, Callable

import jwt
from jwt.exceptions import ExpiredSignatureError, PyJWTError
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from roboclub.config import Settings
from roboclub.auth.errors import (
    InvalidTokenError, ExpiredTokenError, WrongTokenTypeError,
    RevokedTokenError, UnauthenticatedError,
)
from roboclub.auth.models import User
from roboclub.auth.session_store import SessionStore

logger = logging.getLogger("roboclub.auth.jwt")

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"

# Returned by TokenService._store when the session store cannot be reached
STORE_UNAVAILABLE = object()


class TokenPair(BaseModel):
    """Token response model."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    expires_at: int  # Unix timestamp


class TokenData(BaseModel):
    """Verified token payload."""
    user_id: int
    type: str
    email: Optional[str] = None
    role: Optional[str] = None
    permissions: List[str] = []
    jti: Optional[str] = None
    exp: Optional[int] = None


def hash_token(token: str, salt: Optional[str] = None) -> str:
    """Salted HMAC-SHA256 of a token, formatted as ``salt$digest``."""
    salt = salt or secrets.token_hex(16)
    digest = hmac.new(salt.encode(), token.encode(), hashlib.sha256).hexdigest()
    return f"{salt}${digest}"


def token_matches_hash(token: str, stored: Optional[str]) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, _ = stored.split("$", 1)
    return hmac.compare_digest(hash_token(token, salt), stored)


def refresh_key(user_id: int) -> str:
    return f"refresh_token:{user_id}"


def password_reset_key(user_id: int) -> str:
    return f"password_reset:{user_id}"


def blacklist_key(token: str) -> str:
    return f"blacklist:{token}"


class TokenService:
    """
    Issues, verifies and revokes signed tokens.

    With a session store, refresh tokens are tracked by salted hash (one live
    refresh token per user) and access tokens can be blacklisted. Without one
    the service falls back to signature and expiry checks only; logout then
    cannot invalidate a token before its natural expiry. A store that fails
    mid-flight gets the same fallback, one call at a time.
    """

    def __init__(
        self,
        settings: Settings,
        session_store: Optional[SessionStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.session_store = session_store
        self.clock = clock

    @property
    def stateful(self) -> bool:
        return self.session_store is not None

    @property
    def tracks_refresh_tokens(self) -> bool:
        return self.stateful and self.settings.persist_refresh_tokens

    async def _store(self, operation: str, *args):
        """
        Run one session store call.

        A store outage after startup degrades to stateless checks for this
        call instead of failing the request.

        Returns:
            The call result, or STORE_UNAVAILABLE if the store failed
        """
        try:
            return await getattr(self.session_store, operation)(*args)
        except (RedisError, OSError) as e:
            logger.warning(
                f"Session store {operation} failed ({e.__class__.__name__}: {e}); "
                f"using stateless token checks"
            )
            return STORE_UNAVAILABLE

    # --- Encoding ---

    def _encode(self, claims: Dict[str, Any], ttl_seconds: int) -> str:
        now = int(self.clock())
        payload = dict(claims)
        payload.update({
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": uuid.uuid4().hex,
        })
        return jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)

    def create_access_token(self, user: User) -> str:
        return self._encode(
            {
                "sub": str(user.id),
                "email": user.email,
                "role": user.role,
                "permissions": list(user.permissions or []),
                "type": ACCESS,
            },
            self.settings.access_token_ttl_seconds,
        )

    def create_refresh_token(self, user: User) -> str:
        return self._encode(
            {"sub": str(user.id), "type": REFRESH},
            self.settings.refresh_token_ttl_seconds,
        )

    def decode(self, token: str, expected_type: str) -> TokenData:
        """
        Check signature, expiry and type discriminator.

        Raises:
            ExpiredTokenError: token is past its expiry
            InvalidTokenError: bad signature, malformed token or bad subject
            WrongTokenTypeError: token was minted for another purpose
        """
        if not token:
            raise InvalidTokenError("Token required")
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                options={"require": ["exp", "sub"]},
            )
        except ExpiredSignatureError:
            raise ExpiredTokenError()
        except PyJWTError:
            raise InvalidTokenError()

        if payload.get("type") != expected_type:
            raise WrongTokenTypeError()
        try:
            user_id = int(payload["sub"])
        except (ValueError, TypeError):
            raise InvalidTokenError("Invalid token subject")

        return TokenData(
            user_id=user_id,
            type=payload["type"],
            email=payload.get("email"),
            role=payload.get("role"),
            permissions=payload.get("permissions") or [],
            jti=payload.get("jti"),
            exp=payload.get("exp"),
        )

    # --- Issue / verify ---

    async def issue(self, user: User) -> TokenPair:
        """
        Create an access/refresh pair for a user.

        The access token carries a snapshot of role and permissions; a role
        change is visible to guards only after the next issue.
        """
        access_token = self.create_access_token(user)
        refresh_token = self.create_refresh_token(user)

        if self.tracks_refresh_tokens:
            await self._store(
                "set",
                refresh_key(user.id),
                hash_token(refresh_token),
                self.settings.refresh_token_ttl_seconds,
            )

        expires_in = self.settings.access_token_ttl_seconds
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type="bearer",
            expires_in=expires_in,
            expires_at=int(self.clock()) + expires_in,
        )

    async def verify(self, token: str, expected_type: str = ACCESS) -> TokenData:
        """
        Verify a token for the given use.

        Args:
            token: Encoded JWT
            expected_type: ``access`` or ``refresh``

        Returns:
            TokenData for the verified token

        Raises:
            InvalidTokenError, ExpiredTokenError, WrongTokenTypeError,
            RevokedTokenError
        """
        data = self.decode(token, expected_type)

        if expected_type == ACCESS and self.stateful:
            blacklisted = await self._store("get", blacklist_key(token))
            if blacklisted is not None and blacklisted is not STORE_UNAVAILABLE:
                raise RevokedTokenError()
        elif expected_type == REFRESH and self.tracks_refresh_tokens:
            stored = await self._store("get", refresh_key(data.user_id))
            if stored is not STORE_UNAVAILABLE and not token_matches_hash(token, stored):
                raise RevokedTokenError("Refresh token not found or revoked")

        return data

    async def refresh(self, refresh_token: str, db: AsyncSession) -> TokenPair:
        """
        Exchange a refresh token for a new pair, invalidating the old one.

        The stored hash is consumed atomically, so of two concurrent refreshes
        with the same token only one succeeds. A token that does not match the
        stored hash also consumes it, forcing a fresh login.

        Raises:
            UnauthenticatedError: invalid/expired/revoked token, or the user
                no longer exists or is deactivated
        """
        data = self.decode(refresh_token, REFRESH)

        if self.tracks_refresh_tokens:
            stored = await self._store("pop", refresh_key(data.user_id))
            if stored is not STORE_UNAVAILABLE and not token_matches_hash(refresh_token, stored):
                if stored is not None:
                    logger.warning(f"Refresh token reuse detected for user {data.user_id}; session revoked")
                raise RevokedTokenError("Refresh token not found or revoked")

        user = await db.get(User, data.user_id)
        if user is None or not user.is_active:
            raise UnauthenticatedError("User not found or inactive")

        return await self.issue(user)

    # --- Revocation ---

    async def revoke_all(self, user_id: int) -> bool:
        """
        Drop the stored refresh token so no refresh can succeed.

        Returns:
            False if there is no session store or it could not be reached
        """
        if not self.stateful:
            return False
        result = await self._store("delete", refresh_key(user_id))
        return result is not STORE_UNAVAILABLE

    async def blacklist_access_token(self, token: str) -> bool:
        """
        Blacklist an access token until its natural expiry.

        Returns:
            True if the token was blacklisted, False if there is no session
            store or the token is unusable anyway
        """
        if not self.stateful or not token:
            return False
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
            )
        except PyJWTError:
            return False
        remaining = int(payload.get("exp", 0)) - int(self.clock())
        if remaining <= 0:
            return False
        result = await self._store("set", blacklist_key(token), "revoked", remaining)
        return result is not STORE_UNAVAILABLE

    # --- Single-purpose tokens ---

    async def issue_password_reset_token(self, user: User) -> str:
        ttl = self.settings.password_reset_expire_minutes * 60
        token = self._encode({"sub": str(user.id), "type": PASSWORD_RESET}, ttl)
        if self.stateful:
            await self._store("set", password_reset_key(user.id), hash_token(token), ttl)
        return token

    async def verify_password_reset_token(self, token: str) -> TokenData:
        """Check a reset token without using it up (e.g. before showing the reset form)."""
        data = self.decode(token, PASSWORD_RESET)
        if self.stateful:
            stored = await self._store("get", password_reset_key(data.user_id))
            if stored is not STORE_UNAVAILABLE and not token_matches_hash(token, stored):
                raise RevokedTokenError("Reset token not found or expired")
        return data

    async def consume_password_reset_token(self, token: str) -> TokenData:
        """
        Verify a reset token and make sure it cannot be used again.

        Raises:
            InvalidTokenError, ExpiredTokenError, WrongTokenTypeError,
            RevokedTokenError
        """
        data = self.decode(token, PASSWORD_RESET)
        if self.stateful:
            stored = await self._store("pop", password_reset_key(data.user_id))
            if stored is not STORE_UNAVAILABLE and not token_matches_hash(token, stored):
                raise RevokedTokenError("Reset token not found or expired")
        return data

    def issue_email_verification_token(self, user: User) -> str:
        ttl = self.settings.email_verification_expire_hours * 60 * 60
        return self._encode({"sub": str(user.id), "type": EMAIL_VERIFICATION}, ttl)
