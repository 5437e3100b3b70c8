import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, cast
from uuid import UUID

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.household import User, UserRole
from app.shared.core.config import get_settings
from app.shared.db.session import get_db

logger = structlog.get_logger()

__all__ = [
    "CurrentUser",
    "create_access_token",
    "get_current_user",
    "require_household_access",
    "require_admin",
    "UserRole",
]

security = HTTPBearer(auto_error=False)


def _hash_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return hashlib.sha256(normalized.encode()).hexdigest()[:12]


def create_access_token(
    data: dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """
    Generate a new JWT token signed with the application secret.
    """
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode.setdefault("aud", settings.JWT_AUDIENCE)
    to_encode.update({"exp": expire})

    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET is not configured")

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm="HS256")


class CurrentUser(BaseModel):
    """
    Represents the authenticated user resolved from the JWT and the users table.
    """

    id: UUID
    email: str
    household_id: Optional[UUID] = None
    role: UserRole = UserRole.MEMBER
    is_billing_owner: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def can_manage_billing(self) -> bool:
        return self.role == UserRole.OWNER or self.is_billing_owner


def decode_jwt(token: str) -> dict[str, Any]:
    """
    Decode and verify a bearer token (HS256, audience-checked, exp enforced).

    Raises:
        HTTPException 401 if token is invalid
    """
    settings = get_settings()

    if not settings.JWT_SECRET:
        logger.error("jwt_secret_missing_in_decode")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
        )
        return cast(dict[str, Any], payload)
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """
    JWT + DB lookup. For protected routes
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_jwt(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        user_uuid = UUID(str(user_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await db.get(User, user_uuid)
    if user is None:
        logger.warning("auth_user_not_found_in_db", user_id=str(user_uuid))
        raise HTTPException(status.HTTP_403_FORBIDDEN, "User not found.")
    if not user.active:
        logger.warning("auth_user_disabled", user_id=str(user_uuid))
        raise HTTPException(status.HTTP_403_FORBIDDEN, "User account is disabled.")

    try:
        role = UserRole(user.role)
    except ValueError:
        logger.warning("auth_invalid_user_role", user_id=str(user_uuid), role=user.role)
        role = UserRole.MEMBER

    # Request state feeds the rate limiter key.
    request.state.household_id = user.household_id
    request.state.user_id = user_uuid

    logger.info(
        "user_authenticated",
        user_id=str(user_uuid),
        email_hash=_hash_email(user.email),
        role=role.value,
    )
    return CurrentUser(
        id=user_uuid,
        email=user.email,
        household_id=user.household_id,
        role=role,
        is_billing_owner=bool(user.is_billing_owner),
    )


def require_household_access(
    user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Ensures that the current user belongs to a household.
    Household-scoped billing routes depend on this.
    """
    if not user.household_id:
        logger.warning("household_id_missing_in_user_context", user_id=str(user.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Household context required.",
        )
    return user


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        logger.warning(
            "insufficient_permissions",
            user_id=str(user.id),
            user_role=user.role,
            required_role=UserRole.ADMIN.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions. Required role: admin",
        )
    return user
