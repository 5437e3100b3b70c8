from datetime import timedelta
from uuid import UUID

from app.shared.core.auth import CurrentUser, UserRole, create_access_token
from app.shared.core.config import get_settings

settings = get_settings()

XENDIT_BASE_URL = settings.XENDIT_BASE_URL.rstrip("/")
WEBHOOK_TOKEN = settings.XENDIT_WEBHOOK_TOKEN


def create_test_token(user_id: UUID, email: str, expires_in: timedelta = timedelta(hours=1)):
    """Generate a valid test JWT for the bearer auth dependency."""
    return create_access_token({"sub": str(user_id), "email": email}, expires_delta=expires_in)


def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_test_token(user.id, user.email)}"}


def current_user_for(user):
    """CurrentUser as the auth dependency would build it for a users row."""
    return CurrentUser(
        id=user.id,
        email=user.email,
        household_id=user.household_id,
        role=UserRole(user.role),
        is_billing_owner=bool(user.is_billing_owner),
    )
