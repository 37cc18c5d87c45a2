"""
Gmail credential service.

Hands out a usable access token for a user, refreshing and persisting it
when the stored one is about to expire.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import sessionmaker

from leavetrack.db.database import session_scope
from leavetrack.db.orm_models import User
from leavetrack.integrations.gmail_client import GmailClient
from leavetrack.integrations.google_auth import refresh_access_token
from leavetrack.utils.logger import get_logger
from leavetrack.utils.errors import AuthError

logger = get_logger(__name__)

# Refresh tokens this close to expiry
EXPIRY_BUFFER = timedelta(minutes=5)


def is_token_expired(user: User, now: Optional[datetime] = None) -> bool:
    """True if the stored access token is missing or expires within 5 minutes."""
    if not user.gmail_access_token or not user.gmail_token_expiry:
        return True
    now = now or datetime.utcnow()
    return now + EXPIRY_BUFFER > user.gmail_token_expiry


class AuthService:
    """
    Gmail credential handling for background jobs.

    Usage:
        auth_service = AuthService(session_factory)
        client = await auth_service.gmail_client_for(user)
    """

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    async def get_valid_access_token(self, user: User) -> str:
        """
        Return a non-expired access token for user.

        Raises:
            AuthError: If the user never granted Gmail access
            PermissionRevokedError: If Google revoked the refresh token
        """
        if not is_token_expired(user):
            return user.gmail_access_token

        if not user.gmail_refresh_token:
            raise AuthError("No Gmail refresh token available. Please re-authorize.", "GMAIL_NOT_AUTHORIZED")

        access_token, expires_in = await refresh_access_token(user.gmail_refresh_token)
        expiry = datetime.utcnow() + timedelta(seconds=expires_in)

        with session_scope(self.session_factory) as db:
            stored = db.get(User, user.id)
            if stored is not None:
                stored.gmail_access_token = access_token
                stored.gmail_token_expiry = expiry

        user.gmail_access_token = access_token
        user.gmail_token_expiry = expiry
        logger.info(f"Refreshed Gmail token for user {user.id}")
        return access_token

    async def gmail_client_for(self, user: User) -> GmailClient:
        return GmailClient(await self.get_valid_access_token(user))
