"""
Google OAuth token refresh.

Sign-in happens elsewhere; this module only keeps the stored Gmail
access token usable for background reply checks.
"""
import httpx
from typing import Tuple

from leavetrack.config import get_settings
from leavetrack.utils.logger import get_logger
from leavetrack.utils.errors import AuthError, PermissionRevokedError

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN = 3600


async def refresh_access_token(refresh_token: str) -> Tuple[str, int]:
    """
    Exchange a stored refresh token for a new access token.

    Returns:
        Tuple of (access_token, expires_in_seconds)

    Raises:
        PermissionRevokedError: Google answered invalid_grant
        AuthError: Any other refresh failure
    """
    settings = get_settings()
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(GOOGLE_TOKEN_URL, data=form, timeout=settings.gmail_request_timeout_seconds)
    except httpx.RequestError as e:
        logger.error(f"Token refresh request failed: {e}")
        raise AuthError("Failed to connect to Google for token refresh")

    payload = response.json() if response.content else {}

    if response.status_code != 200:
        if payload.get("error") == "invalid_grant":
            logger.warning("Refresh token revoked or expired")
            raise PermissionRevokedError()
        logger.error(f"Token refresh failed ({response.status_code}): {payload}")
        raise AuthError("Failed to refresh access token")

    logger.info("Refreshed Gmail access token")
    return payload["access_token"], payload.get("expires_in", DEFAULT_EXPIRES_IN)
