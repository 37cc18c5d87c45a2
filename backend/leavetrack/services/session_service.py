"""
Session cookie handling.

Sign-in itself lives outside this service. The session cookie is a JWT
carrying the user id; this module issues and validates it and exposes
the FastAPI dependency that resolves the current user.
"""
import jwt
from datetime import datetime, timedelta
from typing import Optional
from fastapi import Request, HTTPException

from leavetrack.config import get_settings
from leavetrack.db.database import session_scope
from leavetrack.db.orm_models import User
from leavetrack.utils.logger import get_logger
from leavetrack.utils.errors import SessionExpiredError

logger = get_logger(__name__)

SESSION_COOKIE = "session"


def create_session_token(user_id: int, expire_hours: Optional[int] = None) -> str:
    """
    Create a JWT session token for a user.

    Args:
        user_id: ID of the signed-in user
        expire_hours: Lifetime override (defaults to settings)

    Returns:
        JWT session token (to be stored in cookie)
    """
    settings = get_settings()
    now = datetime.utcnow()
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(hours=expire_hours or settings.session_expire_hours),
    }
    return jwt.encode(payload, settings.session_secret, algorithm="HS256")


def decode_session_token(session_token: str) -> Optional[int]:
    """
    Return the user id from a session token.

    Returns None if the JWT is invalid or expired.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(session_token, settings.session_secret, algorithms=["HS256"])
        return int(payload["sub"])
    except jwt.ExpiredSignatureError:
        logger.warning("JWT expired")
        return None
    except (jwt.InvalidTokenError, KeyError, ValueError) as e:
        logger.warning(f"Invalid JWT: {e}")
        return None


def get_current_user(request: Request) -> User:
    """
    FastAPI dependency to get the current authenticated user.

    Raises:
        HTTPException 401: If not authenticated or session expired
    """
    session_cookie = request.cookies.get(SESSION_COOKIE)

    if not session_cookie:
        raise HTTPException(
            status_code=401,
            detail={"error": True, "code": "AUTH_REQUIRED", "message": "Authentication required"}
        )

    user_id = decode_session_token(session_cookie)
    user = None
    if user_id is not None:
        with session_scope() as db:
            user = db.get(User, user_id)

    if user is None or not user.is_active:
        error = SessionExpiredError()
        raise HTTPException(status_code=error.status_code, detail=error.to_dict())

    return user
