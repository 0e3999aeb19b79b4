"""
Session verification.

The auth provider issues HS256 session tokens whose `sub` claim is the user
id; this module only verifies them. Admin-only routes additionally check the
caller's role in the users table.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_utils import attach_log_fields, bind_user_id
from app.storage import get_db, get_user

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def decode_session_token(token: str) -> Optional[str]:
    """Return the user id carried by a valid session token, or None."""
    try:
        payload = jwt.decode(
            token,
            settings.SESSION_SECRET,
            algorithms=["HS256"],
            options={"require": ["sub"]},
        )
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected session token: {e}")
        return None
    return payload.get("sub") or None


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user_id = decode_session_token(credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    bind_user_id(user_id)
    attach_log_fields(request, user_id=user_id)
    return user_id


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> str:
    user = get_user(db, user_id)
    if user is None or user.role != "admin":
        logger.warning(f"Admin access denied for user {user_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user_id
