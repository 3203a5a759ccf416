"""
Identity helpers.

Token issuance lives in the account service; this module only reads the
bearer token and trusts its ``sub`` claim as the caller's user id.
"""
import jwt
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException, Header
from typing import Optional
from .config import settings
from .logger import logger

def create_access_token(user_id: str) -> str:
    """Create a JWT access token"""
    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": user_id,
        "exp": now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

def decode_access_token(token: str) -> Optional[str]:
    """Decode a JWT access token and return user_id"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("Expired access token presented")
        return None
    except jwt.InvalidTokenError:
        logger.warning("Invalid access token presented")
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    return str(user_id)

async def get_current_user_id_optional(
    authorization: Optional[str] = Header(None),
) -> Optional[str]:
    """
    Optional authentication - returns the user id if a valid bearer token is present.
    Anonymous callers (guests) get None.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization.split(" ", 1)[1]
    return decode_access_token(token)

async def get_current_user_id(
    user_id: Optional[str] = Depends(get_current_user_id_optional),
) -> str:
    """
    Dependency for endpoints that need a registered user
    """
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id
