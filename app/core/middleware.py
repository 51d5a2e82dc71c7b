from typing import Optional

from fastapi import HTTPException, status, Depends, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from app.core.firebase import verify_firebase_token
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class AuthContext(BaseModel):
    """Authenticated caller, passed explicitly into every service call"""
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token_query: Optional[str] = Query(None, alias="token"),
) -> AuthContext:
    """
    Dependency to get current authenticated user from Firebase token.
    The token may also be passed as a `token` query parameter, which video
    elements need since they cannot set headers.
    """
    logger.info("get_current_user: Entry")

    token = credentials.credentials if credentials else token_query
    if not token:
        logger.info("get_current_user: No credentials supplied")
        raise _credentials_exception()

    try:
        decoded_token = verify_firebase_token(token)
    except Exception as e:
        logger.error(f"get_current_user: Failure - {e}")
        raise _credentials_exception()

    user_id = decoded_token.get('uid')
    if not user_id:
        raise _credentials_exception()

    logger.info(f"get_current_user: Success - {user_id}")
    return AuthContext(
        uid=user_id,
        email=decoded_token.get('email'),
        name=decoded_token.get('name'),
        is_admin=bool(decoded_token.get('admin', False)),
    )


async def require_admin(
    current_user: AuthContext = Depends(get_current_user)
) -> AuthContext:
    """Dependency for administrative override routes"""
    if not current_user.is_admin:
        logger.warning(f"require_admin: Denied - {current_user.uid}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
