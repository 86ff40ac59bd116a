# backend/trafikskola/auth.py
from datetime import timedelta
import logging
from typing import Any, Dict, Optional, cast

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
import jwt
from jwt import PyJWTError
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .core.config import settings
from .core.timezone_utils import utc_now
from .database import get_db
from .models.user import User
from .repositories.factory import RepositoryFactory

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

AUTH_COOKIE_NAME = "auth-token"
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def _secret_value(secret_obj: Any) -> str:
    getter = getattr(secret_obj, "get_secret_value", None)
    if callable(getter):
        return cast(str, getter())
    return cast(str, secret_obj)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a hashed password.

    Args:
        plain_password: The plain text password
        hashed_password: The hashed password to compare against

    Returns:
        bool: True if password matches, False otherwise
    """
    try:
        return bool(pwd_context.verify(plain_password, hashed_password))
    except Exception as e:
        logger.error(f"Error verifying password: {str(e)}")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    hashed = pwd_context.hash(password)
    return str(hashed)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed JWT access token.

    ``data`` must carry ``sub`` (the user's email); ``role`` is added by
    callers that know it.
    """
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire, "iat": utc_now()})
    return str(
        jwt.encode(to_encode, _secret_value(settings.secret_key), algorithm=settings.algorithm)
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    payload = jwt.decode(
        token,
        _secret_value(settings.secret_key),
        algorithms=[settings.algorithm],
    )
    return cast(Dict[str, Any], payload)


def _token_from_request(request: Request, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    cookie_token = request.cookies.get(AUTH_COOKIE_NAME)
    if cookie_token:
        logger.debug(f"Using {AUTH_COOKIE_NAME} cookie for authentication")
    return cookie_token


def get_current_user_optional(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme_optional),
    db: Session = Depends(get_db),
) -> Optional[User]:
    """
    Resolve the caller from a bearer token or the ``auth-token`` cookie.

    Returns None for anonymous (guest) callers and for invalid tokens,
    so that booking endpoints can serve both.
    """
    token = _token_from_request(request, token)
    if not token:
        return None

    try:
        payload = decode_access_token(token)
    except PyJWTError as e:
        logger.warning(f"Ignoring invalid token on optional auth: {str(e)}")
        return None

    email = payload.get("sub")
    if not isinstance(email, str):
        logger.warning("Token payload missing 'sub' field")
        return None

    user = RepositoryFactory.create_user_repository(db).get_by_email(email)
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(user: Optional[User] = Depends(get_current_user_optional)) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Not authenticated", "code": "unauthorized"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Admin access required", "code": "unauthorized"},
        )
    return user
