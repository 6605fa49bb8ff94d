"""
Administrator login and bearer-token checks.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import bcrypt
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import Settings
from errors import AuthError

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def hash_password(plain: str, rounds: int = 12) -> str:
    """Build the value for ADMIN_PASSWORD_HASH."""
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        logger.error("Password check failed: invalid bcrypt hash or password")
        return False


def create_token(settings: Settings, username: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "username": username,
        "userId": username,
        "iat": now,
        "exp": now + timedelta(minutes=settings.JWT_EXPIRY_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(settings: Settings, token: str) -> dict[str, Any]:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired") from None
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token") from None
    if not claims.get("userId"):
        raise AuthError("Invalid token")
    return claims


def login(settings: Settings, username: str, password: str) -> str:
    logger.info(f"Login attempt: {username}")
    if username != settings.ADMIN_USERNAME or not verify_password(password, settings.ADMIN_PASSWORD_HASH):
        logger.info("Login failed: invalid credentials")
        raise AuthError("Invalid username or password")
    logger.info(f"Login successful: {username}")
    return create_token(settings, username)


# FastAPI dependencies

def optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[str]:
    """userId of the caller, or None for anonymous requests. A bad token is still rejected."""
    if credentials is None:
        return None
    claims = decode_token(request.app.state.settings, credentials.credentials)
    return str(claims["userId"])


def require_admin(user_id: Optional[str] = Depends(optional_user)) -> str:
    if user_id is None:
        raise AuthError("No token provided")
    return user_id
