"""Admin authentication and automation webhook authorization helpers."""

import hmac
import bcrypt
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from access_manager.core.config import settings
from access_manager.core.exceptions import AuthorizationError

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    pwd_bytes = password.encode("utf-8")
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(pwd_bytes, salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password against its hash. An unset hash never matches."""
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed hash in configuration
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_admin_token() -> str:
    return create_access_token({"sub": ADMIN_ROLE, "role": ADMIN_ROLE})


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthorizationError("Invalid or expired token")


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> dict:
    """Dependency that admits only a valid admin session token."""
    if credentials is None:
        raise AuthorizationError("Not authenticated")
    payload = decode_token(credentials.credentials)
    if payload.get("role") != ADMIN_ROLE or payload.get("type") != "access":
        raise AuthorizationError("Admin credentials required")
    return payload


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unconfigured secret never matches."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_automation_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> None:
    """Dependency guarding the automation results webhook."""
    provided = credentials.credentials if credentials else None
    if not secrets_match(provided, settings.AUTOMATION_WEBHOOK_SECRET):
        raise AuthorizationError("Invalid automation webhook secret")
