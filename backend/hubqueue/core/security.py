"""
Security utilities: password hashing, JWT tokens, auth dependencies
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, REALTIME_TOKEN_EXPIRE_MINUTES
from .services import Services, get_services
from ..models.user import UserRecord

# Password hashing; hex_sha256 verifies hashes written by older clients and
# is upgraded to bcrypt on the next successful login
pwd_context = CryptContext(schemes=["bcrypt", "hex_sha256"], deprecated="auto")

# Bearer token scheme
security = HTTPBearer(auto_error=False)

REALTIME_SCOPE = "realtime:subscribe"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token"""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


def create_realtime_token(username: str, topic: str) -> str:
    """Short-lived token that only allows subscribing to `topic`"""
    return create_access_token(
        {"sub": username, "scope": REALTIME_SCOPE, "topic": topic},
        expires_delta=timedelta(minutes=REALTIME_TOKEN_EXPIRE_MINUTES),
    )


def decode_realtime_token(token: str, topic: str) -> Optional[str]:
    """Return the username if `token` grants subscription to `topic`"""
    payload = decode_token(token)
    if not payload or payload.get("scope") != REALTIME_SCOPE or payload.get("topic") != topic:
        return None
    return payload.get("sub")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    services: Services = Depends(get_services)
) -> Optional[UserRecord]:
    """
    Get current user from JWT token.
    Returns None if no token or invalid token (for optional auth).
    """
    if not credentials:
        return None

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("scope"):
        return None

    username: str = payload.get("sub")
    if not username:
        return None

    return services.users.get_user(username)


def get_current_user_required(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    services: Services = Depends(get_services)
) -> UserRecord:
    """
    Get current user from JWT token (required).
    Raises 401 if no token or invalid token, 403 if the account is banned.
    """
    if not credentials:
        raise _unauthorized("Missing authentication token")

    payload = decode_token(credentials.credentials)
    # scoped tokens (realtime) are not session tokens
    if not payload or payload.get("scope"):
        raise _unauthorized("Invalid or expired token")

    username: str = payload.get("sub")
    if not username:
        raise _unauthorized("Invalid token")

    user = services.users.get_user(username)
    if not user:
        raise _unauthorized("User does not exist")

    if user.is_banned:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This account has been banned"
        )

    return user


def get_session_user(
    current_user: UserRecord = Depends(get_current_user_required),
    services: Services = Depends(get_services)
) -> UserRecord:
    """Authenticated user, blocked with 503 during maintenance unless admin"""
    services.system.check_session(current_user)
    return current_user


def get_admin_user(
    current_user: UserRecord = Depends(get_current_user_required)
) -> UserRecord:
    """Require admin role"""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


# Alias for optional user (same as get_current_user but more explicit name)
get_current_user_optional = get_current_user
