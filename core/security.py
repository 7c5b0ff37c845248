# core/security.py
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from core.config import Settings
from core.database import get_session
from core.errors import ForbiddenError, UnauthorizedError
from models.models import User


# ========================================
# 🔑 JWT CONFIG
# ========================================
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

# Tokens are issued by the auth service; this service only reads them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


# ========================================
# 🔑 Token Helpers
# ========================================
def create_access_token(
    data: Dict[str, Any],
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_token_for_user(user: User, settings: Settings) -> str:
    return create_access_token({"sub": user.email, "user_id": user.id}, settings)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode JWT and return payload."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token.")


# ========================================
# 👤 Authentication
# ========================================
def _user_from_token(token: str, settings: Settings, session: Session) -> User:
    payload = decode_token(token, settings)
    user_id = payload.get("user_id")
    email = payload.get("sub")

    if not (user_id or email):
        raise UnauthorizedError("Invalid token payload")

    user = None
    if user_id:
        user = session.get(User, user_id)
    if not user and email:
        user = session.exec(select(User).where(User.email == email)).first()

    if not user:
        raise UnauthorizedError("User not found")
    if not user.is_active:
        raise ForbiddenError("Account is inactive")
    return user


def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Extract user from bearer token and load full record from DB."""
    if not token:
        raise UnauthorizedError("Not authenticated")
    return _user_from_token(token, request.app.state.settings, session)


def get_optional_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> Optional[User]:
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    if not token:
        return None
    return _user_from_token(token, request.app.state.settings, session)
