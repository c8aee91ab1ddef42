"""Password hashing, JWT session cookies and the FastAPI auth dependencies."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from config import COOKIE_MAX_AGE, COOKIE_NAME, TOKEN_LIFETIME_DAYS, settings
from db import get_db
from logger import get_logger
from tables import User

logger = get_logger("ChemQuest.auth")

JWT_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_token(user: User) -> str:
    """Create a signed JWT for a user"""
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user.id,
        "username": user.username,
        "displayName": user.display_name,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(days=TOKEN_LIFETIME_DAYS),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    """Verify and decode a JWT; None when expired or tampered with"""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def set_auth_cookie(response: Response, user: User) -> None:
    response.set_cookie(
        COOKIE_NAME,
        create_token(user),
        max_age=COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(COOKIE_NAME, path="/")


def get_session_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    """Current user from the auth cookie, or None when not logged in"""
    token = request.cookies.get(COOKIE_NAME)
    if not token:
        return None

    payload = verify_token(token)
    if not payload:
        return None

    # Always read fresh counters from the database
    return db.get(User, payload.get("userId"))


def require_user(user: Optional[User] = Depends(get_session_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_role(*roles: str):
    """Dependency factory: authenticated user with one of `roles`"""
    def dependency(user: User = Depends(require_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail=f"Only {' and '.join(r + 's' for r in roles)} can do this")
        return user
    return dependency
