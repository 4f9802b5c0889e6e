from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from crm.config import Settings
from crm.errors import AuthError, ServerError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    id: int
    username: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def is_password_hash(stored: str | None) -> bool:
    return bool(stored) and stored.startswith(BCRYPT_PREFIXES)


def verify_password(password: str, stored: str | None) -> bool:
    if not stored:
        return False
    if is_password_hash(stored):
        return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
    # Legacy rows hold plain text; the login route re-hashes them on success.
    return password == stored


def create_access_token(settings: Settings, user_id: int, username: str, role: str) -> str:
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not set")
        raise ServerError("Server configuration error: JWT_SECRET not set")
    payload = {
        "userId": user_id,
        "username": username,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expires_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(settings: Settings, token: str) -> CurrentUser:
    if not settings.jwt_secret:
        raise ServerError("Server configuration error: JWT_SECRET not set")
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
        return CurrentUser(id=int(claims["userId"]), username=str(claims["username"]), role=str(claims["role"]))
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError) as exc:
        raise AuthError("Invalid or expired token", status_code=403) from exc


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise AuthError("Authentication required")
    return decode_access_token(request.app.state.settings, credentials.credentials)


def require_staff(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role not in ("admin", "employee"):
        raise AuthError("Insufficient permissions", status_code=403)
    return user


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise AuthError("Admin access required", status_code=403)
    return user
