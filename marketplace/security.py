"""
Credentials and bearer tokens.

Passwords are stored as bcrypt hashes.  Tokens carry the caller's user id
(``sub``) and role and are issued by the auth endpoints at registration
and login.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt

from marketplace.config import settings
from marketplace.models import UserRole


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: UserRole


def get_password_hash(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    password = plain_password.encode("utf-8")
    if len(password) > 72:
        return False
    return bcrypt.checkpw(password, hashed_password.encode("utf-8"))


def create_access_token(
    user_id: int, role: UserRole, expires_delta: Optional[timedelta] = None
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode: Dict[str, Any] = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Principal]:
    """Return the token's principal, or None when invalid or expired."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return Principal(user_id=int(payload["sub"]), role=UserRole(payload["role"]))
    except (JWTError, KeyError, ValueError):
        return None
