from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
import jwt

from ugc_tracker.settings import Settings

log = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class User:
    id: int
    email: str
    password_hash: str
    first_name: str
    last_name: str
    avatar_url: str = ""

    def public(self) -> Dict[str, Any]:
        """User fields safe to return to the browser."""
        d = asdict(self)
        d.pop("password_hash")
        return d


# Mock user store; the dashboard does not manage accounts. Password: "password".
USERS: List[User] = [
    User(
        id=1,
        email="demo@example.com",
        password_hash="$2a$10$92IXUNpkjO0rOQ5byMi.Ye4oKoEa3Ro9llC/.og/at2.uheWG/igi",
        first_name="John",
        last_name="Doe",
        avatar_url="https://images.unsplash.com/photo-1472099645785-5658abf4ff4e?w=100&h=100&fit=crop&crop=face",
    ),
]


def get_user_by_id(user_id: int) -> Optional[User]:
    for u in USERS:
        if u.id == user_id:
            return u
    return None


def authenticate_user(email: str, password: str) -> Optional[User]:
    user = next((u for u in USERS if u.email == email), None)
    if user is None:
        return None
    try:
        ok = bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("utf-8"))
    except ValueError as e:
        log.error("Unusable password hash for user id=%s: %r", user.id, e)
        return None
    return user if ok else None


def generate_token(user: User, settings: Settings, *, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "userId": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expires_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def verify_token(token: str, settings: Settings) -> Optional[Dict[str, Any]]:
    """Decoded claims, or None for an expired/forged/malformed token."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        log.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError as e:
        log.info("Rejected invalid token: %s", e)
        return None
