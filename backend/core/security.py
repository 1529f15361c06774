from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt

from core.config import settings


def create_access_token(*, actor_id: str, school_id: str, role: str = "academic_coordinator", expires_minutes: int = 60) -> str:
    """Issue a token the way the external identity service does (used by scripts and tests)."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": actor_id,
        "school_id": school_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
