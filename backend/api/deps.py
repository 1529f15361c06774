from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.security import decode_token
from services.container import Services
from services.repository import Scope


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller as stated by the identity provider's token."""

    id: uuid.UUID
    school_id: uuid.UUID
    role: str | None = None

    def scope(self, academic_year_id: uuid.UUID, term_id: uuid.UUID) -> Scope:
        return Scope(self.school_id, academic_year_id, term_id)


def _extract_token(request: Request, creds: HTTPAuthorizationCredentials | None) -> str | None:
    if creds is not None and creds.credentials:
        return creds.credentials
    cookie_token = request.cookies.get("access_token")
    return cookie_token or None


def get_actor(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    token = _extract_token(request, creds)
    if not token:
        raise HTTPException(status_code=401, detail="NOT_AUTHENTICATED")
    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=401, detail="INVALID_TOKEN")

    try:
        actor = Actor(
            id=uuid.UUID(str(payload.get("sub"))),
            school_id=uuid.UUID(str(payload.get("school_id"))),
            role=payload.get("role"),
        )
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="INVALID_TOKEN")

    request.state.actor = actor
    return actor


def get_services(request: Request) -> Services:
    return request.app.state.services
