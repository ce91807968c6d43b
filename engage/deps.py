from __future__ import annotations
from fastapi import Depends, Request, HTTPException
from .security import decode_session
from typing import Generator
from .db import SessionLocal
from .models import ADMIN_ROLES
from sqlalchemy.orm import Session
from typing import TypedDict, cast


class SessionData(TypedDict):
    user_id: int
    email: str
    role: str


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _token_from(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.cookies.get("session")


async def get_current_user(request: Request) -> SessionData:
    token = _token_from(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    data = decode_session(token)
    if not data:
        raise HTTPException(status_code=401, detail="Invalid session")
    return cast(SessionData, data)  # {"user_id": int, "email": str, "role": str}


async def require_admin(
    user: SessionData = Depends(get_current_user),
) -> SessionData:
    if user["role"] not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


async def get_optional_user(request: Request) -> SessionData | None:
    token = _token_from(request)
    data = decode_session(token) if token else None
    return cast(SessionData, data) if data else None
