from __future__ import annotations
import os
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from passlib.hash import argon2
from passlib.exc import UnknownHashError
from typing import Any, Optional

SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")
SESSION_SECURE = os.getenv("SESSION_SECURE", "false").lower() == "true"
SESSION_MAX_AGE = 60 * 60 * 24 * 7

serializer = URLSafeTimedSerializer(SESSION_SECRET, salt="session")


def hash_password(raw: str) -> str:
    return argon2.hash(raw)


def verify_password(raw: str, hashed: str) -> bool:
    try:
        return argon2.verify(raw, hashed)
    except (ValueError, UnknownHashError):
        return False


def encode_session(payload: dict[str, Any]) -> str:
    return serializer.dumps(payload)


def decode_session(token: str) -> Optional[dict[str, Any]]:
    try:
        return serializer.loads(token, max_age=SESSION_MAX_AGE)
    except (BadSignature, SignatureExpired):
        return None


def issue_session(user_id: int, email: str, role: str) -> str:
    """Token for the ``session`` cookie or an ``Authorization: Bearer`` header."""
    return encode_session({"user_id": user_id, "email": email, "role": role})
