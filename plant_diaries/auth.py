"""
Password hashing and the access/refresh token pair.

Access tokens are short-lived and signed with ``JWT_SECRET``; refresh tokens
live for days, are signed with a separate secret and the most recent one is
stored on the user row so it can be revoked on logout.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from jwt import InvalidTokenError
from werkzeug.security import check_password_hash, generate_password_hash

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class TokenSettings:
  secret: str
  refresh_secret: str
  access_minutes: int = 15
  refresh_days: int = 7


def hash_password(password: str) -> str:
  return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
  return check_password_hash(password_hash, password)


def is_valid_email(email: str) -> bool:
  return bool(_EMAIL_RE.match(email or ""))


def is_valid_password(password: str) -> bool:
  """At least six characters."""
  return len(password or "") >= MIN_PASSWORD_LENGTH


def _claims(user: Dict[str, Any], token_type: str, lifetime: timedelta) -> Dict[str, Any]:
  now = datetime.now(timezone.utc)
  return {
    "sub": str(user["id"]),
    "email": user["email"],
    "is_admin": bool(user.get("is_admin")),
    "type": token_type,
    "iat": now,
    "exp": now + lifetime,
  }


def generate_access_token(user: Dict[str, Any], settings: TokenSettings) -> str:
  """Return a signed short-lived JWT for the provided user."""
  payload = _claims(user, ACCESS_TOKEN, timedelta(minutes=settings.access_minutes))
  return jwt.encode(payload, settings.secret, algorithm=JWT_ALGORITHM)


def generate_refresh_token(user: Dict[str, Any], settings: TokenSettings) -> str:
  payload = _claims(user, REFRESH_TOKEN, timedelta(days=settings.refresh_days))
  # Two refreshes within the same second must still yield distinct tokens.
  payload["jti"] = uuid.uuid4().hex
  return jwt.encode(payload, settings.refresh_secret, algorithm=JWT_ALGORITHM)


def _decode(token: str, secret: str, token_type: str) -> Dict[str, Any]:
  payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
  if payload.get("type") != token_type:
    raise InvalidTokenError(f"Expected a {token_type} token.")
  try:
    payload["user_id"] = int(payload["sub"])
  except (KeyError, TypeError, ValueError) as exc:
    raise InvalidTokenError("Token subject is malformed.") from exc
  return payload


def decode_access_token(token: str, settings: TokenSettings) -> Dict[str, Any]:
  """Decode an access token; raises ``jwt.InvalidTokenError`` (or a subclass)."""
  return _decode(token, settings.secret, ACCESS_TOKEN)


def decode_refresh_token(token: str, settings: TokenSettings) -> Dict[str, Any]:
  return _decode(token, settings.refresh_secret, REFRESH_TOKEN)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
  """Shape a user row for API responses."""
  return {
    "id": user["id"],
    "email": user["email"],
    "displayName": user.get("display_name"),
    "isAdmin": bool(user.get("is_admin")),
    "createdAt": user.get("created_at"),
  }


__all__ = [
  "TokenSettings",
  "decode_access_token",
  "decode_refresh_token",
  "generate_access_token",
  "generate_refresh_token",
  "hash_password",
  "is_valid_email",
  "is_valid_password",
  "public_user",
  "verify_password",
]
