"""Password hashing, JWT issuance and the request auth dependencies."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException

from database import find_by_id
from settings import get_settings

ROLES = ("fan", "artist", "admin")


def hash_password(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt(rounds=10)).decode()


def verify_password(pw: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(pw.encode(), password_hash.encode())
    except ValueError:
        return False


def create_access_token(user: dict) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": str(user["_id"]),
        "email": user["email"],
        "role": user.get("role", "fan"),
        "name": user.get("name"),
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_expiry_hours),
    }
    return jwt.encode(payload, settings.session_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.session_secret, algorithms=[settings.jwt_algorithm])


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _user_for_token(token: str) -> dict:
    try:
        payload = decode_access_token(token)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    user = find_by_id("user", payload.get("user_id"))
    if not user:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    return user


def get_user_from_token(authorization: Optional[str] = Header(None)):
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Access token required")
    return _user_for_token(token)


def get_optional_user(authorization: Optional[str] = Header(None)):
    """Like ``get_user_from_token`` but anonymous callers get ``None``."""
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return _user_for_token(token)
    except HTTPException:
        return None


def require_role(*roles: str):
    def dependency(user=Depends(get_optional_user), authorization: Optional[str] = Header(None)):
        if user is None:
            if _bearer_token(authorization):
                raise HTTPException(status_code=403, detail="Invalid or expired token")
            raise HTTPException(status_code=401, detail="Authentication required")
        if user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "admin"


# ---------------
# Password reset tokens
# ---------------

class ResetTokenError(Exception):
    pass


class ResetTokenStore:
    """In-process map of 6-digit reset codes, swept on every issue."""

    def __init__(self, ttl: timedelta):
        self.ttl = ttl
        self._tokens: Dict[str, dict] = {}

    def issue(self, user_id: str) -> str:
        self.cleanup()
        token = f"{secrets.randbelow(900000) + 100000}"
        while token in self._tokens:
            token = f"{secrets.randbelow(900000) + 100000}"
        self._tokens[token] = {
            "user_id": user_id,
            "expires_at": datetime.now(timezone.utc) + self.ttl,
        }
        return token

    def consume(self, token: str) -> str:
        """Return the user id for ``token`` and forget it."""
        entry = self._tokens.get(token)
        if entry is None:
            raise ResetTokenError("Invalid or expired reset token")
        if entry["expires_at"] < datetime.now(timezone.utc):
            del self._tokens[token]
            raise ResetTokenError("Reset token has expired")
        del self._tokens[token]
        return entry["user_id"]

    def cleanup(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [t for t, e in self._tokens.items() if e["expires_at"] < now]
        for t in expired:
            del self._tokens[t]
        return len(expired)

    def __len__(self):
        return len(self._tokens)


reset_tokens = ResetTokenStore(ttl=timedelta(minutes=get_settings().reset_token_ttl_minutes))
